"""
Mindmap Sync — command line front end

Thin commands over the store client, the graph controller, the bulk
importer and the history recorder:
  1. Listing projects and notes
  2. Showing a project's graph
  3. Validating and importing JSON batches (into one project or as new projects)
  4. Inspecting persisted undo history

Usage:
    python main.py projects
    python main.py show --project <project-id>
    python main.py validate --file batch.json
    python main.py import --project <project-id> --file batch.json
    python main.py import-projects --file projects.json
    python main.py notes --search roadmap
    python main.py history --project <project-id>
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.logging import RichHandler

from config import HISTORY_DIR, IMPORT_SETTLE_DELAY
from controller import MindmapController
from errors import LoadError, MindmapError, NotAuthenticated, ValidationError
from history import HistoryRecorder
from importer import BulkImporter, import_projects, load_batch_file, validate_batch
from session import SessionProvider
from store_client import SupabaseStore

# ─── Setup ────────────────────────────────────────────────────────────

console = Console()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(console=console, rich_tracebacks=True)],
)
logger = logging.getLogger("mindsync")


def _open_store() -> SupabaseStore:
    return SupabaseStore(SessionProvider.from_config())


def _read_batch(path_arg: str):
    path = Path(path_arg)
    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        return None
    try:
        return load_batch_file(path)
    except ValidationError as exc:
        console.print(f"[red]Invalid file: {exc}[/red]")
        return None


def _truncate(text: str, limit: int = 60) -> str:
    text = text.replace("\n", " ")
    return text[:limit] + "…" if len(text) > limit else text


# ─── Commands ─────────────────────────────────────────────────────────

async def cmd_projects(args: argparse.Namespace):
    """List the current user's projects."""
    async with _open_store() as store:
        projects = await store.list_projects()

    if not projects:
        console.print("[yellow]No projects yet.[/yellow]")
        return

    table = Table(title=f"Projects ({len(projects)})")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Pinned", justify="center")
    table.add_column("Archived", justify="center")
    table.add_column("Updated")

    for project in projects:
        table.add_row(
            project.id,
            project.title,
            "📌" if project.is_pinned else "",
            "🗄" if project.is_archived else "",
            project.updated_at.strftime("%Y-%m-%d %H:%M") if project.updated_at else "—",
        )
    console.print(table)


async def cmd_show(args: argparse.Namespace):
    """Load one project's graph and print its nodes and edges."""
    async with _open_store() as store:
        controller = MindmapController(store)
        try:
            graph = await controller.load_graph(args.project)
        except (LoadError, NotAuthenticated) as exc:
            console.print(f"[red]{exc}[/red]")
            return
        finally:
            await controller.close()

    title = graph.project.title if graph and graph.project else args.project
    console.print(Panel(
        f"Nodes: {len(controller.nodes)}\nEdges: {len(controller.edges)}",
        title=f"🧠 {title}",
    ))

    node_table = Table(title="Nodes")
    node_table.add_column("ID", style="dim")
    node_table.add_column("Content", style="cyan", max_width=60)
    node_table.add_column("Position", justify="right")
    node_table.add_column("Status")
    node_table.add_column("Due")

    for node in controller.nodes:
        node_table.add_row(
            node.id,
            _truncate(node.content) or "—",
            f"({node.position.x:.0f}, {node.position.y:.0f})",
            node.workflow_status.value if node.workflow_status else "—",
            node.due_date.isoformat() if node.due_date else "—",
        )
    console.print(node_table)

    if controller.edges:
        contents = {n.id: _truncate(n.content, 30) for n in controller.nodes}
        edge_table = Table(title="Edges")
        edge_table.add_column("Source", style="cyan")
        edge_table.add_column("→ Target", style="cyan")
        edge_table.add_column("Label", style="yellow")

        for edge in controller.edges:
            edge_table.add_row(
                contents.get(edge.source_node_id, edge.source_node_id),
                contents.get(edge.target_node_id, edge.target_node_id),
                edge.label or "—",
            )
        console.print(edge_table)


async def cmd_validate(args: argparse.Namespace):
    """Check an import batch without writing anything."""
    raw = _read_batch(args.file)
    if raw is None:
        return
    try:
        batch = validate_batch(raw)
    except ValidationError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="❌ Invalid batch"))
        return

    console.print(Panel(
        f"Nodes: {len(batch.nodes)}\nEdges: {len(batch.edges)}",
        title="✅ Batch is valid",
    ))


async def cmd_import(args: argparse.Namespace):
    """Apply an import batch to an existing project, node by node."""
    raw = _read_batch(args.file)
    if raw is None:
        return
    try:
        batch = validate_batch(raw)
    except ValidationError as exc:
        console.print(Panel(f"[red]{exc}[/red]", title="❌ Invalid batch"))
        return

    console.print(Panel(
        f"Importing [bold]{len(batch.nodes)}[/bold] nodes and "
        f"[bold]{len(batch.edges)}[/bold] edges into {args.project}",
        title="📥 Import",
    ))

    async with _open_store() as store:
        controller = MindmapController(store)
        try:
            await controller.load_graph(args.project)
            report = await BulkImporter(controller, settle_delay=args.settle).run(batch)
            await controller.wait_for_add_window()
        except (LoadError, NotAuthenticated) as exc:
            console.print(f"[red]{exc}[/red]")
            return
        finally:
            await controller.close()

    console.print(Panel(
        f"Nodes created: {len(report.created_node_ids)}/{len(batch.nodes)}\n"
        f"Edges created: {len(report.created_edge_ids)}/{len(batch.edges)}\n"
        f"Edges skipped: {len(report.skipped_edges)}\n"
        f"Edges failed:  {len(report.failed_edges)}",
        title="✅ Import finished" if report.ok else "⚠️ Import finished with problems",
    ))
    for index, reason in report.failed_edges.items():
        console.print(f"[dim]  edge {index}: {reason}[/dim]")


async def cmd_import_projects(args: argparse.Namespace):
    """Create new projects from a JSON file, one per entry."""
    raw = _read_batch(args.file)
    if raw is None:
        return

    async with _open_store() as store:
        try:
            results = await import_projects(store, raw)
        except ValidationError as exc:
            console.print(Panel(f"[red]{exc}[/red]", title="❌ Invalid file"))
            return
        except MindmapError as exc:
            console.print(f"[red]Import failed: {exc}[/red]")
            return

    table = Table(title=f"Imported Projects ({len(results)})")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Nodes", justify="right")
    table.add_column("Edges", justify="right")

    for project, report in results:
        table.add_row(
            project.id,
            project.title,
            str(len(report.created_node_ids)),
            str(len(report.created_edge_ids)),
        )
    console.print(table)


async def cmd_notes(args: argparse.Namespace):
    """List notes across projects, optionally filtered."""
    async with _open_store() as store:
        notes = await store.list_notes(search=args.search)

    if not notes:
        console.print("[yellow]No matching notes.[/yellow]")
        return

    table = Table(title=f"Notes ({len(notes)})")
    table.add_column("Content", style="cyan", max_width=60)
    table.add_column("Project", style="green")
    table.add_column("Pinned", justify="center")
    table.add_column("Priority")
    table.add_column("Updated")

    for note in notes:
        table.add_row(
            _truncate(note.content) or "—",
            note.project_title,
            "📌" if note.is_pinned else "",
            note.priority.value if note.priority else "—",
            note.updated_at.strftime("%Y-%m-%d") if note.updated_at else "—",
        )
    console.print(table)


async def cmd_history(args: argparse.Namespace):
    """Show the persisted undo history of a project."""
    recorder = HistoryRecorder(
        storage_key=f"mindmap-history-{args.project}",
        storage_dir=args.history_dir,
    )
    info = recorder.info()
    if not info["total"]:
        console.print(f"[yellow]No saved history for {args.project}.[/yellow]")
        return

    table = Table(title=f"History of {args.project}")
    table.add_column("#", justify="right", style="bold")
    table.add_column("Action", style="cyan")
    table.add_column("Nodes", justify="right")
    table.add_column("Edges", justify="right")
    table.add_column("")

    for i, snapshot in enumerate(recorder.entries):
        table.add_row(
            str(i),
            snapshot.action,
            str(len(snapshot.nodes)),
            str(len(snapshot.edges)),
            "◀ current" if i == info["current"] else "",
        )
    console.print(table)
    console.print(
        f"[dim]can undo: {info['can_undo']}, can redo: {info['can_redo']}[/dim]"
    )


# ─── CLI ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mindsync",
        description="Mindmap Sync — optimistic mindmap graph sync against Supabase",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # projects
    subparsers.add_parser("projects", help="List your projects")

    # show
    p_show = subparsers.add_parser("show", help="Show a project's graph")
    p_show.add_argument("--project", required=True, help="Project ID")

    # validate
    p_validate = subparsers.add_parser("validate", help="Validate an import batch")
    p_validate.add_argument("--file", required=True, help="Path to JSON batch")

    # import
    p_import = subparsers.add_parser("import", help="Import a batch into a project")
    p_import.add_argument("--project", required=True, help="Target project ID")
    p_import.add_argument("--file", required=True, help="Path to JSON batch")
    p_import.add_argument(
        "--settle", type=float, default=IMPORT_SETTLE_DELAY,
        help="Seconds to wait between nodes and edges",
    )

    # import-projects
    p_projects = subparsers.add_parser(
        "import-projects", help="Create projects from a JSON file"
    )
    p_projects.add_argument("--file", required=True, help="Path to JSON projects file")

    # notes
    p_notes = subparsers.add_parser("notes", help="List notes across projects")
    p_notes.add_argument("--search", default=None, help="Filter on content or project title")

    # history
    p_history = subparsers.add_parser("history", help="Show saved undo history")
    p_history.add_argument("--project", required=True, help="Project ID")
    p_history.add_argument("--history-dir", default=HISTORY_DIR)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    cmd_map = {
        "projects": cmd_projects,
        "show": cmd_show,
        "validate": cmd_validate,
        "import": cmd_import,
        "import-projects": cmd_import_projects,
        "notes": cmd_notes,
        "history": cmd_history,
    }

    asyncio.run(cmd_map[args.command](args))


if __name__ == "__main__":
    main()
