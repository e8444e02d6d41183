"""
Bulk import: apply a JSON batch of nodes and edges to a mindmap.

Batch format:
    {
      "nodes": [{"content": str, "position": {"x": num, "y": num}, "style"?: {...}}],
      "edges": [{"source": int, "target": int}]     # indices into "nodes"
    }

Design choices:
  - The whole batch is validated before anything is written; one bad
    element aborts the import and the error names its index and field
  - Nodes are created one at a time through the controller, each waiting
    for the previous add window to close, so the single-flight add guard
    is never tripped
  - Only nodes whose creation was acknowledged get an index -> id mapping;
    edges pointing at anything else are skipped with a warning
  - Edge failures are recorded per edge and never abort the remaining ones
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from config import IMPORT_SETTLE_DELAY
from controller import MindmapController, NodeState
from errors import ValidationError
from scheduler import AsyncioClock
from schema import (
    ImportBatch,
    ImportProject,
    ImportReport,
    MindmapEdge,
    MindmapNode,
    MindmapProject,
)

logger = logging.getLogger(__name__)

STYLE_FIELD_TYPES = {
    "backgroundColor": str,
    "borderColor": str,
    "borderWidth": (int, float),
    "fontSize": (int, float),
}


# ─── Validation ───────────────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _check_node(node: Any, index: int) -> None:
    if not isinstance(node, dict):
        raise ValidationError("node", index, None, "must be an object")

    content = node.get("content")
    if not isinstance(content, str) or not content.strip():
        raise ValidationError(
            "node", index, "content", "missing or empty (must be a non-empty string)"
        )

    position = node.get("position")
    if not isinstance(position, dict):
        raise ValidationError("node", index, "position", "missing (must be an object)")
    for axis in ("x", "y"):
        if not _is_number(position.get(axis)):
            raise ValidationError(
                "node", index, f"position.{axis}", "missing or invalid (must be a number)"
            )

    style = node.get("style")
    if style is None:
        return
    if not isinstance(style, dict):
        raise ValidationError("node", index, "style", "must be an object")
    for key, expected in STYLE_FIELD_TYPES.items():
        value = style.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, expected):
            kind = "a string" if expected is str else "a number"
            raise ValidationError("node", index, f"style.{key}", f"must be {kind}")


def _edge_index(edge: dict, index: int, end: str, node_count: int) -> int:
    value = edge.get(end)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(
            "edge", index, end, "missing or invalid (must be an integer node index)"
        )
    if not 0 <= value < node_count:
        raise ValidationError(
            "edge", index, end,
            f"node index {value} out of range (batch has {node_count} nodes)",
        )
    return value


def _translate_pydantic(exc: PydanticValidationError, kind_prefix: str = "") -> ValidationError:
    first = exc.errors()[0]
    loc = list(first.get("loc", ()))
    kind, index = "batch", None
    if len(loc) >= 2 and loc[0] in ("nodes", "edges") and isinstance(loc[1], int):
        kind = "node" if loc[0] == "nodes" else "edge"
        index = loc[1]
        loc = loc[2:]
    field = ".".join(str(part) for part in loc) or None
    return ValidationError(f"{kind_prefix}{kind}", index, field, first.get("msg", "invalid"))


def validate_batch(raw: Union[str, bytes, dict, Any]) -> ImportBatch:
    """Check a raw batch structurally and return it as an ``ImportBatch``.

    Raises ``ValidationError`` on the first offending element; nothing is
    written in that case.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError("batch", None, None, f"invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValidationError("batch", None, None, "must be a JSON object")

    nodes = raw.get("nodes")
    if not isinstance(nodes, list):
        raise ValidationError("batch", None, "nodes", "must be an array")
    edges = raw.get("edges", [])
    if not isinstance(edges, list):
        raise ValidationError("batch", None, "edges", "must be an array")

    for index, node in enumerate(nodes):
        _check_node(node, index)

    normalized_edges = []
    for index, edge in enumerate(edges):
        if not isinstance(edge, dict):
            raise ValidationError("edge", index, None, "must be an object")
        normalized_edges.append({
            "source": _edge_index(edge, index, "source", len(nodes)),
            "target": _edge_index(edge, index, "target", len(nodes)),
        })

    try:
        return ImportBatch.model_validate({"nodes": nodes, "edges": normalized_edges})
    except PydanticValidationError as exc:
        raise _translate_pydantic(exc) from exc


def load_batch_file(path: Union[str, Path]) -> Any:
    """Read a JSON import file; malformed JSON is a batch-level ValidationError."""
    text = Path(path).read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError("batch", None, None, f"invalid JSON: {exc}") from exc


# ─── Reconciler ───────────────────────────────────────────────────────

class BulkImporter:
    """Applies an import batch through a live ``MindmapController``."""

    def __init__(
        self,
        controller: MindmapController,
        clock: Optional[AsyncioClock] = None,
        settle_delay: float = IMPORT_SETTLE_DELAY,
    ):
        self._controller = controller
        self._clock = clock or controller.clock
        self._settle_delay = settle_delay

    async def run(self, raw: Union[ImportBatch, dict, str]) -> ImportReport:
        batch = raw if isinstance(raw, ImportBatch) else validate_batch(raw)
        report = ImportReport()
        controller = self._controller

        logger.info(f"Importing {len(batch.nodes)} nodes, {len(batch.edges)} edges")

        # 1. Nodes, strictly one at a time
        for index, entry in enumerate(batch.nodes):
            await controller.wait_for_add_window()
            node = await controller.add_node(entry.node_fields())
            if node is None:
                logger.warning(f"  Node {index} was not created")
                continue
            await controller.wait_for_add_window()

            if controller.node_state(node.id) in (NodeState.CONFIRMED, NodeState.EDITED):
                report.index_to_id[index] = node.id
                report.created_node_ids.append(node.id)
            else:
                logger.warning(
                    f"  Node {index} ({node.id}) was not persisted; "
                    f"edges referencing it will be skipped"
                )

        # 2. Let trailing writes land before anything references the new ids
        if batch.edges:
            await self._clock.sleep(self._settle_delay)

        # 3. Edges, strictly one at a time
        for index, edge in enumerate(batch.edges):
            source = report.index_to_id.get(edge.source)
            target = report.index_to_id.get(edge.target)
            if source is None or target is None:
                logger.warning(
                    f"  Skipping edge {index} ({edge.source} -> {edge.target}): "
                    f"endpoint node missing"
                )
                report.skipped_edges.append(index)
                continue

            created = await controller.connect_nodes(source, target)
            if created is None:
                reason = str(controller.error) if controller.error else "edge not created"
                logger.warning(f"  Edge {index} failed: {reason}")
                report.failed_edges[index] = reason
            else:
                report.created_edge_ids.append(created.id)

        logger.info(
            f"Import finished: {len(report.created_node_ids)} nodes, "
            f"{len(report.created_edge_ids)} edges, "
            f"{len(report.skipped_edges)} skipped, {len(report.failed_edges)} failed"
        )
        return report


# ─── Multi-project import ─────────────────────────────────────────────

def validate_projects(raw: Any) -> list[ImportProject]:
    """Validate a list of projects, each carrying its own node/edge batch."""
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise ValidationError("batch", None, None, "must be an array of projects")

    projects = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError("project", index, None, "must be an object")
        title = entry.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("project", index, "title", "must be a non-empty string")
        try:
            batch = validate_batch(entry)
        except ValidationError as exc:
            raise ValidationError(
                f"project[{index}].{exc.kind}", exc.index, exc.field, exc.message
            ) from exc
        try:
            projects.append(ImportProject.model_validate({
                **{k: v for k, v in entry.items() if k not in ("nodes", "edges")},
                "nodes": batch.nodes,
                "edges": batch.edges,
            }))
        except PydanticValidationError as exc:
            raise _translate_pydantic(exc, f"project[{index}].") from exc
    return projects


async def import_projects(
    store: Any, raw: Any
) -> list[tuple[MindmapProject, ImportReport]]:
    """
    Create one project per entry and bulk-write its nodes, then its edges.

    Used for whole-project imports where no live canvas is involved, so
    nodes are written directly rather than through a controller.
    """
    projects = validate_projects(raw)
    results = []

    for entry in projects:
        project = await store.create_project(
            entry.title, entry.description, entry.is_pinned, entry.is_archived
        )
        report = ImportReport()

        nodes = []
        for index, item in enumerate(entry.nodes):
            node = MindmapNode.model_validate({**item.node_fields(), "id": str(uuid.uuid4())})
            report.index_to_id[index] = node.id
            nodes.append(node)
        await store.upsert_nodes(project.id, nodes)
        report.created_node_ids = [n.id for n in nodes]

        edges = [
            MindmapEdge(
                id=str(uuid.uuid4()),
                source_node_id=report.index_to_id[e.source],
                target_node_id=report.index_to_id[e.target],
                project_id=project.id,
                type="default",
            )
            for e in entry.edges
        ]
        if edges:
            await store.upsert_edges(project.id, edges)
        report.created_edge_ids = [e.id for e in edges]

        logger.info(
            f"Imported project '{project.title}': {len(nodes)} nodes, {len(edges)} edges"
        )
        results.append((project, report))

    return results
