"""
Store client: async CRUD over the relational mindmap tables.

Talks to Supabase's PostgREST endpoint with httpx. Tables:
  - mindmap_projects       one row per project, owned by a user
  - mindmap_nodes          node content + metadata, shared across projects
  - mindmap_node_projects  membership rows carrying per-project position/style
  - mindmap_edges          edges scoped to one project

Key design decisions:
  - Every call checks the session first; no session -> NotAuthenticated
  - PostgREST error payloads are translated into StoreError with the
    Postgres error code preserved (23503 drives the FK-violation handling)
  - A node is only deleted once no project membership references it
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import (
    EDGE_RETRY_ATTEMPTS,
    EDGE_RETRY_DELAY,
    STORE_TIMEOUT,
    SUPABASE_ANON_KEY,
    SUPABASE_URL,
)
from errors import NotAuthenticated, StoreError
from schema import (
    GraphData,
    MindmapEdge,
    MindmapNode,
    MindmapProject,
    NodeStyle,
    NoteWithProject,
    Position,
)
from session import Session, SessionProvider

logger = logging.getLogger(__name__)

NODE_COLUMNS = "id,content,is_pinned,is_archived,priority,workflow_status,due_date"
TOGGLE_FLAGS = ("is_pinned", "is_archived")


def _node_row(node: MindmapNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "content": node.content,
        "is_pinned": node.is_pinned,
        "is_archived": node.is_archived,
        "priority": node.priority.value if node.priority else None,
        "workflow_status": (
            node.workflow_status.value if node.workflow_status else None
        ),
        "due_date": node.due_date.isoformat() if node.due_date else None,
    }


def _membership_row(node: MindmapNode, project_id: str) -> dict[str, Any]:
    return {
        "node_id": node.id,
        "project_id": project_id,
        "position_x": node.position.x,
        "position_y": node.position.y,
        "style": node.style.to_store(),
    }


def _edge_row(edge: MindmapEdge, project_id: str) -> dict[str, Any]:
    return {
        "id": edge.id,
        "source_id": edge.source_node_id,
        "target_id": edge.target_node_id,
        "type": edge.type or "mindmap",
        "label": edge.label or "",
        "style": edge.style or {},
        "project_id": project_id,
    }


def _edge_from_row(row: dict[str, Any]) -> MindmapEdge:
    return MindmapEdge(
        id=row["id"],
        source_node_id=row["source_id"],
        target_node_id=row["target_id"],
        project_id=row["project_id"],
        label=row.get("label") or "",
        type=row.get("type") or "mindmap",
        style=row.get("style") or {},
    )


def _node_from_membership(row: dict[str, Any]) -> MindmapNode:
    node = row.get("mindmap_nodes") or {}
    return MindmapNode(
        id=row["node_id"],
        content=node.get("content") or "",
        position=Position(x=row.get("position_x") or 0, y=row.get("position_y") or 0),
        style=NodeStyle.model_validate(row.get("style") or {}),
        is_pinned=node.get("is_pinned") or False,
        is_archived=node.get("is_archived") or False,
        priority=node.get("priority") or None,
        workflow_status=node.get("workflow_status") or None,
        due_date=node.get("due_date") or None,
    )


# ─── Store Client ─────────────────────────────────────────────────────

class SupabaseStore:
    """Async PostgREST interface for mindmap projects, nodes and edges."""

    def __init__(
        self,
        sessions: SessionProvider,
        url: str = SUPABASE_URL,
        anon_key: str = SUPABASE_ANON_KEY,
        timeout: float = STORE_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
        retry_attempts: int = EDGE_RETRY_ATTEMPTS,
        retry_delay: float = EDGE_RETRY_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._sessions = sessions
        self._anon_key = anon_key
        self._client = client or httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            timeout=timeout,
        )
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay
        self._sleep = sleep

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self) -> "SupabaseStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ─── Transport ────────────────────────────────────────────────

    def _require_session(self) -> Session:
        session = self._sessions.current()
        if session is None:
            raise NotAuthenticated()
        return session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        session = self._require_session()
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {session.access_token}",
        }
        if prefer:
            headers["Prefer"] = prefer

        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise NotAuthenticated(f"{method} {path} rejected ({response.status_code})")
        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {"details": payload}
            raise StoreError(
                payload.get("message") or f"{method} {path} -> {response.status_code}",
                code=payload.get("code"),
                details=payload.get("details"),
                status=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise StoreError(
                f"{method} {path} returned a non-JSON body",
                details=response.text[:200],
                status=response.status_code,
            ) from exc

    async def _upsert(self, table: str, rows: Any, on_conflict: str) -> None:
        await self._request(
            "POST",
            f"/{table}",
            params={"on_conflict": on_conflict},
            json=rows,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    # ─── Graph ────────────────────────────────────────────────────

    async def fetch_graph(self, project_id: str) -> GraphData:
        """Load the project row, its node memberships and its edges."""
        projects = await self._request(
            "GET", "/mindmap_projects", params={"select": "*", "id": f"eq.{project_id}"}
        )
        if not projects:
            raise StoreError(f"Project '{project_id}' not found", code="PGRST116")

        memberships = await self._request(
            "GET",
            "/mindmap_node_projects",
            params={
                "select": (
                    "node_id,position_x,position_y,style,"
                    f"mindmap_nodes:node_id({NODE_COLUMNS})"
                ),
                "project_id": f"eq.{project_id}",
            },
        ) or []

        edges = await self._request(
            "GET",
            "/mindmap_edges",
            params={"select": "*", "project_id": f"eq.{project_id}"},
        ) or []

        graph = GraphData(
            project=MindmapProject.model_validate(projects[0]),
            nodes=[_node_from_membership(row) for row in memberships],
            edges=[_edge_from_row(row) for row in edges],
        )
        logger.info(
            f"Fetched project '{project_id}': "
            f"{len(graph.nodes)} nodes, {len(graph.edges)} edges"
        )
        return graph

    async def upsert_nodes(
        self,
        project_id: str,
        nodes: list[MindmapNode],
        linked_project_id: Optional[str] = None,
    ) -> None:
        """Insert-or-update each node and its membership in ``project_id``."""
        self._require_session()
        for node in nodes:
            await self._upsert("mindmap_nodes", _node_row(node), on_conflict="id")

            try:
                await self._upsert(
                    "mindmap_node_projects",
                    _membership_row(node, project_id),
                    on_conflict="node_id,project_id",
                )
            except StoreError as exc:
                # The node was deleted between requests; nothing to position.
                if not exc.is_foreign_key_violation:
                    raise
                logger.warning(
                    f"FK violation saving membership of node {node.id} in "
                    f"{project_id}; node probably deleted, skipping"
                )

            if linked_project_id:
                await self._upsert(
                    "mindmap_node_projects",
                    _membership_row(node, linked_project_id),
                    on_conflict="node_id,project_id",
                )

    async def upsert_edges(self, project_id: str, edges: list[MindmapEdge]) -> None:
        """Insert-or-update edges, retrying while an endpoint isn't visible yet."""
        self._require_session()
        for edge in edges:
            for attempt in range(1, self._retry_attempts + 1):
                try:
                    await self._upsert(
                        "mindmap_edges", _edge_row(edge, project_id), on_conflict="id"
                    )
                    break
                except StoreError as exc:
                    if not exc.is_foreign_key_violation or attempt == self._retry_attempts:
                        logger.error(
                            f"Failed to save edge {edge.id} after {attempt} attempt(s): {exc}"
                        )
                        raise
                    logger.info(
                        f"Retry {attempt}/{self._retry_attempts} for edge {edge.id} "
                        f"({edge.source_node_id} -> {edge.target_node_id})"
                    )
                    await self._sleep(self._retry_delay)

    async def delete_node(self, node_id: str, project_id: str) -> None:
        """
        Remove a node from a project.

        Deletes the project's edges touching the node, then the membership
        row, then the node itself if no other project still references it.
        """
        await self._request(
            "DELETE",
            "/mindmap_edges",
            params={
                "project_id": f"eq.{project_id}",
                "or": f"(source_id.eq.{node_id},target_id.eq.{node_id})",
            },
        )
        await self._request(
            "DELETE",
            "/mindmap_node_projects",
            params={"node_id": f"eq.{node_id}", "project_id": f"eq.{project_id}"},
        )

        remaining = await self._request(
            "GET",
            "/mindmap_node_projects",
            params={"select": "project_id", "node_id": f"eq.{node_id}"},
        ) or []
        if remaining:
            logger.info(
                f"Node {node_id} kept: still used by {len(remaining)} other project(s)"
            )
            return

        await self._request("DELETE", "/mindmap_nodes", params={"id": f"eq.{node_id}"})
        logger.info(f"Deleted node {node_id}")

    async def delete_edge(self, edge_id: str) -> None:
        await self._request("DELETE", "/mindmap_edges", params={"id": f"eq.{edge_id}"})

    # ─── Projects ─────────────────────────────────────────────────

    async def create_project(
        self,
        title: str,
        description: Optional[str] = None,
        is_pinned: bool = False,
        is_archived: bool = False,
    ) -> MindmapProject:
        session = self._require_session()
        rows = await self._request(
            "POST",
            "/mindmap_projects",
            json={
                "title": title,
                "description": description,
                "user_id": session.user_id,
                "is_pinned": is_pinned,
                "is_archived": is_archived,
            },
            prefer="return=representation",
        )
        project = MindmapProject.model_validate(rows[0] if isinstance(rows, list) else rows)
        logger.info(f"Created project '{project.title}' ({project.id})")
        return project

    async def list_projects(self) -> list[MindmapProject]:
        """Projects of the current user: pinned first, archived last, newest first."""
        session = self._require_session()
        rows = await self._request(
            "GET",
            "/mindmap_projects",
            params={
                "select": "*",
                "user_id": f"eq.{session.user_id}",
                "order": "is_pinned.desc,is_archived.asc,updated_at.desc",
            },
        ) or []
        return [MindmapProject.model_validate(row) for row in rows]

    async def delete_project(self, project_id: str) -> None:
        await self._request(
            "DELETE", "/mindmap_projects", params={"id": f"eq.{project_id}"}
        )
        # Memberships cascade with the project; nodes left without any
        # membership are cleaned up server-side.
        try:
            deleted = await self._request("POST", "/rpc/cleanup_orphaned_nodes", json={})
            logger.info(f"Cleaned up {len(deleted or [])} orphaned nodes")
        except StoreError as exc:
            logger.error(f"Error cleaning up orphaned nodes: {exc}")

    async def toggle_project_flag(self, project_id: str, flag: str) -> bool:
        return await self._toggle("mindmap_projects", project_id, flag)

    async def toggle_node_flag(self, node_id: str, flag: str) -> bool:
        return await self._toggle("mindmap_nodes", node_id, flag)

    async def _toggle(self, table: str, row_id: str, flag: str) -> bool:
        if flag not in TOGGLE_FLAGS:
            raise ValueError(f"Unknown flag '{flag}', expected one of {TOGGLE_FLAGS}")
        rows = await self._request(
            "GET", f"/{table}", params={"select": flag, "id": f"eq.{row_id}"}
        )
        if not rows:
            raise StoreError(f"'{row_id}' not found in {table}", code="PGRST116")
        value = not bool(rows[0].get(flag))
        await self._request(
            "PATCH", f"/{table}", params={"id": f"eq.{row_id}"}, json={flag: value}
        )
        return value

    # ─── Notes ────────────────────────────────────────────────────

    async def list_notes(self, search: Optional[str] = None) -> list[NoteWithProject]:
        """
        Every node of the user flattened per project membership.

        ``search`` filters case-insensitively on note content or project
        title. Sorted pinned first, then non-archived, then most recently
        updated.
        """
        session = self._require_session()
        rows = await self._request(
            "GET",
            "/mindmap_nodes",
            params={
                "select": (
                    f"{NODE_COLUMNS},created_at,updated_at,"
                    "mindmap_node_projects!inner(project_id,position_x,position_y,"
                    "mindmap_projects!inner(id,title,is_pinned,is_archived,user_id))"
                ),
                "mindmap_node_projects.mindmap_projects.user_id": f"eq.{session.user_id}",
            },
        ) or []

        query = search.lower() if search else None
        notes: list[NoteWithProject] = []
        for row in rows:
            for membership in row.get("mindmap_node_projects") or []:
                project = membership["mindmap_projects"]
                note = NoteWithProject(
                    id=row["id"],
                    content=row.get("content") or "",
                    position=Position(
                        x=membership.get("position_x") or 0,
                        y=membership.get("position_y") or 0,
                    ),
                    project_id=project["id"],
                    project_title=project.get("title") or "",
                    project_is_pinned=project.get("is_pinned") or False,
                    project_is_archived=project.get("is_archived") or False,
                    is_pinned=row.get("is_pinned") or False,
                    is_archived=row.get("is_archived") or False,
                    priority=row.get("priority") or None,
                    workflow_status=row.get("workflow_status") or None,
                    due_date=row.get("due_date") or None,
                    created_at=row.get("created_at"),
                    updated_at=row.get("updated_at"),
                )
                if query and not (
                    query in note.content.lower()
                    or query in note.project_title.lower()
                ):
                    continue
                notes.append(note)

        notes.sort(key=lambda n: n.updated_at.timestamp() if n.updated_at else 0.0,
                   reverse=True)
        notes.sort(key=lambda n: (not n.is_pinned, n.is_archived))
        return notes

    async def move_note(
        self, node_id: str, from_project_id: str, to_project_id: str
    ) -> None:
        """Move a node's membership to another project, keeping its position."""
        rows = await self._request(
            "GET",
            "/mindmap_node_projects",
            params={
                "select": "position_x,position_y,style",
                "node_id": f"eq.{node_id}",
                "project_id": f"eq.{from_project_id}",
            },
        ) or []
        current = rows[0] if rows else {}

        await self._request(
            "DELETE",
            "/mindmap_node_projects",
            params={"node_id": f"eq.{node_id}", "project_id": f"eq.{from_project_id}"},
        )
        await self._request(
            "POST",
            "/mindmap_node_projects",
            json={
                "node_id": node_id,
                "project_id": to_project_id,
                "position_x": current.get("position_x") or 100,
                "position_y": current.get("position_y") or 100,
                "style": current.get("style") or {},
            },
            prefer="return=minimal",
        )
        logger.info(f"Moved node {node_id}: {from_project_id} -> {to_project_id}")
