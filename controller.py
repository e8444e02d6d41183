"""
Optimistic graph state controller: the single owner of the in-memory graph.

The rendering layer never mutates nodes or edges directly. It reports what
happened (render changes) or asks for an operation (add, update, remove,
connect); the controller applies the change locally and takes care of
getting it into the store.

Key design decisions:
  - Nodes are optimistic: inserted locally first, then written
  - Edges are written first and only shown once persisted; a dangling edge
    on screen is worse than a moment without visual feedback
  - Position and content edits are debounced per node; everything else on a
    node is written immediately, one node at a time
  - While a node addition is in flight (plus a short grace period) every
    render batch is ignored, so a stale reconciliation pulse from the
    renderer cannot drop the new node
  - Node deletion is pessimistic: incident edges, then the node, and only
    then is local state updated
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pydantic import TypeAdapter

from config import (
    ADD_NODE_GRACE,
    ADD_NODE_TIMEOUT,
    CONTENT_DEBOUNCE,
    POSITION_DEBOUNCE,
)
from errors import (
    ConcurrencyGuardRejected,
    LoadError,
    MindmapError,
    NotAuthenticated,
    StoreError,
    WriteError,
)
from scheduler import AsyncioClock, DebouncedWriteScheduler
from schema import (
    DimensionsChanged,
    EdgeRemoved,
    GraphData,
    MindmapEdge,
    MindmapNode,
    NodeAdded,
    NodeRemoved,
    NodeStyle,
    PositionChanged,
    RenderChange,
)

logger = logging.getLogger(__name__)

DEFAULT_POSITION = {"x": 100.0, "y": 100.0}

GraphListener = Callable[[list[MindmapNode], list[MindmapEdge]], None]
ErrorListener = Callable[[MindmapError], None]

_render_change = TypeAdapter(RenderChange)
_NODE_ALIASES = {
    field.alias: name
    for name, field in MindmapNode.model_fields.items()
    if field.alias
}


class NodeState(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    EDITED = "edited"
    FAILED = "failed"
    PENDING_DELETE = "pending_delete"


class AddState(str, Enum):
    IDLE = "idle"
    PROTECTED = "protected"


class MindmapController:
    """In-memory node/edge graph of one project, kept in sync with the store."""

    def __init__(
        self,
        store: Any,
        project_id: Optional[str] = None,
        scheduler: Optional[DebouncedWriteScheduler] = None,
        clock: Optional[AsyncioClock] = None,
        content_debounce: float = CONTENT_DEBOUNCE,
        position_debounce: float = POSITION_DEBOUNCE,
        add_grace: float = ADD_NODE_GRACE,
        add_timeout: float = ADD_NODE_TIMEOUT,
    ):
        self._store = store
        self.project_id = project_id
        self._scheduler = scheduler or DebouncedWriteScheduler(clock=clock)
        self._clock = clock or self._scheduler.clock
        self._content_debounce = content_debounce
        self._position_debounce = position_debounce
        self._add_grace = add_grace
        self._add_timeout = add_timeout

        self._nodes: dict[str, MindmapNode] = {}
        self._edges: dict[str, MindmapEdge] = {}
        self._states: dict[str, NodeState] = {}
        self._text_handlers: dict[str, Callable[[str], None]] = {}
        self._retired: set[str] = set()
        self._removing: set[str] = set()
        self._load_seq = 0

        self.add_state = AddState.IDLE
        self._add_released = asyncio.Event()
        self._add_released.set()
        self._release_task: Optional[asyncio.Task] = None

        self.loading = False
        self.error: Optional[MindmapError] = None
        self.last_rejection: Optional[ConcurrencyGuardRejected] = None
        self._listeners: list[GraphListener] = []
        self._error_listeners: list[ErrorListener] = []

    # ─── Reads ────────────────────────────────────────────────────

    @property
    def nodes(self) -> list[MindmapNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[MindmapEdge]:
        return list(self._edges.values())

    @property
    def clock(self) -> AsyncioClock:
        return self._clock

    def node(self, node_id: str) -> Optional[MindmapNode]:
        return self._nodes.get(node_id)

    def node_state(self, node_id: str) -> Optional[NodeState]:
        return self._states.get(node_id)

    def text_handler(self, node_id: str) -> Optional[Callable[[str], None]]:
        """The stable text-change callback the renderer wires into a node."""
        return self._text_handlers.get(node_id)

    @property
    def is_protected(self) -> bool:
        return self.add_state is AddState.PROTECTED

    # ─── Listeners ────────────────────────────────────────────────

    def subscribe(self, listener: GraphListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return functools.partial(self._unsubscribe, self._listeners, listener)

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        self._error_listeners.append(listener)
        return functools.partial(self._unsubscribe, self._error_listeners, listener)

    @staticmethod
    def _unsubscribe(listeners: list, listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def _notify(self) -> None:
        nodes, edges = self.nodes, self.edges
        for listener in list(self._listeners):
            listener(nodes, edges)

    def _fail(self, exc: MindmapError) -> None:
        self.error = exc
        logger.error(str(exc))
        for listener in list(self._error_listeners):
            listener(exc)

    def _succeed(self) -> None:
        self.error = None

    def _reject(self, operation: str, entity_id: Optional[str] = None) -> None:
        rejection = ConcurrencyGuardRejected(operation, entity_id)
        self.last_rejection = rejection
        logger.warning(str(rejection))

    @staticmethod
    def _write_error(exc: MindmapError, entity_id: str, operation: str) -> MindmapError:
        if isinstance(exc, NotAuthenticated):
            return exc
        return WriteError(entity_id, operation, exc)

    # ─── Loading ──────────────────────────────────────────────────

    async def load_graph(self, project_id: str) -> Optional[GraphData]:
        """
        Fetch a project's graph and replace local state wholesale.

        Any newer load, of this or another project, makes this one stale:
        its result is discarded and ``None`` returned.
        """
        self._load_seq += 1
        seq = self._load_seq
        self.loading = True

        try:
            graph = await self._store.fetch_graph(project_id)
        except NotAuthenticated as exc:
            if self._load_seq == seq:
                self.loading = False
                self._fail(exc)
            raise
        except Exception as exc:
            error = LoadError(project_id, exc)
            if self._load_seq == seq:
                self.loading = False
                self._fail(error)
            raise error from exc

        if self._load_seq != seq:
            logger.info(f"Discarding stale load of project '{project_id}'")
            return None

        self.loading = False
        self.project_id = project_id
        self._nodes = {node.id: node for node in graph.nodes}
        self._edges = {edge.id: edge for edge in graph.edges}
        self._states = {node_id: NodeState.CONFIRMED for node_id in self._nodes}
        self._text_handlers = {
            node_id: self._text_handlers.get(node_id)
            or functools.partial(self.change_text, node_id)
            for node_id in self._nodes
        }
        self._succeed()
        self._notify()
        logger.info(
            f"Loaded project '{project_id}': "
            f"{len(self._nodes)} nodes, {len(self._edges)} edges"
        )
        return graph

    # ─── Render Changes ───────────────────────────────────────────

    async def apply_render_changes(
        self, changes: Iterable[Union[RenderChange, dict]]
    ) -> bool:
        """
        Apply a batch of structural changes reported by the renderer.

        Returns False when the batch was ignored (add in progress) or
        rejected (it would drop nodes without an explicit removal).
        """
        changes = [
            c if not isinstance(c, dict) else _render_change.validate_python(c)
            for c in changes
        ]
        if self.is_protected:
            logger.debug(f"Add in progress, ignoring {len(changes)} render change(s)")
            return False

        removed_ids = {c.id for c in changes if isinstance(c, NodeRemoved)}
        working = dict(self._nodes)
        added: list[str] = []
        moved: list[str] = []

        for change in changes:
            if isinstance(change, NodeAdded):
                node_id = change.node.id
                if node_id in working or node_id in self._retired:
                    logger.warning(f"Ignoring render add of existing id {node_id}")
                    continue
                working[node_id] = change.node
                added.append(node_id)
            elif isinstance(change, NodeRemoved):
                working.pop(change.id, None)
            elif isinstance(change, PositionChanged):
                node = working.get(change.id)
                if node is None:
                    continue
                working[change.id] = node.model_copy(update={"position": change.position})
                moved.append(change.id)
            elif isinstance(change, DimensionsChanged):
                if change.drops_node and change.id not in removed_ids:
                    working.pop(change.id, None)

        dropped = set(self._nodes) - set(working) - removed_ids
        if dropped:
            logger.warning(
                f"Rejected render batch: it would drop {len(dropped)} node(s) "
                f"without an explicit removal"
            )
            return False

        removed = [
            node_id for node_id in removed_ids
            if node_id in self._nodes and node_id not in self._removing
        ]
        incident = {
            node_id: [e for e in self._edges.values() if e.touches(node_id)]
            for node_id in removed
        }
        # A removal racing an explicit remove_node is left to remove_node.
        for node_id in removed_ids - set(removed):
            if node_id in self._nodes:
                working[node_id] = self._nodes[node_id]

        self._nodes = working
        for node_id in removed:
            self._cancel_node_timers(node_id)
            self._drop_local(node_id)
        for node_id in added:
            self._states[node_id] = NodeState.CREATED
            self._bind_handler(node_id)
            self._persist_later("position", node_id, self._position_debounce)
        for node_id in moved:
            if node_id in self._nodes and node_id not in added:
                self._persist_later("position", node_id, self._position_debounce)
        self._notify()

        for node_id in removed:
            await self._delete_remote(node_id, incident[node_id])
        return True

    async def apply_edge_changes(self, changes: Iterable[Union[EdgeRemoved, dict]]) -> None:
        for change in changes:
            if isinstance(change, dict):
                change = EdgeRemoved.model_validate(change)
            await self.remove_edge(change.id)

    # ─── Nodes ────────────────────────────────────────────────────

    async def add_node(
        self,
        data: Optional[dict[str, Any]] = None,
        node_id: Optional[str] = None,
    ) -> Optional[MindmapNode]:
        """
        Insert a node locally, then write it immediately.

        Only one addition may be in flight; a second call while the add
        window is open is rejected and returns None. The window closes
        ``add_grace`` seconds after the write settles (or times out).
        """
        if self.is_protected:
            self._reject("add_node")
            return None
        if self.project_id is None:
            raise RuntimeError("add_node called before a project was loaded")

        data = dict(data or {})
        node_id = node_id or data.pop("id", None) or self._new_id()
        data.pop("id", None)
        if node_id in self._nodes or node_id in self._retired:
            logger.warning(f"Refusing to add node {node_id}: id already in use")
            return None

        fields: dict[str, Any] = {"content": "", "position": DEFAULT_POSITION}
        fields.update(data)
        node = MindmapNode.model_validate({**fields, "id": node_id})

        self._nodes[node_id] = node
        self._states[node_id] = NodeState.CREATED
        self._bind_handler(node_id)
        self._enter_add_window()
        self._notify()

        project_id = self.project_id
        try:
            await self._bounded(
                self._store.upsert_nodes(project_id, [node]), self._add_timeout
            )
        except asyncio.TimeoutError as exc:
            self._mark_failed(node_id)
            self._fail(WriteError(node_id, "create node", exc))
        except (StoreError, NotAuthenticated) as exc:
            self._mark_failed(node_id)
            self._fail(self._write_error(exc, node_id, "create node"))
        else:
            if self._states.get(node_id) is NodeState.CREATED:
                self._states[node_id] = NodeState.CONFIRMED
            self._succeed()
            logger.info(f"Created node {node_id} in '{project_id}'")
        finally:
            self._release_task = asyncio.ensure_future(
                self._release_add_window(self._add_grace)
            )
        return node

    async def wait_for_add_window(self) -> None:
        """Wait until no node addition holds the add window."""
        await self._add_released.wait()

    async def update_node(
        self, node_id: str, partial: dict[str, Any]
    ) -> Optional[MindmapNode]:
        """
        Merge ``partial`` into a node, keeping every field it doesn't name.

        Position and content go through their debounce timers; any other
        field is written right away, for this node only.
        """
        node = self._nodes.get(node_id)
        if node is None or self._states.get(node_id) is NodeState.PENDING_DELETE:
            logger.warning(f"update_node: node {node_id} not found (deleted?)")
            return None

        partial = {
            _NODE_ALIASES.get(k, k): v for k, v in partial.items() if k != "id"
        }
        unknown = set(partial) - set(MindmapNode.model_fields)
        if unknown:
            logger.warning(f"update_node: ignoring unknown field(s) {sorted(unknown)}")
            for key in unknown:
                del partial[key]
        if not partial:
            return node

        if "style" in partial:
            incoming = partial["style"]
            if isinstance(incoming, NodeStyle):
                incoming = incoming.model_dump(by_alias=True, exclude_unset=True)
            partial["style"] = NodeStyle.model_validate(
                {**node.style.model_dump(by_alias=True), **(incoming or {})}
            )

        updated = MindmapNode.model_validate({**dict(node), **partial})
        self._nodes[node_id] = updated
        self._notify()

        if "position" in partial:
            self._persist_later("position", node_id, self._position_debounce)
        if "content" in partial:
            self._persist_later("content", node_id, self._content_debounce)
        if set(partial) - {"position", "content"}:
            await self._write_node(self.project_id, node_id, "update node")
        return self._nodes.get(node_id, updated)

    def change_text(self, node_id: str, text: str) -> None:
        node = self._nodes.get(node_id)
        if node is None:
            logger.warning(f"Text change for unknown node {node_id}")
            return
        self._nodes[node_id] = node.model_copy(update={"content": text})
        self._notify()
        self._persist_later("content", node_id, self._content_debounce)

    async def remove_node(self, node_id: str) -> bool:
        """Delete incident edges, then the node; local state follows success."""
        if node_id in self._removing:
            self._reject("remove_node", node_id)
            return False
        if node_id not in self._nodes:
            logger.warning(f"remove_node: node {node_id} not found")
            return False

        self._removing.add(node_id)
        previous = self._states.get(node_id, NodeState.CONFIRMED)
        self._states[node_id] = NodeState.PENDING_DELETE
        cancelled = self._cancel_node_timers(node_id)
        incident = [e for e in self._edges.values() if e.touches(node_id)]
        try:
            ok = await self._delete_remote(node_id, incident)
        finally:
            self._removing.discard(node_id)

        if not ok:
            if node_id not in self._nodes:
                logger.info(f"Node {node_id} no longer loaded; not restoring its pending writes")
                return False
            self._states[node_id] = previous
            for kind in cancelled:
                delay = self._position_debounce if kind == "position" else self._content_debounce
                self._persist_later(kind, node_id, delay)
            return False

        self._drop_local(node_id)
        self._succeed()
        self._notify()
        logger.info(f"Removed node {node_id} and {len(incident)} edge(s)")
        return True

    # ─── Edges ────────────────────────────────────────────────────

    async def connect_nodes(
        self, source_id: str, target_id: str, label: str = ""
    ) -> Optional[MindmapEdge]:
        """Persist a new edge; it appears locally only once the write succeeds."""
        missing = [
            node_id for node_id in (source_id, target_id)
            if node_id not in self._nodes
            or self._states.get(node_id) is NodeState.PENDING_DELETE
        ]
        if missing:
            self._fail(WriteError(
                f"{source_id}->{target_id}",
                "connect nodes",
                ValueError(f"unknown endpoint(s): {', '.join(missing)}"),
            ))
            return None

        edge = MindmapEdge(
            id=self._new_id(),
            source_node_id=source_id,
            target_node_id=target_id,
            project_id=self.project_id,
            label=label,
        )
        try:
            await self._store.upsert_edges(self.project_id, [edge])
        except (StoreError, NotAuthenticated) as exc:
            self._fail(self._write_error(exc, edge.id, "create edge"))
            return None

        if source_id not in self._nodes or target_id not in self._nodes:
            logger.warning(f"Edge {edge.id} persisted but an endpoint was removed meanwhile")
            return None

        self._edges[edge.id] = edge
        self._succeed()
        self._notify()
        return edge

    async def remove_edge(self, edge_id: str) -> bool:
        if edge_id not in self._edges:
            logger.warning(f"remove_edge: edge {edge_id} not found")
            return False
        try:
            await self._store.delete_edge(edge_id)
        except (StoreError, NotAuthenticated) as exc:
            self._fail(self._write_error(exc, edge_id, "delete edge"))
            return False
        self._edges.pop(edge_id, None)
        self._succeed()
        self._notify()
        return True

    # ─── Restore ──────────────────────────────────────────────────

    async def restore(
        self, nodes: list[MindmapNode], edges: list[MindmapEdge]
    ) -> bool:
        """Replace the graph with a snapshot and write the difference."""
        target_nodes = {n.id: n.model_copy(deep=True) for n in nodes}
        target_edges = {e.id: e.model_copy(deep=True) for e in edges}
        stale_edges = [e for e in self._edges if e not in target_edges]
        stale_nodes = [n for n in self._nodes if n not in target_nodes]

        for node_id in stale_nodes:
            self._cancel_node_timers(node_id)
            self._retired.add(node_id)
            self._text_handlers.pop(node_id, None)
        self._nodes = target_nodes
        self._edges = target_edges
        self._states = {node_id: NodeState.CONFIRMED for node_id in target_nodes}
        for node_id in target_nodes:
            self._bind_handler(node_id)
        self._notify()

        try:
            for edge_id in stale_edges:
                await self._store.delete_edge(edge_id)
            for node_id in stale_nodes:
                await self._store.delete_node(node_id, self.project_id)
            if target_nodes:
                await self._store.upsert_nodes(self.project_id, list(target_nodes.values()))
            if target_edges:
                await self._store.upsert_edges(self.project_id, list(target_edges.values()))
        except (StoreError, NotAuthenticated) as exc:
            self._fail(self._write_error(exc, self.project_id or "", "restore snapshot"))
            return False
        self._succeed()
        return True

    async def close(self) -> None:
        """Teardown: pending debounced writes are cancelled, never fired."""
        self._scheduler.cancel_all()
        if self._release_task is not None and not self._release_task.done():
            self._release_task.cancel()
        self.add_state = AddState.IDLE
        self._add_released.set()

    # ─── Internals ────────────────────────────────────────────────

    def _new_id(self) -> str:
        taken = (self._nodes, self._edges, self._retired)
        while True:
            candidate = str(uuid.uuid4())
            if not any(candidate in ids for ids in taken):
                return candidate

    def _bind_handler(self, node_id: str) -> None:
        if node_id not in self._text_handlers:
            self._text_handlers[node_id] = functools.partial(self.change_text, node_id)

    def _mark_failed(self, node_id: str) -> None:
        if self._states.get(node_id) in (NodeState.CREATED, NodeState.EDITED):
            self._states[node_id] = NodeState.FAILED

    def _drop_local(self, node_id: str) -> None:
        self._nodes.pop(node_id, None)
        for edge_id in [e.id for e in self._edges.values() if e.touches(node_id)]:
            del self._edges[edge_id]
        self._states.pop(node_id, None)
        self._text_handlers.pop(node_id, None)
        self._retired.add(node_id)

    def _cancel_node_timers(self, node_id: str) -> list[str]:
        return [
            kind for kind in ("position", "content")
            if self._scheduler.cancel((kind, node_id))
        ]

    def _enter_add_window(self) -> None:
        self.add_state = AddState.PROTECTED
        self._add_released.clear()

    async def _release_add_window(self, delay: float) -> None:
        try:
            await self._clock.sleep(delay)
        finally:
            self.add_state = AddState.IDLE
            self._add_released.set()

    async def _bounded(self, coro: Awaitable[Any], timeout: float) -> Any:
        write = asyncio.ensure_future(coro)
        timer = asyncio.ensure_future(self._clock.sleep(timeout))
        try:
            done, _ = await asyncio.wait(
                {write, timer}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            timer.cancel()
        if write in done:
            return write.result()
        write.cancel()
        raise asyncio.TimeoutError(f"no acknowledgement within {timeout}s")

    def _persist_later(self, kind: str, node_id: str, delay: float) -> None:
        project_id = self.project_id
        fallback = self._nodes.get(node_id)
        if fallback is None:
            logger.debug(f"Not scheduling {kind} write for missing node {node_id}")
            return

        async def write() -> None:
            if self.project_id == project_id:
                if node_id not in self._nodes:
                    return
                if self._states.get(node_id) is NodeState.PENDING_DELETE:
                    return
                await self._write_node(project_id, node_id, f"update {kind}")
            else:
                # The canvas moved on to another project; still land the edit.
                await self._write_snapshot(project_id, fallback, f"update {kind}")

        if self._states.get(node_id) is NodeState.CONFIRMED:
            self._states[node_id] = NodeState.EDITED
        self._scheduler.schedule((kind, node_id), write, delay)

    async def _write_node(self, project_id: Optional[str], node_id: str, operation: str) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        ok = await self._write_snapshot(project_id, node, operation)
        if ok and self._states.get(node_id) in (
            NodeState.CREATED, NodeState.EDITED, NodeState.FAILED
        ):
            pending = self._scheduler.pending
            if ("position", node_id) not in pending and ("content", node_id) not in pending:
                self._states[node_id] = NodeState.CONFIRMED
        return ok

    async def _write_snapshot(
        self, project_id: Optional[str], node: MindmapNode, operation: str
    ) -> bool:
        try:
            await self._store.upsert_nodes(project_id, [node])
        except (StoreError, NotAuthenticated) as exc:
            self._fail(self._write_error(exc, node.id, operation))
            return False
        self._succeed()
        return True

    async def _delete_remote(self, node_id: str, edges: list[MindmapEdge]) -> bool:
        try:
            for edge in edges:
                await self._store.delete_edge(edge.id)
            await self._store.delete_node(node_id, self.project_id)
        except (StoreError, NotAuthenticated) as exc:
            self._fail(self._write_error(exc, node_id, "delete node"))
            return False
        return True
