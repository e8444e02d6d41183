"""
Undo/redo history for a mindmap canvas.

Snapshots are full deep copies of the node and edge lists, captured after a
short debounce so a burst of edits becomes one entry. The most recent
entries are mirrored to a JSON file per mindmap, so history survives a
restart.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from config import (
    HISTORY_DEBOUNCE,
    HISTORY_DIR,
    HISTORY_MAX_SIZE,
    HISTORY_PERSIST_EVERY,
    HISTORY_PERSIST_SIZE,
)
from controller import MindmapController
from scheduler import AsyncioClock, DebouncedWriteScheduler
from schema import HistorySnapshot, MindmapEdge, MindmapNode

logger = logging.getLogger(__name__)

RestoreCallback = Callable[
    [list[MindmapNode], list[MindmapEdge]], Union[None, Awaitable[Any]]
]


def shortcut_action(
    key: str, ctrl: bool = False, meta: bool = False, shift: bool = False
) -> Optional[str]:
    """Map a key chord to "undo" / "redo" (Ctrl or Cmd + Z, Shift+Z, Y)."""
    if not (ctrl or meta):
        return None
    key = key.lower()
    if key == "z":
        return "redo" if shift else "undo"
    if key == "y":
        return "redo"
    return None


class HistoryRecorder:
    """Linear undo/redo over graph snapshots with a bounded buffer."""

    def __init__(
        self,
        storage_key: str = "mindmap-history",
        on_restore: Optional[RestoreCallback] = None,
        max_size: int = HISTORY_MAX_SIZE,
        persist_size: int = HISTORY_PERSIST_SIZE,
        persist_every: int = HISTORY_PERSIST_EVERY,
        storage_dir: Union[str, Path] = HISTORY_DIR,
        clock: Optional[AsyncioClock] = None,
        debounce: float = HISTORY_DEBOUNCE,
        scheduler: Optional[DebouncedWriteScheduler] = None,
    ):
        self.storage_key = storage_key
        self.on_restore = on_restore
        self._max_size = max_size
        self._persist_size = persist_size
        self._persist_every = persist_every
        self._storage_dir = Path(storage_dir)
        self._scheduler = scheduler or DebouncedWriteScheduler(clock=clock)
        self._clock = clock or self._scheduler.clock
        self._debounce = debounce
        self._key = ("history", storage_key)

        self._history: list[HistorySnapshot] = []
        self._index = -1
        self._restoring = False
        self.load()

    # ─── State ────────────────────────────────────────────────────

    @property
    def path(self) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", self.storage_key)
        return self._storage_dir / f"{safe}.json"

    @property
    def entries(self) -> list[HistorySnapshot]:
        return list(self._history)

    @property
    def index(self) -> int:
        return self._index

    @property
    def can_undo(self) -> bool:
        return self._index > 0

    @property
    def can_redo(self) -> bool:
        return self._index < len(self._history) - 1

    def info(self) -> dict[str, Any]:
        current = self._history[self._index] if self._index >= 0 else None
        return {
            "total": len(self._history),
            "current": self._index,
            "can_undo": self.can_undo,
            "can_redo": self.can_redo,
            "last_action": current.action if current else None,
        }

    def attach(
        self, controller: MindmapController, action: str = "edit"
    ) -> Callable[[], None]:
        """Record every change of ``controller`` and undo back into it.

        An empty history is seeded with the controller's current graph so
        the first edit can be undone. Returns the unsubscribe function.
        """
        self.on_restore = controller.restore
        if not self._history:
            self.record(controller.nodes, controller.edges, "load")
        return controller.subscribe(
            lambda nodes, edges: self.save_state(nodes, edges, action)
        )

    # ─── Recording ────────────────────────────────────────────────

    def _capture(
        self, nodes: list[MindmapNode], edges: list[MindmapEdge], action: str
    ) -> HistorySnapshot:
        return HistorySnapshot(
            nodes=[n.model_copy(deep=True) for n in nodes],
            edges=[e.model_copy(deep=True) for e in edges],
            timestamp=self._clock.time(),
            action=action,
        )

    def save_state(
        self, nodes: list[MindmapNode], edges: list[MindmapEdge], action: str
    ) -> None:
        """Record the graph once edits have settled for ``debounce`` seconds."""
        if self._restoring:
            return
        snapshot = self._capture(nodes, edges, action)

        async def commit() -> None:
            self._commit(snapshot)

        self._scheduler.schedule(self._key, commit, self._debounce)

    def record(
        self, nodes: list[MindmapNode], edges: list[MindmapEdge], action: str
    ) -> bool:
        """Record the graph right away. Returns False for a duplicate state."""
        if self._restoring:
            return False
        return self._commit(self._capture(nodes, edges, action))

    def _commit(self, snapshot: HistorySnapshot) -> bool:
        # A new state after some undos discards the redo branch
        if self._index < len(self._history) - 1:
            self._history = self._history[: self._index + 1]

        if self._history and self._history[-1].content_key() == snapshot.content_key():
            logger.debug(f"Skipping duplicate state: {snapshot.action}")
            return False

        self._history.append(snapshot)
        if len(self._history) > self._max_size:
            self._history = self._history[-self._max_size:]
        self._index = len(self._history) - 1

        if self._persist_every and len(self._history) % self._persist_every == 0:
            self.persist()

        logger.info(f"Saved state: {snapshot.action} ({len(self._history)} total)")
        return True

    # ─── Undo / Redo ──────────────────────────────────────────────

    async def undo(self) -> Optional[HistorySnapshot]:
        if not self.can_undo:
            return None
        self._index -= 1
        snapshot = self._history[self._index]
        logger.info(f"Undo: restoring '{snapshot.action}'")
        await self._restore(snapshot)
        return snapshot

    async def redo(self) -> Optional[HistorySnapshot]:
        if not self.can_redo:
            return None
        self._index += 1
        snapshot = self._history[self._index]
        logger.info(f"Redo: restoring '{snapshot.action}'")
        await self._restore(snapshot)
        return snapshot

    async def _restore(self, snapshot: HistorySnapshot) -> None:
        if self.on_restore is None:
            return
        # Changes made by the restore itself are not new history
        self._restoring = True
        try:
            result = self.on_restore(
                [n.model_copy(deep=True) for n in snapshot.nodes],
                [e.model_copy(deep=True) for e in snapshot.edges],
            )
            if inspect.isawaitable(result):
                await result
        finally:
            self._restoring = False

    async def handle_shortcut(
        self,
        key: str,
        ctrl: bool = False,
        meta: bool = False,
        shift: bool = False,
        editing_text: bool = False,
    ) -> Optional[HistorySnapshot]:
        """Keyboard entry point; ignored while a text editor has focus."""
        if editing_text:
            return None
        action = shortcut_action(key, ctrl=ctrl, meta=meta, shift=shift)
        if action == "undo":
            return await self.undo()
        if action == "redo":
            return await self.redo()
        return None

    # ─── Persistence ──────────────────────────────────────────────

    def persist(self) -> bool:
        """Write the most recent entries and the cursor to disk."""
        recent = self._history[-self._persist_size:] if self._persist_size else []
        offset = len(self._history) - len(recent)
        current = min(max(self._index - offset, 0), len(recent) - 1) if recent else -1

        payload = {
            "history": [s.model_dump(mode="json") for s in recent],
            "currentIndex": current,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload), encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Failed to persist history '{self.storage_key}': {exc}")
            return False
        return True

    def load(self) -> bool:
        """Seed the buffer from disk, if a persisted history exists."""
        if not self.path.is_file():
            return False
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            history = [HistorySnapshot.model_validate(s) for s in data["history"]]
            saved_index = int(data.get("currentIndex", len(history) - 1))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Failed to load history '{self.storage_key}': {exc}")
            return False

        self._history = history[-self._max_size:]
        if 0 <= saved_index < len(self._history):
            self._index = saved_index
        else:
            self._index = len(self._history) - 1
        logger.info(f"Loaded {len(self._history)} states from {self.path}")
        return True

    def clear(self) -> None:
        self._scheduler.cancel(self._key)
        self._history = []
        self._index = -1
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Failed to clear history '{self.storage_key}': {exc}")
        logger.info("History cleared")

    def close(self) -> None:
        """Drop a pending debounced save."""
        self._scheduler.cancel(self._key)
