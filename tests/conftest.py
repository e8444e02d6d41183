"""Shared fixtures for Mindmap Sync tests."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from controller import MindmapController
from schema import GraphData, MindmapEdge, MindmapNode, MindmapProject, Position
from store_client import SupabaseStore


# ─── Deterministic clock ──────────────────────────────────────────────

class FakeClock:
    """
    Virtual time for the scheduler, controller and history recorder.

    ``sleep`` parks the caller until ``advance`` moves time past its
    deadline; sleepers wake in deadline order, and the loop is given a few
    turns after each wake-up so the woken code can run to its next await.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = 0

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._seq += 1
        entry = (self.now + max(seconds, 0.0), self._seq, future)
        self._sleepers.append(entry)
        try:
            await future
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    def monotonic(self) -> float:
        return self.now

    def time(self) -> float:
        return 1_700_000_000.0 + self.now

    @property
    def sleeping(self) -> int:
        return len(self._sleepers)

    async def advance(self, seconds: float = 0.0) -> None:
        target = self.now + seconds
        await settle()
        while True:
            due = sorted(
                (s for s in self._sleepers if s[0] <= target and not s[2].done()),
                key=lambda s: (s[0], s[1]),
            )
            if not due:
                break
            deadline, _, future = due[0]
            self.now = max(self.now, deadline)
            future.set_result(None)
            await settle()
        self.now = target
        await settle()


async def settle(rounds: int = 20) -> None:
    """Let every ready task run until it blocks again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


# ─── Sample Data ───────────────────────────────────────────────────────

PROJECT_ID = "project-1"


def make_node(node_id: str, content: str = "", x: float = 0, y: float = 0) -> MindmapNode:
    return MindmapNode(id=node_id, content=content, position=Position(x=x, y=y))


def make_edge(edge_id: str, source: str, target: str, project_id: str = PROJECT_ID) -> MindmapEdge:
    return MindmapEdge(
        id=edge_id, source_node_id=source, target_node_id=target, project_id=project_id
    )


@pytest.fixture
def sample_graph():
    """Hub n1 linked to n2 and n3; n4 unconnected."""
    return GraphData(
        project=MindmapProject(id=PROJECT_ID, title="Roadmap"),
        nodes=[
            make_node("n1", "Launch plan", 0, 0),
            make_node("n2", "Marketing", 200, 0),
            make_node("n3", "Hiring", 0, 200),
            make_node("n4", "Loose idea", 400, 400),
        ],
        edges=[
            make_edge("e1", "n1", "n2"),
            make_edge("e2", "n1", "n3"),
        ],
    )


# ─── Mock helpers ──────────────────────────────────────────────────────

@pytest.fixture
def mock_store(sample_graph):
    """A SupabaseStore double whose every coroutine method is an AsyncMock."""
    store = AsyncMock(spec=SupabaseStore)
    store.fetch_graph.return_value = sample_graph
    store.upsert_nodes.return_value = None
    store.upsert_edges.return_value = None
    store.delete_node.return_value = None
    store.delete_edge.return_value = None
    return store


def make_controller(store, clock, **kwargs) -> MindmapController:
    kwargs.setdefault("content_debounce", 0.5)
    kwargs.setdefault("position_debounce", 0.8)
    kwargs.setdefault("add_grace", 1.0)
    kwargs.setdefault("add_timeout", 10.0)
    return MindmapController(store, clock=clock, **kwargs)


@pytest_asyncio.fixture
async def controller(mock_store, fake_clock):
    """A controller with the sample graph loaded and the store calls reset."""
    ctrl = make_controller(mock_store, fake_clock)
    await ctrl.load_graph(PROJECT_ID)
    mock_store.reset_mock()
    yield ctrl
    await ctrl.close()
