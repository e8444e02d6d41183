"""Tests for the PostgREST store client, driven through httpx.MockTransport."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import make_edge, make_node
from errors import NotAuthenticated, StoreError
from session import SIGNED_OUT, Session, SessionProvider
from store_client import SupabaseStore


class Recorder:
    """Routes requests to canned responses and remembers what was sent."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: list = []

    def on(self, method, table, response, when=None):
        self.routes.append((method, table, response, when))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        table = request.url.path.rsplit("/", 1)[-1]
        for method, name, response, when in self.routes:
            if method == request.method and name == table and (when is None or when(request)):
                return response(request) if callable(response) else response
        return httpx.Response(204)

    def sent(self, method=None, table=None):
        return [
            r for r in self.requests
            if (method is None or r.method == method)
            and (table is None or r.url.path.endswith(f"/{table}"))
        ]


@pytest.fixture
def routes():
    return Recorder()


@pytest.fixture
def sessions():
    return SessionProvider(Session(access_token="token-123", user_id="user-1"))


@pytest.fixture
def store(routes, sessions):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(routes),
        base_url="http://supabase.test/rest/v1",
    )
    return SupabaseStore(
        sessions, anon_key="anon-key", client=client,
        retry_attempts=3, retry_delay=0.5, sleep=AsyncMock(),
    )


def _pg_error(code, message="error", status=409):
    return httpx.Response(status, json={"code": code, "message": message, "details": None})


# ═══════════════════════════════════════════════════════════════════════
# 1. Sessions and transport errors
# ═══════════════════════════════════════════════════════════════════════


class TestTransport:

    @pytest.mark.asyncio
    async def test_no_session_short_circuits(self, routes):
        store = SupabaseStore(
            SessionProvider(),
            client=httpx.AsyncClient(transport=httpx.MockTransport(routes),
                                     base_url="http://supabase.test/rest/v1"),
        )
        with pytest.raises(NotAuthenticated):
            await store.fetch_graph("p1")
        assert routes.requests == []

    @pytest.mark.asyncio
    async def test_expired_session_signs_out(self, routes):
        sessions = SessionProvider(Session(
            access_token="old", user_id="u",
            expires_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
        ))
        events = []
        sessions.subscribe(lambda event, session: events.append(event))
        store = SupabaseStore(
            sessions,
            client=httpx.AsyncClient(transport=httpx.MockTransport(routes),
                                     base_url="http://supabase.test/rest/v1"),
        )

        with pytest.raises(NotAuthenticated):
            await store.list_projects()
        assert events == [SIGNED_OUT]

    @pytest.mark.asyncio
    async def test_auth_headers_are_sent(self, store, routes):
        await store.delete_edge("e1")

        request = routes.requests[0]
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer token-123"
        assert request.url.params["id"] == "eq.e1"

    @pytest.mark.asyncio
    async def test_401_is_not_authenticated(self, store, routes):
        routes.on("DELETE", "mindmap_edges", httpx.Response(401, json={"message": "JWT expired"}))
        with pytest.raises(NotAuthenticated):
            await store.delete_edge("e1")

    @pytest.mark.asyncio
    async def test_error_payload_becomes_store_error(self, store, routes):
        routes.on("DELETE", "mindmap_edges", _pg_error("42501", "permission denied", 400))
        with pytest.raises(StoreError) as exc_info:
            await store.delete_edge("e1")

        assert exc_info.value.code == "42501"
        assert exc_info.value.status == 400
        assert "permission denied" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_failure_becomes_store_error(self, sessions):
        def explode(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = SupabaseStore(
            sessions,
            client=httpx.AsyncClient(transport=httpx.MockTransport(explode),
                                     base_url="http://supabase.test/rest/v1"),
        )
        with pytest.raises(StoreError):
            await store.delete_edge("e1")

    @pytest.mark.asyncio
    async def test_non_json_success_body_becomes_store_error(self, store, routes):
        routes.on("POST", "mindmap_nodes", httpx.Response(201, text="<html>ok</html>"))
        with pytest.raises(StoreError) as exc_info:
            await store.upsert_nodes("p1", [make_node("n1", "Idea")])

        assert exc_info.value.status == 201
        assert "non-JSON" in str(exc_info.value)


# ═══════════════════════════════════════════════════════════════════════
# 2. Graph reads and writes
# ═══════════════════════════════════════════════════════════════════════


class TestGraph:

    @pytest.mark.asyncio
    async def test_fetch_graph_maps_rows(self, store, routes):
        routes.on("GET", "mindmap_projects", httpx.Response(200, json=[
            {"id": "p1", "title": "Roadmap", "is_pinned": True},
        ]))
        routes.on("GET", "mindmap_node_projects", httpx.Response(200, json=[
            {
                "node_id": "n1",
                "position_x": 10,
                "position_y": 20,
                "style": {"backgroundColor": "#eeeeee"},
                "mindmap_nodes": {
                    "id": "n1", "content": "Launch", "is_pinned": False,
                    "is_archived": False, "priority": "high",
                    "workflow_status": "todo", "due_date": "2024-05-01",
                },
            },
        ]))
        routes.on("GET", "mindmap_edges", httpx.Response(200, json=[
            {"id": "e1", "source_id": "n1", "target_id": "n2", "project_id": "p1",
             "label": None, "type": None, "style": None},
        ]))

        graph = await store.fetch_graph("p1")

        assert graph.project.title == "Roadmap"
        node = graph.nodes[0]
        assert (node.position.x, node.position.y) == (10, 20)
        assert node.style.background_color == "#eeeeee"
        assert node.priority.value == "high"
        assert node.due_date.isoformat() == "2024-05-01"
        edge = graph.edges[0]
        assert (edge.source_node_id, edge.target_node_id) == ("n1", "n2")
        assert edge.type == "mindmap"
        assert edge.label == ""

    @pytest.mark.asyncio
    async def test_fetch_missing_project(self, store, routes):
        routes.on("GET", "mindmap_projects", httpx.Response(200, json=[]))
        with pytest.raises(StoreError) as exc_info:
            await store.fetch_graph("nope")
        assert exc_info.value.code == "PGRST116"

    @pytest.mark.asyncio
    async def test_upsert_nodes_writes_node_then_membership(self, store, routes):
        node = make_node("n1", "Launch", 5, 6)
        await store.upsert_nodes("p1", [node])

        posts = routes.sent("POST")
        assert [r.url.path.rsplit("/", 1)[-1] for r in posts] == [
            "mindmap_nodes", "mindmap_node_projects",
        ]
        assert "merge-duplicates" in posts[0].headers["Prefer"]
        assert posts[0].url.params["on_conflict"] == "id"
        membership = json.loads(posts[1].content)
        assert membership["position_x"] == 5
        assert membership["style"]["fontSize"] == 14

    @pytest.mark.asyncio
    async def test_membership_fk_violation_is_skipped(self, store, routes):
        routes.on("POST", "mindmap_node_projects", _pg_error("23503"))
        await store.upsert_nodes("p1", [make_node("n1")])

    @pytest.mark.asyncio
    async def test_membership_other_errors_raise(self, store, routes):
        routes.on("POST", "mindmap_node_projects", _pg_error("23505"))
        with pytest.raises(StoreError):
            await store.upsert_nodes("p1", [make_node("n1")])

    @pytest.mark.asyncio
    async def test_edge_upsert_retries_fk_violation(self, store, routes):
        attempts = []

        def flaky(request):
            attempts.append(request)
            if len(attempts) < 3:
                return _pg_error("23503")
            return httpx.Response(201)

        routes.on("POST", "mindmap_edges", flaky)
        await store.upsert_edges("p1", [make_edge("e1", "n1", "n2", "p1")])

        assert len(attempts) == 3
        assert store._sleep.await_count == 2
        row = json.loads(attempts[-1].content)
        assert (row["source_id"], row["target_id"], row["project_id"]) == ("n1", "n2", "p1")

    @pytest.mark.asyncio
    async def test_edge_upsert_gives_up(self, store, routes):
        routes.on("POST", "mindmap_edges", _pg_error("23503"))
        with pytest.raises(StoreError) as exc_info:
            await store.upsert_edges("p1", [make_edge("e1", "n1", "n2", "p1")])
        assert exc_info.value.is_foreign_key_violation
        assert len(routes.sent("POST", "mindmap_edges")) == 3

    @pytest.mark.asyncio
    async def test_delete_node_keeps_shared_node(self, store, routes):
        routes.on("GET", "mindmap_node_projects",
                  httpx.Response(200, json=[{"project_id": "p2"}]))
        await store.delete_node("n1", "p1")

        deleted = [r.url.path.rsplit("/", 1)[-1] for r in routes.sent("DELETE")]
        assert deleted == ["mindmap_edges", "mindmap_node_projects"]

    @pytest.mark.asyncio
    async def test_delete_node_removes_orphan(self, store, routes):
        routes.on("GET", "mindmap_node_projects", httpx.Response(200, json=[]))
        await store.delete_node("n1", "p1")

        deleted = [r.url.path.rsplit("/", 1)[-1] for r in routes.sent("DELETE")]
        assert deleted == ["mindmap_edges", "mindmap_node_projects", "mindmap_nodes"]
        edge_delete = routes.sent("DELETE", "mindmap_edges")[0]
        assert edge_delete.url.params["or"] == "(source_id.eq.n1,target_id.eq.n1)"


# ═══════════════════════════════════════════════════════════════════════
# 3. Projects and notes
# ═══════════════════════════════════════════════════════════════════════


class TestProjectsAndNotes:

    @pytest.mark.asyncio
    async def test_create_project_uses_session_user(self, store, routes):
        routes.on("POST", "mindmap_projects", httpx.Response(201, json=[
            {"id": "p9", "title": "New", "user_id": "user-1"},
        ]))
        project = await store.create_project("New")

        assert project.id == "p9"
        body = json.loads(routes.sent("POST", "mindmap_projects")[0].content)
        assert body["user_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_delete_project_tolerates_cleanup_failure(self, store, routes):
        routes.on("POST", "cleanup_orphaned_nodes", _pg_error("42883", status=404))
        await store.delete_project("p1")
        assert len(routes.sent("DELETE", "mindmap_projects")) == 1

    @pytest.mark.asyncio
    async def test_toggle_flag(self, store, routes):
        routes.on("GET", "mindmap_nodes", httpx.Response(200, json=[{"is_pinned": False}]))
        assert await store.toggle_node_flag("n1", "is_pinned") is True

        patch = routes.sent("PATCH", "mindmap_nodes")[0]
        assert json.loads(patch.content) == {"is_pinned": True}

    @pytest.mark.asyncio
    async def test_toggle_unknown_flag(self, store):
        with pytest.raises(ValueError):
            await store.toggle_project_flag("p1", "is_secret")

    @pytest.mark.asyncio
    async def test_list_notes_filters_and_sorts(self, store, routes):
        def membership(project_id, title, pinned=False):
            return {
                "project_id": project_id, "position_x": 1, "position_y": 2,
                "mindmap_projects": {
                    "id": project_id, "title": title, "is_pinned": pinned,
                    "is_archived": False, "user_id": "user-1",
                },
            }

        routes.on("GET", "mindmap_nodes", httpx.Response(200, json=[
            {"id": "old", "content": "Roadmap draft", "is_pinned": False,
             "updated_at": "2024-01-01T00:00:00Z",
             "mindmap_node_projects": [membership("p1", "Work")]},
            {"id": "new", "content": "Groceries", "is_pinned": False,
             "updated_at": "2024-03-01T00:00:00Z",
             "mindmap_node_projects": [membership("p2", "Roadmap ideas")]},
            {"id": "pin", "content": "roadmap pinned", "is_pinned": True,
             "updated_at": "2023-01-01T00:00:00Z",
             "mindmap_node_projects": [membership("p1", "Work")]},
            {"id": "other", "content": "Unrelated", "is_pinned": False,
             "updated_at": "2024-06-01T00:00:00Z",
             "mindmap_node_projects": [membership("p3", "Misc")]},
        ]))

        notes = await store.list_notes(search="ROADMAP")

        assert [n.id for n in notes] == ["pin", "new", "old"]
        assert notes[1].project_title == "Roadmap ideas"
