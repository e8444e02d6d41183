"""Tests for the config module and the error/session building blocks."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest


# ═══════════════════════════════════════════════════════════════════════
# 1. Config module
# ═══════════════════════════════════════════════════════════════════════


class TestConfig:

    def test_config_imports_without_error(self):
        import config
        assert hasattr(config, "SUPABASE_URL")
        assert hasattr(config, "SUPABASE_ANON_KEY")
        assert hasattr(config, "CONTENT_DEBOUNCE")
        assert hasattr(config, "POSITION_DEBOUNCE")
        assert hasattr(config, "ADD_NODE_GRACE")
        assert hasattr(config, "HISTORY_MAX_SIZE")

    def test_config_has_sensible_defaults(self):
        import config
        assert config.SUPABASE_URL.startswith("http")
        assert isinstance(config.STORE_TIMEOUT, float)
        assert config.CONTENT_DEBOUNCE < config.POSITION_DEBOUNCE
        assert config.HISTORY_PERSIST_SIZE <= config.HISTORY_MAX_SIZE

    def test_env_override(self):
        """Environment variables should override .env file values."""
        with patch.dict(os.environ, {"SUPABASE_URL": "https://example.supabase.co"}):
            val = os.environ.get("SUPABASE_URL", "default")
            assert val == "https://example.supabase.co"

    def test_dotenv_loader_handles_missing_file(self):
        from config import _load_dotenv
        # Should not raise
        _load_dotenv("/nonexistent/path/.env")

    def test_dotenv_loader_handles_comments_blanks_and_quotes(self, tmp_path):
        from config import _load_dotenv
        env_file = tmp_path / ".env"
        env_file.write_text('# comment\n\nTEST_VAR_XYZ=hello\nTEST_QUOTED_XYZ="a b"\n')
        _load_dotenv(env_file)
        assert os.environ.get("TEST_VAR_XYZ") == "hello"
        assert os.environ.get("TEST_QUOTED_XYZ") == "a b"
        # Cleanup
        del os.environ["TEST_VAR_XYZ"]
        del os.environ["TEST_QUOTED_XYZ"]

    def test_dotenv_does_not_override_environment(self, tmp_path):
        from config import _load_dotenv
        env_file = tmp_path / ".env"
        env_file.write_text("TEST_KEEP_XYZ=from-file\n")
        with patch.dict(os.environ, {"TEST_KEEP_XYZ": "from-env"}):
            _load_dotenv(env_file)
            assert os.environ["TEST_KEEP_XYZ"] == "from-env"

    def test_modules_use_config(self):
        """Timing and retry defaults come from config, not local constants."""
        import inspect
        import config
        import controller
        import store_client

        params = inspect.signature(controller.MindmapController).parameters
        assert params["position_debounce"].default == config.POSITION_DEBOUNCE
        assert params["add_grace"].default == config.ADD_NODE_GRACE
        params = inspect.signature(store_client.SupabaseStore).parameters
        assert params["retry_attempts"].default == config.EDGE_RETRY_ATTEMPTS


# ═══════════════════════════════════════════════════════════════════════
# 2. Errors
# ═══════════════════════════════════════════════════════════════════════


class TestErrors:

    def test_hierarchy(self):
        from errors import (
            ConcurrencyGuardRejected, LoadError, MindmapError, NotAuthenticated,
            StoreError, ValidationError, WriteError,
        )
        for cls in (ConcurrencyGuardRejected, LoadError, NotAuthenticated,
                    StoreError, ValidationError, WriteError):
            assert issubclass(cls, MindmapError)

    def test_validation_error_message(self):
        from errors import ValidationError
        assert str(ValidationError("node", 3, "position.x", "missing")) == "node[3].position.x: missing"
        assert str(ValidationError("batch", None, None, "bad")) == "batch: bad"

    def test_foreign_key_detection(self):
        from errors import StoreError
        assert StoreError("x", code="23503").is_foreign_key_violation
        assert not StoreError("x", code="23505").is_foreign_key_violation


# ═══════════════════════════════════════════════════════════════════════
# 3. Sessions
# ═══════════════════════════════════════════════════════════════════════


class TestSessions:

    def test_sign_in_and_out_notify(self):
        from session import SIGNED_IN, SIGNED_OUT, Session, SessionProvider
        provider = SessionProvider()
        events = []
        unsubscribe = provider.subscribe(lambda event, session: events.append(event))

        provider.sign_in(Session(access_token="t", user_id="u"))
        assert provider.current().user_id == "u"
        provider.sign_out()
        assert provider.current() is None

        unsubscribe()
        provider.sign_in(Session(access_token="t", user_id="u"))
        assert events == [SIGNED_IN, SIGNED_OUT]

    def test_from_config(self):
        import session
        with patch.object(session, "SUPABASE_ACCESS_TOKEN", "abc"):
            with patch.object(session, "SUPABASE_USER_ID", "user-7"):
                provider = session.SessionProvider.from_config()
        assert provider.current().access_token == "abc"

        with patch.object(session, "SUPABASE_ACCESS_TOKEN", ""):
            assert session.SessionProvider.from_config().current() is None


@pytest.mark.parametrize("value, expected", [
    ("2024-05-01", "2024-05-01"),
    ("May 1 2024", "2024-05-01"),
    ("2024-05-01T10:00:00Z", "2024-05-01"),
    ("", None),
])
def test_due_date_is_parsed_leniently(value, expected):
    from schema import MindmapNode
    node = MindmapNode(id="n", position={"x": 0, "y": 0}, due_date=value)
    assert (node.due_date.isoformat() if node.due_date else None) == expected


def test_node_accepts_camel_case_keys():
    from schema import MindmapNode
    node = MindmapNode.model_validate({
        "id": "n", "position": {"x": 0, "y": 0},
        "isPinned": True, "isArchived": True, "workflowStatus": "blocked", "dueDate": "2024-05-01",
    })
    assert node.is_pinned and node.is_archived
    assert node.workflow_status.value == "blocked"
    assert node.due_date.isoformat() == "2024-05-01"
    assert MindmapNode(id="n", position={"x": 0, "y": 0}, is_pinned=True).is_pinned
