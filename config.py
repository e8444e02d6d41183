"""
Centralized configuration for Mindmap Sync.

Reads settings from a .env file (if present) and falls back to defaults.
All modules import from here instead of defining their own constants.
"""

from __future__ import annotations

import os
from pathlib import Path

# ─── .env loader (no external dependency) ─────────────────────────────

def _load_dotenv(path: Path | str = ".env") -> None:
    """Load key=value pairs from a .env file into os.environ."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    for line in env_path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        # Don't override existing environment variables
        if key not in os.environ:
            os.environ[key] = value


# Load .env from the project root (same directory as this file)
_load_dotenv(Path(__file__).parent / ".env")

# ─── Supabase (relational store) ──────────────────────────────────────

SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "http://localhost:54321")
SUPABASE_ANON_KEY: str = os.environ.get("SUPABASE_ANON_KEY", "")
SUPABASE_ACCESS_TOKEN: str = os.environ.get("SUPABASE_ACCESS_TOKEN", "")
SUPABASE_USER_ID: str = os.environ.get("SUPABASE_USER_ID", "")
STORE_TIMEOUT: float = float(os.environ.get("STORE_TIMEOUT", "30.0"))

# ─── Sync timings (seconds) ───────────────────────────────────────────

CONTENT_DEBOUNCE: float = float(os.environ.get("CONTENT_DEBOUNCE", "0.5"))
POSITION_DEBOUNCE: float = float(os.environ.get("POSITION_DEBOUNCE", "0.8"))
ADD_NODE_GRACE: float = float(os.environ.get("ADD_NODE_GRACE", "1.0"))
ADD_NODE_TIMEOUT: float = float(os.environ.get("ADD_NODE_TIMEOUT", "10.0"))
IMPORT_SETTLE_DELAY: float = float(os.environ.get("IMPORT_SETTLE_DELAY", "1.0"))
HISTORY_DEBOUNCE: float = float(os.environ.get("HISTORY_DEBOUNCE", "0.3"))

# ─── History ──────────────────────────────────────────────────────────

HISTORY_MAX_SIZE: int = int(os.environ.get("HISTORY_MAX_SIZE", "20"))
HISTORY_PERSIST_SIZE: int = int(os.environ.get("HISTORY_PERSIST_SIZE", "10"))
HISTORY_PERSIST_EVERY: int = int(os.environ.get("HISTORY_PERSIST_EVERY", "5"))
HISTORY_DIR: str = os.environ.get("HISTORY_DIR", ".mindmap_history")

# ─── Edge writes ──────────────────────────────────────────────────────

EDGE_RETRY_ATTEMPTS: int = int(os.environ.get("EDGE_RETRY_ATTEMPTS", "3"))
EDGE_RETRY_DELAY: float = float(os.environ.get("EDGE_RETRY_DELAY", "1.0"))
