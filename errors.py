"""Error taxonomy shared by the store client, controller and importer."""

from __future__ import annotations

from typing import Any, Optional


class MindmapError(Exception):
    """Base class for every error raised or surfaced by Mindmap Sync."""


class NotAuthenticated(MindmapError):
    """No active session. Callers should re-authenticate, never retry."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class StoreError(MindmapError):
    """A store request failed for a reason other than authentication."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Any = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.status = status

    @property
    def is_foreign_key_violation(self) -> bool:
        return self.code == "23503"


class LoadError(MindmapError):
    def __init__(self, project_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to load mindmap '{project_id}': {cause}")
        self.project_id = project_id
        self.cause = cause


class WriteError(MindmapError):
    """A create/update/delete of a single node or edge failed."""

    def __init__(
        self,
        entity_id: str,
        operation: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(f"{operation} failed for '{entity_id}': {cause}")
        self.entity_id = entity_id
        self.operation = operation
        self.cause = cause


class ValidationError(MindmapError):
    """An import batch is structurally invalid; nothing was applied."""

    def __init__(
        self,
        kind: str,
        index: Optional[int],
        field: Optional[str],
        message: str,
    ):
        where = kind if index is None else f"{kind}[{index}]"
        if field:
            where = f"{where}.{field}"
        super().__init__(f"{where}: {message}")
        self.kind = kind
        self.index = index
        self.field = field
        self.message = message


class ConcurrencyGuardRejected(MindmapError):
    """An operation was dropped because a conflicting one is in flight."""

    def __init__(self, operation: str, entity_id: Optional[str] = None):
        target = f" for '{entity_id}'" if entity_id else ""
        super().__init__(f"{operation}{target} rejected: already in progress")
        self.operation = operation
        self.entity_id = entity_id
