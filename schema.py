"""
Schema definitions for Mindmap Sync.

These Pydantic models are the typed contract between the relational store,
the in-memory graph held by the controller, and the rendering layer. Import
batches and history snapshots are validated through the same models.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from dateutil.parser import parse as parse_dt
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ─── Enums ────────────────────────────────────────────────────────────

class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class WorkflowStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


# ─── Graph Models ─────────────────────────────────────────────────────

class Position(BaseModel):
    x: float
    y: float


class NodeStyle(BaseModel):
    """Visual style of a node; stored as JSON on the node-project membership."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    background_color: str = Field(default="#ffffff", alias="backgroundColor")
    border_color: str = Field(default="#000000", alias="borderColor")
    border_width: float = Field(default=2, alias="borderWidth")
    font_size: float = Field(default=14, alias="fontSize")

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def _parse_due_date(v: Any) -> Optional[date]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return parse_dt(str(v)).date()


class MindmapNode(BaseModel):
    """A single note on the canvas, as seen within one project.

    Accepts the renderer's camelCase keys (``isPinned``, ``dueDate``, ...)
    as well as the field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    position: Position
    content: str = ""
    style: NodeStyle = Field(default_factory=NodeStyle)
    is_pinned: bool = Field(default=False, alias="isPinned")
    is_archived: bool = Field(default=False, alias="isArchived")
    priority: Optional[Priority] = None
    workflow_status: Optional[WorkflowStatus] = Field(default=None, alias="workflowStatus")
    due_date: Optional[date] = Field(default=None, alias="dueDate")

    @field_validator("due_date", mode="before")
    @classmethod
    def lenient_due_date(cls, v: Any) -> Optional[date]:
        return _parse_due_date(v)


class MindmapEdge(BaseModel):
    """A directed connection between two nodes of one project."""

    id: str
    source_node_id: str
    target_node_id: str
    project_id: str
    label: str = ""
    type: str = "mindmap"
    style: dict[str, Any] = Field(default_factory=dict)

    def touches(self, node_id: str) -> bool:
        return self.source_node_id == node_id or self.target_node_id == node_id


class MindmapProject(BaseModel):
    """A named graph container."""

    id: str
    title: str
    description: Optional[str] = None
    is_pinned: bool = False
    is_archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GraphData(BaseModel):
    project: Optional[MindmapProject] = None
    nodes: list[MindmapNode] = Field(default_factory=list)
    edges: list[MindmapEdge] = Field(default_factory=list)


class NoteWithProject(BaseModel):
    """A node flattened together with one of its project memberships."""

    id: str
    content: str
    position: Position
    project_id: str
    project_title: str
    project_is_pinned: bool = False
    project_is_archived: bool = False
    is_pinned: bool = False
    is_archived: bool = False
    priority: Optional[Priority] = None
    workflow_status: Optional[WorkflowStatus] = None
    due_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ─── Render Changes ───────────────────────────────────────────────────
#
# The rendering adapter translates its library-specific change events into
# these variants before handing them to the controller.

class NodeAdded(BaseModel):
    type: Literal["add"] = "add"
    node: MindmapNode


class NodeRemoved(BaseModel):
    type: Literal["remove"] = "remove"
    id: str


class PositionChanged(BaseModel):
    type: Literal["position"] = "position"
    id: str
    position: Position
    dragging: bool = False


class DimensionsChanged(BaseModel):
    """Measured size of a node. ``None`` width/height means the renderer
    dropped the node's measurement, which would take it off the canvas."""

    type: Literal["dimensions"] = "dimensions"
    id: str
    width: Optional[float] = None
    height: Optional[float] = None

    @property
    def drops_node(self) -> bool:
        return self.width is None or self.height is None


RenderChange = Annotated[
    Union[NodeAdded, NodeRemoved, PositionChanged, DimensionsChanged],
    Field(discriminator="type"),
]


class EdgeRemoved(BaseModel):
    type: Literal["remove"] = "remove"
    id: str


# ─── Import Batches ───────────────────────────────────────────────────

class ImportNode(BaseModel):
    content: str
    position: Position
    style: Optional[NodeStyle] = None
    is_pinned: bool = False
    is_archived: bool = False
    priority: Optional[Priority] = None
    workflow_status: Optional[WorkflowStatus] = None
    due_date: Optional[date] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def lenient_due_date(cls, v: Any) -> Optional[date]:
        return _parse_due_date(v)

    def node_fields(self) -> dict[str, Any]:
        """Fields handed to ``add_node`` for this entry."""
        fields = self.model_dump(exclude={"style"}, exclude_none=True)
        if self.style is not None:
            fields["style"] = self.style
        return fields


class ImportEdge(BaseModel):
    source: int = Field(ge=0, description="Index into the batch's nodes array")
    target: int = Field(ge=0, description="Index into the batch's nodes array")


class ImportBatch(BaseModel):
    nodes: list[ImportNode] = Field(default_factory=list)
    edges: list[ImportEdge] = Field(default_factory=list)


class ImportProject(ImportBatch):
    title: str
    description: Optional[str] = None
    is_pinned: bool = False
    is_archived: bool = False


class ImportReport(BaseModel):
    """Outcome of applying one import batch."""

    created_node_ids: list[str] = Field(default_factory=list)
    index_to_id: dict[int, str] = Field(default_factory=dict)
    created_edge_ids: list[str] = Field(default_factory=list)
    skipped_edges: list[int] = Field(default_factory=list)
    failed_edges: dict[int, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.skipped_edges and not self.failed_edges


# ─── History ──────────────────────────────────────────────────────────

class HistorySnapshot(BaseModel):
    nodes: list[MindmapNode] = Field(default_factory=list)
    edges: list[MindmapEdge] = Field(default_factory=list)
    timestamp: float
    action: str

    def content_key(self) -> str:
        """Serialized graph content, ignoring timestamp and action."""
        return self.model_dump_json(include={"nodes", "edges"})
