"""
Pydantic models describing workflow graphs, schemas and runs.

These are the serializable structures shared by the graph, the schema
propagation machinery, the execution coordinator and the persistence layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


TEMP_ID_PREFIX = "temp-"


def make_temporary_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def is_temporary_id(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(TEMP_ID_PREFIX)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StrictModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        validate_assignment=True,
    )


# -----------------------------
# Schemas
# -----------------------------
class SchemaColumn(BaseModel):
    """
    One named, typed column of a node's input or output data.

    Columns are compared by (name, type); ``nullable`` is informational.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    name: str = Field(min_length=1)
    data_type: str = Field(default="string", alias="type")
    nullable: Optional[bool] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.data_type)


Schema = List[SchemaColumn]


# -----------------------------
# Graph
# -----------------------------
class NodeCategory(str, Enum):
    input = "input"
    processing = "processing"
    ai = "ai"
    output = "output"
    integration = "integration"
    control = "control"
    utility = "utility"


class WorkflowNode(StrictModel):
    """
    A single step placed on the canvas.

    ``position`` is layout-only and never interpreted by the engine.
    """

    id: str = Field(min_length=1)
    category: NodeCategory
    component_type: str = Field(min_length=1)
    label: str = ""
    position: Dict[str, float] = Field(default_factory=lambda: {"x": 0.0, "y": 0.0})
    config: Dict[str, Any] = Field(default_factory=dict)


class WorkflowEdge(StrictModel):
    id: str = Field(default_factory=lambda: f"edge-{uuid.uuid4()}")
    source_node_id: str = Field(min_length=1)
    target_node_id: str = Field(min_length=1)
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    edge_type: str = "default"
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def endpoint_key(self) -> tuple:
        return (self.source_node_id, self.target_node_id, self.source_handle, self.target_handle)


class WorkflowDefinition(StrictModel):
    """A complete workflow: identity, metadata, nodes and edges."""

    id: str = Field(default_factory=make_temporary_id)
    name: str = "New Workflow"
    description: str = ""
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)

    def graph_payload(self) -> Dict[str, Any]:
        """The ``definition`` column: ``{nodes, edges}`` as JSON-ready dicts."""
        return {
            "nodes": [node.model_dump(mode="json") for node in self.nodes],
            "edges": [edge.model_dump(mode="json") for edge in self.edges],
        }


# -----------------------------
# Identity
# -----------------------------
class TemporaryIdentity(StrictModel):
    temp_id: str = Field(default_factory=make_temporary_id)
    real_id: Optional[str] = None
    migrated: bool = False

    @field_validator("temp_id")
    @classmethod
    def _require_prefix(cls, value: str) -> str:
        if not is_temporary_id(value):
            raise ValueError(f"temporary ids must start with '{TEMP_ID_PREFIX}'")
        return value

    @property
    def current_id(self) -> str:
        return self.real_id if self.migrated and self.real_id else self.temp_id


class SaveState(str, Enum):
    idle = "idle"
    saving = "saving"
    saved = "saved"
    failed = "failed"


# -----------------------------
# Runs
# -----------------------------
class RunStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    indeterminate = "indeterminate"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


TERMINAL_STATUSES = frozenset(
    {RunStatus.completed, RunStatus.failed, RunStatus.cancelled, RunStatus.indeterminate}
)

_STATUS_RANK = {
    RunStatus.queued: 0,
    RunStatus.running: 1,
    RunStatus.completed: 2,
    RunStatus.failed: 2,
    RunStatus.cancelled: 2,
    RunStatus.indeterminate: 2,
}

# Spellings used by execution backends for the same states
_STATUS_ALIASES = {
    "pending": "queued",
    "success": "completed",
    "succeeded": "completed",
    "error": "failed",
    "canceled": "cancelled",
}


class ExecutionRun(StrictModel):
    id: str = Field(min_length=1)
    workflow_id: str = Field(min_length=1)
    status: RunStatus = RunStatus.queued
    started_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class StatusEvent(BaseModel):
    """
    One notification from the status stream, delivered at least once and in
    any order. Events without ``run_id`` are keyed by workflow id only.
    """

    model_config = ConfigDict(extra="ignore")

    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    status: RunStatus
    error: Optional[str] = None
    emitted_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _STATUS_ALIASES.get(lowered, lowered)
        return value
