from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from workflow_engine.schema.models import (
    ExecutionRun,
    NodeCategory,
    RunStatus,
    SaveState,
    SchemaColumn,
    WorkflowEdge,
    WorkflowNode,
)


class ProblemDetails(BaseModel):
    type: str
    title: str
    status: int
    detail: str


class NodeTypeDescriptor(BaseModel):
    category: NodeCategory
    component_type: str
    title: str
    description: str = ""
    default_config: Dict[str, Any] = Field(default_factory=dict)


class NodeTypeResponse(BaseModel):
    categories: List[NodeCategory]
    node_types: List[NodeTypeDescriptor]


class SessionCreateRequest(BaseModel):
    workflow_id: Optional[str] = None
    name: Optional[str] = None
    description: str = ""


class NodeCreateRequest(BaseModel):
    category: NodeCategory
    component_type: str
    label: Optional[str] = None
    position: Optional[Dict[str, float]] = None
    config: Optional[Dict[str, Any]] = None


class NodeConfigPatch(BaseModel):
    config: Dict[str, Any] = Field(default_factory=dict)
    output_schema: Optional[List[SchemaColumn]] = None


class EdgeCreateRequest(BaseModel):
    source_node_id: str
    target_node_id: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class EdgeResponse(BaseModel):
    edge: WorkflowEdge
    warnings: List[str] = Field(default_factory=list)


class NodeSchemaView(BaseModel):
    input: Optional[List[SchemaColumn]] = None
    output: Optional[List[SchemaColumn]] = None


class PropagationIssue(BaseModel):
    """A schema propagation that is deferred or has failed its re-check."""

    source_node_id: str
    target_node_id: str
    outcome: str
    attempts: int = 0
    error: Optional[str] = None


class SessionResponse(BaseModel):
    session_id: str
    workflow_id: str
    is_temporary: bool
    name: str
    description: str = ""
    save_state: SaveState
    last_error: Optional[str] = None
    last_saved_at: Optional[datetime] = None
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)
    schemas: Dict[str, NodeSchemaView] = Field(default_factory=dict)
    propagation_issues: List[PropagationIssue] = Field(default_factory=list)


class SaveResponse(BaseModel):
    workflow_id: str
    name: str
    save_state: SaveState
    migrated: Dict[str, int] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


class RunResponse(BaseModel):
    run_id: str
    workflow_id: str
    status: RunStatus
    stream_state: Optional[str] = None
    started_at: datetime
    last_updated_at: datetime
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: ExecutionRun, stream_state: Optional[str] = None) -> "RunResponse":
        return cls(
            run_id=run.id,
            workflow_id=run.workflow_id,
            status=run.status,
            stream_state=stream_state,
            started_at=run.started_at,
            last_updated_at=run.last_updated_at,
            error=run.error,
        )
