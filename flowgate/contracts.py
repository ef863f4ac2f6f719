"""Core data contracts for the flowgate workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CamelModel(BaseModel):
    """Base model accepting and emitting the camelCase field names of definitions."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, use_enum_values=False
    )


class ExecutionStatus(str, Enum):
    """Runtime status of an executor."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    WAITING_FOR_APPROVAL = "WAITING_FOR_APPROVAL"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.REJECTED}
)


class ExecutorType(str, Enum):
    NODE = "NODE"
    EDGE = "EDGE"


class LogLevel(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


# ----------------------------------------------------------------------
# Workflow definitions


class Position(CamelModel):
    x: float = 0.0
    y: float = 0.0


class NodeData(CamelModel):
    stage_name: Optional[str] = None
    environment: Optional[str] = None
    label: Optional[str] = None
    status: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)


class Node(CamelModel):
    """A business-task step of a workflow graph."""

    id: str
    type: Optional[str] = None
    position: Position = Field(default_factory=Position)
    position_absolute: Optional[Position] = None
    width: Optional[float] = None
    height: Optional[float] = None
    selected: bool = False
    dragging: bool = False
    data: NodeData = Field(default_factory=NodeData)


class EdgeData(CamelModel):
    requires_approval: bool = False
    approver_role: Optional[str] = None
    approval_timeout: Optional[str] = None
    auto_approve: bool = False
    status: Optional[str] = None


class Edge(CamelModel):
    """A transition between two nodes, optionally gated by approval."""

    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    type: Optional[str] = None
    data: EdgeData = Field(default_factory=EdgeData)


class Workflow(CamelModel):
    """Immutable (from the engine's point of view) workflow definition."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    description: Optional[str] = None
    version: Optional[str] = None
    status: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[Node]:
        return next(
            (n for n in self.nodes if n.id.lower() == node_id.lower()), None
        )

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        return next(
            (e for e in self.edges if e.id.lower() == edge_id.lower()), None
        )

    def start_nodes(self) -> List[Node]:
        """Nodes that never appear as the target of an edge."""
        targets = {edge.target for edge in self.edges}
        return [node for node in self.nodes if node.id not in targets]

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source.lower() == node_id.lower()]


class WorkflowMapping(CamelModel):
    """Association between a workflow and a business functionality."""

    id: Optional[int] = None
    workflow_id: str
    functionality_id: Optional[int] = None
    functionality_name: Optional[str] = None
    functionality_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Task(CamelModel):
    """A release task that may be assigned to a workflow."""

    id: str = Field(default_factory=new_id)
    release_number: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    sql_query: Optional[str] = None
    assigned_workflow: Optional[str] = None
    status: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------
# Runtime records


class Executor(CamelModel):
    """Runtime record tracking one node or edge for one service instance."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    service_id: str
    name: Optional[str] = None
    type: Union[ExecutorType, str] = Field(union_mode="left_to_right")
    children_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING

    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_stack_trace: Optional[str] = None

    approved_by: Optional[str] = None
    approval_comments: Optional[str] = None
    assigned_approver: Optional[str] = None
    approval_deadline: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def correlation_id(self) -> str:
        return f"{self.workflow_id}:{self.service_id}"


class ExecutionLog(CamelModel):
    """Append-only audit record of an execution event."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    message: str
    details: Optional[str] = None
    performed_by: Optional[str] = None
    executor_id: Optional[str] = None
    service_id: Optional[str] = None


# ----------------------------------------------------------------------
# Reporting views and API payloads


class ExecutionStep(CamelModel):
    id: str
    name: Optional[str] = None
    type: str
    status: str


class WorkflowInstanceDetails(CamelModel):
    workflow: Workflow
    execution_steps: List[ExecutionStep] = Field(default_factory=list)
    execution_logs: List[ExecutionLog] = Field(default_factory=list)


class WorkflowInstanceSummary(CamelModel):
    total: int = 0
    running: int = 0
    completed: int = 0
    pending_approval: int = 0


class PendingApprovalDetails(CamelModel):
    """A single edge awaiting approval, joined with its definition."""

    id: str
    service_id: str
    service_name: Optional[str] = None
    workflow_id: str
    workflow_name: Optional[str] = None
    stage_id: str
    stage_name: Optional[str] = None
    activity_id: str
    activity_name: Optional[str] = None
    requested_by: Optional[str] = None
    requested_at: Optional[datetime] = None
    required_role: Optional[str] = None
    status: ExecutionStatus
    approval_deadline: Optional[datetime] = None
    view_url: Optional[str] = Field(default=None, alias="viewURL")
    view_workflow_url: Optional[str] = Field(default=None, alias="viewWorkflowURL")


class ApprovalRequest(CamelModel):
    """Body of an approve/reject call; ``type`` selects the engine variant."""

    type: str
    approved_by: str
    comments: Optional[str] = None
