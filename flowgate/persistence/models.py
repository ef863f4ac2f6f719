"""SQLModel tables backing :class:`SQLWorkflowStore`."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from ..contracts import utcnow


def _timestamp(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class WorkflowRow(SQLModel, table=True):
    """A workflow definition header."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True)
    name: str = ""
    description: Optional[str] = None
    version: Optional[str] = None
    status: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class NodeRow(SQLModel, table=True):
    """A node of a workflow definition; ``ordinal`` keeps definition order."""

    __tablename__ = "nodes"

    workflow_id: str = Field(primary_key=True, index=True)
    id: str = Field(primary_key=True)
    ordinal: int = 0
    type: Optional[str] = None
    position_x: float = 0.0
    position_y: float = 0.0
    position_abs_x: Optional[float] = None
    position_abs_y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    selected: bool = False
    dragging: bool = False
    stage_name: Optional[str] = None
    environment: Optional[str] = None
    label: Optional[str] = None
    status: Optional[str] = None
    parameters: dict = Field(default_factory=dict, sa_column=Column(JSON))


class EdgeRow(SQLModel, table=True):
    """An edge of a workflow definition."""

    __tablename__ = "edges"

    workflow_id: str = Field(primary_key=True, index=True)
    id: str = Field(primary_key=True)
    ordinal: int = 0
    source: str
    source_handle: Optional[str] = None
    target: str
    target_handle: Optional[str] = None
    type: Optional[str] = None
    requires_approval: bool = False
    approver_role: Optional[str] = None
    status: Optional[str] = None
    approval_timeout: Optional[str] = None
    auto_approve: bool = False


class ExecutorRow(SQLModel, table=True):
    """Runtime record of one node or edge for one service instance."""

    __tablename__ = "workflow_executors"

    id: str = Field(primary_key=True)
    workflow_id: str = Field(index=True)
    service_id: str = Field(index=True)
    name: Optional[str] = None
    type: str
    children_id: str = Field(index=True)
    status: str = Field(default="PENDING", index=True)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_stack_trace: Optional[str] = None
    approved_by: Optional[str] = None
    approval_comments: Optional[str] = None
    assigned_approver: Optional[str] = None
    approval_deadline: Optional[datetime] = Field(
        default=None, sa_column=_timestamp(nullable=True)
    )
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class ExecutionLogRow(SQLModel, table=True):
    """Append-only audit record."""

    __tablename__ = "execution_log"

    id: str = Field(primary_key=True)
    timestamp: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    level: str = "INFO"
    message: str
    details: Optional[str] = None
    performed_by: Optional[str] = None
    executor_id: Optional[str] = None
    service_id: Optional[str] = Field(default=None, index=True)


class WorkflowMappingRow(SQLModel, table=True):
    __tablename__ = "workflow_mappings"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True)
    functionality_id: Optional[int] = None
    functionality_name: Optional[str] = None
    functionality_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"

    id: str = Field(primary_key=True)
    release_number: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    sql_query: Optional[str] = None
    assigned_workflow: Optional[str] = Field(default=None, index=True)
    status: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_timestamp())


class WorkflowInstanceRow(SQLModel, table=True):
    """Durable outcome of an instance; a failed instance is never completed."""

    __tablename__ = "workflow_instances"

    workflow_id: str = Field(primary_key=True)
    service_id: str = Field(primary_key=True)
    completed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))
    failed_at: Optional[datetime] = Field(default=None, sa_column=_timestamp(nullable=True))
