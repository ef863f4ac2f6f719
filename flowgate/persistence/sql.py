"""SQLModel / SQLAlchemy implementation of the workflow store."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..contracts import (
    EdgeData,
    Edge,
    ExecutionLog,
    ExecutionStatus,
    Executor,
    ExecutorType,
    Node,
    NodeData,
    Position,
    Task,
    Workflow,
    WorkflowMapping,
    utcnow,
)
from .models import (
    EdgeRow,
    ExecutionLogRow,
    ExecutorRow,
    NodeRow,
    TaskRow,
    WorkflowInstanceRow,
    WorkflowMappingRow,
    WorkflowRow,
)
from .store import TransactionHooks


def normalize_database_url(database_url: str) -> str:
    """Map plain ``sqlite://`` / ``postgres://`` URLs onto their async drivers."""
    if database_url.startswith("sqlite+") or database_url.startswith("postgresql+"):
        return database_url
    if database_url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    for prefix in ("postgresql://", "postgres://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix):]
    raise ValueError(f"Unsupported database backend: {database_url}")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class SQLWorkflowStore:
    """Persist workflow state through an async SQLAlchemy engine.

    SQLite allows a single writer, so transactions against a SQLite
    database are serialized within the process.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = normalize_database_url(database_url)
        self._is_sqlite = self.database_url.startswith("sqlite")
        connect_args = {"check_same_thread": False} if self._is_sqlite else {}
        self.engine = create_async_engine(
            self.database_url, echo=echo, future=True, connect_args=connect_args
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock() if self._is_sqlite else None

    async def init_db(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            self._initialized = True

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLStoreSession]:
        await self.init_db()
        if self._write_lock is not None:
            await self._write_lock.acquire()
        try:
            async with AsyncSession(self.engine, expire_on_commit=False) as session:
                store_session = SQLStoreSession(session)
                try:
                    yield store_session
                except BaseException:
                    await session.rollback()
                    store_session._discard_after_commit()
                    store_session._run_on_close()
                    raise
                try:
                    await session.commit()
                finally:
                    store_session._run_on_close()
        finally:
            if self._write_lock is not None:
                self._write_lock.release()
        store_session._run_after_commit()

    async def close(self) -> None:
        await self.engine.dispose()


class SQLStoreSession(TransactionHooks):
    """Store operations bound to one :class:`AsyncSession`."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__()
        self._session = session

    # ------------------------------------------------------------------
    # Conversion helpers
    @staticmethod
    def _to_executor(row: ExecutorRow) -> Executor:
        data = row.model_dump()
        for key in ("created_at", "updated_at", "approval_deadline"):
            data[key] = _aware(data[key])
        return Executor.model_validate(data)

    @staticmethod
    def _to_executor_row(executor: Executor) -> ExecutorRow:
        data = executor.model_dump()
        data["type"] = _enum_value(executor.type)
        data["status"] = _enum_value(executor.status)
        return ExecutorRow(**data)

    @staticmethod
    def _to_log(row: ExecutionLogRow) -> ExecutionLog:
        data = row.model_dump()
        data["timestamp"] = _aware(data["timestamp"])
        return ExecutionLog.model_validate(data)

    @staticmethod
    def _to_node(row: NodeRow) -> Node:
        position_absolute = None
        if row.position_abs_x is not None or row.position_abs_y is not None:
            position_absolute = Position(
                x=row.position_abs_x or 0.0, y=row.position_abs_y or 0.0
            )
        return Node(
            id=row.id,
            type=row.type,
            position=Position(x=row.position_x, y=row.position_y),
            position_absolute=position_absolute,
            width=row.width,
            height=row.height,
            selected=row.selected,
            dragging=row.dragging,
            data=NodeData(
                stage_name=row.stage_name,
                environment=row.environment,
                label=row.label,
                status=row.status,
                parameters=dict(row.parameters or {}),
            ),
        )

    @staticmethod
    def _to_edge(row: EdgeRow) -> Edge:
        return Edge(
            id=row.id,
            source=row.source,
            target=row.target,
            source_handle=row.source_handle,
            target_handle=row.target_handle,
            type=row.type,
            data=EdgeData(
                requires_approval=row.requires_approval,
                approver_role=row.approver_role,
                approval_timeout=row.approval_timeout,
                auto_approve=row.auto_approve,
                status=row.status,
            ),
        )

    async def _list_executors(self, *criteria: Any) -> List[Executor]:
        statement = select(ExecutorRow)
        if criteria:
            statement = statement.where(*criteria)
        statement = statement.order_by(ExecutorRow.created_at)
        rows = (await self._session.exec(statement)).all()
        return [self._to_executor(row) for row in rows]

    # ------------------------------------------------------------------
    # Workflow definitions
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        row = await self._session.get(WorkflowRow, workflow_id)
        if row is None:
            return None
        nodes = (
            await self._session.exec(
                select(NodeRow)
                .where(NodeRow.workflow_id == workflow_id)
                .order_by(NodeRow.ordinal)
            )
        ).all()
        edges = (
            await self._session.exec(
                select(EdgeRow)
                .where(EdgeRow.workflow_id == workflow_id)
                .order_by(EdgeRow.ordinal)
            )
        ).all()
        return Workflow(
            id=row.id,
            name=row.name,
            description=row.description,
            version=row.version,
            status=row.status,
            created_by=row.created_by,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            nodes=[self._to_node(n) for n in nodes],
            edges=[self._to_edge(e) for e in edges],
        )

    async def save_workflow(self, workflow: Workflow) -> None:
        await self._delete_definition_parts(workflow.id)
        await self._session.merge(
            WorkflowRow(
                id=workflow.id,
                name=workflow.name,
                description=workflow.description,
                version=workflow.version,
                status=workflow.status,
                created_by=workflow.created_by,
                created_at=workflow.created_at,
                updated_at=utcnow(),
            )
        )
        for ordinal, node in enumerate(workflow.nodes):
            absolute = node.position_absolute
            self._session.add(
                NodeRow(
                    workflow_id=workflow.id,
                    id=node.id,
                    ordinal=ordinal,
                    type=node.type,
                    position_x=node.position.x,
                    position_y=node.position.y,
                    position_abs_x=absolute.x if absolute else None,
                    position_abs_y=absolute.y if absolute else None,
                    width=node.width,
                    height=node.height,
                    selected=node.selected,
                    dragging=node.dragging,
                    stage_name=node.data.stage_name,
                    environment=node.data.environment,
                    label=node.data.label,
                    status=node.data.status,
                    parameters=dict(node.data.parameters),
                )
            )
        for ordinal, edge in enumerate(workflow.edges):
            self._session.add(
                EdgeRow(
                    workflow_id=workflow.id,
                    id=edge.id,
                    ordinal=ordinal,
                    source=edge.source,
                    source_handle=edge.source_handle,
                    target=edge.target,
                    target_handle=edge.target_handle,
                    type=edge.type,
                    requires_approval=edge.data.requires_approval,
                    approver_role=edge.data.approver_role,
                    status=edge.data.status,
                    approval_timeout=edge.data.approval_timeout,
                    auto_approve=edge.data.auto_approve,
                )
            )
        await self._session.flush()

    async def _delete_definition_parts(self, workflow_id: str) -> None:
        for model in (NodeRow, EdgeRow):
            rows = (
                await self._session.exec(select(model).where(model.workflow_id == workflow_id))
            ).all()
            for row in rows:
                await self._session.delete(row)
        await self._session.flush()

    async def delete_workflow(self, workflow_id: str) -> None:
        await self._delete_definition_parts(workflow_id)
        row = await self._session.get(WorkflowRow, workflow_id)
        if row is not None:
            await self._session.delete(row)
            await self._session.flush()

    async def list_workflows(self) -> List[Workflow]:
        ids = (
            await self._session.exec(select(WorkflowRow.id).order_by(WorkflowRow.created_at))
        ).all()
        workflows = []
        for workflow_id in ids:
            workflow = await self.get_workflow(workflow_id)
            if workflow is not None:
                workflows.append(workflow)
        return workflows

    async def count_workflows(self) -> int:
        ids = (await self._session.exec(select(WorkflowRow.id))).all()
        return len(ids)

    async def save_workflow_mapping(self, mapping: WorkflowMapping) -> WorkflowMapping:
        row = WorkflowMappingRow(**mapping.model_dump())
        row = await self._session.merge(row)
        await self._session.flush()
        return WorkflowMapping.model_validate(row.model_dump())

    async def get_workflow_mapping(self, workflow_id: str) -> Optional[WorkflowMapping]:
        row = (
            await self._session.exec(
                select(WorkflowMappingRow)
                .where(WorkflowMappingRow.workflow_id == workflow_id)
                .order_by(WorkflowMappingRow.id)
            )
        ).first()
        if row is None:
            return None
        data = row.model_dump()
        data["created_at"] = _aware(data["created_at"])
        return WorkflowMapping.model_validate(data)

    # ------------------------------------------------------------------
    # Executors
    async def save_executor(self, executor: Executor) -> None:
        executor.updated_at = utcnow()
        await self._session.merge(self._to_executor_row(executor))
        await self._session.flush()

    async def save_executors(self, executors: List[Executor]) -> None:
        now = utcnow()
        for executor in executors:
            executor.updated_at = now
            await self._session.merge(self._to_executor_row(executor))
        await self._session.flush()

    async def get_executor(self, executor_id: str) -> Optional[Executor]:
        row = await self._session.get(ExecutorRow, executor_id)
        return self._to_executor(row) if row else None

    async def list_executors_by_workflow(self, workflow_id: str) -> List[Executor]:
        return await self._list_executors(ExecutorRow.workflow_id == workflow_id)

    async def list_executors_by_service(self, service_id: str) -> List[Executor]:
        return await self._list_executors(ExecutorRow.service_id == service_id)

    async def list_executors_by_workflow_and_child(
        self, workflow_id: str, child_id: str
    ) -> List[Executor]:
        return await self._list_executors(
            ExecutorRow.workflow_id == workflow_id,
            ExecutorRow.children_id == child_id,
        )

    async def list_pending_approval_edges(self) -> List[Executor]:
        return await self._list_executors(
            ExecutorRow.type == ExecutorType.EDGE.value,
            ExecutorRow.status == ExecutionStatus.WAITING_FOR_APPROVAL.value,
        )

    async def list_all_executors(self) -> List[Executor]:
        return await self._list_executors()

    async def claim_instance_completion(self, workflow_id: str, service_id: str) -> bool:
        row = await self._session.get(WorkflowInstanceRow, (workflow_id, service_id))
        if row is None:
            row = WorkflowInstanceRow(workflow_id=workflow_id, service_id=service_id)
        elif row.completed_at is not None or row.failed_at is not None:
            return False
        row.completed_at = utcnow()
        self._session.add(row)
        await self._session.flush()
        return True

    async def mark_instance_failed(self, workflow_id: str, service_id: str) -> None:
        row = await self._session.get(WorkflowInstanceRow, (workflow_id, service_id))
        if row is None:
            row = WorkflowInstanceRow(workflow_id=workflow_id, service_id=service_id)
        elif row.failed_at is not None:
            return
        row.failed_at = utcnow()
        self._session.add(row)
        await self._session.flush()

    # ------------------------------------------------------------------
    # Tasks
    @staticmethod
    def _to_task(row: TaskRow) -> Task:
        data = row.model_dump()
        for key in ("created_at", "updated_at"):
            data[key] = _aware(data[key])
        return Task.model_validate(data)

    async def save_task(self, task: Task) -> None:
        task.updated_at = utcnow()
        await self._session.merge(TaskRow(**task.model_dump()))
        await self._session.flush()

    async def get_task(self, task_id: str) -> Optional[Task]:
        row = await self._session.get(TaskRow, task_id)
        return self._to_task(row) if row else None

    async def list_tasks(self, assigned_workflow: Optional[str] = None) -> List[Task]:
        statement = select(TaskRow)
        if assigned_workflow is not None:
            statement = statement.where(TaskRow.assigned_workflow == assigned_workflow)
        rows = (await self._session.exec(statement.order_by(TaskRow.created_at))).all()
        return [self._to_task(row) for row in rows]

    async def delete_task(self, task_id: str) -> None:
        row = await self._session.get(TaskRow, task_id)
        if row is not None:
            await self._session.delete(row)
            await self._session.flush()

    # ------------------------------------------------------------------
    # Audit log
    async def append_log(self, log: ExecutionLog) -> None:
        data = log.model_dump()
        data["level"] = _enum_value(log.level)
        self._session.add(ExecutionLogRow(**data))
        await self._session.flush()

    async def list_logs_by_service(self, service_id: str) -> List[ExecutionLog]:
        rows = (
            await self._session.exec(
                select(ExecutionLogRow)
                .where(ExecutionLogRow.service_id == service_id)
                .order_by(ExecutionLogRow.timestamp)
            )
        ).all()
        return [self._to_log(row) for row in rows]
