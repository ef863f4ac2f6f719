"""Audit trail of workflow execution events.

Records are appended through the session of the state change they describe,
so an audit entry is never visible without its cause.
"""

from __future__ import annotations

from typing import Optional, Protocol

from . import constants
from .contracts import ExecutionLog, ExecutionStatus, Executor, LogLevel
from .persistence.store import StoreSession


class LogSink(Protocol):
    """Destination for execution log records."""

    async def append(self, session: StoreSession, record: ExecutionLog) -> None:
        """Persist ``record`` as part of ``session``."""


class StoreLogSink:
    """Default sink writing records to the workflow store."""

    async def append(self, session: StoreSession, record: ExecutionLog) -> None:
        await session.append_log(record)


class ExecutionLogRecorder:
    """Builds the audit records emitted by the engine."""

    def __init__(self, sink: Optional[LogSink] = None) -> None:
        self._sink = sink or StoreLogSink()

    async def _log(
        self,
        session: StoreSession,
        level: LogLevel,
        message: str,
        details: Optional[str] = None,
        service_id: Optional[str] = None,
        executor_id: Optional[str] = None,
        step_id: str = constants.SYSTEM_STEP_ID,
        step_name: Optional[str] = constants.WORKFLOW_STEP_NAME,
        performed_by: str = constants.SYSTEM_ACTOR,
    ) -> ExecutionLog:
        record = ExecutionLog(
            level=level,
            message=message,
            details=details,
            service_id=service_id,
            executor_id=executor_id,
            step_id=step_id,
            step_name=step_name,
            performed_by=performed_by,
        )
        await self._sink.append(session, record)
        return record

    # ------------------------------------------------------------------
    async def workflow_initiated(
        self, session: StoreSession, workflow_id: str, service_id: str
    ) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Workflow initiated",
            f"Starting new instance of workflow {workflow_id}.",
            service_id=service_id,
        )

    async def start_nodes_saved(
        self, session: StoreSession, workflow_id: str, service_id: str, count: int
    ) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Start nodes saved",
            f"Initiated workflow {workflow_id} with {count} start nodes. Executors saved.",
            service_id=service_id,
        )

    async def no_start_nodes(
        self, session: StoreSession, workflow_id: str, service_id: str
    ) -> None:
        await self._log(
            session,
            LogLevel.WARNING,
            "No start nodes",
            f"Workflow {workflow_id} has no start nodes; it may be misconfigured.",
            service_id=service_id,
        )

    async def async_executor_started(self, session: StoreSession, executor: Executor) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Async executor started",
            f"Starting async execution for executorId: {executor.id}",
            service_id=executor.service_id,
            executor_id=executor.id,
        )

    async def sync_executor_started(self, session: StoreSession, executor: Executor) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Sync executor started",
            f"Starting synchronous execution for executorId: {executor.id}",
            service_id=executor.service_id,
            executor_id=executor.id,
        )

    async def executor_missing(
        self, session: StoreSession, executor_id: str, action: str
    ) -> None:
        await self._log(
            session,
            LogLevel.WARNING,
            "Executor not found",
            f"Cannot {action} executor {executor_id}: not found.",
            executor_id=executor_id,
        )

    async def node_started(self, session: StoreSession, executor: Executor) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Node execution started",
            f"Node executor {executor.id} started execution.",
            service_id=executor.service_id,
            executor_id=executor.id,
            step_id=executor.children_id,
            step_name=executor.name,
        )

    async def node_result(
        self, session: StoreSession, executor: Executor, success: bool
    ) -> None:
        status = ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED
        await self._log(
            session,
            LogLevel.SUCCESS if success else LogLevel.ERROR,
            "Node execution succeeded" if success else "Node execution failed",
            f"Node executor {executor.id} (Node ID: {executor.children_id}) "
            f"status updated to {status.value}.",
            service_id=executor.service_id,
            executor_id=executor.id,
            step_id=executor.children_id,
            step_name=executor.name,
        )

    async def outgoing_edges_triggered(
        self, session: StoreSession, parent: Executor, source_node_id: str, count: int
    ) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Outgoing edges triggered",
            f"Created {count} edge executors for outgoing edges from node {source_node_id}",
            service_id=parent.service_id,
            executor_id=parent.id,
            step_id=source_node_id,
        )

    async def edge_status(self, session: StoreSession, executor: Executor, status: str) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Edge executor status updated",
            f"Edge executor {executor.id} (Edge ID: {executor.children_id}) is {status}.",
            service_id=executor.service_id,
            executor_id=executor.id,
            step_id=executor.children_id,
            step_name=f"Approval ({executor.assigned_approver})",
        )

    async def completion_check(
        self, session: StoreSession, workflow_id: str, service_id: str, completed: bool
    ) -> None:
        if completed:
            await self._log(
                session,
                LogLevel.SUCCESS,
                "Workflow completed",
                f"All executors of workflow {workflow_id} are in a terminal state.",
                service_id=service_id,
            )
        else:
            await self._log(
                session,
                LogLevel.INFO,
                "Workflow check",
                f"Workflow {workflow_id} is not yet completed. Active executors found.",
                service_id=service_id,
            )

    async def approval_updated(
        self, session: StoreSession, executor: Executor, user: str
    ) -> None:
        await self._log(
            session,
            LogLevel.INFO,
            "Approval status updated",
            f"Executor {executor.id} set to status {executor.status.value} by {user}.",
            service_id=executor.service_id,
            executor_id=executor.id,
            step_id=executor.children_id,
            step_name=executor.name,
            performed_by=user,
        )

    async def executor_error(self, session: StoreSession, executor: Executor) -> None:
        await self._log(
            session,
            LogLevel.ERROR,
            f"Executor failed [{executor.error_code}]",
            executor.error_message,
            service_id=executor.service_id,
            executor_id=executor.id,
            step_id=executor.children_id,
            step_name=executor.name,
        )
