"""Store abstraction for workflow definitions, executors and audit logs."""

from __future__ import annotations

import logging
from typing import AsyncContextManager, Callable, List, Optional, Protocol

from ..contracts import ExecutionLog, Executor, Task, Workflow, WorkflowMapping

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class StoreSession(Protocol):
    """Unit of work bound to one transaction.

    Reads issued through a session see its own uncommitted writes; other
    sessions only observe committed state.
    """

    # Workflow definitions
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Return the full definition including nodes and edges."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a definition with its nodes and edges."""

    async def delete_workflow(self, workflow_id: str) -> None:
        """Delete a definition; nodes and edges go with it, executors do not."""

    async def list_workflows(self) -> List[Workflow]:
        """Return every stored definition, oldest first."""

    async def count_workflows(self) -> int:
        """Return the number of stored definitions."""

    async def save_workflow_mapping(self, mapping: WorkflowMapping) -> WorkflowMapping:
        """Persist a workflow/functionality mapping."""

    async def get_workflow_mapping(self, workflow_id: str) -> Optional[WorkflowMapping]:
        """Return the functionality mapping of a workflow, if any."""

    # Executors
    async def save_executor(self, executor: Executor) -> None:
        """Upsert by id, refreshing ``updated_at``."""

    async def save_executors(self, executors: List[Executor]) -> None:
        """Batched upsert."""

    async def get_executor(self, executor_id: str) -> Optional[Executor]:
        """Return one executor by id."""

    async def list_executors_by_workflow(self, workflow_id: str) -> List[Executor]:
        """Executors of every instance of a workflow."""

    async def list_executors_by_service(self, service_id: str) -> List[Executor]:
        """Executors of one service instance."""

    async def list_executors_by_workflow_and_child(
        self, workflow_id: str, child_id: str
    ) -> List[Executor]:
        """Executors referencing one node or edge of a workflow."""

    async def list_pending_approval_edges(self) -> List[Executor]:
        """Edge executors in ``WAITING_FOR_APPROVAL``."""

    async def list_all_executors(self) -> List[Executor]:
        """Every stored executor."""

    async def claim_instance_completion(self, workflow_id: str, service_id: str) -> bool:
        """Record an instance as completed; ``False`` if already completed or failed."""

    async def mark_instance_failed(self, workflow_id: str, service_id: str) -> None:
        """Record an instance as failed so it can no longer be claimed as completed."""

    # Tasks
    async def save_task(self, task: Task) -> None:
        """Insert or update a task, refreshing ``updated_at``."""

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Return one task by id."""

    async def list_tasks(self, assigned_workflow: Optional[str] = None) -> List[Task]:
        """Tasks ordered by creation, optionally only those assigned to a workflow."""

    async def delete_task(self, task_id: str) -> None:
        """Delete a task; unknown ids are ignored."""

    # Audit log
    async def append_log(self, log: ExecutionLog) -> None:
        """Append an audit record."""

    async def list_logs_by_service(self, service_id: str) -> List[ExecutionLog]:
        """Audit records of one service instance ordered by time."""

    # Transaction hooks
    def after_commit(self, callback: Callback) -> None:
        """Run ``callback`` once the transaction has committed."""

    def on_close(self, callback: Callback) -> None:
        """Run ``callback`` when the transaction ends, committed or not."""


class WorkflowStore(Protocol):
    """Protocol for persistence backends."""

    def transaction(self) -> AsyncContextManager[StoreSession]:
        """Open a unit of work committed on normal exit and rolled back on error."""

    async def close(self) -> None:
        """Release backend resources."""


class TransactionHooks:
    """Callback bookkeeping shared by session implementations."""

    def __init__(self) -> None:
        self._after_commit: List[Callback] = []
        self._on_close: List[Callback] = []

    def after_commit(self, callback: Callback) -> None:
        self._after_commit.append(callback)

    def on_close(self, callback: Callback) -> None:
        self._on_close.append(callback)

    def _run_on_close(self) -> None:
        callbacks, self._on_close = self._on_close, []
        for callback in callbacks:
            callback()

    def _run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def _discard_after_commit(self) -> None:
        if self._after_commit:
            logger.debug(
                "Discarding %d follow-up(s) of a rolled back transaction",
                len(self._after_commit),
            )
        self._after_commit = []
