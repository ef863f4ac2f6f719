"""In-memory implementation of the workflow store."""

from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from ..contracts import (
    ExecutionLog,
    ExecutionStatus,
    Executor,
    ExecutorType,
    Task,
    Workflow,
    WorkflowMapping,
    utcnow,
)
from .store import TransactionHooks

_DELETED = None


class InMemoryWorkflowStore:
    """Keep definitions, executors and logs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Each transaction stages its writes
    and publishes them atomically on commit.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executors: Dict[str, Executor] = {}
        self._logs: List[ExecutionLog] = []
        self._mappings: Dict[str, WorkflowMapping] = {}
        self._tasks: Dict[str, Task] = {}
        self._completed_instances: Set[Tuple[str, str]] = set()
        self._failed_instances: Set[Tuple[str, str]] = set()
        self._mapping_ids = itertools.count(1)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryStoreSession]:
        session = InMemoryStoreSession(self)
        try:
            yield session
        except BaseException:
            session._discard_after_commit()
            session._run_on_close()
            raise
        try:
            async with self._lock:
                session._apply()
        finally:
            session._run_on_close()
        session._run_after_commit()

    async def close(self) -> None:
        pass


class InMemoryStoreSession(TransactionHooks):
    """Staged view over an :class:`InMemoryWorkflowStore`."""

    def __init__(self, store: InMemoryWorkflowStore) -> None:
        super().__init__()
        self._store = store
        self._workflows: Dict[str, Optional[Workflow]] = {}
        self._executors: Dict[str, Executor] = {}
        self._logs: List[ExecutionLog] = []
        self._mappings: Dict[str, WorkflowMapping] = {}
        self._tasks: Dict[str, Optional[Task]] = {}
        self._completed_instances: Set[Tuple[str, str]] = set()
        self._failed_instances: Set[Tuple[str, str]] = set()

    # ------------------------------------------------------------------
    def _apply(self) -> None:
        for workflow_id, workflow in self._workflows.items():
            if workflow is _DELETED:
                self._store._workflows.pop(workflow_id, None)
            else:
                self._store._workflows[workflow_id] = workflow
        self._store._executors.update(self._executors)
        self._store._logs.extend(self._logs)
        self._store._mappings.update(self._mappings)
        for task_id, task in self._tasks.items():
            if task is _DELETED:
                self._store._tasks.pop(task_id, None)
            else:
                self._store._tasks[task_id] = task
        self._store._completed_instances.update(self._completed_instances)
        self._store._failed_instances.update(self._failed_instances)

    def _merged_executors(self) -> List[Executor]:
        merged = dict(self._store._executors)
        merged.update(self._executors)
        return [e.model_copy(deep=True) for e in merged.values()]

    # ------------------------------------------------------------------
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        if workflow_id in self._workflows:
            workflow = self._workflows[workflow_id]
        else:
            workflow = self._store._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def save_workflow(self, workflow: Workflow) -> None:
        workflow = workflow.model_copy(deep=True)
        workflow.updated_at = utcnow()
        self._workflows[workflow.id] = workflow

    async def delete_workflow(self, workflow_id: str) -> None:
        self._workflows[workflow_id] = _DELETED

    def _merged_workflows(self) -> Dict[str, Workflow]:
        merged = dict(self._store._workflows)
        for workflow_id, workflow in self._workflows.items():
            if workflow is _DELETED:
                merged.pop(workflow_id, None)
            else:
                merged[workflow_id] = workflow
        return merged

    async def list_workflows(self) -> List[Workflow]:
        workflows = sorted(self._merged_workflows().values(), key=lambda w: w.created_at)
        return [w.model_copy(deep=True) for w in workflows]

    async def count_workflows(self) -> int:
        return len(self._merged_workflows())

    async def save_workflow_mapping(self, mapping: WorkflowMapping) -> WorkflowMapping:
        mapping = mapping.model_copy(deep=True)
        if mapping.id is None:
            mapping.id = next(self._store._mapping_ids)
        self._mappings[mapping.workflow_id] = mapping
        return mapping.model_copy(deep=True)

    async def get_workflow_mapping(self, workflow_id: str) -> Optional[WorkflowMapping]:
        mapping = self._mappings.get(workflow_id) or self._store._mappings.get(
            workflow_id
        )
        return mapping.model_copy(deep=True) if mapping else None

    # ------------------------------------------------------------------
    async def save_executor(self, executor: Executor) -> None:
        executor.updated_at = utcnow()
        self._executors[executor.id] = executor.model_copy(deep=True)

    async def save_executors(self, executors: List[Executor]) -> None:
        for executor in executors:
            await self.save_executor(executor)

    async def get_executor(self, executor_id: str) -> Optional[Executor]:
        executor = self._executors.get(executor_id) or self._store._executors.get(
            executor_id
        )
        return executor.model_copy(deep=True) if executor else None

    async def list_executors_by_workflow(self, workflow_id: str) -> List[Executor]:
        return [e for e in self._merged_executors() if e.workflow_id == workflow_id]

    async def list_executors_by_service(self, service_id: str) -> List[Executor]:
        return [e for e in self._merged_executors() if e.service_id == service_id]

    async def list_executors_by_workflow_and_child(
        self, workflow_id: str, child_id: str
    ) -> List[Executor]:
        return [
            e
            for e in self._merged_executors()
            if e.workflow_id == workflow_id and e.children_id == child_id
        ]

    async def list_pending_approval_edges(self) -> List[Executor]:
        return [
            e
            for e in self._merged_executors()
            if e.type == ExecutorType.EDGE
            and e.status == ExecutionStatus.WAITING_FOR_APPROVAL
        ]

    async def list_all_executors(self) -> List[Executor]:
        return self._merged_executors()

    async def claim_instance_completion(self, workflow_id: str, service_id: str) -> bool:
        key = (workflow_id, service_id)
        for claimed in (
            self._completed_instances,
            self._store._completed_instances,
            self._failed_instances,
            self._store._failed_instances,
        ):
            if key in claimed:
                return False
        self._completed_instances.add(key)
        return True

    async def mark_instance_failed(self, workflow_id: str, service_id: str) -> None:
        self._failed_instances.add((workflow_id, service_id))

    # ------------------------------------------------------------------
    async def save_task(self, task: Task) -> None:
        task.updated_at = utcnow()
        self._tasks[task.id] = task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Optional[Task]:
        if task_id in self._tasks:
            task = self._tasks[task_id]
        else:
            task = self._store._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(self, assigned_workflow: Optional[str] = None) -> List[Task]:
        merged = dict(self._store._tasks)
        for task_id, task in self._tasks.items():
            if task is _DELETED:
                merged.pop(task_id, None)
            else:
                merged[task_id] = task
        tasks = [
            t
            for t in merged.values()
            if assigned_workflow is None or t.assigned_workflow == assigned_workflow
        ]
        return [t.model_copy(deep=True) for t in sorted(tasks, key=lambda t: t.created_at)]

    async def delete_task(self, task_id: str) -> None:
        self._tasks[task_id] = _DELETED

    # ------------------------------------------------------------------
    async def append_log(self, log: ExecutionLog) -> None:
        self._logs.append(log.model_copy(deep=True))

    async def list_logs_by_service(self, service_id: str) -> List[ExecutionLog]:
        logs = [
            log
            for log in itertools.chain(self._store._logs, self._logs)
            if log.service_id == service_id
        ]
        return [log.model_copy(deep=True) for log in sorted(logs, key=lambda l: l.timestamp)]
