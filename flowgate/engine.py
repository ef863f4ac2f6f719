"""Graph-driven workflow execution engine.

The engine drives a workflow instance node by edge by node. Every unit of
progress is an *advance* task for one executor, run in its own store
transaction; follow-up tasks are only handed to the runner once the
transaction that created their executors has committed. A node step commits
RUNNING before its business task is dispatched and records the outcome in a
second transaction.
"""

from __future__ import annotations

import functools
import inspect
import logging
import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple

from . import constants
from .context import (
    CorrelationContext,
    bind_context,
    correlation_scope,
    current_context,
    reset_context,
)
from .contracts import (
    Edge,
    ExecutionStatus,
    Executor,
    ExecutorType,
    Node,
    PendingApprovalDetails,
    Workflow,
    WorkflowInstanceDetails,
    WorkflowInstanceSummary,
    utcnow,
)
from .dispatch import TaskDispatcher, as_dispatcher, is_async_dispatcher
from .errors import (
    EdgeNotFound,
    ExecutionError,
    InvalidExecutorType,
    NodeNotFound,
    TaskExecutionError,
    WorkflowDefinitionMissing,
    WorkflowNotFound,
)
from .execution_log import ExecutionLogRecorder
from .instances import InstanceTracker, instance_key
from .persistence.store import StoreSession, WorkflowStore
from .reporting import WorkflowReports
from .runner import AsyncRunner

logger = logging.getLogger(__name__)


def approval_deadline(timeout: Optional[str]) -> Optional[datetime]:
    """Translate an edge's advisory timeout (hours) into a deadline."""
    if not timeout:
        return None
    try:
        hours = float(timeout)
    except ValueError:
        logger.debug("Ignoring non-numeric approval timeout %r", timeout)
        return None
    if hours <= 0:
        return None
    return utcnow() + timedelta(hours=hours)


def format_stack_trace(exc: BaseException) -> str:
    """Render the innermost frames of ``exc`` for persistence."""
    lines = traceback.format_exception(
        type(exc), exc, exc.__traceback__, limit=-constants.STACK_TRACE_FRAME_LIMIT
    )
    return "".join(lines)


class ExecutionEngine:
    """State machine over node and edge executors.

    Args:
        store: Persistence backend for definitions, executors and logs.
        dispatcher: Performs each node's business task. Plain callables
            ``(service_id, params) -> bool`` are accepted.
        runner: Worker pool for advance tasks. A private one is created
            when omitted.
        recorder: Audit log writer.
        name: Tag of this engine variant, used in log lines.
        instances: Completion, failure and join-lock state shared by every
            engine driving the same instances. A private one is created
            when omitted.
        on_workflow_completed / on_workflow_failed / on_approval_request /
        before_node_execution / after_node_execution: Optional hook
            callables replacing the default (logging) behaviour. Subclasses
            may override the methods of the same name instead.
    """

    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: TaskDispatcher | Callable[..., Any],
        runner: Optional[AsyncRunner] = None,
        recorder: Optional[ExecutionLogRecorder] = None,
        name: str = constants.DEFAULT_DISPATCHER_TAG,
        instances: Optional[InstanceTracker] = None,
        on_workflow_completed: Optional[Callable[[str, str], Any]] = None,
        on_workflow_failed: Optional[Callable[[str, str, str], Any]] = None,
        on_approval_request: Optional[Callable[[Edge, Executor], Any]] = None,
        before_node_execution: Optional[Callable[[Node, Executor], Any]] = None,
        after_node_execution: Optional[Callable[[Node, Executor, bool], Any]] = None,
    ) -> None:
        self.name = name
        self._store = store
        self._dispatcher = as_dispatcher(dispatcher)
        self._runner = runner or AsyncRunner()
        self._log = recorder or ExecutionLogRecorder()
        self.reports = WorkflowReports(store)

        self._instances = instances or InstanceTracker()

        self._hooks = {
            "completed": on_workflow_completed,
            "failed": on_workflow_failed,
            "approval": on_approval_request,
            "before": before_node_execution,
            "after": after_node_execution,
        }

    @property
    def store(self) -> WorkflowStore:
        return self._store

    @property
    def runner(self) -> AsyncRunner:
        return self._runner

    @property
    def instances(self) -> InstanceTracker:
        return self._instances

    # ------------------------------------------------------------------
    # Inbound API

    async def initiate(self, service_id: str, workflow_id: str, name: str) -> List[Executor]:
        """Start an instance of ``workflow_id`` for ``service_id``.

        Creates one PENDING executor per start node and schedules their
        advance tasks once the transaction commits.

        Raises:
            WorkflowNotFound: If the definition does not exist.
        """
        with correlation_scope(workflow_id, service_id):
            async with self._store.transaction() as session:
                await self._log.workflow_initiated(session, workflow_id, service_id)

                workflow = await session.get_workflow(workflow_id)
                if workflow is None:
                    logger.error("Workflow not found: %s", workflow_id)
                    raise WorkflowNotFound(workflow_id)

                start_nodes = workflow.start_nodes()
                if not start_nodes:
                    logger.warning(
                        "No start nodes found for workflow %s; workflow may be misconfigured.",
                        workflow_id,
                    )
                    await self._log.no_start_nodes(session, workflow_id, service_id)
                    return []

                executors = [
                    self._new_node_executor(workflow_id, service_id, node.id, name)
                    for node in start_nodes
                ]
                await session.save_executors(executors)
                logger.info(
                    "Initiated workflow %s with %d start nodes.", workflow_id, len(executors)
                )
                await self._log.start_nodes_saved(
                    session, workflow_id, service_id, len(executors)
                )
                for executor in executors:
                    self._schedule_advance(session, executor)
        return executors

    async def advance(self, executor_id: str) -> None:
        """Run one state step for ``executor_id``; no-op on terminal executors."""
        await self._advance(executor_id, background=False)

    async def approve(self, executor_id: str, user: str, comments: Optional[str] = None) -> None:
        """Approve a waiting edge and resume the workflow at its target node."""
        await self._update_approval(executor_id, ExecutionStatus.COMPLETED, user, comments)

    async def reject(self, executor_id: str, user: str, comments: Optional[str] = None) -> None:
        """Reject a waiting edge, terminating that path of the workflow."""
        await self._update_approval(executor_id, ExecutionStatus.REJECTED, user, comments)

    async def drain(self) -> None:
        """Wait for every scheduled follow-up to finish."""
        await self._runner.drain()

    # ------------------------------------------------------------------
    # Queries

    async def get_executors_by_service(self, service_id: str) -> List[Executor]:
        async with self._store.transaction() as session:
            return await session.list_executors_by_service(service_id)

    async def get_workflow_instance_details(
        self, service_id: str
    ) -> Optional[WorkflowInstanceDetails]:
        return await self.reports.instance_details(service_id)

    async def get_pending_approval_details(self) -> List[PendingApprovalDetails]:
        return await self.reports.pending_approvals()

    async def get_workflow_instance_summary(self) -> WorkflowInstanceSummary:
        return await self.reports.summary()

    # ------------------------------------------------------------------
    # Advance

    async def _advance(self, executor_id: str, background: bool) -> None:
        executor: Optional[Executor] = None
        started: Optional[Tuple[Workflow, Node]] = None
        token = None
        try:
            try:
                async with self._store.transaction() as session:
                    executor = await session.get_executor(executor_id)
                    if executor is None:
                        logger.warning("Executor not found or already processed: %s", executor_id)
                        await self._log.executor_missing(session, executor_id, "advance")
                        return

                    token = bind_context(
                        CorrelationContext.for_instance(executor.workflow_id, executor.service_id)
                    )
                    if background:
                        logger.info("Starting async execution for executorId: %s", executor_id)
                        await self._log.async_executor_started(session, executor)
                    await self._log.sync_executor_started(session, executor)

                    if executor.is_terminal:
                        logger.debug(
                            "Executor %s already in terminal state (%s). Skipping execution.",
                            executor_id,
                            executor.status.value,
                        )
                        return

                    try:
                        started = await self._handle(session, executor)
                    except ExecutionError as e:
                        logger.error("Execution of executor %s aborted: %s", executor_id, e.message)
                        await self._fail_executor(session, executor, e, None)
                        return

                    if started is None:
                        self._schedule_completion_check(session, executor)

                # the business task runs outside any store transaction
                if started is not None:
                    await self._finish_node(executor, *started)
            except Exception as e:
                if executor is None:
                    raise
                logger.error(
                    "Unhandled exception during workflow execution for executor %s: %s",
                    executor_id,
                    e,
                    exc_info=True,
                )
                await self._record_unhandled(executor_id, e)
        finally:
            if token is not None:
                reset_context(token)

    async def _advance_in_background(self, executor_id: str) -> None:
        await self._advance(executor_id, background=True)

    async def _handle(
        self, session: StoreSession, executor: Executor
    ) -> Optional[Tuple[Workflow, Node]]:
        """Run the in-transaction part of a step.

        Returns the workflow and node of a node executor that was just
        marked RUNNING; its business task is still to be dispatched.
        """
        workflow = await session.get_workflow(executor.workflow_id)
        if workflow is None:
            raise WorkflowDefinitionMissing("Workflow definition missing")

        if executor.type == ExecutorType.NODE:
            logger.debug("Handling node execution for executor %s", executor.id)
            node = await self._start_node(session, executor, workflow)
            return workflow, node
        if executor.type == ExecutorType.EDGE:
            logger.debug("Handling edge execution for executor %s", executor.id)
            await self._handle_edge(session, executor, workflow)
            return None
        raise InvalidExecutorType(f"Unknown executor type: {executor.type}")

    async def _start_node(
        self, session: StoreSession, executor: Executor, workflow: Workflow
    ) -> Node:
        node = workflow.get_node(executor.children_id)
        if node is None:
            raise NodeNotFound(f"Missing node: {executor.children_id}")

        self.before_node_execution(node, executor)
        executor.status = ExecutionStatus.RUNNING
        await session.save_executor(executor)
        logger.info("Node executor %s (Node ID: %s) started execution.", executor.id, node.id)
        await self._log.node_started(session, executor)
        return node

    async def _finish_node(self, executor: Executor, workflow: Workflow, node: Node) -> None:
        success = False
        failure: Optional[Exception] = None
        try:
            success = await self._dispatch(executor.service_id, dict(node.data.parameters))
            logger.info(
                "Service execution for node %s (Executor ID: %s) completed with success: %s",
                node.id,
                executor.id,
                success,
            )
        except Exception as e:
            failure = e
            logger.error(
                "Service execution for node %s (Executor ID: %s) failed: %s",
                node.id,
                executor.id,
                e,
                exc_info=True,
            )

        async with self._store.transaction() as session:
            current = await session.get_executor(executor.id)
            if current is None or current.status != ExecutionStatus.RUNNING:
                logger.warning(
                    "Node executor %s changed while its task ran (%s). Discarding result.",
                    executor.id,
                    "deleted" if current is None else current.status.value,
                )
                return

            if failure is not None:
                error = TaskExecutionError(f"Business task failed: {failure}")
                self._set_error(current, error, failure)
                await self._log.executor_error(session, current)

            current.status = ExecutionStatus.COMPLETED if success else ExecutionStatus.FAILED
            await session.save_executor(current)
            logger.info(
                "Node executor %s (Node ID: %s) status updated to %s.",
                current.id,
                node.id,
                current.status.value,
            )
            await self._log.node_result(session, current, success)

            self.after_node_execution(node, current, success)

            if success:
                await self._trigger_outgoing_edges(session, workflow, node, current)
            self._schedule_completion_check(session, current)

    async def _dispatch(self, service_id: str, params: dict) -> bool:
        if is_async_dispatcher(self._dispatcher):
            result = await self._dispatcher.execute(service_id, params)
        else:
            result = await self._runner.run_blocking(self._dispatcher.execute, service_id, params)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def _handle_edge(
        self, session: StoreSession, executor: Executor, workflow: Workflow
    ) -> None:
        edge = workflow.get_edge(executor.children_id)
        if edge is None:
            raise EdgeNotFound(f"Missing edge: {executor.children_id}")

        if edge.data.auto_approve:
            executor.status = ExecutionStatus.COMPLETED
            await session.save_executor(executor)
            logger.info("Edge executor %s (Edge ID: %s) auto-approved.", executor.id, edge.id)
            await self._log.edge_status(session, executor, "auto-approved")
            await self._trigger_node(session, edge.target, executor)
            return

        executor.status = ExecutionStatus.WAITING_FOR_APPROVAL
        executor.assigned_approver = edge.data.approver_role
        executor.approval_deadline = approval_deadline(edge.data.approval_timeout)
        await session.save_executor(executor)
        logger.info(
            "Edge executor %s (Edge ID: %s) is WAITING_FOR_APPROVAL. Approver: %s",
            executor.id,
            edge.id,
            executor.assigned_approver,
        )
        await self._log.edge_status(session, executor, ExecutionStatus.WAITING_FOR_APPROVAL.value)
        session.after_commit(
            functools.partial(self.on_approval_request, edge, executor.model_copy())
        )

    # ------------------------------------------------------------------
    # Triggers

    async def _trigger_outgoing_edges(
        self, session: StoreSession, workflow: Workflow, node: Node, parent: Executor
    ) -> None:
        edges = workflow.outgoing_edges(node.id)
        if not edges:
            logger.info(
                "No outgoing edges found from node %s for workflow %s", node.id, workflow.id
            )

        edge_executors = [
            Executor(
                workflow_id=parent.workflow_id,
                service_id=parent.service_id,
                name=parent.name,
                type=ExecutorType.EDGE,
                children_id=edge.id,
                status=ExecutionStatus.PENDING,
            )
            for edge in edges
        ]
        if edge_executors:
            await session.save_executors(edge_executors)
        logger.info(
            "Created %d edge executors for outgoing edges from node %s",
            len(edge_executors),
            node.id,
        )
        await self._log.outgoing_edges_triggered(session, parent, node.id, len(edge_executors))
        for edge_executor in edge_executors:
            self._schedule_advance(session, edge_executor)

    async def _trigger_node(
        self, session: StoreSession, node_id: str, parent: Executor
    ) -> Optional[Executor]:
        """Create an executor for ``node_id`` unless one is already active.

        The per-node lock is held until ``session`` ends so that a sibling
        edge only looks for active executors after this one has committed.
        """
        release = await self._instances.lock_node(parent.workflow_id, parent.service_id, node_id)
        session.on_close(release)

        existing = await session.list_executors_by_workflow_and_child(parent.workflow_id, node_id)
        if any(e.service_id == parent.service_id and not e.is_terminal for e in existing):
            logger.debug(
                "Node %s for workflow %s already has an active executor. Skipping trigger.",
                node_id,
                parent.workflow_id,
            )
            return None

        node_executor = self._new_node_executor(
            parent.workflow_id, parent.service_id, node_id, parent.name
        )
        await session.save_executor(node_executor)
        logger.info(
            "Created new node executor %s for node %s in workflow %s",
            node_executor.id,
            node_id,
            parent.workflow_id,
        )
        self._schedule_advance(session, node_executor)
        return node_executor

    async def _resume_from_approved_edge(self, session: StoreSession, executor: Executor) -> None:
        workflow = await session.get_workflow(executor.workflow_id)
        if workflow is None:
            logger.error(
                "Workflow definition not found for approved edge executor %s", executor.id
            )
            return
        edge = workflow.get_edge(executor.children_id)
        if edge is None:
            logger.error("Edge not found for approved edge executor %s", executor.id)
            return
        logger.info(
            "Resuming workflow from approved edge %s (Executor ID: %s). Triggering target node %s.",
            edge.id,
            executor.id,
            edge.target,
        )
        await self._trigger_node(session, edge.target, executor)

    # ------------------------------------------------------------------
    # Approvals

    async def _update_approval(
        self,
        executor_id: str,
        new_status: ExecutionStatus,
        user: str,
        comments: Optional[str],
    ) -> None:
        action = "approve" if new_status == ExecutionStatus.COMPLETED else "reject"
        async with self._store.transaction() as session:
            executor = await session.get_executor(executor_id)
            if executor is None:
                logger.warning("Executor not found: %s", executor_id)
                await self._log.executor_missing(session, executor_id, action)
                return

            with correlation_scope(executor.workflow_id, executor.service_id):
                if executor.type != ExecutorType.EDGE:
                    logger.warning(
                        "Cannot %s non-edge executor %s. Type: %s",
                        action,
                        executor_id,
                        getattr(executor.type, "value", executor.type),
                    )
                    return
                if executor.status != ExecutionStatus.WAITING_FOR_APPROVAL:
                    logger.warning(
                        "Executor %s not in WAITING_FOR_APPROVAL state. Current status: %s",
                        executor_id,
                        executor.status.value,
                    )
                    return

                executor.status = new_status
                executor.approved_by = user
                executor.approval_comments = comments
                await session.save_executor(executor)
                logger.info("Executor %s set to status %s by %s", executor_id, new_status.value, user)
                await self._log.approval_updated(session, executor, user)

                if new_status == ExecutionStatus.COMPLETED:
                    await self._resume_from_approved_edge(session, executor)
                self._schedule_completion_check(session, executor)

    # ------------------------------------------------------------------
    # Completion & errors

    async def check_completion(self, workflow_id: str, service_id: str) -> bool:
        """Return whether every executor of the instance is terminal.

        The first time an instance is found complete, ``on_workflow_completed``
        fires after the check commits.
        """
        key = instance_key(workflow_id, service_id)
        with correlation_scope(workflow_id, service_id):
            async with self._store.transaction() as session:
                executors = await session.list_executors_by_workflow(workflow_id)
                instance = [e for e in executors if e.service_id == service_id]
                active = sum(1 for e in instance if not e.is_terminal)
                if active:
                    logger.debug(
                        "Workflow %s for service %s is not yet completed. %d active executors found.",
                        workflow_id,
                        service_id,
                        active,
                    )
                    await self._log.completion_check(session, workflow_id, service_id, False)
                    return False

                if key in self._instances.completed:
                    logger.debug("Workflow completion already handled for %s", key)
                    return True
                self._instances.completed.add(key)
                if key in self._instances.failed:
                    logger.info("Workflow %s for service %s ended after a failure.", workflow_id, service_id)
                    return True
                if not await session.claim_instance_completion(workflow_id, service_id):
                    logger.debug("Workflow outcome already recorded for %s", key)
                    return True

                logger.info(
                    "Workflow %s for service %s completed. All executors are in terminal state.",
                    workflow_id,
                    service_id,
                )
                await self._log.completion_check(session, workflow_id, service_id, True)
                session.after_commit(
                    functools.partial(self.on_workflow_completed, workflow_id, service_id)
                )
        return True

    async def _check_completion_in_background(self, workflow_id: str, service_id: str) -> None:
        await self.check_completion(workflow_id, service_id)

    def _set_error(
        self, executor: Executor, error: ExecutionError, cause: Optional[BaseException]
    ) -> None:
        executor.error_code = error.code
        executor.error_message = error.message
        if cause is not None:
            executor.error_stack_trace = format_stack_trace(cause)
        executor.status = ExecutionStatus.FAILED

    async def _fail_executor(
        self,
        session: StoreSession,
        executor: Executor,
        error: ExecutionError,
        cause: Optional[BaseException],
    ) -> None:
        self._set_error(executor, error, cause)
        await session.save_executor(executor)
        logger.error(
            "Error [%s]: %s for executor %s (Workflow: %s, Service: %s)",
            error.code,
            error.message,
            executor.id,
            executor.workflow_id,
            executor.service_id,
        )
        await self._log.executor_error(session, executor)
        if error.fatal:
            await session.mark_instance_failed(executor.workflow_id, executor.service_id)
            logger.info(
                "Triggering workflow failure for workflow %s due to error in executor %s",
                executor.workflow_id,
                executor.id,
            )
            session.after_commit(
                functools.partial(
                    self._workflow_failed, executor.workflow_id, executor.service_id, error.message
                )
            )

    async def _record_unhandled(self, executor_id: str, cause: Exception) -> None:
        async with self._store.transaction() as session:
            executor = await session.get_executor(executor_id)
            if executor is None or executor.is_terminal:
                logger.error(
                    "Cannot record failure of executor %s: %s",
                    executor_id,
                    "not found" if executor is None else f"already {executor.status.value}",
                )
                return
            error = ExecutionError(f"Internal execution error: {cause}")
            await self._fail_executor(session, executor, error, cause)

    def _workflow_failed(self, workflow_id: str, service_id: str, error: str) -> None:
        key = instance_key(workflow_id, service_id)
        if key in self._instances.failed:
            logger.debug("Workflow failure already handled for %s", key)
            return
        self._instances.failed.add(key)
        self.on_workflow_failed(workflow_id, service_id, error)

    # ------------------------------------------------------------------
    # Scheduling helpers

    def _schedule_advance(self, session: StoreSession, executor: Executor) -> None:
        session.after_commit(
            functools.partial(
                self._runner.submit,
                functools.partial(self._advance_in_background, executor.id),
                current_context(),
                f"advance-{executor.id}",
            )
        )

    def _schedule_completion_check(self, session: StoreSession, executor: Executor) -> None:
        session.after_commit(
            functools.partial(
                self._runner.submit,
                functools.partial(
                    self._check_completion_in_background,
                    executor.workflow_id,
                    executor.service_id,
                ),
                current_context(),
                f"completion-{executor.workflow_id}:{executor.service_id}",
            )
        )

    @staticmethod
    def _new_node_executor(
        workflow_id: str, service_id: str, node_id: str, name: Optional[str]
    ) -> Executor:
        return Executor(
            workflow_id=workflow_id,
            service_id=service_id,
            name=name,
            type=ExecutorType.NODE,
            children_id=node_id,
            status=ExecutionStatus.PENDING,
        )

    # ------------------------------------------------------------------
    # Lifecycle hooks

    def _call_hook(self, key: str, *args: Any) -> bool:
        hook = self._hooks[key]
        if hook is None:
            return False
        try:
            hook(*args)
        except Exception:
            logger.exception("Hook %s raised", key)
        return True

    def before_node_execution(self, node: Node, executor: Executor) -> None:
        if not self._call_hook("before", node, executor):
            logger.debug(
                "Hook: beforeNodeExecution for node %s (Executor ID: %s)", node.id, executor.id
            )

    def after_node_execution(self, node: Node, executor: Executor, success: bool) -> None:
        if not self._call_hook("after", node, executor, success):
            logger.debug(
                "Hook: afterNodeExecution for node %s (Executor ID: %s). Success: %s",
                node.id,
                executor.id,
                success,
            )

    def on_approval_request(self, edge: Edge, executor: Executor) -> None:
        if not self._call_hook("approval", edge, executor):
            logger.info(
                "Hook: onApprovalRequest for edge %s (Executor ID: %s). Approver: %s",
                edge.id,
                executor.id,
                executor.assigned_approver,
            )

    def on_workflow_completed(self, workflow_id: str, service_id: str) -> None:
        if not self._call_hook("completed", workflow_id, service_id):
            logger.info(
                "Hook: onWorkflowCompleted for workflow %s (Service ID: %s)",
                workflow_id,
                service_id,
            )

    def on_workflow_failed(self, workflow_id: str, service_id: str, error: str) -> None:
        if not self._call_hook("failed", workflow_id, service_id, error):
            logger.error(
                "Hook: onWorkflowFailed for workflow %s (Service ID: %s). Error: %s",
                workflow_id,
                service_id,
                error,
            )
