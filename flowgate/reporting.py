"""Read-only views over workflow instances."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from . import constants
from .contracts import (
    ExecutionStatus,
    ExecutionStep,
    Executor,
    PendingApprovalDetails,
    Workflow,
    WorkflowInstanceDetails,
    WorkflowInstanceSummary,
)
from .persistence.store import StoreSession, WorkflowStore


def preview_url(functionality: str, service_id: str) -> str:
    return constants.PREVIEW_URL.format(functionality=functionality.lower(), service_id=service_id)


def workflow_url(service_id: str) -> str:
    return constants.WORKFLOW_URL.format(service_id=service_id)


def summarize(workflow_count: int, executors: Iterable[Executor]) -> WorkflowInstanceSummary:
    """Count instances (executors grouped by service) by state.

    An instance with a pending approval is counted both as pending and as
    running.
    """
    groups: Dict[str, List[Executor]] = defaultdict(list)
    for executor in executors:
        groups[executor.service_id].append(executor)

    summary = WorkflowInstanceSummary(total=workflow_count)
    for members in groups.values():
        if any(e.status == ExecutionStatus.WAITING_FOR_APPROVAL for e in members):
            summary.pending_approval += 1
            summary.running += 1
        elif all(e.status == ExecutionStatus.COMPLETED for e in members):
            summary.completed += 1
        else:
            summary.running += 1
    return summary


def execution_steps(workflow: Workflow, executors: Iterable[Executor]) -> List[ExecutionStep]:
    """Order the instance's steps by walking the workflow's edges.

    Each edge contributes its source node, itself and its target node;
    nodes appear once. Steps without an executor are reported as PENDING.
    Nodes not connected to any edge are appended at the end.
    """
    # later executors for the same child win
    by_child = {e.children_id: e for e in executors}

    steps: List[ExecutionStep] = []
    seen = set()

    def node_step(node_id: str) -> None:
        if node_id in seen:
            return
        node = workflow.get_node(node_id)
        if node is None:
            return
        seen.add(node_id)
        executor = by_child.get(node_id)
        steps.append(
            ExecutionStep(
                id=node.id,
                name=node.data.stage_name,
                type=_type_of(executor, "NODE"),
                status=_status_of(executor),
            )
        )

    for edge in workflow.edges:
        node_step(edge.source)
        executor = by_child.get(edge.id)
        steps.append(
            ExecutionStep(
                id=edge.id,
                name=edge.data.approver_role,
                type=_type_of(executor, "EDGE"),
                status=_status_of(executor),
            )
        )
        node_step(edge.target)

    for node in workflow.nodes:
        node_step(node.id)
    return steps


def _type_of(executor: Optional[Executor], default: str) -> str:
    if executor is None:
        return default
    return getattr(executor.type, "value", executor.type)


def _status_of(executor: Optional[Executor]) -> str:
    if executor is None:
        return ExecutionStatus.PENDING.value
    return executor.status.value


async def pending_approval_details(session: StoreSession) -> List[PendingApprovalDetails]:
    """Join every waiting edge with its definition and functionality mapping."""
    by_workflow: Dict[str, List[Executor]] = defaultdict(list)
    for executor in await session.list_pending_approval_edges():
        by_workflow[executor.workflow_id].append(executor)

    details: List[PendingApprovalDetails] = []
    for workflow_id, executors in by_workflow.items():
        workflow = await session.get_workflow(workflow_id)
        if workflow is None:
            continue
        mapping = await session.get_workflow_mapping(workflow_id)
        functionality = mapping.functionality_name if mapping else None

        for executor in executors:
            edge = workflow.get_edge(executor.children_id)
            if edge is None:
                continue
            target = workflow.get_node(edge.target)
            if target is None:
                continue
            details.append(
                PendingApprovalDetails(
                    id=executor.id,
                    service_id=executor.service_id,
                    service_name=executor.name,
                    workflow_id=workflow.id,
                    workflow_name=workflow.name,
                    stage_id=target.id,
                    stage_name=target.data.stage_name,
                    activity_id=edge.id,
                    activity_name=edge.data.approver_role,
                    required_role=edge.data.approver_role,
                    requested_by=workflow.created_by,
                    requested_at=workflow.created_at,
                    status=executor.status,
                    approval_deadline=executor.approval_deadline,
                    view_url=preview_url(functionality, executor.service_id) if functionality else None,
                    view_workflow_url=workflow_url(executor.service_id) if functionality else None,
                )
            )
    return details


async def instance_details(
    session: StoreSession, service_id: str
) -> Optional[WorkflowInstanceDetails]:
    executors = await session.list_executors_by_service(service_id)
    if not executors:
        return None
    workflow_id = executors[0].workflow_id
    workflow = await session.get_workflow(workflow_id)
    if workflow is None:
        return None
    steps = execution_steps(workflow, [e for e in executors if e.workflow_id == workflow_id])
    logs = await session.list_logs_by_service(service_id)
    return WorkflowInstanceDetails(workflow=workflow, execution_steps=steps, execution_logs=logs)


class WorkflowReports:
    """Runs the reporting views, each in its own read transaction."""

    def __init__(self, store: WorkflowStore) -> None:
        self._store = store

    async def summary(self) -> WorkflowInstanceSummary:
        async with self._store.transaction() as session:
            total = await session.count_workflows()
            executors = await session.list_all_executors()
        return summarize(total, executors)

    async def pending_approvals(self) -> List[PendingApprovalDetails]:
        async with self._store.transaction() as session:
            return await pending_approval_details(session)

    async def instance_details(self, service_id: str) -> Optional[WorkflowInstanceDetails]:
        async with self._store.transaction() as session:
            return await instance_details(session, service_id)
