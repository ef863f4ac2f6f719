import pytest

from flowgate.contracts import (
    ExecutionLog,
    ExecutionStatus,
    Executor,
    ExecutorType,
    WorkflowMapping,
)
from flowgate.persistence import InMemoryWorkflowStore
from flowgate.reporting import WorkflowReports, execution_steps, summarize


def _ex(service_id, child, status, type=ExecutorType.NODE, workflow_id="W1", **kwargs):
    return Executor(
        workflow_id=workflow_id,
        service_id=service_id,
        type=type,
        children_id=child,
        status=status,
        **kwargs,
    )


def test_summary_groups_by_service():
    executors = [
        _ex("done", "A", ExecutionStatus.COMPLETED),
        _ex("done", "B", ExecutionStatus.COMPLETED),
        _ex("waiting", "A", ExecutionStatus.COMPLETED),
        _ex("waiting", "e1", ExecutionStatus.WAITING_FOR_APPROVAL, ExecutorType.EDGE),
        _ex("busy", "A", ExecutionStatus.RUNNING),
        _ex("failed", "A", ExecutionStatus.FAILED),
    ]
    summary = summarize(3, executors)
    assert summary.total == 3
    assert summary.completed == 1
    assert summary.pending_approval == 1
    # pending approval counts as running too, failed instances are not completed
    assert summary.running == 3


def test_execution_steps_walk_edges(approval_workflow):
    executors = [
        _ex("s1", "A", ExecutionStatus.COMPLETED, workflow_id="W2"),
        _ex(
            "s1",
            "e1",
            ExecutionStatus.WAITING_FOR_APPROVAL,
            ExecutorType.EDGE,
            workflow_id="W2",
        ),
    ]
    steps = execution_steps(approval_workflow, executors)

    assert [(s.id, s.type, s.status) for s in steps] == [
        ("A", "NODE", "COMPLETED"),
        ("e1", "EDGE", "WAITING_FOR_APPROVAL"),
        ("B", "NODE", "PENDING"),
    ]
    assert steps[0].name == "Stage A"
    assert steps[1].name == "ROLE_X"


def test_execution_steps_emit_each_node_once(join_workflow, workflow_factory):
    steps = execution_steps(join_workflow, [])
    assert [s.id for s in steps] == ["A", "e1", "C", "B", "e2"]

    single = workflow_factory("solo", ["only"])
    assert [s.id for s in execution_steps(single, [])] == ["only"]


@pytest.mark.asyncio
async def test_pending_approvals_join_definition_and_mapping(approval_workflow):
    store = InMemoryWorkflowStore()
    waiting = _ex(
        "s1",
        "e1",
        ExecutionStatus.WAITING_FOR_APPROVAL,
        ExecutorType.EDGE,
        workflow_id="W2",
        name="ACME",
        assigned_approver="ROLE_X",
    )
    orphan = _ex(
        "s2",
        "e1",
        ExecutionStatus.WAITING_FOR_APPROVAL,
        ExecutorType.EDGE,
        workflow_id="deleted",
    )
    stale_edge = _ex(
        "s3", "e9", ExecutionStatus.WAITING_FOR_APPROVAL, ExecutorType.EDGE, workflow_id="W2"
    )
    async with store.transaction() as session:
        await session.save_workflow(approval_workflow)
        await session.save_workflow_mapping(
            WorkflowMapping(workflow_id="W2", functionality_name="Contracts")
        )
        await session.save_executors([waiting, orphan, stale_edge])

    (item,) = await WorkflowReports(store).pending_approvals()

    assert item.id == waiting.id
    assert item.service_id == "s1"
    assert item.service_name == "ACME"
    assert item.workflow_name == "W2"
    assert item.stage_id == "B"
    assert item.stage_name == "Stage B"
    assert item.activity_id == "e1"
    assert item.activity_name == "ROLE_X"
    assert item.required_role == "ROLE_X"
    assert item.requested_by == "designer"
    assert item.view_url == "/contracts/view/s1"
    assert item.view_workflow_url == "/workflows/view/s1"

    payload = item.model_dump(by_alias=True)
    assert payload["viewURL"] == "/contracts/view/s1"
    assert payload["viewWorkflowURL"] == "/workflows/view/s1"


@pytest.mark.asyncio
async def test_pending_approvals_without_mapping_have_no_urls(approval_workflow):
    store = InMemoryWorkflowStore()
    async with store.transaction() as session:
        await session.save_workflow(approval_workflow)
        await session.save_executor(
            _ex(
                "s1",
                "e1",
                ExecutionStatus.WAITING_FOR_APPROVAL,
                ExecutorType.EDGE,
                workflow_id="W2",
            )
        )

    (item,) = await WorkflowReports(store).pending_approvals()
    assert item.view_url is None
    assert item.view_workflow_url is None


@pytest.mark.asyncio
async def test_instance_details(linear_workflow):
    store = InMemoryWorkflowStore()
    reports = WorkflowReports(store)
    assert await reports.instance_details("s1") is None

    async with store.transaction() as session:
        await session.save_workflow(linear_workflow)
        await session.save_executor(_ex("s1", "A", ExecutionStatus.RUNNING))
        await session.append_log(ExecutionLog(message="Workflow initiated", service_id="s1"))

    details = await reports.instance_details("s1")
    assert details.workflow.id == "W1"
    assert [(s.id, s.status) for s in details.execution_steps] == [
        ("A", "RUNNING"),
        ("e1", "PENDING"),
        ("B", "PENDING"),
    ]
    assert [log.message for log in details.execution_logs] == ["Workflow initiated"]


@pytest.mark.asyncio
async def test_instance_details_absent_when_workflow_deleted(linear_workflow):
    store = InMemoryWorkflowStore()
    async with store.transaction() as session:
        await session.save_executor(_ex("s1", "A", ExecutionStatus.RUNNING))
    assert await WorkflowReports(store).instance_details("s1") is None
