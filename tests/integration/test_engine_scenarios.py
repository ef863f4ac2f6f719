"""End-to-end runs of the execution engine over small workflow graphs."""

import asyncio
from collections import Counter

import pytest

from flowgate.constants import WORKFLOW_DEFINITION_NOT_FOUND
from flowgate.contracts import ExecutionStatus, ExecutorType
from flowgate.engine import ExecutionEngine
from flowgate.persistence import InMemoryWorkflowStore
from flowgate.runner import AsyncRunner


class HookRecorder:
    """Collects lifecycle hook invocations."""

    def __init__(self):
        self.completed = []
        self.failed = []
        self.approvals = []

    def kwargs(self):
        return {
            "on_workflow_completed": lambda wf, svc: self.completed.append((wf, svc)),
            "on_workflow_failed": lambda wf, svc, err: self.failed.append((wf, svc, err)),
            "on_approval_request": lambda edge, ex: self.approvals.append((edge.id, ex.id)),
        }


async def _save(store, workflow):
    async with store.transaction() as session:
        await session.save_workflow(workflow)


async def _executors(store, service_id):
    async with store.transaction() as session:
        return await session.list_executors_by_service(service_id)


def _by_child(executors):
    return {e.children_id: e for e in executors}


def _engine(store, dispatcher, hooks):
    return ExecutionEngine(store, dispatcher, runner=AsyncRunner(), **hooks.kwargs())


@pytest.mark.asyncio
async def test_linear_happy_path(store, linear_workflow):
    hooks = HookRecorder()
    calls = []

    def dispatcher(service_id, params):
        calls.append((service_id, params["step"]))
        return True

    engine = _engine(store, dispatcher, hooks)
    await _save(store, linear_workflow)

    started = await engine.initiate("s1", "W1", "ACME")
    await engine.drain()

    assert [e.children_id for e in started] == ["A"]
    executors = _by_child(await _executors(store, "s1"))
    assert set(executors) == {"A", "e1", "B"}
    assert all(e.status == ExecutionStatus.COMPLETED for e in executors.values())
    assert executors["e1"].type == ExecutorType.EDGE
    assert all(e.name == "ACME" for e in executors.values())
    assert calls == [("s1", "A"), ("s1", "B")]
    assert hooks.completed == [("W1", "s1")]
    assert hooks.failed == []

    summary = await engine.get_workflow_instance_summary()
    assert summary.total == 1
    assert summary.completed == 1
    assert summary.running == 0
    await engine.runner.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_manual_approval(store, approval_workflow):
    hooks = HookRecorder()
    engine = _engine(store, lambda service_id, params: True, hooks)
    await _save(store, approval_workflow)

    await engine.initiate("s1", "W2", "ACME")
    await engine.drain()

    executors = _by_child(await _executors(store, "s1"))
    edge = executors["e1"]
    assert executors["A"].status == ExecutionStatus.COMPLETED
    assert edge.status == ExecutionStatus.WAITING_FOR_APPROVAL
    assert edge.assigned_approver == "ROLE_X"
    assert "B" not in executors
    assert hooks.approvals == [("e1", edge.id)]
    assert hooks.completed == []

    pending = await engine.get_pending_approval_details()
    assert len(pending) == 1
    assert pending[0].id == edge.id
    assert pending[0].stage_id == "B"
    assert pending[0].required_role == "ROLE_X"

    summary = await engine.get_workflow_instance_summary()
    assert summary.pending_approval == 1
    assert summary.running == 1

    await engine.approve(edge.id, "alice", "ok")
    await engine.drain()

    executors = _by_child(await _executors(store, "s1"))
    assert executors["e1"].status == ExecutionStatus.COMPLETED
    assert executors["e1"].approved_by == "alice"
    assert executors["e1"].approval_comments == "ok"
    assert executors["B"].status == ExecutionStatus.COMPLETED
    assert hooks.completed == [("W2", "s1")]
    assert await engine.get_pending_approval_details() == []
    await engine.runner.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_rejection_ends_path(store, approval_workflow):
    hooks = HookRecorder()
    engine = _engine(store, lambda service_id, params: True, hooks)
    await _save(store, approval_workflow)

    await engine.initiate("s1", "W2", "ACME")
    await engine.drain()
    edge = _by_child(await _executors(store, "s1"))["e1"]

    await engine.reject(edge.id, "bob", "no")
    await engine.drain()

    executors = _by_child(await _executors(store, "s1"))
    assert executors["e1"].status == ExecutionStatus.REJECTED
    assert executors["e1"].approved_by == "bob"
    assert "B" not in executors
    assert await engine.check_completion("W2", "s1") is True
    assert hooks.completed == [("W2", "s1")]
    assert hooks.failed == []
    await engine.runner.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_join_point_runs_target_once(store, join_workflow):
    hooks = HookRecorder()
    calls = []

    async def dispatcher(service_id, params):
        if params.get("slow"):
            await asyncio.sleep(0.05)
        calls.append(params["step"])
        return True

    engine = _engine(store, dispatcher, hooks)
    await _save(store, join_workflow)

    started = await engine.initiate("s1", "W3", "ACME")
    await engine.drain()

    assert sorted(e.children_id for e in started) == ["A", "B"]
    executors = await _executors(store, "s1")
    per_child = Counter(e.children_id for e in executors)
    assert per_child["C"] == 1
    assert Counter(calls)["C"] == 1
    assert all(e.status == ExecutionStatus.COMPLETED for e in executors)
    assert hooks.completed == [("W3", "s1")]
    assert engine.instances.held_locks == 0
    await engine.runner.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_start_nodes_dispatch_concurrently(store, join_workflow):
    hooks = HookRecorder()
    active = 0
    peak = 0
    both_running = asyncio.Event()

    async def dispatcher(service_id, params):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        if active == 2:
            both_running.set()
        await asyncio.sleep(0.3)
        active -= 1
        return True

    engine = _engine(store, dispatcher, hooks)
    await _save(store, join_workflow)

    await engine.initiate("s1", "W3", "ACME")
    await asyncio.wait_for(both_running.wait(), timeout=5)

    # reads are not held up by running business tasks
    summary = await engine.get_workflow_instance_summary()
    assert summary.running == 1
    assert active == 2
    running = [e for e in await _executors(store, "s1") if e.status == ExecutionStatus.RUNNING]
    assert sorted(e.children_id for e in running) == ["A", "B"]

    await engine.drain()
    assert peak == 2
    assert hooks.completed == [("W3", "s1")]
    await engine.runner.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_task_failure_is_local(store, linear_workflow):
    hooks = HookRecorder()
    engine = _engine(store, lambda service_id, params: params["step"] != "A", hooks)
    await _save(store, linear_workflow)

    await engine.initiate("s1", "W1", "ACME")
    await engine.drain()

    executors = _by_child(await _executors(store, "s1"))
    assert set(executors) == {"A"}
    assert executors["A"].status == ExecutionStatus.FAILED
    assert await engine.check_completion("W1", "s1") is True
    assert hooks.failed == []
    assert hooks.completed == [("W1", "s1")]
    await engine.runner.shutdown()
    await store.close()


@pytest.mark.asyncio
async def test_workflow_deleted_before_advance(linear_workflow):
    store = InMemoryWorkflowStore()
    hooks = HookRecorder()
    engine = _engine(store, lambda service_id, params: True, hooks)
    await _save(store, linear_workflow)

    # advance tasks only start once the test yields to the event loop
    await engine.initiate("s1", "W1", "ACME")
    async with store.transaction() as session:
        await session.delete_workflow("W1")
    await engine.drain()

    executors = _by_child(await _executors(store, "s1"))
    assert executors["A"].status == ExecutionStatus.FAILED
    assert executors["A"].error_code == WORKFLOW_DEFINITION_NOT_FOUND
    assert executors["A"].error_message == "Workflow definition missing"
    assert hooks.failed == [("W1", "s1", "Workflow definition missing")]
    assert hooks.completed == []


@pytest.mark.asyncio
async def test_instances_of_same_workflow_are_independent(linear_workflow):
    store = InMemoryWorkflowStore()
    hooks = HookRecorder()
    engine = _engine(store, lambda service_id, params: True, hooks)
    await _save(store, linear_workflow)

    await engine.initiate("s1", "W1", "first")
    await engine.initiate("s2", "W1", "second")
    await engine.drain()

    for service_id in ("s1", "s2"):
        executors = _by_child(await _executors(store, service_id))
        assert set(executors) == {"A", "e1", "B"}
    assert sorted(hooks.completed) == [("W1", "s1"), ("W1", "s2")]

    summary = await engine.get_workflow_instance_summary()
    assert summary.completed == 2
    await engine.runner.shutdown()
