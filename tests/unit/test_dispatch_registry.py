import pytest

from flowgate.config import FlowgateConfig, load_config
from flowgate.contracts import ExecutionStatus, Executor, ExecutorType
from flowgate.dispatch import (
    CallableDispatcher,
    NullDispatcher,
    as_dispatcher,
    is_async_dispatcher,
    load_dispatcher,
)
from flowgate.engine import ExecutionEngine
from flowgate.errors import UnknownDispatcher
from flowgate.persistence import InMemoryWorkflowStore
from flowgate.registry import DispatcherRegistry, build_registry


class EchoDispatcher:
    def __init__(self):
        self.calls = []

    def execute(self, service_id, params):
        self.calls.append((service_id, dict(params)))
        return params.get("ok", "true") == "true"


async def async_dispatcher(service_id, params):
    return True


def test_as_dispatcher_wraps_callables():
    echo = EchoDispatcher()
    assert as_dispatcher(echo) is echo

    wrapped = as_dispatcher(lambda service_id, params: service_id == "s1")
    assert isinstance(wrapped, CallableDispatcher)
    assert wrapped.execute("s1", {}) is True
    assert not is_async_dispatcher(wrapped)

    with pytest.raises(TypeError):
        as_dispatcher(42)


@pytest.mark.asyncio
async def test_coroutine_functions_stay_async():
    wrapped = as_dispatcher(async_dispatcher)
    assert is_async_dispatcher(wrapped)
    assert await wrapped.execute("s1", {}) is True


def test_load_dispatcher_from_path():
    dispatcher = load_dispatcher("flowgate.dispatch:NullDispatcher")
    assert isinstance(dispatcher, NullDispatcher)
    assert dispatcher.execute("s1", {"anything": "x"}) is True

    with pytest.raises(ValueError):
        load_dispatcher("flowgate.dispatch")
    with pytest.raises(ValueError):
        load_dispatcher("flowgate.dispatch:Missing")
    with pytest.raises(ImportError):
        load_dispatcher("flowgate.nonexistent:thing")


def test_registry_routes_by_tag():
    store = InMemoryWorkflowStore()
    registry = build_registry(store, {"default": NullDispatcher(), "billing": EchoDispatcher()})

    assert registry.tags() == ["billing", "default"]
    assert "billing" in registry
    assert len(registry) == 2
    billing = registry.get("billing")
    assert isinstance(billing, ExecutionEngine)
    assert billing.name == "billing"
    assert billing.runner is registry.get("default").runner
    assert billing.store is store

    with pytest.raises(UnknownDispatcher) as excinfo:
        registry.get("payroll")
    assert excinfo.value.tag == "payroll"


def test_registry_register_engine():
    store = InMemoryWorkflowStore()
    registry = DispatcherRegistry(store)
    engine = ExecutionEngine(store, NullDispatcher(), runner=registry.runner, name="custom")
    assert registry.register("custom", engine) is engine
    assert registry.get("custom") is engine
    assert registry.default() is engine


@pytest.mark.asyncio
async def test_failure_under_one_tag_holds_for_all(approval_workflow):
    store = InMemoryWorkflowStore()
    registry = DispatcherRegistry(store)
    events = []
    for tag in ("default", "email"):
        registry.add_dispatcher(
            tag,
            NullDispatcher(),
            on_workflow_completed=lambda wf, svc, tag=tag: events.append(("completed", tag)),
            on_workflow_failed=lambda wf, svc, err, tag=tag: events.append(("failed", tag)),
        )
    assert registry.get("default").instances is registry.get("email").instances

    ghost = Executor(
        workflow_id="W2", service_id="s1", type=ExecutorType.NODE, children_id="ghost"
    )
    waiting = Executor(
        workflow_id="W2",
        service_id="s1",
        type=ExecutorType.EDGE,
        children_id="e1",
        status=ExecutionStatus.WAITING_FOR_APPROVAL,
    )
    async with store.transaction() as session:
        await session.save_workflow(approval_workflow)
        await session.save_executors([ghost, waiting])

    await registry.get("default").advance(ghost.id)
    await registry.drain()
    await registry.get("email").approve(waiting.id, "alice", "ok")
    await registry.drain()

    executors = await registry.get("email").get_executors_by_service("s1")
    assert {e.children_id: e.status for e in executors} == {
        "ghost": ExecutionStatus.FAILED,
        "e1": ExecutionStatus.COMPLETED,
        "B": ExecutionStatus.COMPLETED,
    }
    assert await registry.get("email").check_completion("W2", "s1") is True
    assert events == [("failed", "default")]
    await registry.runner.shutdown()


def test_registry_from_config():
    config = FlowgateConfig(
        dispatchers={"default": "flowgate.dispatch:NullDispatcher"},
        runner={"max_concurrency": 4, "max_workers": 2},
    )
    registry = DispatcherRegistry.from_config(InMemoryWorkflowStore(), config)
    assert registry.tags() == ["default"]


def test_load_config_from_yaml(tmp_path, monkeypatch):
    config_path = tmp_path / "flowgate.yaml"
    config_path.write_text(
        """
database_url: sqlite:///flow.db
runner:
  max_concurrency: 4
logging:
  level: DEBUG
dispatchers:
  default: flowgate.dispatch:NullDispatcher
"""
    )
    monkeypatch.setenv("FLOWGATE_CONFIG", str(config_path))

    config = load_config()
    assert config.database_url == "sqlite:///flow.db"
    assert config.runner.max_concurrency == 4
    assert config.runner.max_workers == 8
    assert config.logging.level == "DEBUG"
    assert config.dispatchers == {"default": "flowgate.dispatch:NullDispatcher"}


def test_env_overrides_database_url(tmp_path, monkeypatch):
    config_path = tmp_path / "flowgate.yaml"
    config_path.write_text("database_url: sqlite:///flow.db\n")
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/flows")

    config = load_config(str(config_path))
    assert config.database_url == "postgresql://db/flows"


def test_missing_config_file_gives_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.database_url is None
    assert config.dispatchers == {}
    assert "%(correlation_id)s" in config.logging.format
