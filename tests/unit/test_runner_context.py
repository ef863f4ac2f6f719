import asyncio
import logging
import threading

import pytest

from flowgate.context import (
    CorrelationContext,
    CorrelationFilter,
    configure_logging,
    correlation_scope,
    current_context,
)
from flowgate.config import LoggingConfig, RunnerConfig
from flowgate.runner import AsyncRunner


def test_correlation_scope_sets_and_clears():
    assert current_context() is None
    with correlation_scope("W1", "s1") as ctx:
        assert ctx.correlation_id == "W1:s1"
        assert current_context() == ctx
    assert current_context() is None


def test_correlation_scope_cleared_on_error():
    with pytest.raises(RuntimeError):
        with correlation_scope("W1", "s1"):
            raise RuntimeError("boom")
    assert current_context() is None


def test_filter_stamps_records():
    record = logging.LogRecord("flowgate.engine", logging.INFO, __file__, 1, "msg", (), None)
    with correlation_scope("W1", "s1"):
        CorrelationFilter().filter(record)
    assert record.correlation_id == "W1:s1"
    assert record.service_id == "s1"
    assert record.workflow_id == "W1"

    outside = logging.LogRecord("flowgate.engine", logging.INFO, __file__, 1, "msg", (), None)
    CorrelationFilter().filter(outside)
    assert outside.correlation_id == ""


def test_configure_logging_replaces_handler():
    configure_logging(LoggingConfig(level="DEBUG"))
    configure_logging(LoggingConfig(level="WARNING"))
    logger = logging.getLogger("flowgate")
    ours = [h for h in logger.handlers if getattr(h, "_flowgate", False)]
    assert len(ours) == 1
    assert logger.level == logging.WARNING
    logger.removeHandler(ours[0])
    logger.setLevel(logging.NOTSET)


@pytest.mark.asyncio
async def test_submit_installs_captured_context():
    runner = AsyncRunner()
    seen = []

    async def work():
        seen.append(current_context())

    ctx = CorrelationContext.for_instance("W1", "s1")
    runner.submit(work, ctx)
    with correlation_scope("other", "s9"):
        runner.submit(work)
    await runner.drain()

    assert ctx in seen
    assert CorrelationContext.for_instance("other", "s9") in seen
    assert current_context() is None
    await runner.shutdown()


@pytest.mark.asyncio
async def test_drain_waits_for_spawned_tasks():
    runner = AsyncRunner(max_concurrency=2)
    order = []

    async def child():
        await asyncio.sleep(0.01)
        order.append("child")

    async def parent():
        order.append("parent")
        runner.submit(child)

    runner.submit(parent)
    await runner.drain()

    assert order == ["parent", "child"]
    assert runner.pending == 0
    await runner.shutdown()


@pytest.mark.asyncio
async def test_failed_task_does_not_stop_runner(caplog):
    runner = AsyncRunner()
    done = []

    async def broken():
        raise ValueError("bad task")

    async def fine():
        done.append(True)

    runner.submit(broken)
    runner.submit(fine)
    with caplog.at_level(logging.ERROR, logger="flowgate.runner"):
        await runner.drain()

    assert done == [True]
    assert "Background task failed" in caplog.text
    await runner.shutdown()


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    runner = AsyncRunner(max_concurrency=2)
    active = 0
    peak = 0

    async def work():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    for _ in range(6):
        runner.submit(work)
    await runner.drain()
    assert peak == 2
    await runner.shutdown()


@pytest.mark.asyncio
async def test_run_blocking_uses_worker_thread_with_context():
    runner = AsyncRunner()
    main_thread = threading.get_ident()

    def blocking():
        return threading.get_ident(), current_context()

    with correlation_scope("W1", "s1"):
        thread_id, ctx = await runner.run_blocking(blocking)

    assert thread_id != main_thread
    assert ctx.correlation_id == "W1:s1"
    await runner.shutdown()


@pytest.mark.asyncio
async def test_submit_after_shutdown_fails():
    runner = AsyncRunner.from_config(RunnerConfig(max_concurrency=1, max_workers=1))
    await runner.shutdown()

    async def work():
        pass

    with pytest.raises(RuntimeError):
        runner.submit(work)
