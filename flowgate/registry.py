"""Registry of engine variants keyed by dispatcher tag."""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Mapping, Optional

from .config import FlowgateConfig
from .dispatch import load_dispatcher
from .engine import ExecutionEngine
from .errors import UnknownDispatcher
from .execution_log import ExecutionLogRecorder
from .instances import InstanceTracker
from .persistence.store import WorkflowStore
from .runner import AsyncRunner


class DispatcherRegistry:
    """Maps a tag to the engine whose dispatcher handles that kind of workflow.

    All engines built through :meth:`add_dispatcher` share one store, one
    runner and one :class:`InstanceTracker`, so draining the registry drains
    every variant and an instance failed under one tag is failed for all.
    """

    def __init__(
        self,
        store: WorkflowStore,
        runner: Optional[AsyncRunner] = None,
        recorder: Optional[ExecutionLogRecorder] = None,
    ) -> None:
        self.store = store
        self.runner = runner or AsyncRunner()
        self.instances = InstanceTracker()
        self._recorder = recorder
        self._engines: Dict[str, ExecutionEngine] = {}

    @classmethod
    def from_config(cls, store: WorkflowStore, config: FlowgateConfig) -> DispatcherRegistry:
        """Build engines for every ``dispatchers`` entry of ``config``."""
        registry = cls(store, runner=AsyncRunner.from_config(config.runner))
        for tag, path in config.dispatchers.items():
            registry.add_dispatcher(tag, load_dispatcher(path))
        return registry

    def register(self, tag: str, engine: ExecutionEngine) -> ExecutionEngine:
        self._engines[tag] = engine
        return engine

    def add_dispatcher(self, tag: str, dispatcher: Any, **hooks: Any) -> ExecutionEngine:
        """Create and register an engine for ``dispatcher`` under ``tag``."""
        engine = ExecutionEngine(
            self.store,
            dispatcher,
            runner=self.runner,
            recorder=self._recorder,
            name=tag,
            instances=self.instances,
            **hooks,
        )
        return self.register(tag, engine)

    def get(self, tag: str) -> ExecutionEngine:
        try:
            return self._engines[tag]
        except KeyError:
            raise UnknownDispatcher(tag) from None

    def tags(self) -> List[str]:
        return sorted(self._engines)

    def __contains__(self, tag: object) -> bool:
        return tag in self._engines

    def __iter__(self) -> Iterator[str]:
        return iter(self._engines)

    def __len__(self) -> int:
        return len(self._engines)

    def default(self) -> ExecutionEngine:
        """Any registered engine, for operations that do not depend on the tag."""
        if not self._engines:
            raise UnknownDispatcher("<none>")
        return next(iter(self._engines.values()))

    async def drain(self) -> None:
        await self.runner.drain()


def build_registry(
    store: WorkflowStore,
    dispatchers: Mapping[str, Any],
    runner: Optional[AsyncRunner] = None,
) -> DispatcherRegistry:
    """Registry with one engine per ``tag -> dispatcher`` entry."""
    registry = DispatcherRegistry(store, runner=runner)
    for tag, dispatcher in dispatchers.items():
        registry.add_dispatcher(tag, dispatcher)
    return registry
