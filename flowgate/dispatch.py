"""Pluggable business-task dispatchers."""

from __future__ import annotations

import importlib
import inspect
from typing import Any, Awaitable, Callable, Mapping, Protocol, Union

DispatchResult = Union[bool, Awaitable[bool]]


class TaskDispatcher(Protocol):
    """Performs the business task of a node.

    ``execute`` receives the triggering service id and the node parameters
    verbatim and reports success. It may be a plain function, which is then
    run on a worker thread, or a coroutine function.
    """

    def execute(self, service_id: str, params: Mapping[str, str]) -> DispatchResult:
        ...


class CallableDispatcher:
    """Adapt a bare ``(service_id, params) -> bool`` callable."""

    def __init__(self, func: Callable[[str, Mapping[str, str]], DispatchResult]) -> None:
        self._func = func
        if inspect.iscoroutinefunction(func):
            self.execute = self._execute_async  # type: ignore[method-assign]

    def execute(self, service_id: str, params: Mapping[str, str]) -> DispatchResult:
        return self._func(service_id, params)

    async def _execute_async(self, service_id: str, params: Mapping[str, str]) -> bool:
        return await self._func(service_id, params)  # type: ignore[misc]

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        name = getattr(self._func, "__qualname__", repr(self._func))
        return f"CallableDispatcher({name})"


class NullDispatcher:
    """Completes every node without doing any work.

    Suitable for workflows whose only real steps are approvals.
    """

    def execute(self, service_id: str, params: Mapping[str, str]) -> bool:
        return True


def as_dispatcher(obj: Any) -> TaskDispatcher:
    """Return ``obj`` as a :class:`TaskDispatcher`, wrapping plain callables."""
    if hasattr(obj, "execute"):
        return obj
    if callable(obj):
        return CallableDispatcher(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not a task dispatcher")


def is_async_dispatcher(dispatcher: TaskDispatcher) -> bool:
    return inspect.iscoroutinefunction(dispatcher.execute)


def load_dispatcher(path: str) -> TaskDispatcher:
    """Import a dispatcher from a ``package.module:attribute`` path.

    Classes are instantiated without arguments.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Dispatcher path must look like 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attribute)
    except AttributeError as e:
        raise ValueError(f"Module {module_name!r} has no attribute {attribute!r}") from e
    if inspect.isclass(obj):
        obj = obj()
    return as_dispatcher(obj)
