"""Correlation context carried through engine calls and worker tasks.

Every engine entry point opens a scope keyed by ``workflowId:serviceId``.
Follow-up work captures the active context when it is enqueued and installs
it again on the worker for the duration of the task.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict

from .config import LoggingConfig


class CorrelationContext(BaseModel):
    """Identifies the workflow instance a unit of work belongs to."""

    correlation_id: str
    service_id: str
    workflow_id: str

    model_config = ConfigDict(frozen=True)

    @classmethod
    def for_instance(cls, workflow_id: str, service_id: str) -> CorrelationContext:
        return cls(
            correlation_id=f"{workflow_id}:{service_id}",
            service_id=str(service_id),
            workflow_id=workflow_id,
        )


_current: ContextVar[Optional[CorrelationContext]] = ContextVar(
    "flowgate_correlation", default=None
)


def current_context() -> Optional[CorrelationContext]:
    return _current.get()


def bind_context(ctx: Optional[CorrelationContext]) -> Token:
    return _current.set(ctx)


def reset_context(token: Token) -> None:
    _current.reset(token)


@contextmanager
def correlation_scope(workflow_id: str, service_id: str) -> Iterator[CorrelationContext]:
    """Install the context for one workflow instance; always cleared on exit."""
    ctx = CorrelationContext.for_instance(workflow_id, service_id)
    token = bind_context(ctx)
    try:
        yield ctx
    finally:
        reset_context(token)


class CorrelationFilter(logging.Filter):
    """Stamp the active correlation context onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _current.get()
        record.correlation_id = ctx.correlation_id if ctx else ""
        record.service_id = ctx.service_id if ctx else ""
        record.workflow_id = ctx.workflow_id if ctx else ""
        return True


def configure_logging(settings: Optional[LoggingConfig] = None) -> None:
    """Attach a correlation-aware handler to the ``flowgate`` logger."""
    settings = settings or LoggingConfig()
    logger = logging.getLogger("flowgate")
    for handler in list(logger.handlers):
        if getattr(handler, "_flowgate", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._flowgate = True  # type: ignore[attr-defined]
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(logging.Formatter(settings.format))
    logger.addHandler(handler)
    logger.setLevel(settings.level)
