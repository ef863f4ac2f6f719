"""flowgate: graph-driven workflow execution with approval-gated edges."""

from .contracts import (
    Edge,
    ExecutionLog,
    ExecutionStatus,
    Executor,
    ExecutorType,
    Node,
    Task,
    Workflow,
    WorkflowMapping,
)
from .dispatch import CallableDispatcher, NullDispatcher, TaskDispatcher
from .engine import ExecutionEngine
from .errors import FlowgateError, UnknownDispatcher, WorkflowNotFound
from .instances import InstanceTracker
from .persistence import get_store
from .registry import DispatcherRegistry, build_registry
from .runner import AsyncRunner

__version__ = "0.1.0"
__all__ = [
    "Workflow",
    "Node",
    "Edge",
    "Executor",
    "ExecutorType",
    "ExecutionStatus",
    "ExecutionLog",
    "WorkflowMapping",
    "Task",
    "TaskDispatcher",
    "CallableDispatcher",
    "NullDispatcher",
    "ExecutionEngine",
    "InstanceTracker",
    "DispatcherRegistry",
    "build_registry",
    "AsyncRunner",
    "FlowgateError",
    "WorkflowNotFound",
    "UnknownDispatcher",
    "get_store",
]
