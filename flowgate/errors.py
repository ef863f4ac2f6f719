"""Exception hierarchy for flowgate."""

from __future__ import annotations

from . import constants


class FlowgateError(Exception):
    """Base class for all flowgate errors."""


class WorkflowNotFound(FlowgateError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class ExecutorNotFound(FlowgateError):
    def __init__(self, executor_id: str) -> None:
        super().__init__(f"Executor not found: {executor_id}")
        self.executor_id = executor_id


class UnknownDispatcher(FlowgateError):
    def __init__(self, tag: str) -> None:
        super().__init__(f"No workflow dispatcher registered for: {tag}")
        self.tag = tag


class ExecutionError(FlowgateError):
    """Error captured into an executor's error fields.

    ``fatal`` errors fail the whole workflow instance; the others only fail
    the executor that raised them.
    """

    code = constants.UNHANDLED_ERROR
    fatal = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class WorkflowDefinitionMissing(ExecutionError):
    code = constants.WORKFLOW_DEFINITION_NOT_FOUND


class NodeNotFound(ExecutionError):
    code = constants.NODE_NOT_FOUND


class EdgeNotFound(ExecutionError):
    code = constants.EDGE_NOT_FOUND


class InvalidExecutorType(ExecutionError):
    code = constants.INVALID_EXECUTOR_TYPE


class TaskExecutionError(ExecutionError):
    code = constants.SERVICE_EXECUTION_ERROR
    fatal = False


__all__ = [
    "FlowgateError",
    "WorkflowNotFound",
    "ExecutorNotFound",
    "UnknownDispatcher",
    "ExecutionError",
    "WorkflowDefinitionMissing",
    "NodeNotFound",
    "EdgeNotFound",
    "InvalidExecutorType",
    "TaskExecutionError",
]
