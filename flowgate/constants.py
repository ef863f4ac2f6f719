"""Shared constants for the flowgate engine."""

from __future__ import annotations

# Persisted executor error codes
WORKFLOW_DEFINITION_NOT_FOUND = "WORKFLOW_DEFINITION_NOT_FOUND"
NODE_NOT_FOUND = "NODE_NOT_FOUND"
EDGE_NOT_FOUND = "EDGE_NOT_FOUND"
INVALID_EXECUTOR_TYPE = "INVALID_EXECUTOR_TYPE"
SERVICE_EXECUTION_ERROR = "SERVICE_EXECUTION_ERROR"
UNHANDLED_ERROR = "UNHANDLED_ERROR"

STACK_TRACE_FRAME_LIMIT = 50

# Audit log defaults
SYSTEM_ACTOR = "system"
SYSTEM_STEP_ID = "system"
WORKFLOW_STEP_NAME = "Workflow"

PREVIEW_URL = "/{functionality}/view/{service_id}"
WORKFLOW_URL = "/workflows/view/{service_id}"

DEFAULT_DISPATCHER_TAG = "default"
