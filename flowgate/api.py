"""HTTP routes for workflow executors."""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from .contracts import (
    ApprovalRequest,
    Executor,
    PendingApprovalDetails,
    WorkflowInstanceDetails,
    WorkflowInstanceSummary,
)
from .errors import UnknownDispatcher
from .registry import DispatcherRegistry
from .reporting import WorkflowReports

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflow-executors", tags=["Workflow Executors"])


def get_registry(request: Request) -> DispatcherRegistry:
    return request.app.state.registry


def get_reports(registry: DispatcherRegistry = Depends(get_registry)) -> WorkflowReports:
    return WorkflowReports(registry.store)


@router.get("/services/{service_id}", response_model=List[Executor])
async def get_executors_by_service(
    service_id: str, registry: DispatcherRegistry = Depends(get_registry)
):
    """List every executor of a service instance."""
    async with registry.store.transaction() as session:
        executors = await session.list_executors_by_service(service_id)
    if not executors:
        raise HTTPException(status_code=404, detail=f"No executors found for service {service_id}")
    return executors


@router.get("/details-by-service/{service_id}", response_model=WorkflowInstanceDetails)
async def get_instance_details(service_id: str, reports: WorkflowReports = Depends(get_reports)):
    details = await reports.instance_details(service_id)
    if details is None:
        raise HTTPException(status_code=404, detail=f"No workflow instance for service {service_id}")
    return details


async def _apply_decision(
    executor_id: str, body: ApprovalRequest, registry: DispatcherRegistry, approve: bool
) -> dict:
    try:
        engine = registry.get(body.type)
    except UnknownDispatcher as e:
        logger.warning("Rejected approval call for executor %s: %s", executor_id, e)
        raise HTTPException(status_code=400, detail=str(e))

    if approve:
        await engine.approve(executor_id, body.approved_by, body.comments)
    else:
        await engine.reject(executor_id, body.approved_by, body.comments)
    return {"executorId": executor_id, "status": "accepted"}


@router.post("/{executor_id}/approve")
async def approve_executor(
    executor_id: str, body: ApprovalRequest, registry: DispatcherRegistry = Depends(get_registry)
):
    return await _apply_decision(executor_id, body, registry, approve=True)


@router.post("/{executor_id}/reject")
async def reject_executor(
    executor_id: str, body: ApprovalRequest, registry: DispatcherRegistry = Depends(get_registry)
):
    return await _apply_decision(executor_id, body, registry, approve=False)


@router.get("/pending-approvals", response_model=List[PendingApprovalDetails])
async def get_pending_approvals(reports: WorkflowReports = Depends(get_reports)):
    return await reports.pending_approvals()


@router.get("/workflow-summary", response_model=WorkflowInstanceSummary)
async def get_workflow_summary(reports: WorkflowReports = Depends(get_reports)):
    return await reports.summary()


def create_app(registry: DispatcherRegistry) -> FastAPI:
    """FastAPI application serving the executor routes for ``registry``."""
    app = FastAPI(title="flowgate", version="0.1.0")
    app.state.registry = registry
    app.include_router(router)
    return app
