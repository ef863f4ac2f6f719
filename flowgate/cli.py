"""Command line interface for flowgate workflows."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from flowgate import constants
from flowgate.config import FlowgateConfig, load_config
from flowgate.context import configure_logging
from flowgate.contracts import Workflow, WorkflowMapping
from flowgate.errors import UnknownDispatcher, WorkflowNotFound
from flowgate.persistence import get_store
from flowgate.persistence.store import WorkflowStore
from flowgate.registry import DispatcherRegistry
from flowgate.reporting import WorkflowReports

app = typer.Typer(help="CLI for flowgate workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
run_app = typer.Typer(help="Commands for running workflow instances")

app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")


@app.callback()
def main() -> None:
    """flowgate CLI entry point."""
    pass


def _open(config: FlowgateConfig) -> WorkflowStore:
    # a fresh store per command; each command runs in its own event loop
    return get_store(config=config)


def _registry(store: WorkflowStore, config: FlowgateConfig) -> DispatcherRegistry:
    try:
        return DispatcherRegistry.from_config(store, config)
    except (ImportError, ValueError) as exc:
        typer.secho(f"Cannot load dispatcher: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _engine(registry: DispatcherRegistry, tag: str):
    try:
        return registry.get(tag)
    except UnknownDispatcher as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        known = ", ".join(registry.tags()) or "(none configured)"
        typer.echo(f"Known dispatchers: {known}")
        raise typer.Exit(code=1)


@workflow_app.command("load")
def workflow_load(
    path: Path,
    functionality: Optional[str] = typer.Option(
        None, help="Functionality name to map the workflow to"
    ),
) -> None:
    """
    Store a workflow definition from a JSON or YAML file.

    The file holds the camelCase definition produced by the workflow editor
    (id, name, nodes, edges). Loading a definition with an existing id
    replaces it.

    Example:
        flowgate workflow load ./definitions/onboarding.json
        flowgate workflow load onboarding.yaml --functionality Contracts
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    try:
        data = yaml.safe_load(path.read_text()) or {}
        workflow = Workflow.model_validate(data)
    except (yaml.YAMLError, ValidationError) as exc:
        typer.secho(f"Invalid workflow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    config = load_config()

    async def _load() -> None:
        store = _open(config)
        try:
            async with store.transaction() as session:
                await session.save_workflow(workflow)
                if functionality:
                    await session.save_workflow_mapping(
                        WorkflowMapping(workflow_id=workflow.id, functionality_name=functionality)
                    )
        finally:
            await store.close()

    asyncio.run(_load())
    typer.echo(
        f"Loaded workflow {workflow.id} ({len(workflow.nodes)} nodes, {len(workflow.edges)} edges)"
    )


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List stored workflow definitions.

    Example:
        flowgate workflow list
        # Output: wf-onboarding    Onboarding    3 nodes
    """
    config = load_config()

    async def _list():
        store = _open(config)
        try:
            async with store.transaction() as session:
                return await session.list_workflows()
        finally:
            await store.close()

    workflows = asyncio.run(_list())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{len(wf.nodes)} nodes")


@run_app.command("initiate")
def run_initiate(
    service_id: str,
    workflow_id: str,
    name: str,
    type: str = typer.Option(constants.DEFAULT_DISPATCHER_TAG, "--type", help="Dispatcher tag"),
) -> None:
    """
    Start a workflow instance and run it until it completes or waits for approval.

    Example:
        flowgate run initiate 42 wf-onboarding "ACME onboarding"
    """
    config = load_config()
    configure_logging(config.logging)
    store = _open(config)
    registry = _registry(store, config)
    engine = _engine(registry, type)

    async def _initiate():
        try:
            await engine.initiate(service_id, workflow_id, name)
            await registry.drain()
            async with store.transaction() as session:
                return await session.list_executors_by_service(service_id)
        finally:
            await registry.runner.shutdown()
            await store.close()

    try:
        executors = asyncio.run(_initiate())
    except WorkflowNotFound as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Workflow {workflow_id} initiated for service {service_id}")
    for executor in executors:
        typer.echo(f"- {executor.id}\t{executor.type.value}\t{executor.children_id}\t{executor.status.value}")


def _decide(executor_id: str, user: str, comments: Optional[str], tag: str, approve: bool) -> None:
    config = load_config()
    configure_logging(config.logging)
    store = _open(config)
    registry = _registry(store, config)
    engine = _engine(registry, tag)

    async def _apply() -> None:
        try:
            if approve:
                await engine.approve(executor_id, user, comments)
            else:
                await engine.reject(executor_id, user, comments)
            await registry.drain()
        finally:
            await registry.runner.shutdown()
            await store.close()

    asyncio.run(_apply())


@run_app.command("approve")
def run_approve(
    executor_id: str,
    user: str = typer.Option(..., "--user", help="Approving user"),
    comments: Optional[str] = typer.Option(None, "--comments"),
    type: str = typer.Option(constants.DEFAULT_DISPATCHER_TAG, "--type", help="Dispatcher tag"),
) -> None:
    """
    Approve an edge executor waiting for approval and resume its workflow.

    Example:
        flowgate run approve 7d0c... --user alice --comments "looks good"
    """
    _decide(executor_id, user, comments, type, approve=True)
    typer.echo(f"Approval of {executor_id} submitted by {user}")


@run_app.command("reject")
def run_reject(
    executor_id: str,
    user: str = typer.Option(..., "--user", help="Rejecting user"),
    comments: Optional[str] = typer.Option(None, "--comments"),
    type: str = typer.Option(constants.DEFAULT_DISPATCHER_TAG, "--type", help="Dispatcher tag"),
) -> None:
    """Reject an edge executor waiting for approval."""
    _decide(executor_id, user, comments, type, approve=False)
    typer.echo(f"Rejection of {executor_id} submitted by {user}")


@run_app.command("pending")
def run_pending() -> None:
    """
    List edges waiting for approval.

    Example:
        flowgate run pending
        # Output: 7d0c...    42    Onboarding    Approval by ROLE_MANAGER -> Review
    """
    config = load_config()

    async def _pending():
        store = _open(config)
        try:
            return await WorkflowReports(store).pending_approvals()
        finally:
            await store.close()

    pending = asyncio.run(_pending())
    if not pending:
        typer.echo("No pending approvals")
        return
    for item in pending:
        typer.echo(
            f"{item.id}\t{item.service_id}\t{item.workflow_name}\t"
            f"Approval by {item.required_role} -> {item.stage_name or item.stage_id}"
        )


@run_app.command("summary")
def run_summary() -> None:
    """Show counts of workflow instances by state."""
    config = load_config()

    async def _summary():
        store = _open(config)
        try:
            return await WorkflowReports(store).summary()
        finally:
            await store.close()

    summary = asyncio.run(_summary())
    typer.echo(f"Workflows: {summary.total}")
    typer.echo(f"Running: {summary.running}")
    typer.echo(f"Completed: {summary.completed}")
    typer.echo(f"Pending approval: {summary.pending_approval}")


@run_app.command("show")
def run_show(service_id: str) -> None:
    """
    Show the steps and audit log of a service's workflow instance.

    Example:
        flowgate run show 42
        # Output: Workflow wf-onboarding (Onboarding) for service 42
        #         - A [NODE] Draft: COMPLETED
        #         - e1 [EDGE] ROLE_MANAGER: WAITING_FOR_APPROVAL
    """
    config = load_config()

    async def _show():
        store = _open(config)
        try:
            return await WorkflowReports(store).instance_details(service_id)
        finally:
            await store.close()

    details = asyncio.run(_show())
    if details is None:
        typer.echo("Workflow instance not found")
        raise typer.Exit(code=1)

    typer.echo(
        f"Workflow {details.workflow.id} ({details.workflow.name}) for service {service_id}"
    )
    for step in details.execution_steps:
        typer.echo(f"- {step.id} [{step.type}] {step.name or ''}: {step.status}")
    if details.execution_logs:
        typer.echo("Log:")
    for entry in details.execution_logs:
        typer.echo(f"  {entry.timestamp.isoformat()} {entry.level.value} {entry.message}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
