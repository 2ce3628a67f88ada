"""CLI entry point for the orchestration engine."""

import asyncio
import json
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
import structlog

from pipewright.agents.external import build_external_runner
from pipewright.config.settings import PipewrightSettings
from pipewright.engine.orchestrator import Orchestrator
from pipewright.engine.plan import PlanTable
from pipewright.engine.resume import ResumeEngine
from pipewright.engine.state_manager import JsonWorkflowStore
from pipewright.enums import WorkflowStatus, WorkflowType
from pipewright.exceptions import ConfigurationError, PipewrightError
from pipewright.models.domain import WorkflowResult
from pipewright.providers.pull_requests import RestPullRequestPublisher
from pipewright.providers.stage_docs import FileStageDocumentation
from pipewright.providers.workspace import GitWorkspaceProvisioner
from pipewright.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@dataclass
class Engine:
    store: JsonWorkflowStore
    orchestrator: Orchestrator
    resume: ResumeEngine


def create_engine(settings: PipewrightSettings) -> Engine:
    """Wire the store, collaborators, orchestrator and resume engine."""
    store = JsonWorkflowStore(settings.state_dir)
    provisioner = GitWorkspaceProvisioner.from_settings(settings)
    orchestrator = Orchestrator(
        store=store,
        runner=build_external_runner(settings),
        provisioner=provisioner,
        plan_table=PlanTable.from_settings(settings.workflow),
        docs=FileStageDocumentation(settings.workspace.root_path),
        publisher=RestPullRequestPublisher.from_settings(settings),
        base_branch_for=settings.repository.base_branch_for,
        provision_timeout=settings.workflow.provision_timeout_seconds,
    )
    return Engine(store=store, orchestrator=orchestrator, resume=ResumeEngine(store, orchestrator))


@click.group()
@click.option("--config", default="pipewright.yaml", help="Path to configuration file")
@click.option("--log-level", default=None, help="Logging level (overrides the configuration)")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str | None) -> None:
    """pipewright: multi-agent workflow orchestration."""
    configure_logging(log_level or "INFO")

    config_path = Path(config)
    if not config_path.exists():
        click.echo(f"Error: Configuration file not found: {config}", err=True)
        sys.exit(1)

    try:
        settings = PipewrightSettings.from_yaml(str(config_path))
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    configure_logging(log_level or settings.logging.level, settings.logging.json_output)
    ctx.obj = {"settings": settings}


def _run_async(coro: Coroutine[Any, Any, int], command: str) -> None:
    """Run a command coroutine and exit with its status code."""
    try:
        code = asyncio.run(coro)
    except PipewrightError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{command}_unexpected", exc_info=True)
        sys.exit(1)
    sys.exit(code)


def _echo_result(result: WorkflowResult) -> int:
    if result.rejected:
        click.echo(f"Rejected: {result.error}", err=True)
        return 1
    if result.success:
        click.echo(result.summary)
        if result.pr_url:
            click.echo(f"\nPull request: {result.pr_url}")
        if result.error:
            click.echo(f"\nWarning: {result.error}", err=True)
        return 0
    click.echo(f"Workflow {result.workflow_id} failed: {result.error}", err=True)
    return 1


@cli.command()
@click.option(
    "--type",
    "workflow_type",
    type=click.Choice([t.value for t in WorkflowType]),
    required=True,
    help="Workflow type",
)
@click.option("--task", required=True, help="Task description")
@click.option("--run", "run_now", is_flag=True, help="Execute the workflow right away")
@click.pass_context
def create(ctx: click.Context, workflow_type: str, task: str, run_now: bool) -> None:
    """Create a new workflow."""
    _run_async(_create(ctx.obj["settings"], WorkflowType(workflow_type), task, run_now), "create")


@cli.command()
@click.argument("workflow_id", type=int)
@click.pass_context
def run(ctx: click.Context, workflow_id: int) -> None:
    """Execute a pending workflow."""
    _run_async(_execute(ctx.obj["settings"], workflow_id), "run")


@cli.command()
@click.argument("workflow_id", type=int, required=False)
@click.option("--stage-index", type=int, default=None, help="0-based stage index to resume at")
@click.option("--all", "resume_all", is_flag=True, help="Resume every interrupted workflow")
@click.pass_context
def resume(ctx: click.Context, workflow_id: int | None, stage_index: int | None, resume_all: bool) -> None:
    """Resume an interrupted workflow, or all of them with --all."""
    if resume_all:
        if workflow_id is not None or stage_index is not None:
            click.echo("Error: --all cannot be combined with a workflow id or --stage-index", err=True)
            sys.exit(1)
        _run_async(_resume_all(ctx.obj["settings"]), "resume")
        return
    if workflow_id is None:
        click.echo("Error: Give a workflow id or --all", err=True)
        sys.exit(1)
    _run_async(_resume(ctx.obj["settings"], workflow_id, stage_index), "resume")


@cli.command()
@click.argument("workflow_id", type=int)
@click.option("--reason", default="Cancelled by user", help="Cancellation reason")
@click.pass_context
def cancel(ctx: click.Context, workflow_id: int, reason: str) -> None:
    """Cancel a running or pending workflow."""
    _run_async(_cancel(ctx.obj["settings"], workflow_id, reason), "cancel")


@cli.command()
@click.argument("workflow_id", type=int, required=False)
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in WorkflowStatus]),
    default=None,
    help="Only list workflows with this status",
)
@click.option("--resume-state", is_flag=True, help="Show whether the workflow can be resumed, and where")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def status(
    ctx: click.Context,
    workflow_id: int | None,
    status_filter: str | None,
    resume_state: bool,
    as_json: bool,
) -> None:
    """Show one workflow in detail, or list workflows."""
    if resume_state:
        if workflow_id is None:
            click.echo("Error: --resume-state needs a workflow id", err=True)
            sys.exit(1)
        _run_async(_resume_state(ctx.obj["settings"], workflow_id, as_json), "status")
        return
    _run_async(_status(ctx.obj["settings"], workflow_id, status_filter, as_json), "status")


async def _create(settings: PipewrightSettings, workflow_type: WorkflowType, task: str, run_now: bool) -> int:
    engine = create_engine(settings)
    workflow = await engine.store.create_workflow(workflow_type, {"task_description": task})
    click.echo(f"Created workflow {workflow.id} ({workflow_type})")
    if not run_now:
        return 0
    return _echo_result(await engine.orchestrator.execute(workflow.id))


async def _execute(settings: PipewrightSettings, workflow_id: int) -> int:
    log.info("running_workflow", workflow_id=workflow_id)
    engine = create_engine(settings)
    return _echo_result(await engine.orchestrator.execute(workflow_id))


async def _resume(settings: PipewrightSettings, workflow_id: int, stage_index: int | None) -> int:
    log.info("resuming_workflow", workflow_id=workflow_id, stage_index=stage_index)
    engine = create_engine(settings)
    return _echo_result(await engine.resume.resume(workflow_id, stage_index))


async def _resume_all(settings: PipewrightSettings) -> int:
    log.info("resuming_interrupted_workflows")
    engine = create_engine(settings)
    recovery = await engine.resume.resume_interrupted()

    if not recovery.resumed and not recovery.skipped:
        click.echo("No interrupted workflows found.")
        return 0
    for result in recovery.resumed:
        if result.success:
            click.echo(f"Workflow {result.workflow_id} resumed: {result.status}")
        else:
            click.echo(f"Workflow {result.workflow_id} failed: {result.error}", err=True)
    for result in recovery.skipped:
        click.echo(f"Workflow {result.workflow_id} skipped: {result.error}", err=True)
    return 0 if recovery.success else 1


async def _resume_state(settings: PipewrightSettings, workflow_id: int, as_json: bool) -> int:
    engine = create_engine(settings)
    state = await engine.resume.resume_state(workflow_id)
    if as_json:
        click.echo(json.dumps(state.model_dump(mode="json"), indent=2))
        return 0

    click.echo(f"Workflow {workflow_id}: {state.status or 'unknown'}")
    if not state.resumable:
        click.echo(f"Not resumable ({state.reason}): {state.error}")
        return 0
    completed = ", ".join(str(kind) for kind in state.completed_stages) or "-"
    click.echo(f"Resumable at stage {state.start_index} ({state.next_stage or 'finalize'}), pass {state.attempt}")
    click.echo(f"Completed stages: {completed}")
    return 0


async def _cancel(settings: PipewrightSettings, workflow_id: int, reason: str) -> int:
    engine = create_engine(settings)
    result = await engine.orchestrator.cancel(workflow_id, reason)
    if result.rejected or not result.success:
        click.echo(f"Cannot cancel workflow {workflow_id}: {result.error}", err=True)
        return 1
    click.echo(f"Workflow {workflow_id} cancelled: {reason}")
    return 0


async def _status(
    settings: PipewrightSettings,
    workflow_id: int | None,
    status_filter: str | None,
    as_json: bool,
) -> int:
    store = JsonWorkflowStore(settings.state_dir)

    if workflow_id is None:
        workflows = await store.list_workflows(WorkflowStatus(status_filter) if status_filter else None)
        if as_json:
            click.echo(json.dumps([w.model_dump(mode="json") for w in workflows], indent=2))
            return 0
        if not workflows:
            click.echo("No workflows found.")
            return 0
        click.echo(f"Workflows ({len(workflows)}):\n")
        for workflow in workflows:
            click.echo(f"  • {workflow.id} [{workflow.workflow_type}] {workflow.status}  {workflow.branch_name or '-'}")
        return 0

    details = await store.get_workflow_status(workflow_id)
    if as_json:
        click.echo(json.dumps(details, indent=2))
        return 0

    workflow = details["workflow"]
    click.echo(f"\nWorkflow {workflow['id']} ({workflow['workflow_type']})\n")
    click.echo(f"Status: {workflow['status']}")
    click.echo(f"Branch: {workflow['branch_name'] or '-'}")
    click.echo(f"Created: {workflow['created_at']}")
    if workflow["completed_at"]:
        click.echo(f"Finished: {workflow['completed_at']}")
    if workflow["error_message"]:
        click.echo(f"Error: {workflow['error_message']}")

    executions = details["executions"]
    if executions:
        click.echo(f"\nAgent executions ({len(executions)}):")
        for execution in executions:
            mark = {"completed": "✅", "failed": "❌", "running": "🔄"}.get(execution["status"], "⏳")
            click.echo(
                f"  {mark} #{execution['id']} pass {execution['retry_count']} "
                f"{execution['agent_kind']}: {execution['status']}"
            )
    click.echo(f"\nArtifacts: {len(details['artifacts'])}")
    return 0


if __name__ == "__main__":
    cli()
