"""
Resume engine.

Recovers a workflow that was interrupted (crash, cancellation, or a terminal
stage failure) by re-entering the orchestrator loop at the interruption
point instead of starting over. Completed stages are not re-executed: their
summaries and artifacts are rebuilt from the store and handed to later
stages as prior results.

Preconditions (checked before anything is written):
    - the workflow exists and is not ``completed``
    - a branch name has been assigned
    - the workspace directory still exists
    - an explicit stage index lies within ``[0, len(plan) - 1]``

``resume_state`` answers the same checks without writing anything, and
``resume_interrupted`` resumes every workflow a dead process left in
progress.

Only the most recent pass (highest ``retry_count``) is considered, and the
resumed run continues that pass's counter, so resuming never grants a fresh
retry budget.

Example:
    >>> engine = ResumeEngine(store, orchestrator)
    >>> result = await engine.resume(7)
    >>> result.rejected, result.status
    (False, <WorkflowStatus.COMPLETED: 'completed'>)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog

from pipewright.engine.orchestrator import Orchestrator, RunState
from pipewright.engine.plan import ExecutionPlan, PlanTable
from pipewright.enums import AgentKind, AgentStatus, WorkflowStatus
from pipewright.exceptions import ConfigurationError, ResumeError, WorkflowNotFoundError
from pipewright.models.domain import (
    AgentExecution,
    Artifact,
    InterruptedRecovery,
    ResumeState,
    RetryContext,
    StageResult,
    Workflow,
    WorkflowResult,
)
from pipewright.providers.base import WorkflowStore, WorkspaceProvisioner
from pipewright.utils.logging_config import workflow_context

log = structlog.get_logger(__name__)

INTERRUPTED_REASON = "Interrupted before completion; superseded by resume"


@dataclass(frozen=True)
class ResumePoint:
    """Everything needed to re-enter the orchestrator loop."""

    workflow: Workflow
    plan: ExecutionPlan
    workspace_path: Path
    start_index: int
    attempt: int
    retry_context: RetryContext | None
    results: list[StageResult]
    interrupted: list[AgentExecution]


def latest_pass(executions: list[AgentExecution]) -> tuple[int, list[AgentExecution]]:
    """Return the highest pass number and that pass's executions in order."""
    if not executions:
        return 0, []
    attempt = max(e.retry_count for e in executions)
    return attempt, [e for e in executions if e.retry_count == attempt]


def completed_by_kind(executions: list[AgentExecution]) -> dict[AgentKind, AgentExecution]:
    """Most recent completed execution per agent kind."""
    completed: dict[AgentKind, AgentExecution] = {}
    for execution in executions:
        if execution.status == AgentStatus.COMPLETED:
            completed[execution.agent_kind] = execution
    return completed


def default_resume_index(plan: ExecutionPlan, completed: dict[AgentKind, AgentExecution]) -> int:
    """Position right after the last stage of the completed plan prefix."""
    for index, agent_kind in enumerate(plan.agent_kinds):
        if agent_kind not in completed:
            return index
    return len(plan)


class ResumeEngine:
    """Validates resume requests and re-enters the orchestrator."""

    def __init__(
        self,
        store: WorkflowStore,
        orchestrator: Orchestrator,
        provisioner: WorkspaceProvisioner | None = None,
        plan_table: PlanTable | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.provisioner = provisioner or orchestrator.provisioner
        self.plan_table = plan_table or orchestrator.plan_table

    async def resume(self, workflow_id: int, stage_index: int | None = None) -> WorkflowResult:
        """Resume a workflow at its interruption point or at ``stage_index``.

        Args:
            workflow_id: Workflow to resume
            stage_index: Optional explicit 0-based plan index to restart at

        Returns:
            The final WorkflowResult, or a ``rejected`` result if the
            workflow cannot be resumed. Rejections leave the store untouched.
        """
        with workflow_context(workflow_id):
            try:
                point = await self.prepare(workflow_id, stage_index)
            except ResumeError as e:
                log.warning("resume_rejected", reason=e.reason, error=e.message)
                return WorkflowResult(
                    success=False,
                    workflow_id=workflow_id,
                    error=e.message,
                    rejected=True,
                )
            except Exception as e:
                log.error("resume_prepare_failed", error=str(e), exc_info=True)
                return WorkflowResult(success=False, workflow_id=workflow_id, error=f"Resume failed: {e}")

            log.info(
                "workflow_resuming",
                start_index=point.start_index,
                plan_length=len(point.plan),
                attempt=point.attempt,
                reused_stages=[str(r.agent_kind) for r in point.results],
            )

            try:
                for execution in point.interrupted:
                    await self.store.record_agent_result(execution.id, error=INTERRUPTED_REASON)
                workflow = await self.store.update_status(workflow_id, WorkflowStatus.PENDING, reopen=True)
            except Exception as e:
                log.error("resume_reset_failed", error=str(e), exc_info=True)
                return WorkflowResult(success=False, workflow_id=workflow_id, error=f"Resume failed: {e}")

            state = RunState(
                workflow=workflow,
                plan=point.plan,
                branch_name=workflow.branch_name or "",
                workspace_path=point.workspace_path,
                attempt=point.attempt,
                retry_context=point.retry_context,
                results=point.results,
            )

        return await self.orchestrator.continue_run(state, point.start_index)

    async def resume_state(self, workflow_id: int) -> ResumeState:
        """Report whether ``workflow_id`` can be resumed and from which stage. Read-only."""
        try:
            point = await self.prepare(workflow_id)
        except ResumeError as e:
            workflow = await self._find(workflow_id)
            return ResumeState(
                workflow_id=workflow_id,
                resumable=False,
                status=workflow.status if workflow is not None else None,
                branch_name=workflow.branch_name if workflow is not None else None,
                reason=e.reason,
                error=e.message,
            )

        return ResumeState(
            workflow_id=workflow_id,
            resumable=True,
            status=point.workflow.status,
            branch_name=point.workflow.branch_name,
            start_index=point.start_index,
            next_stage=point.plan.stage_at(point.start_index) if point.start_index < len(point.plan) else None,
            attempt=point.attempt,
            completed_stages=[result.agent_kind for result in point.results],
        )

    async def resume_interrupted(self) -> InterruptedRecovery:
        """Resume every workflow a dead process left in progress.

        Candidates are non-terminal workflows with an assigned branch. They
        are resumed one at a time; rejected ones are logged and skipped.
        Meant for startup, while no other process drives these workflows.
        """
        recovery = InterruptedRecovery()
        candidates = [w for w in await self.store.list_workflows() if not w.status.is_terminal and w.branch_name]
        log.info("recovering_interrupted_workflows", workflow_ids=[w.id for w in candidates])

        for workflow in candidates:
            result = await self.resume(workflow.id)
            if result.rejected:
                log.warning("interrupted_workflow_skipped", workflow_id=workflow.id, error=result.error)
                recovery.skipped.append(result)
            else:
                recovery.resumed.append(result)

        log.info(
            "interrupted_workflows_recovered",
            resumed=len(recovery.resumed),
            skipped=len(recovery.skipped),
            succeeded=sum(1 for r in recovery.resumed if r.success),
        )
        return recovery

    async def _find(self, workflow_id: int) -> Workflow | None:
        try:
            return await self.store.get_workflow(workflow_id)
        except WorkflowNotFoundError:
            return None

    async def prepare(self, workflow_id: int, stage_index: int | None = None) -> ResumePoint:
        """Validate a resume request and rebuild in-memory state. Read-only.

        Raises:
            ResumeError: If the workflow cannot be resumed.
        """
        try:
            workflow = await self.store.get_workflow(workflow_id)
        except WorkflowNotFoundError as e:
            raise ResumeError(f"Workflow {workflow_id} not found", workflow_id, "not_found") from e

        if workflow.status == WorkflowStatus.COMPLETED:
            raise ResumeError(f"Workflow {workflow_id} is already completed", workflow_id, "already_completed")

        if not workflow.branch_name:
            raise ResumeError(
                f"Workflow {workflow_id} has no branch; restart it as a new workflow",
                workflow_id,
                "no_branch",
            )

        try:
            plan = self.plan_table.build(workflow.id, workflow.workflow_type)
        except ConfigurationError as e:
            raise ResumeError(str(e), workflow_id, "invalid_plan") from e

        if stage_index is not None and not 0 <= stage_index < len(plan):
            raise ResumeError(
                f"Stage index {stage_index} out of range [0, {len(plan) - 1}]",
                workflow_id,
                "invalid_stage_index",
            )

        workspace_path = self.provisioner.workspace_path(workflow.id, workflow.branch_name)
        if not workspace_path.is_dir():
            raise ResumeError(f"Workspace no longer exists: {workspace_path}", workflow_id, "workspace_missing")

        executions = await self.store.list_agent_executions(workflow_id)
        attempt, pass_executions = latest_pass(executions)
        completed = completed_by_kind(pass_executions)
        start_index = stage_index if stage_index is not None else default_resume_index(plan, completed)

        artifacts = await self.store.list_artifacts(workflow_id)
        results = self._rebuild_results(plan, completed, artifacts, start_index)

        return ResumePoint(
            workflow=workflow,
            plan=plan,
            workspace_path=workspace_path,
            start_index=start_index,
            attempt=attempt,
            retry_context=self._retry_context(pass_executions),
            results=results,
            interrupted=[e for e in executions if not e.status.is_terminal],
        )

    def _rebuild_results(
        self,
        plan: ExecutionPlan,
        completed: dict[AgentKind, AgentExecution],
        artifacts: list[Artifact],
        start_index: int,
    ) -> list[StageResult]:
        by_id = {artifact.id: artifact for artifact in artifacts}
        results = []
        for agent_kind in plan.agent_kinds[:start_index]:
            execution = completed.get(agent_kind)
            if execution is None or execution.output is None:
                log.warning("resume_missing_stage_output", agent_kind=str(agent_kind))
                continue
            results.append(
                StageResult(
                    agent_kind=agent_kind,
                    execution_id=execution.id,
                    summary=execution.output.summary,
                    artifacts=[by_id[i] for i in execution.output.artifact_ids if i in by_id],
                )
            )
        return results

    def _retry_context(self, pass_executions: list[AgentExecution]) -> RetryContext | None:
        """Recover the RetryContext the latest pass ran with."""
        for execution in pass_executions:
            raw = execution.input.get("retry_context")
            if raw:
                return RetryContext.model_validate(raw)
        return None
