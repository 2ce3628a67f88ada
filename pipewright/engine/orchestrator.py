"""
Workflow orchestrator.

Drives one workflow through its execution plan::

    pending -> planning -> coding -> security_linting -> testing
            -> reviewing -> documenting -> completed
                                (any stage) -> failed

For each stage the orchestrator sets the workflow status, builds the agent
input from the results of earlier stages in the same pass, records an agent
execution, runs the agent within the plan's timeout, persists artifacts and
writes stage documentation.

Failures of the security-lint and review stages are fixable by re-planning:
while the retry budget allows, the whole plan restarts from the first stage
with a :class:`RetryContext` carrying the blocking issues. Every other
failure, and a retryable one with the budget spent, fails the workflow.

Cancellation is observed through the store: a workflow whose status turned
``failed`` while a pass is running is treated as cancelled, and the loop
stops before starting its next stage. A stage already running is not
preempted, but its execution is closed with the cancel reason and its
output discarded. A cancel that lands while the workspace is provisioning
or just before completion is honored the same way.

Public entry points (``execute``, ``cancel`` and ``continue_run`` for the
resume engine) never raise; they return a :class:`WorkflowResult`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from pipewright.engine.branching import make_branch_name
from pipewright.engine.plan import ExecutionPlan, PlanTable
from pipewright.engine.retry_policy import RetryPolicy
from pipewright.enums import AgentKind, WorkflowStatus, WorkflowType
from pipewright.exceptions import (
    AgentError,
    AgentTimeoutError,
    ConfigurationError,
    InvalidTransitionError,
    WorkflowNotFoundError,
    WorkspaceError,
)
from pipewright.models.domain import (
    AgentInput,
    AgentResult,
    Artifact,
    RetryContext,
    StageOutput,
    StageResult,
    Workflow,
    WorkflowResult,
)
from pipewright.providers.base import (
    AgentRunner,
    PullRequestPublisher,
    StageDocumentationSink,
    WorkflowStore,
    WorkspaceProvisioner,
)
from pipewright.utils.logging_config import workflow_context

log = structlog.get_logger(__name__)

DEFAULT_PROVISION_TIMEOUT_SECONDS = 900.0
DEFAULT_CANCEL_REASON = "Cancelled by user"

_FEEDBACK_STAGES = (AgentKind.PLAN, AgentKind.CODE)


class PassOutcome(str, Enum):
    """How a single pass over the plan ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StageFailure:
    agent_kind: AgentKind
    summary: str
    result: AgentResult


@dataclass
class RunState:
    """Loop state of one orchestration run.

    ``attempt`` is the workflow-wide pass counter (0 = first pass) and is
    stored on every agent execution as its ``retry_count``.
    """

    workflow: Workflow
    plan: ExecutionPlan
    branch_name: str
    workspace_path: Path
    attempt: int = 0
    retry_context: RetryContext | None = None
    results: list[StageResult] = field(default_factory=list)
    failure: StageFailure | None = None

    @property
    def workflow_id(self) -> int:
        return self.workflow.id

    @property
    def artifacts(self) -> list[Artifact]:
        return [artifact for result in self.results for artifact in result.artifacts]


def generate_report(workflow_type: WorkflowType, plan: ExecutionPlan, results: list[StageResult], attempt: int) -> str:
    """Multi-line report listing every stage summary in execution order."""
    lines = [
        f"Workflow {workflow_type} completed",
        "",
        f"Steps executed: {len(results)}/{len(plan)}",
        f"Successful: {len(results)}",
        "Failed: 0",
        f"Retries used: {attempt}",
        "",
        "Agent Results:",
    ]
    for number, result in enumerate(results, start=1):
        lines.append(f"{number}. {result.agent_kind}: {result.summary}")
    return "\n".join(lines)


def failure_reason(failure: StageFailure) -> str:
    return f"Workflow failed at {failure.agent_kind}: {failure.summary}"


def _default_base_branch(workflow_type: WorkflowType) -> str:
    return "main"


class Orchestrator:
    """Runs workflows through their execution plan."""

    def __init__(
        self,
        store: WorkflowStore,
        runner: AgentRunner,
        provisioner: WorkspaceProvisioner,
        plan_table: PlanTable | None = None,
        docs: StageDocumentationSink | None = None,
        publisher: PullRequestPublisher | None = None,
        base_branch_for: Callable[[WorkflowType], str] = _default_base_branch,
        retry_policy: RetryPolicy | None = None,
        provision_timeout: float = DEFAULT_PROVISION_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Workflow store
            runner: Agent runner
            provisioner: Workspace provisioner
            plan_table: Immutable plan table; the default table if omitted
            docs: Optional stage documentation sink
            publisher: Optional pull request publisher, used on success only
            base_branch_for: Maps a workflow type to its base branch
            retry_policy: Retry decision and trend policy
            provision_timeout: Seconds allowed for provisioning a workspace
        """
        self.store = store
        self.runner = runner
        self.provisioner = provisioner
        self.plan_table = plan_table or PlanTable.default()
        self.docs = docs
        self.publisher = publisher
        self.base_branch_for = base_branch_for
        self.retry_policy = retry_policy or RetryPolicy()
        self.provision_timeout = provision_timeout

    # -------------------------------------------------------------------------
    # Public entry points
    # -------------------------------------------------------------------------

    async def execute(self, workflow_id: int) -> WorkflowResult:
        """Run a ``pending`` workflow from its first stage."""
        with workflow_context(workflow_id):
            try:
                workflow = await self.store.get_workflow(workflow_id)
            except WorkflowNotFoundError as e:
                return WorkflowResult(success=False, workflow_id=workflow_id, error=str(e), rejected=True)

            if workflow.status != WorkflowStatus.PENDING:
                log.warning("execute_rejected", status=str(workflow.status))
                return WorkflowResult(
                    success=False,
                    workflow_id=workflow_id,
                    status=workflow.status,
                    branch_name=workflow.branch_name,
                    error=f"Workflow is {workflow.status}, expected pending",
                    rejected=True,
                )

            try:
                return await self._start(workflow)
            except Exception as e:
                return await self._crash(workflow_id, e, branch_name=workflow.branch_name)

    async def continue_run(self, state: RunState, start_index: int) -> WorkflowResult:
        """Re-enter the stage loop at ``start_index`` with existing state.

        Used by the resume engine; no workspace is provisioned.
        """
        with workflow_context(state.workflow_id):
            try:
                return await self._run(state, start_index)
            except Exception as e:
                return await self._crash(state.workflow_id, e, state=state)

    async def cancel(self, workflow_id: int, reason: str = DEFAULT_CANCEL_REASON) -> WorkflowResult:
        """Cancel a workflow that has not finished.

        The workflow and any pending or running agent execution are marked
        failed with ``reason``. A loop driving the workflow stops before its
        next stage.
        """
        with workflow_context(workflow_id):
            try:
                workflow = await self.store.get_workflow(workflow_id)
                if workflow.status.is_terminal:
                    return WorkflowResult(
                        success=False,
                        workflow_id=workflow_id,
                        status=workflow.status,
                        branch_name=workflow.branch_name,
                        error=f"Workflow already {workflow.status}",
                        rejected=True,
                    )
                workflow = await self.store.cancel_workflow(workflow_id, reason)
            except WorkflowNotFoundError as e:
                return WorkflowResult(success=False, workflow_id=workflow_id, error=str(e), rejected=True)
            except Exception as e:
                log.error("cancel_failed", error=str(e), exc_info=True)
                return WorkflowResult(success=False, workflow_id=workflow_id, error=f"Cancel failed: {e}")

            if workflow.branch_name and self.docs is not None:
                await self.docs.finalize(workflow_id, workflow.branch_name, WorkflowStatus.FAILED, reason)

            return WorkflowResult(
                success=True,
                workflow_id=workflow_id,
                status=workflow.status,
                branch_name=workflow.branch_name,
                summary=reason,
                error=reason,
            )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def _start(self, workflow: Workflow) -> WorkflowResult:
        try:
            plan = self.plan_table.build(workflow.id, workflow.workflow_type)
        except ConfigurationError as e:
            log.error("plan_build_failed", error=str(e))
            return await self._fail(workflow.id, str(e))

        branch_name = make_branch_name(workflow.id, plan.workflow_type, workflow.task_description)
        base_branch = self.base_branch_for(plan.workflow_type)
        log.info(
            "workflow_started",
            workflow_type=str(plan.workflow_type),
            stages=[str(kind) for kind in plan.agent_kinds],
            branch=branch_name,
            base_branch=base_branch,
        )

        try:
            workspace_path = await asyncio.wait_for(
                self.provisioner.provision(workflow.id, branch_name, base_branch),
                timeout=self.provision_timeout,
            )
        except TimeoutError:
            return await self._provision_failed(
                workflow.id, branch_name, f"Workspace provisioning timed out after {self.provision_timeout}s"
            )
        except WorkspaceError as e:
            log.error("workspace_provision_failed", error=str(e), stderr=e.stderr)
            return await self._provision_failed(workflow.id, branch_name, f"Workspace provisioning failed: {e}")

        first_status = plan.stage_at(0).to_status() or workflow.status
        try:
            workflow = await self.store.update_status(workflow.id, first_status, branch_name)
        except InvalidTransitionError:
            # cancelled while the workspace was provisioning
            return await self._cancelled(workflow.id, branch_name, attempts=0)
        if self.docs is not None:
            await self.docs.initialize(workflow, branch_name, list(plan.agent_kinds))

        state = RunState(workflow=workflow, plan=plan, branch_name=branch_name, workspace_path=workspace_path)
        return await self._run(state, 0)

    async def _run(self, state: RunState, start_index: int) -> WorkflowResult:
        """Run passes until the plan completes, fails or is cancelled."""
        if not state.branch_name:
            raise ConfigurationError("Cannot run a workflow without a branch name")
        if not state.workspace_path:
            raise ConfigurationError("Cannot run a workflow without a workspace path")

        index = start_index
        while True:
            outcome = await self._run_pass(state, index)

            if outcome is PassOutcome.COMPLETED:
                return await self._finalize_success(state)

            if outcome is PassOutcome.CANCELLED:
                return await self._cancelled(state.workflow_id, state.branch_name, attempts=state.attempt + 1)

            failure = state.failure
            assert failure is not None
            if self.retry_policy.should_retry(failure.agent_kind, state.attempt, state.plan.max_retries):
                state.retry_context = self.retry_policy.next_context(
                    failure.agent_kind, failure.result, state.attempt, state.retry_context
                )
                state.attempt += 1
                state.results = []
                state.failure = None
                index = 0
                log.info(
                    "workflow_retrying",
                    failed_stage=str(failure.agent_kind),
                    attempt=state.attempt,
                    max_retries=state.plan.max_retries,
                    trend=str(state.retry_context.trend),
                )
                continue

            if failure.agent_kind.is_retryable:
                log.warning("retries_exhausted", failed_stage=str(failure.agent_kind), attempts=state.attempt + 1)
            return await self._fail(
                state.workflow_id, failure_reason(failure), branch_name=state.branch_name, state=state
            )

    async def _run_pass(self, state: RunState, start_index: int) -> PassOutcome:
        plan = state.plan
        for index in range(start_index, len(plan)):
            agent_kind = plan.stage_at(index)

            if await self._is_cancelled(state.workflow_id):
                return PassOutcome.CANCELLED

            status = agent_kind.to_status()
            if status is not None:
                try:
                    await self.store.update_status(state.workflow_id, status)
                except InvalidTransitionError:
                    return PassOutcome.CANCELLED

            agent_input = self._build_input(state, agent_kind)
            execution = await self.store.create_agent_execution(
                state.workflow_id,
                agent_kind,
                agent_input.model_dump(mode="json", exclude={"prior_results"}),
                retry_count=state.attempt,
            )
            try:
                await self.store.start_agent_execution(execution.id)
            except InvalidTransitionError:
                return PassOutcome.CANCELLED
            if await self._close_if_cancelled(state.workflow_id, execution.id):
                return PassOutcome.CANCELLED
            await self._log_stage(state, agent_kind, "start", {"attempt": state.attempt, "execution_id": execution.id})
            log.info("stage_started", agent_kind=str(agent_kind), stage=index, attempt=state.attempt)

            started = time.monotonic()
            result = await self._invoke(agent_kind, agent_input, plan.timeout_seconds)
            duration = round(time.monotonic() - started, 3)

            if await self._close_if_cancelled(state.workflow_id, execution.id):
                return PassOutcome.CANCELLED

            if not result.success:
                summary = result.summary or f"{agent_kind} agent reported failure"
                await self.store.record_agent_result(execution.id, error=summary)
                await self._log_stage(state, agent_kind, "failed", {"error": summary, "duration": duration})
                log.warning("stage_failed", agent_kind=str(agent_kind), stage=index, error=summary)
                state.failure = StageFailure(agent_kind=agent_kind, summary=summary, result=result)
                return PassOutcome.FAILED

            artifacts = [
                await self.store.create_artifact(state.workflow_id, execution.id, draft) for draft in result.artifacts
            ]
            await self.store.record_agent_result(
                execution.id,
                output=StageOutput(
                    summary=result.summary,
                    artifact_ids=[a.id for a in artifacts],
                    metadata=result.metadata,
                ),
            )
            state.results.append(
                StageResult(
                    agent_kind=agent_kind,
                    execution_id=execution.id,
                    summary=result.summary,
                    artifacts=artifacts,
                )
            )
            await self._log_stage(
                state,
                agent_kind,
                "complete",
                {"summary": result.summary, "artifact_ids": [a.id for a in artifacts], "duration": duration},
            )
            if self.docs is not None:
                await self.docs.write_stage_doc(
                    state.workflow_id, state.branch_name, agent_kind, index + 1, result.summary, artifacts, duration
                )
            log.info("stage_completed", agent_kind=str(agent_kind), stage=index, duration=duration)

        return PassOutcome.COMPLETED

    def _build_input(self, state: RunState, agent_kind: AgentKind) -> AgentInput:
        context = state.retry_context
        feedback = list(context.feedback) if context is not None and agent_kind in _FEEDBACK_STAGES else []
        return AgentInput(
            workflow_id=state.workflow_id,
            workflow_type=state.plan.workflow_type,
            agent_kind=agent_kind,
            branch_name=state.branch_name,
            task_description=state.workflow.task_description,
            workspace_path=str(state.workspace_path),
            payload=state.workflow.payload,
            prior_results=list(state.results),
            retry_context=context,
            feedback=feedback,
        )

    async def _invoke(self, agent_kind: AgentKind, agent_input: AgentInput, timeout: float) -> AgentResult:
        """Run one agent, turning timeouts and runner errors into a failed result."""
        try:
            return await self.runner.run(agent_kind, agent_input, timeout)
        except AgentTimeoutError as e:
            log.error("stage_timed_out", agent_kind=str(agent_kind), timeout=timeout)
            return AgentResult(
                success=False,
                summary=f"{agent_kind} timed out after {timeout}s",
                metadata={"timeout": True, "error": str(e)},
            )
        except AgentError as e:
            log.error("stage_agent_error", agent_kind=str(agent_kind), error=str(e))
            return AgentResult(success=False, summary=e.message, metadata={"error": str(e)})
        except Exception as e:
            log.error("stage_runner_crashed", agent_kind=str(agent_kind), error=str(e), exc_info=True)
            return AgentResult(
                success=False,
                summary=f"Agent raised {type(e).__name__}: {e}",
                metadata={"error": str(e)},
            )

    async def _cancel_reason(self, workflow_id: int) -> str | None:
        """Stored reason if the workflow was cancelled under us, else None."""
        workflow = await self.store.get_workflow(workflow_id)
        if workflow.status != WorkflowStatus.FAILED:
            return None
        return workflow.error_message or DEFAULT_CANCEL_REASON

    async def _is_cancelled(self, workflow_id: int) -> bool:
        return await self._cancel_reason(workflow_id) is not None

    async def _close_if_cancelled(self, workflow_id: int, execution_id: int) -> bool:
        """Fail an open execution of a cancelled workflow. No-op on closed rows."""
        reason = await self._cancel_reason(workflow_id)
        if reason is None:
            return False
        await self.store.record_agent_result(execution_id, error=reason)
        return True

    async def _log_stage(self, state: RunState, agent_kind: AgentKind, phase: str, details: dict[str, Any]) -> None:
        if self.docs is not None:
            await self.docs.log_stage(state.workflow_id, state.branch_name, agent_kind, phase, details)

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    async def _finalize_success(self, state: RunState) -> WorkflowResult:
        try:
            await self.store.complete_workflow(state.workflow_id)
        except InvalidTransitionError:
            return await self._cancelled(state.workflow_id, state.branch_name, attempts=state.attempt + 1)
        report = generate_report(state.plan.workflow_type, state.plan, state.results, state.attempt)
        log.info("workflow_succeeded", stages=len(state.results), attempts=state.attempt + 1)

        if self.docs is not None:
            await self.docs.finalize(state.workflow_id, state.branch_name, WorkflowStatus.COMPLETED, report)

        pr_url, publish_error = await self._publish(state, report)
        return WorkflowResult(
            success=True,
            workflow_id=state.workflow_id,
            status=WorkflowStatus.COMPLETED,
            branch_name=state.branch_name,
            summary=report,
            artifacts=state.artifacts,
            pr_url=pr_url,
            error=publish_error,
            attempts=state.attempt + 1,
        )

    async def _publish(self, state: RunState, report: str) -> tuple[str | None, str | None]:
        """Push the branch and open a pull request. Never reverts completion."""
        try:
            pushed = await self.provisioner.push_branch(state.branch_name, state.workspace_path)
        except Exception as e:
            log.error("branch_push_crashed", error=str(e), exc_info=True)
            pushed = False

        if self.publisher is None:
            return None, None if pushed else "Branch push failed"
        if not pushed:
            log.warning("pull_request_skipped", reason="push_failed")
            return None, "Branch push failed; pull request not created"

        try:
            pr = await self.publisher.create_pull_request(
                state.workflow_id, state.branch_name, state.plan.workflow_type, state.workspace_path, report
            )
        except Exception as e:
            log.error("pull_request_crashed", error=str(e), exc_info=True)
            return None, f"Pull request creation failed: {e}"

        if not pr.success:
            return None, pr.error
        return pr.pr_url, None

    async def _cancelled(self, workflow_id: int, branch_name: str, attempts: int) -> WorkflowResult:
        """Result for a run that observed a cancellation. Keeps the stored reason."""
        workflow = await self.store.get_workflow(workflow_id)
        log.info("workflow_cancel_observed", attempts=attempts)
        return WorkflowResult(
            success=False,
            workflow_id=workflow_id,
            status=workflow.status,
            branch_name=branch_name,
            error=workflow.error_message or DEFAULT_CANCEL_REASON,
            attempts=attempts,
        )

    async def _provision_failed(self, workflow_id: int, branch_name: str, reason: str) -> WorkflowResult:
        if await self._is_cancelled(workflow_id):
            # a clone that broke after a cancel keeps the cancel reason
            return await self._cancelled(workflow_id, branch_name, attempts=0)
        return await self._fail(workflow_id, reason)

    async def _fail(
        self,
        workflow_id: int,
        reason: str,
        branch_name: str | None = None,
        state: RunState | None = None,
    ) -> WorkflowResult:
        workflow = await self.store.fail_workflow(workflow_id, reason)
        log.error("workflow_failed", reason=reason)
        if branch_name and self.docs is not None:
            await self.docs.finalize(workflow_id, branch_name, WorkflowStatus.FAILED, reason)
        return WorkflowResult(
            success=False,
            workflow_id=workflow_id,
            status=workflow.status,
            branch_name=branch_name or workflow.branch_name,
            summary=reason,
            artifacts=state.artifacts if state is not None else [],
            error=reason,
            attempts=state.attempt + 1 if state is not None else 0,
        )

    async def _crash(
        self,
        workflow_id: int,
        error: Exception,
        state: RunState | None = None,
        branch_name: str | None = None,
    ) -> WorkflowResult:
        """Record an unexpected error and turn it into a failed result."""
        log.error("workflow_crashed", error=str(error), exc_info=True)
        reason = f"Unexpected error: {error}"
        try:
            await self.store.fail_workflow(workflow_id, reason)
        except Exception as store_error:
            log.error("workflow_fail_record_failed", error=str(store_error))
        return WorkflowResult(
            success=False,
            workflow_id=workflow_id,
            status=WorkflowStatus.FAILED,
            branch_name=state.branch_name if state is not None else branch_name,
            error=reason,
            attempts=state.attempt + 1 if state is not None else 0,
        )
