"""
Domain models for the orchestration engine.

This module holds the persisted records (Workflow, AgentExecution, Artifact)
and the values that cross the agent runner boundary (AgentInput, AgentResult).
All models are Pydantic so that they round-trip through the JSON state files
and through external agent processes without hand-written serializers.

Record Lifecycle:
    - Workflow: created by the caller, mutated only by the orchestrator and
      the resume engine, never deleted.
    - AgentExecution: created right before an agent runs, reaches a terminal
      status exactly once and is never modified afterwards.
    - Artifact: immutable once created; looked up by kind, newest first.

Example:
    Building the input for a code stage::

        agent_input = AgentInput(
            workflow_id=7,
            workflow_type=WorkflowType.FEATURE,
            agent_kind=AgentKind.CODE,
            branch_name="workflow/feature-7-add-user-login",
            task_description="Add user login form",
            workspace_path="/srv/pipewright/workflows/workflow-7-.../repo",
            prior_results=[plan_result],
        )
        plan = agent_input.latest_artifact(ArtifactKind.PLAN)
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pipewright.enums import (
    AgentKind,
    AgentStatus,
    ArtifactKind,
    RetryTrend,
    WorkflowStatus,
    WorkflowType,
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class Workflow(BaseModel):
    """One end-to-end request to produce a code change.

    The ``payload`` is the free-form request: a task description plus
    optional source-control event metadata (repository, issue, pull request).
    """

    id: int
    workflow_type: WorkflowType
    status: WorkflowStatus = WorkflowStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    branch_name: str | None = None
    """Assigned once by the orchestrator and immutable afterwards."""

    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def task_description(self) -> str:
        """Extract the task description from the request payload.

        Looks at ``task_description``, then ``custom_data.task_description``,
        then falls back to the title of an attached issue or pull request.
        """
        payload = self.payload or {}
        description = payload.get("task_description")
        if not description:
            description = (payload.get("custom_data") or {}).get("task_description")
        if not description:
            for key in ("issue", "pull_request"):
                source = payload.get(key) or {}
                if source.get("title"):
                    description = source["title"]
                    break
        return description or ""


class StageOutput(BaseModel):
    """Output recorded on a completed agent execution."""

    summary: str
    artifact_ids: list[int] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AgentExecution(BaseModel):
    """Durable record of one attempt at one stage."""

    id: int
    workflow_id: int
    agent_kind: AgentKind
    status: AgentStatus = AgentStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    output: StageOutput | None = None
    error_message: str | None = None
    retry_count: int = 0
    """Workflow-wide pass number this attempt belongs to (0 = first pass)."""

    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Artifact(BaseModel):
    """A piece of output produced by a stage. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    id: int
    workflow_id: int
    agent_execution_id: int | None = None
    kind: ArtifactKind
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ArtifactDraft(BaseModel):
    """An artifact emitted by an agent that has not been persisted yet."""

    kind: ArtifactKind
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class StageIssues(BaseModel):
    """Structured issue list reported by a failing stage."""

    blocking: list[dict[str, Any]] = Field(default_factory=list)
    non_blocking: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.blocking) + len(self.non_blocking)


class RetryContext(BaseModel):
    """Feedback and trend data threaded into a re-planned pass.

    Produced by the retry policy after a retryable failure and carried as
    loop state by the orchestrator into the next pass.
    """

    model_config = ConfigDict(frozen=True)

    attempt: int
    """Pass number the context is handed to (1 = first retry)."""

    failed_stage: AgentKind
    previous_issue_count: int | None = None
    current_issue_count: int
    trend: RetryTrend
    reason: str = ""
    feedback: list[dict[str, Any]] = Field(default_factory=list)
    """Blocking issues the plan and code stages must address."""


class StageResult(BaseModel):
    """In-memory result of a completed stage, visible to later stages."""

    agent_kind: AgentKind
    execution_id: int | None = None
    summary: str
    artifacts: list[Artifact] = Field(default_factory=list)


class AgentInput(BaseModel):
    """Everything an agent receives for one stage attempt."""

    workflow_id: int
    workflow_type: WorkflowType
    agent_kind: AgentKind
    branch_name: str
    task_description: str
    workspace_path: str
    payload: dict[str, Any] = Field(default_factory=dict)
    prior_results: list[StageResult] = Field(default_factory=list)
    retry_context: RetryContext | None = None
    feedback: list[dict[str, Any]] = Field(default_factory=list)

    def latest_artifact(self, kind: ArtifactKind) -> Artifact | None:
        """Return the most recent artifact of ``kind`` from this pass."""
        for result in reversed(self.prior_results):
            for artifact in reversed(result.artifacts):
                if artifact.kind == kind:
                    return artifact
        return None


class AgentResult(BaseModel):
    """Structured result returned by the agent runner."""

    success: bool
    summary: str = ""
    artifacts: list[ArtifactDraft] = Field(default_factory=list)
    issues: StageIssues | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class WorkflowResult(BaseModel):
    """Outcome returned by every public orchestration entry point."""

    success: bool
    workflow_id: int
    status: WorkflowStatus | None = None
    branch_name: str | None = None
    summary: str = ""
    artifacts: list[Artifact] = Field(default_factory=list)
    pr_url: str | None = None
    error: str | None = None
    rejected: bool = False
    """True when the request was refused without touching workflow state."""

    attempts: int = 0
    """Number of plan passes the workflow has run, counting earlier runs on resume."""


class ResumeState(BaseModel):
    """Whether a workflow can be resumed, and where it would continue."""

    workflow_id: int
    resumable: bool
    status: WorkflowStatus | None = None
    branch_name: str | None = None
    reason: str | None = None
    """Rejection reason code when not resumable (e.g. ``"no_branch"``)."""

    error: str | None = None
    start_index: int | None = None
    next_stage: AgentKind | None = None
    """Stage the resumed run starts with; None if only finalization is left."""

    attempt: int | None = None
    completed_stages: list[AgentKind] = Field(default_factory=list)


class InterruptedRecovery(BaseModel):
    """Outcome of resuming every interrupted workflow."""

    resumed: list[WorkflowResult] = Field(default_factory=list)
    skipped: list[WorkflowResult] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.resumed)


class PullRequestResult(BaseModel):
    """Outcome of publishing a pull request for a completed workflow."""

    success: bool
    pr_url: str | None = None
    number: int | None = None
    error: str | None = None
