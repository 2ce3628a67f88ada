"""Enumerations for workflows, agent stages and their records."""

from enum import Enum


class WorkflowType(str, Enum):
    """Change category requested for a workflow.

    Fixed when the workflow is created; selects the execution plan.
    """

    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCUMENTATION = "documentation"
    REVIEW = "review"

    def __str__(self) -> str:
        return self.value


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow.

    The in-progress values mirror the agent stage currently running.
    ``COMPLETED`` and ``FAILED`` are terminal; cancellation ends in ``FAILED``.
    """

    PENDING = "pending"
    PLANNING = "planning"
    CODING = "coding"
    SECURITY_LINTING = "security_linting"
    TESTING = "testing"
    REVIEWING = "reviewing"
    DOCUMENTING = "documenting"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are expected."""
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


class AgentKind(str, Enum):
    """The fixed set of pipeline stages."""

    PLAN = "plan"
    CODE = "code"
    SECURITY_LINT = "security_lint"
    TEST = "test"
    REVIEW = "review"
    DOCUMENT = "document"

    def __str__(self) -> str:
        return self.value

    def to_status(self) -> WorkflowStatus | None:
        """Map this stage to the workflow status shown while it runs.

        Returns:
            The dedicated WorkflowStatus, or None if the stage has none.
        """
        return _STAGE_STATUS.get(self)

    @property
    def is_retryable(self) -> bool:
        """Check if a failure of this stage can be fixed by re-planning."""
        return self in (AgentKind.SECURITY_LINT, AgentKind.REVIEW)


_STAGE_STATUS: dict[AgentKind, WorkflowStatus] = {
    AgentKind.PLAN: WorkflowStatus.PLANNING,
    AgentKind.CODE: WorkflowStatus.CODING,
    AgentKind.SECURITY_LINT: WorkflowStatus.SECURITY_LINTING,
    AgentKind.TEST: WorkflowStatus.TESTING,
    AgentKind.REVIEW: WorkflowStatus.REVIEWING,
    AgentKind.DOCUMENT: WorkflowStatus.DOCUMENTING,
}


class AgentStatus(str, Enum):
    """Status of a single AgentExecution attempt."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED)


class ArtifactKind(str, Enum):
    """Kinds of output an agent stage can emit."""

    PLAN = "plan"
    CODE = "code"
    TEST = "test"
    REVIEW_REPORT = "review_report"
    DOCUMENTATION = "documentation"
    SECURITY_LINT_REPORT = "security_lint_report"

    def __str__(self) -> str:
        return self.value


class RetryTrend(str, Enum):
    """Direction of issue counts across feedback-driven retries."""

    FIRST_ATTEMPT = "first-attempt"
    IMPROVING = "improving"
    WORSENING = "worsening"

    def __str__(self) -> str:
        return self.value
