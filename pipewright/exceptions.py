"""Custom exception hierarchy for the pipewright orchestration engine.

Exception Hierarchy:
    PipewrightError (base)
    ├── ConfigurationError
    ├── WorkflowError
    │   ├── WorkflowNotFoundError
    │   ├── BranchReassignmentError
    │   ├── ConcurrentExecutionError
    │   └── InvalidTransitionError
    ├── ResumeError
    ├── WorkspaceError
    ├── PublishError
    └── AgentError
        ├── AgentTimeoutError
        └── UnknownAgentError

Errors raised below the orchestrator are captured into the workflow and
agent execution records before the public entry points turn them into a
failed ``WorkflowResult``; nothing in this hierarchy is expected to escape
``execute()``, ``resume()`` or ``cancel()``.

Example Usage:
    >>> from pipewright.exceptions import ConfigurationError
    >>> try:
    ...     plan = table.build(workflow.id, workflow.workflow_type)
    ... except KeyError as e:
    ...     raise ConfigurationError(f"No plan for {workflow.workflow_type}") from e
"""


class PipewrightError(Exception):
    """Base exception for all pipewright errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(PipewrightError):
    """Configuration-related errors.

    Fatal for the workflow they occur in; never retried.

    Examples:
        - Unknown workflow type or a plan table without an entry for it
        - Invalid YAML settings file
        - Missing branch name or workspace path at orchestration time
    """

    pass


class WorkflowError(PipewrightError):
    """Workflow store errors and invariant violations.

    Attributes:
        workflow_id: Workflow the error relates to, if known
    """

    def __init__(self, message: str, workflow_id: int | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            workflow_id: Workflow the error relates to
        """
        self.workflow_id = workflow_id
        full_message = message
        if workflow_id is not None:
            full_message = f"{message} (workflow: {workflow_id})"
        super().__init__(full_message)
        self.message = message


class WorkflowNotFoundError(WorkflowError):
    """The requested workflow does not exist in the store."""

    def __init__(self, workflow_id: int) -> None:
        super().__init__("Workflow not found", workflow_id=workflow_id)


class BranchReassignmentError(WorkflowError):
    """An assigned branch name would be replaced by a different one."""

    pass


class ConcurrentExecutionError(WorkflowError):
    """A second agent execution would be running for the same workflow."""

    pass


class InvalidTransitionError(WorkflowError):
    """A finished workflow or agent execution would be reopened, or a failed workflow completed."""

    pass


class ResumeError(PipewrightError):
    """A resume request was rejected before any state was modified.

    Attributes:
        workflow_id: Workflow the caller tried to resume
        reason: Short machine-friendly reason code
    """

    def __init__(self, message: str, workflow_id: int, reason: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
            workflow_id: Workflow the caller tried to resume
            reason: Reason code (e.g. ``"no_branch"``, ``"invalid_stage_index"``)
        """
        self.workflow_id = workflow_id
        self.reason = reason
        super().__init__(message)


class WorkspaceError(PipewrightError):
    """Workspace provisioning or git operation failed.

    Provisioning failures abort the workflow; branch push failures are
    logged and otherwise ignored.

    Attributes:
        stderr: Captured stderr of the failing git or install command
    """

    def __init__(self, message: str, stderr: str | None = None) -> None:
        self.stderr = stderr
        super().__init__(message)


class PublishError(PipewrightError):
    """Pull request publishing failed.

    Attributes:
        status_code: HTTP status code returned by the provider, if any
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"
        super().__init__(full_message)
        self.message = message


# =============================================================================
# Agent Errors
# =============================================================================


class AgentError(PipewrightError):
    """Base exception for agent runner errors.

    The orchestrator treats any AgentError as a stage failure of the agent
    kind that raised it.

    Attributes:
        agent_kind: Agent kind that failed (e.g., "plan", "review")
    """

    def __init__(self, message: str, agent_kind: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            agent_kind: Agent kind that failed
        """
        self.agent_kind = agent_kind
        full_message = message
        if agent_kind:
            full_message = f"{message} (agent: {agent_kind})"
        super().__init__(full_message)
        self.message = message


class AgentTimeoutError(AgentError):
    """Agent did not finish within the stage timeout.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        agent_kind: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds and "timeout" not in message.lower():
            message = f"{message} (timeout: {timeout_seconds}s)"
        super().__init__(message, agent_kind=agent_kind)


class UnknownAgentError(AgentError):
    """No handler is registered for the requested agent kind."""

    pass
