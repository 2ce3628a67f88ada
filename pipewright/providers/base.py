"""
Abstract base classes for the orchestration engine's collaborators.

This module defines the boundary contracts the orchestrator and the resume
engine depend on: the workflow store, the agent runner, the workspace
provisioner, the pull request publisher and the stage documentation sink.
Concrete implementations live next to this module (workspace, stage docs,
pull requests), in :mod:`pipewright.engine.state_manager` (store) and in
:mod:`pipewright.agents` (runner).
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pipewright.enums import AgentKind, ArtifactKind, WorkflowStatus, WorkflowType
from pipewright.models.domain import (
    AgentExecution,
    AgentInput,
    AgentResult,
    Artifact,
    ArtifactDraft,
    PullRequestResult,
    StageOutput,
    Workflow,
)


class WorkflowStore(ABC):
    """Durable record of workflows, agent executions and artifacts.

    Every method is a single atomic read-modify-write of one workflow's
    record. Implementations must keep the following invariants:

    - A branch name, once assigned, is never replaced by a different one.
    - Agent executions are returned in creation order.
    - At most one agent execution per workflow is ``running``.
    - An agent execution reaches a terminal status exactly once.
    - Artifacts are append-only and never modified.
    """

    @abstractmethod
    async def create_workflow(self, workflow_type: WorkflowType, payload: dict[str, Any]) -> Workflow:
        """Create a new ``pending`` workflow.

        Args:
            workflow_type: Change category; fixed for the workflow's lifetime.
            payload: Free-form request (task description plus event metadata).

        Returns:
            The stored Workflow with its assigned id.
        """
        pass

    @abstractmethod
    async def get_workflow(self, workflow_id: int) -> Workflow:
        """Get a workflow by id.

        Raises:
            WorkflowNotFoundError: If no such workflow exists.
        """
        pass

    @abstractmethod
    async def update_status(
        self,
        workflow_id: int,
        status: WorkflowStatus,
        branch_name: str | None = None,
        reopen: bool = False,
    ) -> Workflow:
        """Set the workflow status and, optionally, its branch name.

        Args:
            workflow_id: Workflow to update.
            status: New status.
            branch_name: Branch to assign; must match any assigned branch.
            reopen: Allow a ``failed`` workflow to go back to an in-progress
                status. Only the resume engine reopens workflows.

        Raises:
            WorkflowNotFoundError: If no such workflow exists.
            BranchReassignmentError: If a different branch is already assigned.
            InvalidTransitionError: If a finished workflow would be moved back
                to an in-progress status without ``reopen``.
        """
        pass

    @abstractmethod
    async def complete_workflow(self, workflow_id: int) -> Workflow:
        """Mark the workflow ``completed`` and stamp its completion time."""
        pass

    @abstractmethod
    async def fail_workflow(self, workflow_id: int, reason: str) -> Workflow:
        """Mark the workflow ``failed`` with a human-readable reason."""
        pass

    @abstractmethod
    async def cancel_workflow(self, workflow_id: int, reason: str) -> Workflow:
        """Fail the workflow and every pending or running agent execution.

        Args:
            workflow_id: Workflow to cancel.
            reason: Cancellation reason recorded on the workflow and on each
                interrupted agent execution.
        """
        pass

    @abstractmethod
    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        """List workflows ordered by id, optionally filtered by status."""
        pass

    @abstractmethod
    async def list_agent_executions(self, workflow_id: int) -> list[AgentExecution]:
        """List a workflow's agent executions in creation order."""
        pass

    @abstractmethod
    async def create_agent_execution(
        self,
        workflow_id: int,
        agent_kind: AgentKind,
        agent_input: dict[str, Any],
        retry_count: int = 0,
    ) -> AgentExecution:
        """Record a new ``pending`` agent execution right before it runs."""
        pass

    @abstractmethod
    async def start_agent_execution(self, execution_id: int) -> AgentExecution:
        """Move an agent execution to ``running``.

        Raises:
            ConcurrentExecutionError: If another execution of the same
                workflow is already running.
        """
        pass

    @abstractmethod
    async def record_agent_result(
        self,
        execution_id: int,
        output: StageOutput | None = None,
        error: str | None = None,
    ) -> AgentExecution:
        """Record the terminal outcome of an agent execution.

        Exactly one of ``output`` (completed) or ``error`` (failed) is
        expected. Executions that are already terminal are left untouched.
        """
        pass

    @abstractmethod
    async def create_artifact(
        self,
        workflow_id: int,
        agent_execution_id: int | None,
        draft: ArtifactDraft,
    ) -> Artifact:
        """Persist an artifact emitted by an agent."""
        pass

    @abstractmethod
    async def list_artifacts(self, workflow_id: int, kind: ArtifactKind | None = None) -> list[Artifact]:
        """List a workflow's artifacts oldest first, optionally by kind."""
        pass

    @abstractmethod
    async def get_workflow_status(self, workflow_id: int) -> dict[str, Any]:
        """Get a workflow together with its executions and artifacts."""
        pass


class AgentRunner(ABC):
    """Runs one agent stage against a workspace."""

    @abstractmethod
    async def run(self, agent_kind: AgentKind, agent_input: AgentInput, timeout: float) -> AgentResult:
        """Execute the agent for ``agent_kind``.

        A logical failure is reported as ``AgentResult(success=False)``.

        Args:
            agent_kind: Stage to run.
            agent_input: Everything the agent needs for this attempt.
            timeout: Seconds the agent may run.

        Returns:
            Structured agent result.

        Raises:
            AgentTimeoutError: If the agent did not finish within ``timeout``.
            AgentError: If the agent could not be run at all.
        """
        pass


class WorkspaceProvisioner(ABC):
    """Materializes and publishes per-workflow checkouts."""

    @abstractmethod
    def workspace_path(self, workflow_id: int, branch_name: str) -> Path:
        """Get the workspace path for a workflow without touching disk."""
        pass

    @abstractmethod
    async def provision(self, workflow_id: int, branch_name: str, base_branch: str) -> Path:
        """Clone the repository, check out ``branch_name`` from ``base_branch``
        and install dependencies.

        Raises:
            WorkspaceError: If the workspace cannot be prepared.
        """
        pass

    @abstractmethod
    async def create_branch(self, branch_name: str, workspace_path: Path) -> None:
        """Create and check out ``branch_name`` inside the workspace.

        Raises:
            WorkspaceError: If git refuses the branch.
        """
        pass

    @abstractmethod
    async def push_branch(self, branch_name: str, workspace_path: Path) -> bool:
        """Commit outstanding changes and push the branch.

        Returns:
            True if the push succeeded. Failures are logged, never raised.
        """
        pass


class PullRequestPublisher(ABC):
    """Opens a pull request once a workflow has completed."""

    @abstractmethod
    async def create_pull_request(
        self,
        workflow_id: int,
        branch_name: str,
        workflow_type: WorkflowType,
        workspace_path: Path,
        summary: str,
    ) -> PullRequestResult:
        """Open a pull request for the workflow branch.

        Returns:
            PullRequestResult; failures are reported in the result rather
            than raised.
        """
        pass


class StageDocumentationSink(ABC):
    """Append-only audit trail of a workflow run.

    Every method is best effort: implementations log and swallow their own
    I/O errors so that documentation never aborts orchestration.
    """

    @abstractmethod
    async def initialize(self, workflow: Workflow, branch_name: str, stages: list[AgentKind]) -> None:
        """Create the workflow directory and its README."""
        pass

    @abstractmethod
    async def log_stage(
        self,
        workflow_id: int,
        branch_name: str,
        agent_kind: AgentKind,
        phase: str,
        details: dict[str, Any],
    ) -> None:
        """Record a stage event (``start``, ``complete`` or ``failed``)."""
        pass

    @abstractmethod
    async def write_stage_doc(
        self,
        workflow_id: int,
        branch_name: str,
        agent_kind: AgentKind,
        stage_number: int,
        summary: str,
        artifacts: list[Artifact],
        duration_seconds: float,
    ) -> None:
        """Write the markdown document for a completed stage."""
        pass

    @abstractmethod
    async def finalize(self, workflow_id: int, branch_name: str, status: WorkflowStatus, summary: str) -> None:
        """Update the README with the final status and summary."""
        pass
