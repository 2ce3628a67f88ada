"""Core domain models for the orchestration engine.

Key Models:
    - Workflow: One end-to-end change request
    - AgentExecution: One attempt at one stage
    - Artifact: Output produced by a stage
    - AgentInput / AgentResult: Agent runner boundary values
    - RetryContext: Feedback threaded into a re-planned pass
    - WorkflowResult: Structured outcome of execute/resume/cancel
    - ResumeState / InterruptedRecovery: Resume queries and bulk recovery
"""

from pipewright.models.domain import (
    AgentExecution,
    AgentInput,
    AgentResult,
    Artifact,
    ArtifactDraft,
    InterruptedRecovery,
    PullRequestResult,
    ResumeState,
    RetryContext,
    StageIssues,
    StageOutput,
    StageResult,
    Workflow,
    WorkflowResult,
)

__all__ = [
    "AgentExecution",
    "AgentInput",
    "AgentResult",
    "Artifact",
    "ArtifactDraft",
    "InterruptedRecovery",
    "PullRequestResult",
    "ResumeState",
    "RetryContext",
    "StageIssues",
    "StageOutput",
    "StageResult",
    "Workflow",
    "WorkflowResult",
]
