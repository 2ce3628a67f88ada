"""Configuration system for the orchestration engine.

Key Components:
    - PipewrightSettings: Main configuration container with YAML loading support
    - RepositoryConfig: Source repository and base branches
    - WorkflowConfig: Timeouts, retry budgets and state directory
    - WorkspaceConfig: Workspace provisioning
    - PullRequestConfig: Pull request publishing

Example:
    >>> from pipewright.config import PipewrightSettings
    >>> settings = PipewrightSettings.from_yaml("pipewright.yaml")
    >>> settings.repository.base_branch_for(WorkflowType.FEATURE)
    'main'
"""

from pipewright.config.settings import (
    AgentCommandConfig,
    LoggingConfig,
    PipewrightSettings,
    PullRequestConfig,
    RepositoryConfig,
    WorkflowConfig,
    WorkspaceConfig,
)

__all__ = [
    "AgentCommandConfig",
    "LoggingConfig",
    "PipewrightSettings",
    "PullRequestConfig",
    "RepositoryConfig",
    "WorkflowConfig",
    "WorkspaceConfig",
]
