"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the orchestration engine:
the source repository, workflow budgets, workspace provisioning, external
agent commands, pull request publishing and logging.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pipewright.enums import AgentKind, WorkflowType
from pipewright.exceptions import ConfigurationError


class RepositoryConfig(BaseModel):
    """Source repository the workspaces are cloned from."""

    url: str = Field(..., description="Clone URL or local path of the source repository")
    default_branch: str = Field(default="main", description="Base branch for new workflow branches")
    base_branches: dict[WorkflowType, str] = Field(
        default_factory=dict,
        description="Per workflow type base branch overrides",
    )

    def base_branch_for(self, workflow_type: WorkflowType) -> str:
        """Get the base branch a workflow of this type starts from."""
        return self.base_branches.get(workflow_type, self.default_branch)


class WorkflowConfig(BaseModel):
    """Workflow behavior configuration."""

    state_directory: str = Field(default=".pipewright/state", description="Directory for workflow state files")
    stage_timeout_seconds: float = Field(default=600.0, gt=0, description="Timeout for a single agent stage")
    provision_timeout_seconds: float = Field(
        default=900.0, gt=0, description="Timeout for clone, install and build of a workspace"
    )
    max_retries: dict[WorkflowType, int] = Field(
        default_factory=dict,
        description="Per workflow type override of the feedback retry budget",
    )

    @model_validator(mode="after")
    def validate_retry_budgets(self) -> WorkflowConfig:
        """Reject negative retry budgets."""
        for workflow_type, budget in self.max_retries.items():
            if budget < 0:
                raise ValueError(f"max_retries for {workflow_type} must be >= 0, got {budget}")
        return self


class WorkspaceConfig(BaseModel):
    """Workspace provisioning configuration."""

    root: str = Field(default=".pipewright/workspaces", description="Root directory for workflow directories")
    remote: str = Field(default="origin", description="Git remote to push workflow branches to")
    install_command: list[str] | None = Field(
        default=None, description="Dependency install command run inside a fresh workspace"
    )
    build_command: list[str] | None = Field(
        default=None, description="Optional build command; failures are logged and skipped"
    )
    git_user_name: str = Field(default="pipewright", description="Author name for workspace commits")
    git_user_email: str = Field(default="pipewright@localhost", description="Author email for workspace commits")

    @property
    def root_path(self) -> Path:
        return Path(self.root)


class AgentCommandConfig(BaseModel):
    """External command used to run one agent kind."""

    command: list[str] = Field(..., min_length=1, description="Executable and arguments")
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment variables")


class PullRequestConfig(BaseModel):
    """Pull request publishing configuration.

    Supports credential references through ``${ENV}`` interpolation:
    - api_token: "${GITEA_API_TOKEN}"
    """

    enabled: bool = Field(default=False, description="Publish a pull request on success")
    provider_type: Literal["gitea", "github"] = Field(default="gitea", description="REST API flavour")
    base_url: str | None = Field(default=None, description="API base URL of the git host")
    api_token: SecretStr | None = Field(default=None, description="API token for authentication")
    owner: str | None = Field(default=None, description="Repository owner/organization")
    repo: str | None = Field(default=None, description="Repository name")
    draft: bool = Field(default=False, description="Open pull requests as drafts (GitHub only)")

    @model_validator(mode="after")
    def validate_enabled_config(self) -> PullRequestConfig:
        """Require connection details when publishing is enabled."""
        if self.enabled:
            missing = [
                name
                for name in ("base_url", "api_token", "owner", "repo")
                if getattr(self, name) in (None, "")
            ]
            if missing:
                raise ValueError(f"pull_requests.enabled requires: {', '.join(missing)}")
        return self


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: str = Field(default="INFO", description="Minimum log level")
    json_output: bool = Field(default=True, description="Render JSON lines instead of console output")


class PipewrightSettings(BaseSettings):
    """Main settings object.

    Combines all configuration sections and provides a YAML loader with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="PIPEWRIGHT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    repository: RepositoryConfig
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    agents: dict[AgentKind, AgentCommandConfig] = Field(default_factory=dict)
    pull_requests: PullRequestConfig = Field(default_factory=PullRequestConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.workflow.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> PipewrightSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            PipewrightSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
