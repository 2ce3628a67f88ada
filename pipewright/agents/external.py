"""Agent that runs an external command per stage.

The command receives the :class:`AgentInput` as JSON on stdin, runs inside
the workflow's workspace, and must print an :class:`AgentResult` JSON
document on stdout. A non-zero exit code is a failed stage.
"""

from __future__ import annotations

import os

import structlog
from pydantic import ValidationError

from pipewright.agents.runner import Agent, AgentDispatcher
from pipewright.config.settings import AgentCommandConfig, PipewrightSettings
from pipewright.enums import AgentKind
from pipewright.exceptions import AgentError
from pipewright.models.domain import AgentInput, AgentResult
from pipewright.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

MAX_ERROR_OUTPUT = 2000


class ExternalCommandAgent(Agent):
    """Runs one agent kind as a subprocess speaking JSON over stdio."""

    def __init__(self, agent_kind: AgentKind, config: AgentCommandConfig) -> None:
        self.agent_kind = agent_kind
        self.config = config

    async def execute(self, agent_input: AgentInput) -> AgentResult:
        log.debug(
            "running_external_agent",
            agent_kind=str(self.agent_kind),
            command=self.config.command[0],
            cwd=agent_input.workspace_path,
        )

        try:
            stdout, stderr, code = await run_command(
                *self.config.command,
                cwd=agent_input.workspace_path,
                check=False,
                input_data=agent_input.model_dump_json(),
                env={**os.environ, **self.config.env},
            )
        except FileNotFoundError as e:
            raise AgentError(
                f"Agent command not found: {self.config.command[0]}", agent_kind=str(self.agent_kind)
            ) from e

        if code != 0:
            log.warning("external_agent_exit_nonzero", agent_kind=str(self.agent_kind), code=code)
            message = (stderr or stdout).strip()[-MAX_ERROR_OUTPUT:]
            return AgentResult(
                success=False,
                summary=message or f"Agent exited with code {code}",
                metadata={"exit_code": code},
            )

        return self._parse_result(stdout)

    def _parse_result(self, stdout: str) -> AgentResult:
        """Parse the agent's stdout, falling back to its last line.

        Agents that print progress before their result still work as long as
        the result document is the final line.
        """
        candidates = [stdout.strip()]
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        if lines:
            candidates.append(lines[-1])

        for candidate in candidates:
            try:
                return AgentResult.model_validate_json(candidate)
            except ValidationError:
                continue

        raise AgentError("Agent did not print a valid result document", agent_kind=str(self.agent_kind))


def build_external_runner(settings: PipewrightSettings) -> AgentDispatcher:
    """Build a dispatcher with an external command per configured agent kind."""
    handlers = {
        kind: ExternalCommandAgent(kind, command_config)
        for kind, command_config in settings.agents.items()
    }
    missing = [str(kind) for kind in AgentKind if kind not in handlers]
    if missing:
        log.warning("agents_not_configured", agent_kinds=missing)
    return AgentDispatcher(handlers)
