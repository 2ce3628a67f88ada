"""
Agent runner backed by a closed dispatch table.

The set of agent kinds is fixed, so the runner maps each :class:`AgentKind`
to exactly one :class:`Agent` handler and refuses anything else. The runner
owns the stage timeout: a handler that does not finish in time is cancelled
and reported as :class:`AgentTimeoutError`, distinct from a handler that
returns ``success=False``.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from types import MappingProxyType

import structlog

from pipewright.enums import AgentKind
from pipewright.exceptions import AgentError, AgentTimeoutError, UnknownAgentError
from pipewright.models.domain import AgentInput, AgentResult
from pipewright.providers.base import AgentRunner

log = structlog.get_logger(__name__)


class Agent(ABC):
    """Logic for one agent kind."""

    @abstractmethod
    async def execute(self, agent_input: AgentInput) -> AgentResult:
        """Run the agent against the workspace named in ``agent_input``."""
        pass


class AgentDispatcher(AgentRunner):
    """Runs agents through a read-only ``AgentKind -> Agent`` table.

    Example:
        >>> runner = AgentDispatcher({AgentKind.PLAN: planner, AgentKind.CODE: coder})
        >>> result = await runner.run(AgentKind.PLAN, agent_input, timeout=600)
    """

    def __init__(self, handlers: Mapping[AgentKind, Agent]) -> None:
        self._handlers: Mapping[AgentKind, Agent] = MappingProxyType(dict(handlers))

    async def run(self, agent_kind: AgentKind, agent_input: AgentInput, timeout: float) -> AgentResult:
        handler = self._handlers.get(agent_kind)
        if handler is None:
            raise UnknownAgentError("No agent registered", agent_kind=str(agent_kind))

        log.info("agent_started", agent_kind=str(agent_kind), timeout=timeout)
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(handler.execute(agent_input), timeout=timeout)
        except TimeoutError as e:
            log.error("agent_timed_out", agent_kind=str(agent_kind), timeout=timeout)
            raise AgentTimeoutError(
                "Agent timed out", timeout_seconds=timeout, agent_kind=str(agent_kind)
            ) from e
        except AgentError:
            raise
        except Exception as e:
            log.error("agent_crashed", agent_kind=str(agent_kind), error=str(e), exc_info=True)
            raise AgentError(f"Agent raised {type(e).__name__}: {e}", agent_kind=str(agent_kind)) from e

        log.info(
            "agent_finished",
            agent_kind=str(agent_kind),
            success=result.success,
            duration=round(time.monotonic() - started, 3),
        )
        return result
