"""Agent runner and the external command agent."""

from pipewright.agents.external import ExternalCommandAgent, build_external_runner
from pipewright.agents.runner import Agent, AgentDispatcher

__all__ = ["Agent", "AgentDispatcher", "ExternalCommandAgent", "build_external_runner"]
