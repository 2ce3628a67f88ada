"""
Execution plan builder.

Maps a workflow type to the ordered list of agent stages, the feedback
retry budget and the per-stage timeout. The mapping lives in a
:class:`PlanTable` that is built once at startup, is read-only afterwards
and is handed to the orchestrator and the resume engine. Building a plan is
a pure function of the workflow type, so a resumed workflow always sees the
same plan as its original run.

Default Table:
    feature        plan, code, security_lint, test, review, document   (3 retries)
    bugfix         plan, code, security_lint, test, review             (3 retries)
    refactor       plan, code, security_lint, test, review, document   (3 retries)
    documentation  document                                            (2 retries)
    review         review                                              (2 retries)

Example:
    >>> table = PlanTable.default()
    >>> plan = table.build(7, WorkflowType.BUGFIX)
    >>> [str(kind) for kind in plan.agent_kinds]
    ['plan', 'code', 'security_lint', 'test', 'review']
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import TYPE_CHECKING

from pipewright.enums import AgentKind, WorkflowType
from pipewright.exceptions import ConfigurationError

if TYPE_CHECKING:
    from pipewright.config.settings import WorkflowConfig

DEFAULT_STAGE_TIMEOUT_SECONDS = 600.0

_FULL_PIPELINE = (
    AgentKind.PLAN,
    AgentKind.CODE,
    AgentKind.SECURITY_LINT,
    AgentKind.TEST,
    AgentKind.REVIEW,
    AgentKind.DOCUMENT,
)


@dataclass(frozen=True)
class PlanSpec:
    """Static plan entry for one workflow type."""

    stages: tuple[AgentKind, ...]
    max_retries: int


@dataclass(frozen=True)
class ExecutionPlan:
    """Derived, never persisted: what the orchestrator runs for a workflow."""

    workflow_id: int
    workflow_type: WorkflowType
    agent_kinds: tuple[AgentKind, ...]
    max_retries: int
    timeout_seconds: float

    def __len__(self) -> int:
        return len(self.agent_kinds)

    def stage_at(self, index: int) -> AgentKind:
        return self.agent_kinds[index]


DEFAULT_PLAN_SPECS: Mapping[WorkflowType, PlanSpec] = MappingProxyType(
    {
        WorkflowType.FEATURE: PlanSpec(stages=_FULL_PIPELINE, max_retries=3),
        WorkflowType.BUGFIX: PlanSpec(stages=_FULL_PIPELINE[:-1], max_retries=3),
        WorkflowType.REFACTOR: PlanSpec(stages=_FULL_PIPELINE, max_retries=3),
        WorkflowType.DOCUMENTATION: PlanSpec(stages=(AgentKind.DOCUMENT,), max_retries=2),
        WorkflowType.REVIEW: PlanSpec(stages=(AgentKind.REVIEW,), max_retries=2),
    }
)


class PlanTable:
    """Immutable workflow type to plan mapping."""

    def __init__(
        self,
        specs: Mapping[WorkflowType, PlanSpec] = DEFAULT_PLAN_SPECS,
        timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the table.

        Args:
            specs: Plan entry per workflow type
            timeout_seconds: Per-stage timeout copied into every plan

        Raises:
            ConfigurationError: If an entry has no stages, a negative retry
                budget, or the timeout is not positive
        """
        for workflow_type, spec in specs.items():
            if not spec.stages:
                raise ConfigurationError(f"Plan for {workflow_type} has no stages")
            if spec.max_retries < 0:
                raise ConfigurationError(f"Plan for {workflow_type} has a negative retry budget")
        if timeout_seconds <= 0:
            raise ConfigurationError(f"Stage timeout must be positive, got {timeout_seconds}")

        self._specs: Mapping[WorkflowType, PlanSpec] = MappingProxyType(dict(specs))
        self._timeout_seconds = timeout_seconds

    @classmethod
    def default(cls) -> PlanTable:
        return cls()

    @classmethod
    def from_settings(cls, workflow_config: WorkflowConfig) -> PlanTable:
        """Build the table from the ``workflow`` settings section.

        Applies the per-type ``max_retries`` overrides and the stage timeout
        on top of the default table.
        """
        specs = dict(DEFAULT_PLAN_SPECS)
        for workflow_type, budget in workflow_config.max_retries.items():
            specs[workflow_type] = replace(specs[workflow_type], max_retries=budget)
        return cls(specs, timeout_seconds=workflow_config.stage_timeout_seconds)

    @property
    def specs(self) -> Mapping[WorkflowType, PlanSpec]:
        return self._specs

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def build(self, workflow_id: int, workflow_type: WorkflowType | str) -> ExecutionPlan:
        """Build the execution plan for a workflow.

        Args:
            workflow_id: Workflow the plan belongs to
            workflow_type: Workflow type, as an enum member or its value

        Returns:
            ExecutionPlan for the workflow

        Raises:
            ConfigurationError: If the type is unknown or has no table entry
        """
        try:
            resolved = WorkflowType(workflow_type)
        except ValueError as e:
            raise ConfigurationError(f"Unknown workflow type: {workflow_type}") from e

        spec = self._specs.get(resolved)
        if spec is None:
            raise ConfigurationError(f"No execution plan configured for workflow type: {resolved}")

        return ExecutionPlan(
            workflow_id=workflow_id,
            workflow_type=resolved,
            agent_kinds=spec.stages,
            max_retries=spec.max_retries,
            timeout_seconds=self._timeout_seconds,
        )
