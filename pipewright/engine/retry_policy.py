"""
Feedback-driven retry policy.

When a security-lint or review stage fails, the orchestrator asks this
module whether to re-plan and, if so, for the :class:`RetryContext` that the
next pass carries. The context records the issue count of the failure, the
count of the previous failure and a trend between them:

- ``first-attempt``: no earlier failure to compare with
- ``improving``: strictly fewer issues than last time
- ``worsening``: the same or more issues than last time

Equal counts are reported as ``worsening`` so that a stalled loop gets
surfaced to a human.
"""

from __future__ import annotations

import structlog

from pipewright.enums import AgentKind, RetryTrend
from pipewright.models.domain import AgentResult, RetryContext, StageIssues

log = structlog.get_logger(__name__)


def count_issues(issues: StageIssues | None) -> int:
    """Total blocking plus non-blocking issues."""
    if issues is None:
        return 0
    return issues.total


def compute_trend(previous_count: int | None, current_count: int) -> RetryTrend:
    """Classify how the issue count moved between two failures."""
    if previous_count is None:
        return RetryTrend.FIRST_ATTEMPT
    if current_count < previous_count:
        return RetryTrend.IMPROVING
    return RetryTrend.WORSENING


class RetryPolicy:
    """Decides retries and builds the context for the next pass."""

    def should_retry(self, agent_kind: AgentKind, attempt: int, max_retries: int) -> bool:
        """Check whether a failure on pass ``attempt`` (0-based) is retried.

        Only security-lint and review failures are retried, and only while
        the workflow-wide budget allows another pass.
        """
        return agent_kind.is_retryable and attempt < max_retries

    def next_context(
        self,
        failed_stage: AgentKind,
        result: AgentResult,
        attempt: int,
        previous: RetryContext | None = None,
    ) -> RetryContext:
        """Build the RetryContext handed to pass ``attempt + 1``.

        Args:
            failed_stage: Stage whose failure triggered the retry
            result: The failing stage's result, with its issue lists
            attempt: 0-based pass number that failed
            previous: Context the failing pass ran with, if any

        Returns:
            RetryContext for the next pass
        """
        current_count = count_issues(result.issues)
        previous_count = previous.current_issue_count if previous is not None else None
        trend = compute_trend(previous_count, current_count)
        feedback = list(result.issues.blocking) if result.issues is not None else []

        context = RetryContext(
            attempt=attempt + 1,
            failed_stage=failed_stage,
            previous_issue_count=previous_count,
            current_issue_count=current_count,
            trend=trend,
            reason=result.summary,
            feedback=feedback,
        )

        log.info(
            "retry_context_created",
            failed_stage=str(failed_stage),
            attempt=context.attempt,
            previous_issue_count=previous_count,
            current_issue_count=current_count,
            trend=str(trend),
        )
        if trend is RetryTrend.WORSENING:
            log.warning(
                "retry_not_converging",
                failed_stage=str(failed_stage),
                previous_issue_count=previous_count,
                current_issue_count=current_count,
            )
        return context
