"""Pull request publisher using direct REST API calls.

Supports Gitea (``/api/v1``, ``token`` auth) and GitHub (``Bearer`` auth).
Both expose ``POST /repos/{owner}/{repo}/pulls`` with the same core fields,
so one client covers both. An open pull request for the same head branch is
reused instead of opening a duplicate.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import structlog

from pipewright.config.settings import PipewrightSettings, PullRequestConfig
from pipewright.enums import WorkflowType
from pipewright.exceptions import PublishError
from pipewright.models.domain import PullRequestResult
from pipewright.providers.base import PullRequestPublisher
from pipewright.utils.retry import async_retry, is_transient_http_error

log = structlog.get_logger(__name__)


class RestPullRequestPublisher(PullRequestPublisher):
    """Gitea/GitHub pull request publisher."""

    def __init__(
        self,
        base_url: str,
        token: str,
        owner: str,
        repo: str,
        base_branch_for: Callable[[WorkflowType], str],
        provider_type: str = "gitea",
        draft: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the publisher.

        Args:
            base_url: Host base URL (e.g., http://gitea.example.com or https://api.github.com)
            token: API token
            owner: Repository owner
            repo: Repository name
            base_branch_for: Maps a workflow type to the pull request base branch
            provider_type: ``"gitea"`` or ``"github"``
            draft: Open GitHub pull requests as drafts
            transport: Optional httpx transport (used by tests)
        """
        self.provider_type = provider_type
        self.base_url = base_url.rstrip("/")
        self.api_base = f"{self.base_url}/api/v1" if provider_type == "gitea" else self.base_url
        self.token = token.strip()
        self.owner = owner
        self.repo = repo
        self.base_branch_for = base_branch_for
        self.draft = draft
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: PipewrightSettings) -> RestPullRequestPublisher | None:
        """Build a publisher, or None when publishing is disabled."""
        config: PullRequestConfig = settings.pull_requests
        if not config.enabled:
            return None
        return cls(
            base_url=config.base_url or "",
            token=config.api_token.get_secret_value() if config.api_token else "",
            owner=config.owner or "",
            repo=config.repo or "",
            base_branch_for=settings.repository.base_branch_for,
            provider_type=config.provider_type,
            draft=config.draft,
        )

    def _headers(self) -> dict[str, str]:
        if self.provider_type == "github":
            return {
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
            }
        return {
            "Authorization": f"token {self.token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers=self._headers(),
            timeout=30.0,
            transport=self._transport,
        )

    async def create_pull_request(
        self,
        workflow_id: int,
        branch_name: str,
        workflow_type: WorkflowType,
        workspace_path: Path,
        summary: str,
    ) -> PullRequestResult:
        base = self.base_branch_for(workflow_type)
        title = f"[{workflow_type}] Workflow {workflow_id}: {branch_name.rsplit('/', 1)[-1]}"
        body = f"{summary}\n\n---\nBranch: `{branch_name}`\nWorkflow: {workflow_id}\n"

        log.info("create_pull_request", workflow_id=workflow_id, head=branch_name, base=base)
        try:
            data = await self._open_pull_request(title, body, branch_name, base)
        except httpx.HTTPStatusError as e:
            error = PublishError("Pull request creation failed", status_code=e.response.status_code)
            log.error("pull_request_failed", workflow_id=workflow_id, error=str(error))
            return PullRequestResult(success=False, error=str(error))
        except httpx.HTTPError as e:
            log.error("pull_request_failed", workflow_id=workflow_id, error=str(e))
            return PullRequestResult(success=False, error=str(PublishError(f"Pull request creation failed: {e}")))

        log.info("pull_request_opened", workflow_id=workflow_id, number=data.get("number"))
        return PullRequestResult(success=True, pr_url=data.get("html_url"), number=data.get("number"))

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(httpx.HTTPError,), retry_if=is_transient_http_error)
    async def _open_pull_request(self, title: str, body: str, head: str, base: str) -> dict[str, Any]:
        pulls_path = f"/repos/{self.owner}/{self.repo}/pulls"
        async with self._client() as client:
            list_response = await client.get(pulls_path, params={"state": "open"})
            list_response.raise_for_status()
            for pr in list_response.json():
                if pr["head"]["ref"] == head and pr["base"]["ref"] == base:
                    log.info("pull_request_exists", number=pr["number"], head=head)
                    update_response = await client.patch(
                        f"{pulls_path}/{pr['number']}", json={"title": title, "body": body}
                    )
                    update_response.raise_for_status()
                    return dict(update_response.json())

            payload: dict[str, Any] = {"title": title, "body": body, "head": head, "base": base}
            if self.provider_type == "github" and self.draft:
                payload["draft"] = True

            response = await client.post(pulls_path, json=payload)
            response.raise_for_status()
            return dict(response.json())
