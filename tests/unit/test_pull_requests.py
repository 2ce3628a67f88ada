"""Tests for the REST pull request publisher."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from pydantic import SecretStr

from pipewright.config.settings import PipewrightSettings, PullRequestConfig, RepositoryConfig
from pipewright.enums import WorkflowType
from pipewright.providers.pull_requests import RestPullRequestPublisher

BRANCH = "workflow/feature-7-add-login"


def make_publisher(handler, provider_type="gitea", draft=False):
    return RestPullRequestPublisher(
        base_url="https://git.example.com/",
        token="secret-token\n",
        owner="acme",
        repo="app",
        base_branch_for=lambda t: "develop" if t == WorkflowType.FEATURE else "main",
        provider_type=provider_type,
        draft=draft,
        transport=httpx.MockTransport(handler),
    )


class Recorder:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self, open_pulls=None, create_status=201):
        self.requests: list[httpx.Request] = []
        self.open_pulls = open_pulls or []
        self.create_status = create_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=self.open_pulls)
        if request.method == "PATCH":
            number = int(request.url.path.rsplit("/", 1)[-1])
            url = f"https://git.example.com/acme/app/pulls/{number}"
            return httpx.Response(200, json={"number": number, "html_url": url})
        if self.create_status >= 400:
            return httpx.Response(self.create_status, json={"message": "boom"})
        return httpx.Response(201, json={"number": 12, "html_url": "https://git.example.com/acme/app/pulls/12"})


class TestCreatePullRequest:
    """Test opening pull requests."""

    @pytest.mark.asyncio
    async def test_gitea_create(self):
        """Test a new pull request is opened against the type's base branch."""
        recorder = Recorder()
        publisher = make_publisher(recorder)

        result = await publisher.create_pull_request(7, BRANCH, WorkflowType.FEATURE, Path("/tmp/ws"), "Report")

        assert result.success
        assert result.number == 12
        assert result.pr_url == "https://git.example.com/acme/app/pulls/12"

        get, post = recorder.requests
        assert get.url.path == "/api/v1/repos/acme/app/pulls"
        assert get.headers["Authorization"] == "token secret-token"
        assert post.method == "POST"
        payload = json.loads(post.content)
        assert payload["head"] == BRANCH
        assert payload["base"] == "develop"
        assert payload["title"] == "[feature] Workflow 7: feature-7-add-login"
        assert payload["body"].startswith("Report")
        assert "draft" not in payload

    @pytest.mark.asyncio
    async def test_github_draft(self):
        """Test GitHub uses bearer auth and supports drafts."""
        recorder = Recorder()
        publisher = make_publisher(recorder, provider_type="github", draft=True)

        await publisher.create_pull_request(7, BRANCH, WorkflowType.BUGFIX, Path("/tmp/ws"), "Report")

        get, post = recorder.requests
        assert get.url.path == "/repos/acme/app/pulls"
        assert post.headers["Authorization"] == "Bearer secret-token"
        payload = json.loads(post.content)
        assert payload["draft"] is True
        assert payload["base"] == "main"

    @pytest.mark.asyncio
    async def test_existing_pull_request_is_updated(self):
        """Test an open pull request for the branch is reused."""
        recorder = Recorder(open_pulls=[{"number": 5, "head": {"ref": BRANCH}, "base": {"ref": "develop"}}])
        publisher = make_publisher(recorder)

        result = await publisher.create_pull_request(7, BRANCH, WorkflowType.FEATURE, Path("/tmp/ws"), "Report")

        assert result.number == 5
        assert [r.method for r in recorder.requests] == ["GET", "PATCH"]

    @pytest.mark.asyncio
    async def test_http_error(self):
        """Test an HTTP error becomes a failed result."""
        publisher = make_publisher(Recorder(create_status=422))

        result = await publisher.create_pull_request(7, BRANCH, WorkflowType.FEATURE, Path("/tmp/ws"), "Report")

        assert not result.success
        assert result.error == "Pull request creation failed (HTTP 422)"

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self):
        """Test connection errors are retried before giving up."""
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        publisher = make_publisher(handler)

        with patch("pipewright.utils.retry.asyncio.sleep", AsyncMock()):
            result = await publisher.create_pull_request(7, BRANCH, WorkflowType.FEATURE, Path("/tmp/ws"), "x")

        assert not result.success
        assert "connection refused" in result.error
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_service_unavailable_is_retried(self):
        """Test a 503 answer is retried and the next attempt succeeds."""
        recorder = Recorder(create_status=503)

        def handler(request):
            response = recorder(request)
            if request.method == "POST":
                recorder.create_status = 201
            return response

        publisher = make_publisher(handler)

        with patch("pipewright.utils.retry.asyncio.sleep", AsyncMock()) as sleep:
            result = await publisher.create_pull_request(7, BRANCH, WorkflowType.FEATURE, Path("/tmp/ws"), "x")

        assert result.success
        assert result.number == 12
        assert [r.method for r in recorder.requests] == ["GET", "POST", "GET", "POST"]
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        """Test a 422 answer fails without a second attempt."""
        recorder = Recorder(create_status=422)
        publisher = make_publisher(recorder)

        with patch("pipewright.utils.retry.asyncio.sleep", AsyncMock()) as sleep:
            await publisher.create_pull_request(7, BRANCH, WorkflowType.FEATURE, Path("/tmp/ws"), "x")

        sleep.assert_not_awaited()
        assert [r.method for r in recorder.requests] == ["GET", "POST"]


class TestFromSettings:
    def test_disabled(self):
        """Test no publisher is built when publishing is disabled."""
        settings = PipewrightSettings(repository=RepositoryConfig(url="https://git.example.com/acme/app.git"))

        assert RestPullRequestPublisher.from_settings(settings) is None

    def test_enabled(self):
        """Test the publisher is configured from settings."""
        settings = PipewrightSettings(
            repository=RepositoryConfig(url="https://git.example.com/acme/app.git"),
            pull_requests=PullRequestConfig(
                enabled=True,
                base_url="https://git.example.com",
                api_token=SecretStr("abc"),
                owner="acme",
                repo="app",
            ),
        )

        publisher = RestPullRequestPublisher.from_settings(settings)

        assert publisher is not None
        assert publisher.api_base == "https://git.example.com/api/v1"
        assert publisher.token == "abc"
