"""Tests for the git workspace provisioner."""

import subprocess
from unittest.mock import AsyncMock, patch

import pytest

from pipewright.config.settings import PipewrightSettings, RepositoryConfig, WorkspaceConfig
from pipewright.exceptions import WorkspaceError
from pipewright.providers.workspace import GitWorkspaceProvisioner

BRANCH = "workflow/feature-7-add-login"


@pytest.fixture
def provisioner(tmp_path):
    return GitWorkspaceProvisioner(
        repository_url="https://git.example.com/acme/app.git",
        root=tmp_path,
        install_command=["npm", "install"],
        build_command=["npm", "run", "build"],
    )


def commands(mock_run):
    return [call.args for call in mock_run.call_args_list]


class TestProvision:
    """Test workspace provisioning."""

    @pytest.mark.asyncio
    async def test_clone_checkout_branch_install(self, provisioner, tmp_path):
        """Test the git and install commands run in order."""
        mock_run = AsyncMock(return_value=("", "", 0))

        with patch("pipewright.providers.workspace.run_command", mock_run):
            path = await provisioner.provision(7, BRANCH, "develop")

        assert path == tmp_path / "workflows" / "workflow-7-workflow-feature-7-add-login" / "repo"
        assert commands(mock_run) == [
            ("git", "clone", "--quiet", "https://git.example.com/acme/app.git", str(path)),
            ("git", "checkout", "--quiet", "develop"),
            ("git", "config", "user.name", "pipewright"),
            ("git", "config", "user.email", "pipewright@localhost"),
            ("git", "checkout", "--quiet", "-b", BRANCH),
            ("npm", "install"),
            ("npm", "run", "build"),
        ]
        assert mock_run.call_args_list[1].kwargs["cwd"] == path

    @pytest.mark.asyncio
    async def test_clone_failure(self, provisioner):
        """Test a failing clone raises WorkspaceError with stderr."""
        error = subprocess.CalledProcessError(128, ["git", "clone"], "", "fatal: repository not found")
        mock_run = AsyncMock(side_effect=error)

        with patch("pipewright.providers.workspace.run_command", mock_run):
            with pytest.raises(WorkspaceError) as exc_info:
                await provisioner.provision(7, BRANCH, "main")

        assert exc_info.value.message == "git clone failed"
        assert exc_info.value.stderr == "fatal: repository not found"

    @pytest.mark.asyncio
    async def test_install_failure_aborts(self, provisioner):
        """Test a failing install raises WorkspaceError."""

        async def fake_run(*args, **kwargs):
            if args[0] == "npm":
                raise subprocess.CalledProcessError(1, list(args), "", "npm ERR!")
            return "", "", 0

        with patch("pipewright.providers.workspace.run_command", side_effect=fake_run):
            with pytest.raises(WorkspaceError, match="Dependency installation failed"):
                await provisioner.provision(7, BRANCH, "main")

    @pytest.mark.asyncio
    async def test_build_failure_is_ignored(self, provisioner):
        """Test a failing build only logs a warning."""

        async def fake_run(*args, **kwargs):
            if args[:3] == ("npm", "run", "build"):
                raise subprocess.CalledProcessError(2, list(args), "", "tsc error")
            return "", "", 0

        with patch("pipewright.providers.workspace.run_command", side_effect=fake_run):
            path = await provisioner.provision(7, BRANCH, "main")

        assert path.name == "repo"

    @pytest.mark.asyncio
    async def test_existing_workspace_rejected(self, provisioner):
        """Test a non-empty workspace directory is never reused for a new run."""
        path = provisioner.workspace_path(7, BRANCH)
        path.mkdir(parents=True)
        (path / "README.md").write_text("old")

        with pytest.raises(WorkspaceError, match="already exists"):
            await provisioner.provision(7, BRANCH, "main")

    @pytest.mark.asyncio
    async def test_missing_git(self, provisioner):
        """Test a missing git executable raises WorkspaceError."""
        mock_run = AsyncMock(side_effect=FileNotFoundError("git"))

        with patch("pipewright.providers.workspace.run_command", mock_run):
            with pytest.raises(WorkspaceError, match="git executable not found"):
                await provisioner.provision(7, BRANCH, "main")


class TestPushBranch:
    """Test committing and pushing the workflow branch."""

    @pytest.mark.asyncio
    async def test_commits_changes_and_pushes(self, provisioner, tmp_path):
        """Test pending changes are committed before the push."""

        async def fake_run(*args, **kwargs):
            if args[1] == "status":
                return " M src/app.py\n", "", 0
            return "", "", 0

        with patch("pipewright.providers.workspace.run_command", side_effect=fake_run) as mock_run:
            pushed = await provisioner.push_branch(BRANCH, tmp_path)

        assert pushed
        assert [c[1] for c in commands(mock_run)] == ["add", "status", "commit", "push"]
        assert commands(mock_run)[-1] == ("git", "push", "--quiet", "--set-upstream", "origin", BRANCH)

    @pytest.mark.asyncio
    async def test_clean_tree_skips_commit(self, provisioner, tmp_path):
        """Test no commit is made when nothing changed."""
        mock_run = AsyncMock(return_value=("", "", 0))

        with patch("pipewright.providers.workspace.run_command", mock_run):
            assert await provisioner.push_branch(BRANCH, tmp_path)

        assert [c[1] for c in commands(mock_run)] == ["add", "status", "push"]

    @pytest.mark.asyncio
    async def test_push_failure_returns_false(self, provisioner, tmp_path):
        """Test a rejected push is reported as False, not raised."""

        async def fake_run(*args, **kwargs):
            if args[1] == "push":
                raise subprocess.CalledProcessError(1, list(args), "", "rejected")
            return "", "", 0

        with patch("pipewright.providers.workspace.run_command", side_effect=fake_run):
            assert await provisioner.push_branch(BRANCH, tmp_path) is False


def test_from_settings(tmp_path):
    """Test the provisioner is configured from settings."""
    settings = PipewrightSettings(
        repository=RepositoryConfig(url="/srv/git/app.git"),
        workspace=WorkspaceConfig(root=str(tmp_path), remote="upstream", install_command=["make", "deps"]),
    )

    provisioner = GitWorkspaceProvisioner.from_settings(settings)

    assert provisioner.repository_url == "/srv/git/app.git"
    assert provisioner.root == tmp_path
    assert provisioner.remote == "upstream"
    assert provisioner.install_command == ["make", "deps"]
