"""Git-backed workspace provisioner.

Each workflow gets its own clone under
``<root>/workflows/workflow-<id>-<branch>/repo``. The clone is checked out at
the type-appropriate base branch, the workflow branch is created from it and
dependencies are installed. A workspace belongs to exactly one workflow and
is reused as-is when that workflow is resumed.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

import structlog

from pipewright.config.settings import PipewrightSettings
from pipewright.engine.branching import workflow_directory
from pipewright.exceptions import WorkspaceError
from pipewright.providers.base import WorkspaceProvisioner
from pipewright.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


class GitWorkspaceProvisioner(WorkspaceProvisioner):
    """Provision workspaces by cloning a git repository."""

    def __init__(
        self,
        repository_url: str,
        root: str | Path,
        remote: str = "origin",
        install_command: list[str] | None = None,
        build_command: list[str] | None = None,
        git_user_name: str = "pipewright",
        git_user_email: str = "pipewright@localhost",
    ) -> None:
        """Initialize the provisioner.

        Args:
            repository_url: Clone URL or local path of the source repository
            root: Root directory under which workflow directories are created
            remote: Remote that workflow branches are pushed to
            install_command: Command run in a fresh clone to install dependencies
            build_command: Optional build command; failures only log a warning
            git_user_name: Commit author name configured in each clone
            git_user_email: Commit author email configured in each clone
        """
        self.repository_url = repository_url
        self.root = Path(root)
        self.remote = remote
        self.install_command = install_command
        self.build_command = build_command
        self.git_user_name = git_user_name
        self.git_user_email = git_user_email

    @classmethod
    def from_settings(cls, settings: PipewrightSettings) -> GitWorkspaceProvisioner:
        workspace = settings.workspace
        return cls(
            repository_url=settings.repository.url,
            root=workspace.root_path,
            remote=workspace.remote,
            install_command=workspace.install_command,
            build_command=workspace.build_command,
            git_user_name=workspace.git_user_name,
            git_user_email=workspace.git_user_email,
        )

    def workspace_path(self, workflow_id: int, branch_name: str) -> Path:
        return workflow_directory(self.root, workflow_id, branch_name) / "repo"

    async def _git(self, *args: str, cwd: Path | None = None) -> str:
        try:
            stdout, _, _ = await run_command("git", *args, cwd=cwd)
        except subprocess.CalledProcessError as e:
            raise WorkspaceError(f"git {args[0]} failed", stderr=e.stderr) from e
        except FileNotFoundError as e:
            raise WorkspaceError("git executable not found") from e
        return stdout

    async def provision(self, workflow_id: int, branch_name: str, base_branch: str) -> Path:
        path = self.workspace_path(workflow_id, branch_name)
        if path.exists() and any(path.iterdir()):
            raise WorkspaceError(f"Workspace already exists: {path}")

        path.parent.mkdir(parents=True, exist_ok=True)
        log.info("workspace_cloning", workflow_id=workflow_id, path=str(path), base_branch=base_branch)

        await self._git("clone", "--quiet", self.repository_url, str(path))
        await self._git("checkout", "--quiet", base_branch, cwd=path)
        await self._git("config", "user.name", self.git_user_name, cwd=path)
        await self._git("config", "user.email", self.git_user_email, cwd=path)
        await self.create_branch(branch_name, path)

        if self.install_command:
            try:
                await run_command(*self.install_command, cwd=path)
            except (subprocess.CalledProcessError, FileNotFoundError) as e:
                stderr = getattr(e, "stderr", None)
                raise WorkspaceError("Dependency installation failed", stderr=stderr) from e
            log.info("workspace_dependencies_installed", workflow_id=workflow_id)

        if self.build_command:
            try:
                await run_command(*self.build_command, cwd=path)
                log.info("workspace_built", workflow_id=workflow_id)
            except (subprocess.CalledProcessError, FileNotFoundError) as e:
                log.warning("workspace_build_failed", workflow_id=workflow_id, error=str(e))

        log.info("workspace_ready", workflow_id=workflow_id, path=str(path), branch=branch_name)
        return path

    async def create_branch(self, branch_name: str, workspace_path: Path) -> None:
        await self._git("checkout", "--quiet", "-b", branch_name, cwd=workspace_path)
        log.debug("branch_created", branch=branch_name)

    async def push_branch(self, branch_name: str, workspace_path: Path) -> bool:
        try:
            await self._git("add", "--all", cwd=workspace_path)
            status = await self._git("status", "--porcelain", cwd=workspace_path)
            if status.strip():
                await self._git(
                    "commit", "--quiet", "-m", f"Apply workflow changes for {branch_name}", cwd=workspace_path
                )
            await self._git("push", "--quiet", "--set-upstream", self.remote, branch_name, cwd=workspace_path)
        except WorkspaceError as e:
            log.error("branch_push_failed", branch=branch_name, error=str(e), stderr=e.stderr)
            return False

        log.info("branch_pushed", branch=branch_name, remote=self.remote)
        return True
