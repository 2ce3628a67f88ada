"""Pytest configuration and shared fixtures."""

from collections.abc import Callable
from pathlib import Path

import pytest

from pipewright.engine.orchestrator import Orchestrator
from pipewright.engine.plan import PlanTable
from pipewright.engine.resume import ResumeEngine
from pipewright.engine.state_manager import JsonWorkflowStore
from pipewright.enums import AgentKind, ArtifactKind
from pipewright.exceptions import WorkspaceError
from pipewright.models.domain import (
    AgentInput,
    AgentResult,
    ArtifactDraft,
    PullRequestResult,
    StageIssues,
)
from pipewright.providers.base import AgentRunner, PullRequestPublisher, WorkspaceProvisioner

ARTIFACT_FOR_STAGE = {
    AgentKind.PLAN: ArtifactKind.PLAN,
    AgentKind.CODE: ArtifactKind.CODE,
    AgentKind.SECURITY_LINT: ArtifactKind.SECURITY_LINT_REPORT,
    AgentKind.TEST: ArtifactKind.TEST,
    AgentKind.REVIEW: ArtifactKind.REVIEW_REPORT,
    AgentKind.DOCUMENT: ArtifactKind.DOCUMENTATION,
}


def stage_success(agent_kind: AgentKind, summary: str | None = None) -> AgentResult:
    """Successful result carrying one artifact of the stage's kind."""
    return AgentResult(
        success=True,
        summary=summary or f"{agent_kind} done",
        artifacts=[ArtifactDraft(kind=ARTIFACT_FOR_STAGE[agent_kind], content=f"{agent_kind} output")],
    )


def stage_failure(summary: str = "stage failed", blocking: int = 0, non_blocking: int = 0) -> AgentResult:
    """Failed result with the given number of issues."""
    return AgentResult(
        success=False,
        summary=summary,
        issues=StageIssues(
            blocking=[{"severity": "HIGH", "message": f"blocking issue {i}"} for i in range(blocking)],
            non_blocking=[{"severity": "LOW", "message": f"minor issue {i}"} for i in range(non_blocking)],
        ),
    )


class ScriptedRunner(AgentRunner):
    """Agent runner that replays scripted outcomes per agent kind.

    Each kind has a queue of results or exceptions; once a queue is empty
    the stage succeeds.
    """

    def __init__(self, script: dict[AgentKind, list[AgentResult | Exception]] | None = None) -> None:
        self.script = {kind: list(outcomes) for kind, outcomes in (script or {}).items()}
        self.calls: list[tuple[AgentKind, AgentInput]] = []
        self.hooks: dict[AgentKind, Callable[[AgentInput], object]] = {}

    @property
    def kinds_called(self) -> list[AgentKind]:
        return [kind for kind, _ in self.calls]

    def inputs_for(self, agent_kind: AgentKind) -> list[AgentInput]:
        return [agent_input for kind, agent_input in self.calls if kind == agent_kind]

    async def run(self, agent_kind: AgentKind, agent_input: AgentInput, timeout: float) -> AgentResult:
        self.calls.append((agent_kind, agent_input))
        hook = self.hooks.get(agent_kind)
        if hook is not None:
            await hook(agent_input)  # type: ignore[misc]
        queue = self.script.get(agent_kind)
        outcome = queue.pop(0) if queue else stage_success(agent_kind)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeProvisioner(WorkspaceProvisioner):
    """Provisioner that only creates an empty directory."""

    def __init__(self, root: Path, fail: bool = False, push_ok: bool = True) -> None:
        self.root = root
        self.fail = fail
        self.push_ok = push_ok
        self.provisioned: list[tuple[int, str, str]] = []
        self.pushed: list[str] = []

    def workspace_path(self, workflow_id: int, branch_name: str) -> Path:
        return self.root / f"workflow-{workflow_id}" / "repo"

    async def provision(self, workflow_id: int, branch_name: str, base_branch: str) -> Path:
        self.provisioned.append((workflow_id, branch_name, base_branch))
        if self.fail:
            raise WorkspaceError("clone failed", stderr="fatal: repository not found")
        path = self.workspace_path(workflow_id, branch_name)
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def create_branch(self, branch_name: str, workspace_path: Path) -> None:
        pass

    async def push_branch(self, branch_name: str, workspace_path: Path) -> bool:
        self.pushed.append(branch_name)
        return self.push_ok


class FakePublisher(PullRequestPublisher):
    def __init__(self, result: PullRequestResult | None = None) -> None:
        self.result = result or PullRequestResult(success=True, pr_url="https://git.example.com/o/r/pulls/1", number=1)
        self.calls: list[dict[str, object]] = []

    async def create_pull_request(self, workflow_id, branch_name, workflow_type, workspace_path, summary):
        self.calls.append({"workflow_id": workflow_id, "branch_name": branch_name, "summary": summary})
        return self.result


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store(temp_state_dir: Path) -> JsonWorkflowStore:
    """JsonWorkflowStore instance with temp directory."""
    return JsonWorkflowStore(temp_state_dir)


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def provisioner(tmp_path: Path) -> FakeProvisioner:
    return FakeProvisioner(tmp_path / "workspaces")


@pytest.fixture
def plan_table() -> PlanTable:
    return PlanTable.default()


@pytest.fixture
def orchestrator(
    store: JsonWorkflowStore,
    runner: ScriptedRunner,
    provisioner: FakeProvisioner,
    plan_table: PlanTable,
) -> Orchestrator:
    return Orchestrator(store=store, runner=runner, provisioner=provisioner, plan_table=plan_table)


@pytest.fixture
def resume_engine(store: JsonWorkflowStore, orchestrator: Orchestrator) -> ResumeEngine:
    return ResumeEngine(store, orchestrator)
