"""Unit tests for the pipewright CLI.

Covers the create, run, resume, cancel and status commands (including
resume --all and status --resume-state), their exit codes and error handling
for missing or invalid configuration.
"""

import asyncio
import json
from unittest.mock import patch

import pytest
import structlog
import yaml
from click.testing import CliRunner

from pipewright.engine.orchestrator import Orchestrator
from pipewright.engine.resume import ResumeEngine
from pipewright.engine.state_manager import JsonWorkflowStore
from pipewright.enums import AgentKind, WorkflowStatus, WorkflowType
from pipewright.main import Engine, cli
from tests.conftest import FakeProvisioner, ScriptedRunner, stage_failure

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep log events out of the captured command output."""
    with patch("pipewright.main.configure_logging"):
        structlog.configure(logger_factory=structlog.ReturnLoggerFactory())
        yield
    structlog.reset_defaults()


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """Write a minimal configuration file."""
    path = tmp_path / "pipewright.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "repository": {"url": "https://git.example.com/acme/app.git"},
                "workflow": {"state_directory": str(tmp_path / "state")},
                "workspace": {"root": str(tmp_path / "workspaces")},
                "logging": {"level": "WARNING"},
            }
        )
    )
    return str(path)


@pytest.fixture
def agent_runner():
    return ScriptedRunner()


@pytest.fixture
def fake_engine(tmp_path, agent_runner):
    """Patch create_engine to wire fakes around the real store."""
    provisioner = FakeProvisioner(tmp_path / "workspaces")

    def build(settings):
        store = JsonWorkflowStore(settings.state_dir)
        orchestrator = Orchestrator(store, agent_runner, provisioner)
        return Engine(store=store, orchestrator=orchestrator, resume=ResumeEngine(store, orchestrator))

    with patch("pipewright.main.create_engine", side_effect=build):
        yield


def invoke(cli_runner, config_file, *args):
    return cli_runner.invoke(cli, ["--config", config_file, *args])



def leave_review_running(tmp_path):
    """Persist a review workflow whose process died during the review stage."""

    async def setup():
        store = JsonWorkflowStore(tmp_path / "state")
        workflow = await store.create_workflow(WorkflowType.REVIEW, {"task_description": "Review PR"})
        await store.update_status(workflow.id, WorkflowStatus.REVIEWING, "workflow/review-1-review-pr")
        execution = await store.create_agent_execution(workflow.id, AgentKind.REVIEW, {})
        await store.start_agent_execution(execution.id)

    asyncio.run(setup())
    (tmp_path / "workspaces" / "workflow-1" / "repo").mkdir(parents=True)


# =============================================================================
# Configuration
# =============================================================================


class TestConfiguration:
    def test_missing_config_file(self, cli_runner, tmp_path):
        """Test a missing configuration file exits with status 1."""
        result = cli_runner.invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "status"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_invalid_config(self, cli_runner, tmp_path):
        """Test an invalid configuration exits with status 1."""
        path = tmp_path / "bad.yaml"
        path.write_text("workflow: {}\n")

        result = cli_runner.invoke(cli, ["--config", str(path), "status"])

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_help(self, cli_runner):
        """Test the command group help lists the commands."""
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("create", "run", "resume", "cancel", "status"):
            assert command in result.output


# =============================================================================
# Commands
# =============================================================================


class TestCreateAndStatus:
    def test_create(self, cli_runner, config_file):
        """Test creating a workflow prints its id."""
        result = invoke(cli_runner, config_file, "create", "--type", "feature", "--task", "Add login")

        assert result.exit_code == 0
        assert "Created workflow 1 (feature)" in result.output

    def test_create_rejects_unknown_type(self, cli_runner, config_file):
        """Test the workflow type is validated by the CLI."""
        result = invoke(cli_runner, config_file, "create", "--type", "hotfix", "--task", "x")

        assert result.exit_code == 2

    def test_status_empty(self, cli_runner, config_file):
        """Test listing with no workflows."""
        result = invoke(cli_runner, config_file, "status")

        assert result.exit_code == 0
        assert "No workflows found." in result.output

    def test_status_list_and_detail(self, cli_runner, config_file):
        """Test listing and showing workflows."""
        invoke(cli_runner, config_file, "create", "--type", "bugfix", "--task", "Fix crash")

        listing = invoke(cli_runner, config_file, "status")
        detail = invoke(cli_runner, config_file, "status", "1")

        assert "Workflows (1):" in listing.output
        assert "[bugfix] pending" in listing.output
        assert "Workflow 1 (bugfix)" in detail.output
        assert "Status: pending" in detail.output

    def test_status_json(self, cli_runner, config_file):
        """Test JSON output for the workflow list."""
        invoke(cli_runner, config_file, "create", "--type", "review", "--task", "Review PR")

        result = invoke(cli_runner, config_file, "status", "--json")

        data = json.loads(result.output)
        assert data[0]["id"] == 1
        assert data[0]["workflow_type"] == "review"

    def test_status_unknown_workflow(self, cli_runner, config_file):
        """Test showing an unknown workflow exits with status 1."""
        result = invoke(cli_runner, config_file, "status", "9")

        assert result.exit_code == 1
        assert "Workflow not found" in result.output


class TestRunResumeCancel:
    def test_create_and_run(self, cli_runner, config_file, fake_engine):
        """Test a successful run prints the report."""
        result = invoke(cli_runner, config_file, "create", "--type", "bugfix", "--task", "Fix crash", "--run")

        assert result.exit_code == 0
        assert "Workflow bugfix completed" in result.output
        assert "Steps executed: 5/5" in result.output

    def test_run_failure_exit_code(self, cli_runner, config_file, fake_engine, agent_runner):
        """Test a failed workflow exits with status 1."""
        agent_runner.script[AgentKind.CODE] = [stage_failure("does not compile")]
        invoke(cli_runner, config_file, "create", "--type", "feature", "--task", "Add login")

        result = invoke(cli_runner, config_file, "run", "1")

        assert result.exit_code == 1
        assert "Workflow 1 failed: Workflow failed at code: does not compile" in result.output

    def test_resume_failed_workflow(self, cli_runner, config_file, fake_engine, agent_runner):
        """Test resuming a failed workflow completes it."""
        agent_runner.script[AgentKind.TEST] = [stage_failure("2 tests failed")]
        invoke(cli_runner, config_file, "create", "--type", "bugfix", "--task", "Fix crash", "--run")

        result = invoke(cli_runner, config_file, "resume", "1")

        assert result.exit_code == 0
        assert "Workflow bugfix completed" in result.output
        assert agent_runner.kinds_called[-2:] == [AgentKind.TEST, AgentKind.REVIEW]

    def test_resume_rejected(self, cli_runner, config_file, fake_engine):
        """Test a rejected resume exits with status 1."""
        result = invoke(cli_runner, config_file, "resume", "5")

        assert result.exit_code == 1
        assert "Rejected:" in result.output

    def test_resume_stage_index(self, cli_runner, config_file, fake_engine):
        """Test an out of range stage index is rejected."""
        invoke(cli_runner, config_file, "create", "--type", "review", "--task", "Review PR")

        result = invoke(cli_runner, config_file, "resume", "1", "--stage-index", "3")

        assert result.exit_code == 1
        assert "Rejected:" in result.output

    def test_cancel(self, cli_runner, config_file, fake_engine):
        """Test cancelling a pending workflow and cancelling it twice."""
        invoke(cli_runner, config_file, "create", "--type", "feature", "--task", "Add login")

        first = invoke(cli_runner, config_file, "cancel", "1", "--reason", "Not needed")
        second = invoke(cli_runner, config_file, "cancel", "1")
        run = invoke(cli_runner, config_file, "run", "1")

        assert first.exit_code == 0
        assert "Workflow 1 cancelled: Not needed" in first.output
        assert second.exit_code == 1
        assert "Cannot cancel workflow 1" in second.output
        assert run.exit_code == 1
        assert "Rejected:" in run.output


class TestInterruptedWorkflows:
    def test_resume_all(self, cli_runner, config_file, fake_engine, agent_runner, tmp_path):
        """Test --all resumes a workflow left running and leaves pending ones alone."""
        leave_review_running(tmp_path)
        invoke(cli_runner, config_file, "create", "--type", "feature", "--task", "Add login")

        result = invoke(cli_runner, config_file, "resume", "--all")

        assert result.exit_code == 0
        assert "Workflow 1 resumed: completed" in result.output
        assert agent_runner.kinds_called == [AgentKind.REVIEW]

    def test_resume_all_failure_exit_code(self, cli_runner, config_file, fake_engine, agent_runner, tmp_path):
        """Test --all exits with status 1 when a resumed run fails."""
        leave_review_running(tmp_path)
        agent_runner.script[AgentKind.REVIEW] = [stage_failure("needs work", blocking=1)] * 5

        result = invoke(cli_runner, config_file, "resume", "--all")

        assert result.exit_code == 1
        assert "Workflow 1 failed:" in result.output

    def test_resume_all_nothing_to_do(self, cli_runner, config_file, fake_engine):
        """Test --all with no interrupted workflows."""
        result = invoke(cli_runner, config_file, "resume", "--all")

        assert result.exit_code == 0
        assert "No interrupted workflows found." in result.output

    def test_resume_needs_id_or_all(self, cli_runner, config_file, fake_engine):
        """Test resume requires exactly one of a workflow id and --all."""
        neither = invoke(cli_runner, config_file, "resume")
        both = invoke(cli_runner, config_file, "resume", "1", "--all")

        assert neither.exit_code == 1
        assert "Give a workflow id or --all" in neither.output
        assert both.exit_code == 1
        assert "cannot be combined" in both.output

    def test_status_resume_state(self, cli_runner, config_file, fake_engine, tmp_path):
        """Test the resume state of an interrupted workflow."""
        leave_review_running(tmp_path)

        text = invoke(cli_runner, config_file, "status", "1", "--resume-state")
        data = json.loads(invoke(cli_runner, config_file, "status", "1", "--resume-state", "--json").output)

        assert text.exit_code == 0
        assert "Workflow 1: reviewing" in text.output
        assert "Resumable at stage 0 (review), pass 0" in text.output
        assert data["resumable"] is True
        assert data["next_stage"] == "review"
        assert data["completed_stages"] == []

    def test_status_resume_state_not_resumable(self, cli_runner, config_file, fake_engine):
        """Test a workflow without a branch reports why it cannot be resumed."""
        invoke(cli_runner, config_file, "create", "--type", "feature", "--task", "Add login")

        result = invoke(cli_runner, config_file, "status", "1", "--resume-state")

        assert result.exit_code == 0
        assert "Not resumable (no_branch)" in result.output

    def test_status_resume_state_needs_id(self, cli_runner, config_file):
        """Test --resume-state without a workflow id is an error."""
        result = invoke(cli_runner, config_file, "status", "--resume-state")

        assert result.exit_code == 1
        assert "needs a workflow id" in result.output
