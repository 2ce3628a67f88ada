"""Tests for branch naming and workflow directories."""

from pathlib import Path

import pytest

from pipewright.engine.branching import (
    FALLBACK_SLUG,
    make_branch_name,
    sanitize_branch,
    slugify_task,
    workflow_directory,
)
from pipewright.enums import WorkflowType


class TestSlugifyTask:
    @pytest.mark.parametrize(
        "task,expected",
        [
            ("Add a user login form to the site", "add-user-login"),
            ("Fix the crash when saving", "fix-crash-saving"),
            ("Refactor: DB layer!!", "refactor-db-layer"),
            ("Update README", "update-readme"),
        ],
    )
    def test_slugs(self, task, expected):
        """Test stop-words are dropped and three tokens are kept."""
        assert slugify_task(task) == expected

    def test_empty_description_falls_back(self):
        """Test an empty description yields the fallback slug."""
        assert slugify_task("") == FALLBACK_SLUG

    def test_only_stop_words_falls_back(self):
        """Test a description made only of stop-words yields the fallback slug."""
        assert slugify_task("the and of") == FALLBACK_SLUG


class TestMakeBranchName:
    def test_format(self):
        """Test the branch name layout."""
        assert make_branch_name(7, WorkflowType.FEATURE, "Add user login form") == "workflow/feature-7-add-user-login"

    def test_deterministic(self):
        """Test the same inputs always give the same branch."""
        first = make_branch_name(3, WorkflowType.BUGFIX, "Fix crash")
        second = make_branch_name(3, WorkflowType.BUGFIX, "Fix crash")

        assert first == second == "workflow/bugfix-3-fix-crash"

    def test_distinct_workflows_get_distinct_branches(self):
        """Test the workflow id keeps equal tasks apart."""
        assert make_branch_name(1, WorkflowType.FEATURE, "x") != make_branch_name(2, WorkflowType.FEATURE, "x")


class TestWorkflowDirectory:
    def test_sanitize_branch(self):
        """Test slashes are replaced for use as a path component."""
        assert sanitize_branch("workflow/feature-7-add-login") == "workflow-feature-7-add-login"

    def test_directory_layout(self, tmp_path: Path):
        """Test the workflow directory lives under <root>/workflows."""
        path = workflow_directory(tmp_path, 7, "workflow/feature-7-add-login")

        assert path == tmp_path / "workflows" / "workflow-7-workflow-feature-7-add-login"
