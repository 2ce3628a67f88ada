"""Branch naming and workflow directory layout."""

import re
from pathlib import Path

from pipewright.enums import WorkflowType

FALLBACK_SLUG = "task"
MAX_SLUG_TOKENS = 3

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "have", "in", "into", "is", "it", "its", "of", "on", "or",
        "our", "please", "should", "so", "that", "the", "their", "this",
        "to", "we", "when", "which", "will", "with", "would", "you", "your",
    }
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def slugify_task(task_description: str) -> str:
    """Derive a short slug from a task description.

    Lower-cases the text, drops stop-words and joins the first three
    remaining tokens with hyphens. Returns ``FALLBACK_SLUG`` when nothing
    significant is left.

    Example:
        >>> slugify_task("Add a user login form to the site")
        'add-user-login'
    """
    tokens = [t for t in _TOKEN_RE.findall(task_description.lower()) if t not in STOP_WORDS]
    if not tokens:
        return FALLBACK_SLUG
    return "-".join(tokens[:MAX_SLUG_TOKENS])


def make_branch_name(workflow_id: int, workflow_type: WorkflowType, task_description: str) -> str:
    """Deterministic branch name, e.g. ``workflow/feature-7-add-user-login``."""
    return f"workflow/{workflow_type}-{workflow_id}-{slugify_task(task_description)}"


def sanitize_branch(branch_name: str) -> str:
    """Make a branch name safe for use as a single path component."""
    return _UNSAFE_PATH_CHARS.sub("-", branch_name).strip("-")


def workflow_directory(root: Path, workflow_id: int, branch_name: str) -> Path:
    """Directory holding a workflow's checkout, logs and stage docs."""
    return Path(root) / "workflows" / f"workflow-{workflow_id}-{sanitize_branch(branch_name)}"
