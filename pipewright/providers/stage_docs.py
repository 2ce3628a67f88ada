"""
Workflow directory documentation.

Writes the human-readable audit trail of a workflow run next to its
workspace::

    <root>/workflows/workflow-<id>-<branch>/
        README.md               task, planned stages, status, final summary
        logs/                   <agent>-<phase>-<timestamp>.json per stage event
        stages/NN-<agent>.md    one document per completed stage
        artifacts/              <id>-<kind>.txt per persisted artifact
        repo/                   the workspace (owned by the provisioner)

Everything here is best effort: I/O and rendering errors are logged and
swallowed so documentation never aborts orchestration.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from jinja2 import FileSystemLoader, StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from pipewright.engine.branching import workflow_directory
from pipewright.enums import AgentKind, WorkflowStatus
from pipewright.models.domain import Artifact, Workflow, utcnow
from pipewright.providers.base import StageDocumentationSink

log = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"

_STATUS_LINE = re.compile(r"^\*\*Status:\*\* .*$", re.MULTILINE)
_FINAL_SUMMARY = "\n\n## Final Summary\n"


def _render_environment() -> SandboxedEnvironment:
    return SandboxedEnvironment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


class FileStageDocumentation(StageDocumentationSink):
    """Stage documentation written into the workflow directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.env = _render_environment()

    def directory(self, workflow_id: int, branch_name: str) -> Path:
        return workflow_directory(self.root, workflow_id, branch_name)

    async def _write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w") as f:
            await f.write(content)

    async def initialize(self, workflow: Workflow, branch_name: str, stages: list[AgentKind]) -> None:
        workflow_dir = self.directory(workflow.id, branch_name)
        try:
            for name in ("logs", "stages", "artifacts"):
                (workflow_dir / name).mkdir(parents=True, exist_ok=True)
            readme = self.env.get_template("readme.md.j2").render(
                workflow_id=workflow.id,
                workflow_type=str(workflow.workflow_type),
                branch_name=branch_name,
                created_at=workflow.created_at.isoformat(),
                task_description=workflow.task_description,
                stages=[str(stage) for stage in stages],
            )
            await self._write(workflow_dir / "README.md", readme)
        except (OSError, TemplateError) as e:
            log.warning("workflow_directory_init_failed", workflow_id=workflow.id, error=str(e))
            return

        log.debug("workflow_directory_initialized", workflow_id=workflow.id, path=str(workflow_dir))

    async def log_stage(
        self,
        workflow_id: int,
        branch_name: str,
        agent_kind: AgentKind,
        phase: str,
        details: dict[str, Any],
    ) -> None:
        timestamp = utcnow().isoformat()
        entry = {
            "workflow_id": workflow_id,
            "branch_name": branch_name,
            "agent_kind": str(agent_kind),
            "phase": phase,
            "timestamp": timestamp,
            **details,
        }
        filename = f"{agent_kind}-{phase}-{timestamp.replace(':', '-')}.json"
        try:
            await self._write(
                self.directory(workflow_id, branch_name) / "logs" / filename,
                json.dumps(entry, indent=2, default=str),
            )
        except (OSError, TypeError, ValueError) as e:
            log.warning("stage_log_failed", workflow_id=workflow_id, agent_kind=str(agent_kind), error=str(e))

    async def write_stage_doc(
        self,
        workflow_id: int,
        branch_name: str,
        agent_kind: AgentKind,
        stage_number: int,
        summary: str,
        artifacts: list[Artifact],
        duration_seconds: float,
    ) -> None:
        workflow_dir = self.directory(workflow_id, branch_name)
        try:
            doc = self.env.get_template("stage.md.j2").render(
                stage_number=stage_number,
                agent_kind=str(agent_kind),
                workflow_id=workflow_id,
                branch_name=branch_name,
                timestamp=utcnow().isoformat(),
                duration_seconds=duration_seconds,
                summary=summary,
                artifacts=artifacts,
            )
            await self._write(workflow_dir / "stages" / f"{stage_number:02d}-{agent_kind}.md", doc)
            for artifact in artifacts:
                await self._write(
                    workflow_dir / "artifacts" / f"{artifact.id}-{artifact.kind}.txt", artifact.content
                )
        except (OSError, TemplateError) as e:
            log.warning("stage_doc_failed", workflow_id=workflow_id, agent_kind=str(agent_kind), error=str(e))

    async def finalize(self, workflow_id: int, branch_name: str, status: WorkflowStatus, summary: str) -> None:
        readme_path = self.directory(workflow_id, branch_name) / "README.md"
        try:
            async with aiofiles.open(readme_path) as f:
                readme = await f.read()
            label = "Completed" if status == WorkflowStatus.COMPLETED else "Failed"
            readme = _STATUS_LINE.sub(f"**Status:** {label}", readme, count=1)
            # a resumed workflow replaces the summary of its earlier run
            readme = readme.split(_FINAL_SUMMARY, 1)[0]
            readme = f"{readme.rstrip()}{_FINAL_SUMMARY}\n{summary}\n"
            await self._write(readme_path, readme)
        except OSError as e:
            log.warning("readme_update_failed", workflow_id=workflow_id, error=str(e))
