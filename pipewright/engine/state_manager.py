"""
File-backed workflow store with atomic per-workflow transactions.

This module provides :class:`JsonWorkflowStore`, the default
:class:`~pipewright.providers.base.WorkflowStore`. It persists each workflow
together with its agent executions and artifacts as one JSON document, so
every store operation is a single-record read-modify-write. Data integrity
comes from:

- Atomic file writes using temporary files and rename operations
- Per-workflow locking to prevent concurrent modification
- A separate, locked sequence file that hands out numeric ids

State Directory Layout::

    <state_dir>/
        sequences.json          {"workflow": 12, "execution": 80, "artifact": 143}
        workflow-7.json         {"workflow": {...}, "executions": [...], "artifacts": [...]}
        workflow-8.json

Transaction Support:
    The ``transaction()`` context manager provides atomic record updates::

        async with store.transaction(7) as record:
            record.workflow.status = WorkflowStatus.CODING
            # Changes are saved atomically on context exit

Concurrency Model:
    Each workflow has its own asyncio lock. Distinct workflows can be updated
    concurrently; updates to one workflow are serialized. No operation spans
    more than one workflow record.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import BaseModel, Field

from pipewright.enums import AgentKind, AgentStatus, ArtifactKind, WorkflowStatus, WorkflowType
from pipewright.exceptions import (
    BranchReassignmentError,
    ConcurrentExecutionError,
    InvalidTransitionError,
    WorkflowError,
    WorkflowNotFoundError,
)
from pipewright.models.domain import (
    AgentExecution,
    Artifact,
    ArtifactDraft,
    StageOutput,
    Workflow,
    utcnow,
)
from pipewright.providers.base import WorkflowStore

log = structlog.get_logger(__name__)

_SEQUENCES_KEY = "__sequences__"


class WorkflowRecord(BaseModel):
    """On-disk document for one workflow."""

    workflow: Workflow
    executions: list[AgentExecution] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)

    def find_execution(self, execution_id: int) -> AgentExecution | None:
        for execution in self.executions:
            if execution.id == execution_id:
                return execution
        return None


class JsonWorkflowStore(WorkflowStore):
    """Persist workflows as JSON files with atomic updates.

    Attributes:
        state_dir: Directory where record files are stored.

    Example:
        >>> store = JsonWorkflowStore(".pipewright/state")
        >>> workflow = await store.create_workflow(WorkflowType.FEATURE, {"task_description": "Add login"})
        >>> await store.update_status(workflow.id, WorkflowStatus.PLANNING, "workflow/feature-1-add-login")
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the store, creating the state directory if needed.

        Args:
            state_dir: Path to the directory for storing record files.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[Any, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()
        self._execution_index: dict[int, int] = {}

    async def _get_lock(self, key: Any) -> asyncio.Lock:
        """Get or create the lock guarding one record file."""
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def _record_path(self, workflow_id: int) -> Path:
        return self.state_dir / f"workflow-{workflow_id}.json"

    @property
    def _sequences_path(self) -> Path:
        return self.state_dir / "sequences.json"

    async def _write_json(self, path: Path, content: str) -> None:
        """Write a file atomically using a temporary file and rename."""
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(content)

        tmp_path.replace(path)

    async def _load_record(self, workflow_id: int) -> WorkflowRecord:
        """Load a record without taking its lock. Caller must hold it."""
        path = self._record_path(workflow_id)
        if not path.exists():
            raise WorkflowNotFoundError(workflow_id)

        async with aiofiles.open(path) as f:
            content = await f.read()
        return WorkflowRecord.model_validate_json(content)

    async def _save_record(self, record: WorkflowRecord) -> None:
        """Save a record without taking its lock. Caller must hold it."""
        record.workflow.updated_at = utcnow()
        await self._write_json(self._record_path(record.workflow.id), record.model_dump_json(indent=2))

    async def _next_id(self, sequence: str) -> int:
        """Allocate the next id from a named sequence."""
        lock = await self._get_lock(_SEQUENCES_KEY)
        async with lock:
            sequences: dict[str, int] = {}
            if self._sequences_path.exists():
                async with aiofiles.open(self._sequences_path) as f:
                    sequences = json.loads(await f.read())
            sequences[sequence] = sequences.get(sequence, 0) + 1
            await self._write_json(self._sequences_path, json.dumps(sequences, indent=2))
            return sequences[sequence]

    @asynccontextmanager
    async def transaction(self, workflow_id: int) -> AsyncIterator[WorkflowRecord]:
        """Context manager for atomic record updates.

        The record is loaded on entry and saved on a clean exit. If the body
        raises, nothing is written and the exception propagates.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            record = await self._load_record(workflow_id)
            try:
                yield record
                await self._save_record(record)
            except Exception:
                log.error("store_transaction_failed", workflow_id=workflow_id)
                raise

    async def _read(self, workflow_id: int) -> WorkflowRecord:
        lock = await self._get_lock(workflow_id)
        async with lock:
            return await self._load_record(workflow_id)

    async def _workflow_for_execution(self, execution_id: int) -> int:
        """Find which workflow owns an execution id."""
        if execution_id in self._execution_index:
            return self._execution_index[execution_id]

        for path in self.state_dir.glob("workflow-*.json"):
            record = WorkflowRecord.model_validate_json(path.read_text())
            for execution in record.executions:
                self._execution_index[execution.id] = record.workflow.id

        if execution_id not in self._execution_index:
            raise WorkflowError(f"Agent execution {execution_id} not found")
        return self._execution_index[execution_id]

    # -------------------------------------------------------------------------
    # Workflows
    # -------------------------------------------------------------------------

    async def create_workflow(self, workflow_type: WorkflowType, payload: dict[str, Any]) -> Workflow:
        workflow_id = await self._next_id("workflow")
        workflow = Workflow(id=workflow_id, workflow_type=WorkflowType(workflow_type), payload=payload)

        lock = await self._get_lock(workflow_id)
        async with lock:
            await self._save_record(WorkflowRecord(workflow=workflow))

        log.info("workflow_created", workflow_id=workflow_id, workflow_type=str(workflow.workflow_type))
        return workflow

    async def get_workflow(self, workflow_id: int) -> Workflow:
        record = await self._read(workflow_id)
        return record.workflow

    async def update_status(
        self,
        workflow_id: int,
        status: WorkflowStatus,
        branch_name: str | None = None,
        reopen: bool = False,
    ) -> Workflow:
        async with self.transaction(workflow_id) as record:
            workflow = record.workflow
            if workflow.status.is_terminal and not status.is_terminal:
                if workflow.status == WorkflowStatus.COMPLETED or not reopen:
                    raise InvalidTransitionError(
                        f"Cannot move a {workflow.status} workflow to {status}",
                        workflow_id=workflow_id,
                    )
            if branch_name is not None:
                if workflow.branch_name and workflow.branch_name != branch_name:
                    raise BranchReassignmentError(
                        f"Branch already assigned: {workflow.branch_name}",
                        workflow_id=workflow_id,
                    )
                workflow.branch_name = branch_name
            if reopen and workflow.status.is_terminal:
                workflow.error_message = None
            workflow.status = status
            if not status.is_terminal:
                workflow.completed_at = None

        log.debug("workflow_status_updated", workflow_id=workflow_id, status=str(status))
        return workflow

    async def complete_workflow(self, workflow_id: int) -> Workflow:
        async with self.transaction(workflow_id) as record:
            if record.workflow.status == WorkflowStatus.FAILED:
                raise InvalidTransitionError(
                    f"Cannot complete a failed workflow: {record.workflow.error_message}",
                    workflow_id=workflow_id,
                )
            record.workflow.status = WorkflowStatus.COMPLETED
            record.workflow.error_message = None
            record.workflow.completed_at = utcnow()

        log.info("workflow_completed", workflow_id=workflow_id)
        return record.workflow

    async def fail_workflow(self, workflow_id: int, reason: str) -> Workflow:
        async with self.transaction(workflow_id) as record:
            record.workflow.status = WorkflowStatus.FAILED
            record.workflow.error_message = reason
            record.workflow.completed_at = utcnow()

        log.info("workflow_failed", workflow_id=workflow_id, reason=reason)
        return record.workflow

    async def cancel_workflow(self, workflow_id: int, reason: str) -> Workflow:
        now = utcnow()
        interrupted = 0
        async with self.transaction(workflow_id) as record:
            record.workflow.status = WorkflowStatus.FAILED
            record.workflow.error_message = reason
            record.workflow.completed_at = now
            for execution in record.executions:
                if not execution.status.is_terminal:
                    execution.status = AgentStatus.FAILED
                    execution.error_message = reason
                    execution.completed_at = now
                    interrupted += 1

        log.info("workflow_cancelled", workflow_id=workflow_id, reason=reason, interrupted=interrupted)
        return record.workflow

    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        workflows = []
        for path in self.state_dir.glob("workflow-*.json"):
            try:
                workflow_id = int(path.stem.removeprefix("workflow-"))
            except ValueError:
                continue
            workflow = await self.get_workflow(workflow_id)
            if status is None or workflow.status == status:
                workflows.append(workflow)
        return sorted(workflows, key=lambda w: w.id)

    async def get_workflow_status(self, workflow_id: int) -> dict[str, Any]:
        record = await self._read(workflow_id)
        return {
            "workflow": record.workflow.model_dump(mode="json"),
            "executions": [e.model_dump(mode="json") for e in record.executions],
            "artifacts": [a.model_dump(mode="json") for a in record.artifacts],
        }

    # -------------------------------------------------------------------------
    # Agent executions
    # -------------------------------------------------------------------------

    async def list_agent_executions(self, workflow_id: int) -> list[AgentExecution]:
        record = await self._read(workflow_id)
        return list(record.executions)

    async def create_agent_execution(
        self,
        workflow_id: int,
        agent_kind: AgentKind,
        agent_input: dict[str, Any],
        retry_count: int = 0,
    ) -> AgentExecution:
        execution_id = await self._next_id("execution")
        execution = AgentExecution(
            id=execution_id,
            workflow_id=workflow_id,
            agent_kind=agent_kind,
            input=agent_input,
            retry_count=retry_count,
        )
        async with self.transaction(workflow_id) as record:
            record.executions.append(execution)

        self._execution_index[execution_id] = workflow_id
        return execution

    async def start_agent_execution(self, execution_id: int) -> AgentExecution:
        workflow_id = await self._workflow_for_execution(execution_id)
        async with self.transaction(workflow_id) as record:
            running = [
                e for e in record.executions if e.status == AgentStatus.RUNNING and e.id != execution_id
            ]
            if running:
                raise ConcurrentExecutionError(
                    f"Agent execution {running[0].id} is already running",
                    workflow_id=workflow_id,
                )
            execution = record.find_execution(execution_id)
            if execution is None:
                raise WorkflowError(f"Agent execution {execution_id} not found", workflow_id=workflow_id)
            if execution.status.is_terminal:
                raise InvalidTransitionError(
                    f"Agent execution {execution_id} is already {execution.status}",
                    workflow_id=workflow_id,
                )
            execution.status = AgentStatus.RUNNING
            execution.started_at = utcnow()

        return execution

    async def record_agent_result(
        self,
        execution_id: int,
        output: StageOutput | None = None,
        error: str | None = None,
    ) -> AgentExecution:
        workflow_id = await self._workflow_for_execution(execution_id)
        async with self.transaction(workflow_id) as record:
            execution = record.find_execution(execution_id)
            if execution is None:
                raise WorkflowError(f"Agent execution {execution_id} not found", workflow_id=workflow_id)

            if execution.status.is_terminal:
                log.warning(
                    "agent_result_ignored",
                    workflow_id=workflow_id,
                    execution_id=execution_id,
                    status=str(execution.status),
                )
                return execution

            if error is not None:
                execution.status = AgentStatus.FAILED
                execution.error_message = error
            else:
                execution.status = AgentStatus.COMPLETED
                execution.output = output
            execution.completed_at = utcnow()

        return execution

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    async def create_artifact(
        self,
        workflow_id: int,
        agent_execution_id: int | None,
        draft: ArtifactDraft,
    ) -> Artifact:
        artifact = Artifact(
            id=await self._next_id("artifact"),
            workflow_id=workflow_id,
            agent_execution_id=agent_execution_id,
            kind=draft.kind,
            content=draft.content,
            metadata=draft.metadata,
        )
        async with self.transaction(workflow_id) as record:
            record.artifacts.append(artifact)
        return artifact

    async def list_artifacts(self, workflow_id: int, kind: ArtifactKind | None = None) -> list[Artifact]:
        record = await self._read(workflow_id)
        if kind is None:
            return list(record.artifacts)
        return [a for a in record.artifacts if a.kind == kind]
