"""
Durable storage of workflow executions, transition logs, and approvals.

This module provides the ``ExecutionStore`` interface and the
``FileExecutionStore`` implementation. The file store ensures data
integrity through:

- Atomic file writes using temporary files and rename operations
- An append-only JSONL transition log per execution
- Per-record locking to prevent concurrent modification
- Retrying transient I/O errors before surfacing a ``StorageError``

Directory Layout::

    {state_dir}/
        executions/{execution_id}.json       # latest snapshot
        transitions/{execution_id}.jsonl     # append-only audit trail
        approvals/pending/{request_id}.json  # unresolved requests
        approvals/archive/{request_id}.json  # resolved requests

Recovery Model:
    The transition log is the source of truth for ``phase_history``. A
    transition is appended before the snapshot is rewritten, so a crash
    between the two leaves a log one record ahead of the snapshot. The
    loaded execution then carries the logged transition and the state
    machine replays it without re-running the phase.

Example:
    >>> store = FileExecutionStore(".issue-pilot/state")
    >>> await store.save_execution(execution)
    >>> restored = await store.load_execution(execution.id)
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar, cast

import aiofiles
import structlog

from issue_pilot.engine.types import ApprovalRecord, ExecutionRecord, TransitionRecord
from issue_pilot.exceptions import StorageError
from issue_pilot.models.domain import ApprovalRequest, PhaseTransition, WorkflowExecution
from issue_pilot.utils.retry import async_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")


class ExecutionStore(ABC):
    """Durable key-value store for engine state.

    Implementations raise ``StorageError`` when an operation cannot be
    completed. Reads of unknown ids return None rather than raising.
    """

    @abstractmethod
    async def save_execution(self, execution: WorkflowExecution) -> None:
        pass

    @abstractmethod
    async def load_execution(self, execution_id: str) -> WorkflowExecution | None:
        pass

    @abstractmethod
    async def list_executions(self) -> list[WorkflowExecution]:
        pass

    @abstractmethod
    async def append_transition(self, execution_id: str, transition: PhaseTransition) -> None:
        pass

    @abstractmethod
    async def load_transitions(self, execution_id: str) -> list[PhaseTransition]:
        pass

    @abstractmethod
    async def save_approval(self, request: ApprovalRequest) -> None:
        pass

    @abstractmethod
    async def load_approval(self, request_id: str) -> ApprovalRequest | None:
        pass

    @abstractmethod
    async def list_approvals(self, pending_only: bool = True) -> list[ApprovalRequest]:
        pass

    @abstractmethod
    async def archive_approval(self, request: ApprovalRequest) -> None:
        """Persist a resolved request and drop it from the pending set."""
        pass


class FileExecutionStore(ExecutionStore):
    """JSON file store with atomic writes.

    Attributes:
        state_dir: Root directory for all state files.

    Thread Safety:
        Designed for single-threaded asyncio usage. Each record has its own
        lock; lock creation is guarded by a meta-lock.
    """

    def __init__(self, state_dir: str | Path, retry_attempts: int = 3, retry_backoff: float = 0.5) -> None:
        """Initialize the store, creating its directories if needed.

        Args:
            state_dir: Root directory for state files.
            retry_attempts: Attempts per I/O operation before failing.
            retry_backoff: Backoff base in seconds between attempts.
        """
        self.state_dir = Path(state_dir)
        self._executions_dir = self.state_dir / "executions"
        self._transitions_dir = self.state_dir / "transitions"
        self._pending_dir = self.state_dir / "approvals" / "pending"
        self._archive_dir = self.state_dir / "approvals" / "archive"
        for directory in (self._executions_dir, self._transitions_dir, self._pending_dir, self._archive_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self._retry = async_retry(
            max_attempts=retry_attempts,
            backoff_factor=retry_backoff,
            exceptions=(OSError,),
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, key: str) -> asyncio.Lock:
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    async def _run(self, operation: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run an I/O coroutine with retries, converting failures to StorageError."""
        try:
            return cast(T, await self._retry(func)(*args))
        except (OSError, ValueError) as e:
            log.error("storage_operation_failed", operation=operation, error=str(e))
            raise StorageError(f"Storage operation failed: {e}", operation=operation) from e

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def save_execution(self, execution: WorkflowExecution) -> None:
        path = self._executions_dir / f"{execution.id}.json"
        lock = await self._get_lock(f"execution:{execution.id}")
        async with lock:
            await self._run("save_execution", self._write_json, path, execution.to_dict())

    async def load_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Load an execution snapshot merged with its transition log."""
        path = self._executions_dir / f"{execution_id}.json"
        lock = await self._get_lock(f"execution:{execution_id}")
        async with lock:
            record = await self._run("load_execution", self._read_json, path)
        if record is None:
            return None

        execution = WorkflowExecution.from_dict(cast(ExecutionRecord, record))
        logged = await self.load_transitions(execution_id)
        if len(logged) > len(execution.phase_history):
            log.info(
                "transition_log_ahead_of_snapshot",
                execution_id=execution_id,
                snapshot=len(execution.phase_history),
                logged=len(logged),
            )
            execution.phase_history = logged
            execution.restore_counters()
        return execution

    async def list_executions(self) -> list[WorkflowExecution]:
        executions = []
        for path in sorted(self._executions_dir.glob("*.json")):
            execution = await self.load_execution(path.stem)
            if execution is not None:
                executions.append(execution)
        return sorted(executions, key=lambda e: e.created_at)

    # ------------------------------------------------------------------
    # Transition log
    # ------------------------------------------------------------------

    async def append_transition(self, execution_id: str, transition: PhaseTransition) -> None:
        path = self._transitions_dir / f"{execution_id}.jsonl"
        lock = await self._get_lock(f"transitions:{execution_id}")
        async with lock:
            await self._run("append_transition", self._append_line, path, transition.to_dict())

    async def load_transitions(self, execution_id: str) -> list[PhaseTransition]:
        path = self._transitions_dir / f"{execution_id}.jsonl"
        lock = await self._get_lock(f"transitions:{execution_id}")
        async with lock:
            records = await self._run("load_transitions", self._read_lines, path)
        return [PhaseTransition.from_dict(cast(TransitionRecord, r)) for r in records]

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def save_approval(self, request: ApprovalRequest) -> None:
        if request.is_resolved:
            await self.archive_approval(request)
            return
        lock = await self._get_lock(f"approval:{request.id}")
        async with lock:
            path = self._pending_dir / f"{request.id}.json"
            await self._run("save_approval", self._write_json, path, request.to_dict())

    async def load_approval(self, request_id: str) -> ApprovalRequest | None:
        """Load a request, preferring the archived (resolved) copy."""
        lock = await self._get_lock(f"approval:{request_id}")
        async with lock:
            record = await self._run("load_approval", self._read_json, self._archive_dir / f"{request_id}.json")
            if record is None:
                record = await self._run("load_approval", self._read_json, self._pending_dir / f"{request_id}.json")
        if record is None:
            return None
        return ApprovalRequest.from_dict(cast(ApprovalRecord, record))

    async def list_approvals(self, pending_only: bool = True) -> list[ApprovalRequest]:
        directories = [self._pending_dir] if pending_only else [self._pending_dir, self._archive_dir]
        requests: dict[str, ApprovalRequest] = {}
        for directory in directories:
            for path in sorted(directory.glob("*.json")):
                request = await self.load_approval(path.stem)
                if request is None or (pending_only and request.is_resolved):
                    continue
                requests[request.id] = request
        return sorted(requests.values(), key=lambda r: r.created_at)

    async def archive_approval(self, request: ApprovalRequest) -> None:
        lock = await self._get_lock(f"approval:{request.id}")
        async with lock:
            await self._run(
                "archive_approval", self._write_json, self._archive_dir / f"{request.id}.json", request.to_dict()
            )
            await self._run("archive_approval", self._unlink, self._pending_dir / f"{request.id}.json")

    # ------------------------------------------------------------------
    # File primitives
    # ------------------------------------------------------------------

    async def _write_json(self, path: Path, data: Any) -> None:
        """Write JSON to disk atomically using a temporary file.

        The temporary file lives next to the target so the rename stays on
        one filesystem, which keeps it atomic on POSIX.
        """
        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(data, indent=2, default=str))
        tmp_path.replace(path)

    async def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        async with aiofiles.open(path) as f:
            content = await f.read()
        return json.loads(content)

    async def _append_line(self, path: Path, data: Any) -> None:
        async with aiofiles.open(path, "a") as f:
            await f.write(json.dumps(data, default=str) + "\n")

    async def _read_lines(self, path: Path) -> list[Any]:
        if not path.exists():
            return []
        async with aiofiles.open(path) as f:
            content = await f.read()

        records = []
        for number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # A torn final line from a crash mid-append is dropped
                if number == len(content.splitlines()):
                    log.warning("transition_log_truncated_line", path=str(path), line=number)
                    continue
                raise
        return records

    async def _unlink(self, path: Path) -> None:
        path.unlink(missing_ok=True)
