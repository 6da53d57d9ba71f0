"""
Workflow supervisor: owns running executions and their drivers.

The supervisor is the engine's public face (``WorkflowEngine``). Each
execution is driven by its own asyncio task, which calls
``WorkflowStateMachine.advance()`` in a loop and sleeps whenever a step
asks for a delay. ``cancel()`` and ``pause()`` cut such a sleep short so
the request is honoured without waiting out the backoff. A driver exits when its execution blocks on a human,
pauses, or reaches a terminal state; it is started again by ``resume()``,
``submit_approval()``, or ``sweep()``.

Concurrency Model:
    - One phase in flight per execution: every ``advance()`` runs under the
      execution's lock.
    - At most ``per_resource_limit`` drivers per shared resource (e.g., a
      repository) run at once, enforced by a keyed counting semaphore.
    - Executions on different resources never wait on each other.

Failure Model:
    Phase errors are absorbed by the state machine. A ``StorageError``
    pauses the affected execution and alerts the operator; it never takes
    down the process or other executions.

Example:
    >>> supervisor = create_engine(settings, generator, platform)
    >>> await supervisor.recover_all()
    >>> execution_id = await supervisor.start(resource="acme/widgets")
    >>> await supervisor.wait_idle()
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog

from issue_pilot.config.settings import ConcurrencyConfig
from issue_pilot.engine.approvals import ApprovalCheckpointManager, ResolveResult
from issue_pilot.engine.capability_registry import CapabilityRegistry
from issue_pilot.engine.events import EventBus
from issue_pilot.engine.notifications import NotificationChannel
from issue_pilot.engine.state_machine import WorkflowStateMachine
from issue_pilot.engine.state_manager import ExecutionStore
from issue_pilot.enums import Decision, ExecutionState, ResolveStatus, StepStatus
from issue_pilot.exceptions import ExecutionNotFoundError, InvalidStateError, StorageError
from issue_pilot.models.domain import ApprovalRequest, WorkflowEvent, WorkflowExecution, utcnow
from issue_pilot.utils.logging_config import bind_execution

log = structlog.get_logger(__name__)


class WorkflowEngine(ABC):
    """Operations exposed to operators and integrations."""

    @abstractmethod
    async def start(
        self,
        item: str | None = None,
        resource: str | None = None,
        max_iterations: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Start a new execution and return its id."""
        pass

    @abstractmethod
    async def pause(self, execution_id: str, reason: str | None = None) -> None:
        pass

    @abstractmethod
    async def resume(self, execution_id: str) -> None:
        pass

    @abstractmethod
    async def cancel(self, execution_id: str) -> None:
        pass

    @abstractmethod
    async def status(self, execution_id: str) -> WorkflowExecution:
        pass

    @abstractmethod
    def list_active(self) -> list[WorkflowExecution]:
        pass

    @abstractmethod
    async def submit_approval(
        self,
        request_id: str,
        decision: Decision,
        resolver: str,
        comment: str | None = None,
    ) -> ResolveResult:
        pass

    @abstractmethod
    def list_pending_approvals(self) -> list[ApprovalRequest]:
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[WorkflowEvent]:
        pass


class KeyedSemaphore:
    """Counting semaphore per key with configurable limits.

    Attributes:
        limit_for: Callable returning the limit for a key.
    """

    def __init__(self, limit_for: Callable[[str], int]) -> None:
        self.limit_for = limit_for
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._active: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def _get(self, key: str) -> asyncio.Semaphore:
        async with self._lock:
            if key not in self._semaphores:
                self._semaphores[key] = asyncio.Semaphore(self.limit_for(key))
            return self._semaphores[key]

    def active(self, key: str) -> int:
        """Number of holders currently admitted for the key."""
        return self._active.get(key, 0)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        semaphore = await self._get(key)
        async with semaphore:
            self._active[key] = self._active.get(key, 0) + 1
            try:
                yield
            finally:
                self._active[key] -= 1


class WorkflowSupervisor(WorkflowEngine):
    """Run executions concurrently under per-resource limits."""

    def __init__(
        self,
        state_machine: WorkflowStateMachine,
        store: ExecutionStore,
        approvals: ApprovalCheckpointManager,
        registry: CapabilityRegistry,
        event_bus: EventBus,
        notifier: NotificationChannel | None = None,
        concurrency: ConcurrencyConfig | None = None,
        default_resource: str = "default",
        default_max_iterations: int | None = None,
    ) -> None:
        self.state_machine = state_machine
        self.store = store
        self.approvals = approvals
        self.registry = registry
        self.event_bus = event_bus
        self.notifier = notifier
        self.concurrency = concurrency or ConcurrencyConfig()
        self.default_resource = default_resource
        self.default_max_iterations = default_max_iterations

        self._executions: dict[str, WorkflowExecution] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self._semaphore = KeyedSemaphore(self.concurrency.limit_for)
        self._closing = False

    # ------------------------------------------------------------------
    # WorkflowEngine
    # ------------------------------------------------------------------

    async def start(
        self,
        item: str | None = None,
        resource: str | None = None,
        max_iterations: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Start a new execution.

        Args:
            item: Specific item to process first; None picks the next
                unprocessed item from the platform
            resource: Shared-resource key for concurrency limits
            max_iterations: Items to process before completing
            context: Extra context handed to collaborators

        Returns:
            The new execution id.

        Raises:
            InvalidStateError: If the supervisor is shutting down.
            StorageError: If the execution could not be persisted.
        """
        if self._closing:
            raise InvalidStateError("Supervisor is shutting down")

        execution = WorkflowExecution.new(
            item=item,
            resource=resource or self.default_resource,
            max_iterations=max_iterations if max_iterations is not None else self.default_max_iterations,
            context=context,
        )
        await self.store.save_execution(execution)
        self._executions[execution.id] = execution
        log.info("execution_started", execution_id=execution.id, item=item, resource=execution.resource)
        self._schedule(execution.id)
        return execution.id

    async def pause(self, execution_id: str, reason: str | None = None) -> None:
        """Pause at the next phase boundary.

        Raises:
            InvalidStateError: If the execution is not running.
        """
        execution = self._get_active(execution_id)
        if execution.state != ExecutionState.RUNNING:
            raise InvalidStateError(f"Cannot pause execution in state '{execution.state.value}'")
        execution.pause_requested = True
        execution.pause_reason = reason
        log.info("execution_pause_requested", execution_id=execution_id, reason=reason)
        self._interrupt(execution_id)
        self._schedule(execution_id)

    async def resume(self, execution_id: str) -> None:
        """Resume a paused execution from its current phase.

        Raises:
            InvalidStateError: If the execution is terminal or blocked on a
                human (use ``submit_approval`` instead).
        """
        execution = self._get_active(execution_id)
        if execution.state.is_blocked_on_human:
            raise InvalidStateError("Execution is waiting on an approval; submit a decision instead")

        async with self._lock_for(execution_id):
            if execution.state == ExecutionState.PAUSED:
                execution.state = ExecutionState.RUNNING
                execution.pause_reason = None
                execution.pause_requested = False
                execution.updated_at = utcnow()
                await self.store.save_execution(execution)
                log.info("execution_resumed", execution_id=execution_id, phase=execution.current_phase.value)
        self._schedule(execution_id)

    async def cancel(self, execution_id: str) -> None:
        """Cancel at the next phase boundary. Idempotent for terminal executions."""
        execution = self._executions.get(execution_id)
        if execution is None:
            execution = await self.status(execution_id)
        if execution.is_terminal:
            return

        execution.cancel_requested = True
        log.info("execution_cancel_requested", execution_id=execution_id)
        self._executions[execution_id] = execution
        self._interrupt(execution_id)
        self._schedule(execution_id)

    async def status(self, execution_id: str) -> WorkflowExecution:
        """Current snapshot of an execution, live or persisted.

        Raises:
            ExecutionNotFoundError: If the id is unknown.
        """
        execution = self._executions.get(execution_id)
        if execution is not None:
            return execution
        execution = await self.store.load_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        return execution

    def list_active(self) -> list[WorkflowExecution]:
        active = [e for e in self._executions.values() if not e.is_terminal]
        return sorted(active, key=lambda e: e.created_at)

    async def submit_approval(
        self,
        request_id: str,
        decision: Decision,
        resolver: str,
        comment: str | None = None,
    ) -> ResolveResult:
        """Record a human decision and wake the blocked execution."""
        result = await self.approvals.resolve(request_id, decision, resolver, comment)
        if result.status != ResolveStatus.NOT_FOUND and result.request is not None:
            self._wake(result.request.execution_id)
        return result

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        return self.approvals.list_pending()

    def events(self) -> AsyncIterator[WorkflowEvent]:
        return self.event_bus.subscribe()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover_all(self) -> list[str]:
        """Reload every non-terminal execution and restart its driver.

        Pending approval requests are restored first. Requests whose
        execution is no longer blocked on them (a crash between opening the
        request and persisting the execution) are withdrawn.

        Returns:
            Ids of the recovered executions.
        """
        await self.approvals.load_pending()
        executions = await self.store.list_executions()

        recovered = []
        for execution in executions:
            if execution.is_terminal:
                continue
            self._executions[execution.id] = execution
            recovered.append(execution.id)
            if execution.state == ExecutionState.PAUSED:
                continue
            if execution.state.is_blocked_on_human:
                self._wake(execution.id)
            else:
                self._schedule(execution.id)

        for request in self.approvals.list_pending():
            owner = self._executions.get(request.execution_id)
            if owner is None or owner.pending_approval_id != request.id:
                log.warning("orphaned_approval_withdrawn", request_id=request.id, execution_id=request.execution_id)
                await self.approvals.withdraw(request.id, reason="orphaned request")

        log.info("executions_recovered", count=len(recovered))
        return recovered

    async def sweep(self, now: datetime | None = None) -> dict[str, Any]:
        """Periodic housekeeping.

        Times out overdue approvals, resumes executions whose approval was
        resolved elsewhere (e.g., from the CLI), and prunes stale workers.
        """
        expired = await self.approvals.expire_overdue(now)
        pruned = self.registry.prune_stale(now)

        woken = 0
        for execution in list(self._executions.values()):
            if not execution.state.is_blocked_on_human or execution.pending_approval_id is None:
                continue
            try:
                request = await self.approvals.get(execution.pending_approval_id)
            except StorageError as e:
                log.error("sweep_approval_lookup_failed", execution_id=execution.id, error=e.message)
                continue
            if request is None or request.is_resolved:
                woken += self._wake(execution.id)

        if expired or pruned or woken:
            log.info("sweep_completed", expired=len(expired), pruned=len(pruned), woken=woken)
        return {"expired": [r.id for r in expired], "pruned": pruned, "woken": woken}

    async def run_forever(self, interval: float = 30.0) -> None:
        """Sweep every ``interval`` seconds until shutdown."""
        while not self._closing:
            await self.sweep()
            await asyncio.sleep(interval)

    async def wait_idle(self) -> None:
        """Wait until no driver is running."""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop all drivers. Persisted state is left for ``recover_all``."""
        self._closing = True
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self.event_bus.close()
        if self.notifier is not None:
            await self.notifier.close()
        log.info("supervisor_stopped", cancelled=len(tasks))

    def active_on(self, resource: str) -> int:
        """Drivers currently admitted for a resource."""
        return self._semaphore.active(resource)

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def _get_active(self, execution_id: str) -> WorkflowExecution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
        if execution.is_terminal:
            raise InvalidStateError(f"Execution is already {execution.state.value}")
        return execution

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        if execution_id not in self._locks:
            self._locks[execution_id] = asyncio.Lock()
        return self._locks[execution_id]

    def _wake(self, execution_id: str) -> int:
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return 0
        return self._schedule(execution_id)

    def _schedule(self, execution_id: str) -> int:
        if self._closing:
            return 0
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            return 0
        task = asyncio.create_task(self._drive(execution_id), name=f"execution-{execution_id}")
        task.add_done_callback(self._on_driver_done)
        self._tasks[execution_id] = task
        return 1

    def _on_driver_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("execution_driver_crashed", task=task.get_name(), error=str(error), exc_info=error)

    async def _drive(self, execution_id: str) -> None:
        execution = self._executions[execution_id]
        bind_execution(execution_id, resource=execution.resource)

        async with self._semaphore.hold(execution.resource):
            while True:
                async with self._lock_for(execution_id):
                    try:
                        result = await self.state_machine.advance(execution)
                    except StorageError as e:
                        await self._pause_on_storage_error(execution, e)
                        return

                if result.status.needs_delay:
                    await self._sleep(execution_id, result.delay)
                    continue
                if result.status == StepStatus.ADVANCED:
                    continue

                log.debug("driver_stopped", execution_id=execution_id, status=result.status.value)
                if execution.is_terminal:
                    self._locks.pop(execution_id, None)
                return

    async def _sleep(self, execution_id: str, delay: float) -> None:
        """Wait out a step delay, returning early if ``_interrupt`` is called."""
        wakeup = self._wakeups.setdefault(execution_id, asyncio.Event())
        try:
            await asyncio.wait_for(wakeup.wait(), timeout=delay)
        except TimeoutError:
            pass
        finally:
            if self._wakeups.get(execution_id) is wakeup:
                del self._wakeups[execution_id]

    def _interrupt(self, execution_id: str) -> None:
        wakeup = self._wakeups.get(execution_id)
        if wakeup is not None:
            wakeup.set()

    async def _pause_on_storage_error(self, execution: WorkflowExecution, error: StorageError) -> None:
        log.error(
            "execution_storage_failure",
            execution_id=execution.id,
            phase=execution.current_phase.value,
            operation=error.operation,
            error=error.message,
        )
        if not execution.is_terminal and not execution.state.is_blocked_on_human:
            execution.state = ExecutionState.PAUSED
            execution.pause_reason = f"storage error: {error.message}"
            try:
                await self.store.save_execution(execution)
            except StorageError as e:
                log.error("execution_pause_not_persisted", execution_id=execution.id, error=e.message)

        if self.notifier is not None:
            try:
                await self.notifier.alert(
                    execution.id,
                    "Execution paused after a storage failure",
                    operation=error.operation,
                    error=error.message,
                )
            except Exception as e:
                log.warning("alert_failed", execution_id=execution.id, error=str(e))
