"""
Workflow state machine: drives one execution through the phase sequence.

``advance()`` performs exactly one step and returns a ``PhaseResult``
telling the driver what happened and whether to wait before the next call.
The state machine never sleeps itself; delays (retry backoff, status
polling, routing deferral) are returned to the caller.

Step Order:
    1. Terminal executions are left alone.
    2. Cancellation and pause requests are honoured at the phase boundary.
    3. A success already in the transition log for the current phase is
       replayed without calling the collaborator again (crash recovery).
    4. Executions blocked on a human poll their approval request.
    5. Approval-gated phases open a request through the approval channel.
    6. Automated phases are routed to a worker and executed.

Failure Handling:
    Phase failures are classified and handed to the retry policy:

    - retry: a ``retry`` transition is recorded and the driver waits the
      backoff delay before running the phase again
    - escalate: a ``failure`` transition is recorded, an escalation-resume
      request is opened and the execution enters ``escalation``
    - fail: a ``failure`` transition is recorded and the execution ends in
      ``failed``

    Phase errors never leave ``advance()``. ``StorageError`` does: the
    supervisor pauses the execution rather than continuing on state it
    could not persist.

Example:
    >>> machine = WorkflowStateMachine(settings, store, router, executor, approvals, channel, events)
    >>> result = await machine.advance(execution)
    >>> result.status
    <StepStatus.ADVANCED: 'advanced'>
"""

import time
from typing import Any

import structlog

from issue_pilot.config.settings import EngineSettings
from issue_pilot.engine.approval_channels import ApprovalChannel
from issue_pilot.engine.approvals import ApprovalCheckpointManager, require_approved
from issue_pilot.engine.events import EventBus
from issue_pilot.engine.failure_classifier import classify
from issue_pilot.engine.phase_executor import NOTE_SKIPPED, PhaseExecutor, routing_context
from issue_pilot.engine.phases import is_approval_gated, next_phase
from issue_pilot.engine.retry_policy import RetryPolicy
from issue_pilot.engine.role_router import RoleRouter
from issue_pilot.engine.state_manager import ExecutionStore
from issue_pilot.enums import (
    ApprovalKind,
    ApprovalResolution,
    EventKind,
    ExecutionState,
    Phase,
    RetryAction,
    StepStatus,
    TransitionOutcome,
)
from issue_pilot.exceptions import ApprovalError, ApprovalNotFoundError, NoCapableWorker, PermanentPhaseError
from issue_pilot.models.domain import (
    ApprovalRequest,
    PhaseOutput,
    PhaseResult,
    PhaseTransition,
    WorkerSelection,
    WorkflowError,
    WorkflowEvent,
    WorkflowExecution,
    utcnow,
)

log = structlog.get_logger(__name__)

HUMAN_ROLE = "human"

# A success transition whose target equals its source ends the workflow.
NOTE_COMPLETED = "completed"
NOTE_CANCELLED = "cancelled"
NOTE_CHANGES_REQUESTED = "changes-requested"


class WorkflowStateMachine:
    """Advance executions one phase step at a time."""

    def __init__(
        self,
        settings: EngineSettings,
        store: ExecutionStore,
        router: RoleRouter,
        executor: PhaseExecutor,
        approvals: ApprovalCheckpointManager,
        channel: ApprovalChannel,
        events: EventBus,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.router = router
        self.executor = executor
        self.approvals = approvals
        self.channel = channel
        self.events = events
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=settings.retry.max_retries,
            base_delay=settings.retry.base_delay,
            max_delay=settings.retry.max_delay,
            jitter=settings.retry.jitter,
            escalation_enabled=settings.retry.escalation_enabled,
        )

    async def advance(self, execution: WorkflowExecution) -> PhaseResult:
        """Perform one step of the execution.

        Raises:
            StorageError: If the step's state could not be persisted.
        """
        if execution.is_terminal:
            return self._result(execution, self._terminal_status(execution))

        if execution.cancel_requested:
            return await self._cancel(execution)

        if execution.state == ExecutionState.PAUSED:
            return self._result(execution, StepStatus.PAUSED)

        if execution.pause_requested and execution.state == ExecutionState.RUNNING:
            execution.pause_requested = False
            execution.state = ExecutionState.PAUSED
            execution.pause_reason = execution.pause_reason or "requested"
            await self.store.save_execution(execution)
            log.info("execution_paused", execution_id=execution.id, phase=execution.current_phase.value)
            return self._result(execution, StepStatus.PAUSED)

        replay = self._replayable(execution)
        if replay is not None:
            execution.state = ExecutionState.RUNNING
            execution.pending_approval_id = None
            log.info("transition_replayed", execution_id=execution.id, phase=execution.current_phase.value)
            self._apply_success(execution, replay)
            await self.store.save_execution(execution)
            return self._result(execution, self._status_after_success(execution), transition=replay)

        if execution.state.is_blocked_on_human:
            return await self._check_approval(execution)

        if is_approval_gated(execution.current_phase):
            payload = {
                "item": execution.artifacts.get(Phase.ITEM_SELECTION.value),
                "plan": execution.artifacts.get(Phase.PLAN_GENERATION.value),
            }
            return await self._block_on_human(
                execution, ApprovalKind.PHASE_GATE, payload, self.settings.approvals.timeout
            )

        return await self._run_automated(execution)

    # ------------------------------------------------------------------
    # Automated phases
    # ------------------------------------------------------------------

    async def _run_automated(self, execution: WorkflowExecution) -> PhaseResult:
        phase = execution.current_phase
        try:
            worker = await self.router.select_worker(phase, routing_context(execution))
        except NoCapableWorker as e:
            log.info("phase_deferred", execution_id=execution.id, phase=phase.value, roles=list(e.roles))
            return self._result(execution, StepStatus.DEFERRED, delay=self.settings.routing.retry_interval)

        execution.assigned_workers[phase.value] = worker.worker_id
        started = time.monotonic()
        try:
            output = await self.executor.execute(phase, execution, worker)
        except Exception as e:
            duration = time.monotonic() - started
            await self.router.release(worker, success=False, duration=duration)
            return await self._handle_failure(execution, e, worker, duration)

        duration = time.monotonic() - started
        await self.router.release(worker, success=True, duration=duration)

        if output.pending:
            return await self._schedule_poll(execution, output, worker, duration)

        if output.finished:
            return await self._record_success(
                execution, phase, output.artifact, target=phase, worker=worker, duration=duration, note=NOTE_COMPLETED
            )

        if phase == Phase.REFACTORING and output.artifact and self.executor.refactoring_requires_approval:
            return await self._block_on_human(
                execution, ApprovalKind.REFACTORING, output.artifact, self.settings.approvals.timeout
            )

        return await self._complete(execution, output, worker, duration)

    async def _complete(
        self,
        execution: WorkflowExecution,
        output: PhaseOutput,
        worker: WorkerSelection | None,
        duration: float,
    ) -> PhaseResult:
        phase = execution.current_phase
        target = output.next_phase or next_phase(phase)
        note = output.note

        if phase == Phase.NEXT_ITEM:
            reached_limit = execution.max_iterations is not None and execution.iteration >= execution.max_iterations
            if execution.cancel_requested:
                target, note = Phase.NEXT_ITEM, NOTE_CANCELLED
            elif reached_limit:
                target, note = Phase.NEXT_ITEM, NOTE_COMPLETED
            else:
                target = Phase.ITEM_SELECTION

        assert target is not None
        return await self._record_success(
            execution, phase, output.artifact, target=target, worker=worker, duration=duration, note=note
        )

    async def _record_success(
        self,
        execution: WorkflowExecution,
        phase: Phase,
        artifact: Any,
        *,
        target: Phase,
        worker: WorkerSelection | None = None,
        duration: float = 0.0,
        note: str | None = None,
        resolver: str | None = None,
    ) -> PhaseResult:
        transition = PhaseTransition(
            from_phase=phase,
            to_phase=target,
            outcome=TransitionOutcome.SUCCESS,
            worker_id=worker.worker_id if worker else resolver,
            worker_role=worker.role if worker else (HUMAN_ROLE if resolver else None),
            attempt=execution.retry_count,
            duration=duration,
            iteration=execution.iteration,
            data=artifact,
            note=note,
        )
        await self._commit(execution, transition)
        return self._result(execution, self._status_after_success(execution), transition=transition)

    async def _schedule_poll(
        self,
        execution: WorkflowExecution,
        output: PhaseOutput,
        worker: WorkerSelection,
        duration: float,
    ) -> PhaseResult:
        phase = execution.current_phase
        if execution.status_polls + 1 > self.settings.workflow.status_max_polls:
            error = PermanentPhaseError(
                f"Status still pending after {self.settings.workflow.status_max_polls} checks", phase=phase.value
            )
            return await self._handle_failure(execution, error, worker, duration)

        execution.status_polls += 1
        transition = PhaseTransition(
            from_phase=phase,
            to_phase=phase,
            outcome=TransitionOutcome.RETRY,
            worker_id=worker.worker_id,
            worker_role=worker.role,
            attempt=execution.retry_count,
            duration=duration,
            iteration=execution.iteration,
            data=self._counters(execution.retry_count, execution.status_polls),
            note=output.note,
        )
        await self._commit(execution, transition)
        return self._result(
            execution,
            StepStatus.POLL_SCHEDULED,
            transition=transition,
            delay=self.settings.workflow.status_poll_interval,
        )

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    async def _handle_failure(
        self,
        execution: WorkflowExecution,
        raw_error: BaseException,
        worker: WorkerSelection | None,
        duration: float,
    ) -> PhaseResult:
        phase = execution.current_phase
        classification = classify(raw_error, prior_transient_retries=execution.retry_count)
        decision = self.retry_policy.decide(classification, execution.retry_count)
        message = getattr(raw_error, "message", None) or str(raw_error) or type(raw_error).__name__

        log.warning(
            "phase_failed",
            execution_id=execution.id,
            phase=phase.value,
            classification=classification.value,
            action=decision.action.value,
            attempt=execution.retry_count,
            error=message,
        )

        retrying = decision.action == RetryAction.RETRY
        transition = PhaseTransition(
            from_phase=phase,
            to_phase=phase,
            outcome=TransitionOutcome.RETRY if retrying else TransitionOutcome.FAILURE,
            worker_id=worker.worker_id if worker else None,
            worker_role=worker.role if worker else None,
            attempt=execution.retry_count,
            duration=duration,
            iteration=execution.iteration,
            data=self._counters(execution.retry_count + 1, execution.status_polls) if retrying else None,
            note=message,
        )

        if retrying:
            execution.retry_count += 1
            await self._commit(execution, transition)
            return self._result(execution, StepStatus.RETRY_SCHEDULED, transition=transition, delay=decision.delay)

        escalating = decision.action == RetryAction.ESCALATE
        error = WorkflowError(
            phase=phase,
            classification=decision.classification,
            message=message,
            retry_attempts=execution.retry_count,
            escalated=escalating,
            escalated_at=utcnow() if escalating else None,
        )
        execution.error = error

        if not escalating:
            execution.state = ExecutionState.FAILED
            await self._commit(execution, transition)
            log.error("execution_failed", execution_id=execution.id, phase=phase.value, error=message)
            return self._result(execution, StepStatus.FAILED, transition=transition, error=error)

        request = await self.approvals.request(
            execution.id,
            phase,
            payload={"error": error.to_dict()},
            timeout=self.settings.approvals.escalation_timeout,
            kind=ApprovalKind.ESCALATION_RESUME,
        )
        execution.state = ExecutionState.ESCALATION
        execution.pending_approval_id = request.id
        await self._commit(execution, transition)
        await self.events.publish(
            WorkflowEvent(
                kind=EventKind.ESCALATION,
                execution_id=execution.id,
                phase=phase,
                outcome=decision.classification.value,
                data={"request_id": request.id, "retry_attempts": error.retry_attempts, "message": message},
            )
        )
        return self._result(
            execution, StepStatus.ESCALATED, transition=transition, approval_id=request.id, error=error
        )

    # ------------------------------------------------------------------
    # Human checkpoints
    # ------------------------------------------------------------------

    async def _block_on_human(
        self,
        execution: WorkflowExecution,
        kind: ApprovalKind,
        payload: Any,
        timeout: float | None,
    ) -> PhaseResult:
        request = await self.approvals.request(execution.id, execution.current_phase, payload, timeout, kind)
        execution.state = ExecutionState.AWAITING_APPROVAL
        execution.pending_approval_id = request.id
        execution.updated_at = utcnow()
        await self.store.save_execution(execution)

        resolution = await self.channel.deliver(self.approvals, request)
        if not resolution.is_resolved:
            return self._result(execution, StepStatus.AWAITING_APPROVAL, approval_id=request.id)

        resolved = await self.approvals.get(request.id)
        assert resolved is not None
        return await self._apply_resolution(execution, resolved)

    async def _check_approval(self, execution: WorkflowExecution) -> PhaseResult:
        request_id = execution.pending_approval_id
        try:
            if request_id is None:
                raise ApprovalNotFoundError("Blocked execution has no approval request")
            resolution = await self.approvals.poll(request_id)
        except ApprovalNotFoundError:
            return await self._recover_lost_request(execution)

        if not resolution.is_resolved:
            return self._result(execution, StepStatus.AWAITING_APPROVAL, approval_id=request_id)

        request = await self.approvals.get(request_id)
        assert request is not None
        return await self._apply_resolution(execution, request)

    async def _recover_lost_request(self, execution: WorkflowExecution) -> PhaseResult:
        log.error(
            "approval_request_missing",
            execution_id=execution.id,
            request_id=execution.pending_approval_id,
            state=execution.state.value,
        )
        if execution.state == ExecutionState.ESCALATION:
            request = await self.approvals.request(
                execution.id,
                execution.current_phase,
                payload={"error": execution.error.to_dict() if execution.error else None},
                timeout=self.settings.approvals.escalation_timeout,
                kind=ApprovalKind.ESCALATION_RESUME,
            )
            execution.pending_approval_id = request.id
            await self.store.save_execution(execution)
            return self._result(execution, StepStatus.ESCALATED, approval_id=request.id, error=execution.error)

        # Re-run the phase; a gate reopens and refactoring proposes again
        execution.state = ExecutionState.RUNNING
        execution.pending_approval_id = None
        await self.store.save_execution(execution)
        return self._result(execution, StepStatus.ADVANCED)

    async def _apply_resolution(self, execution: WorkflowExecution, request: ApprovalRequest) -> PhaseResult:
        resolution = request.resolution
        phase = execution.current_phase
        execution.pending_approval_id = None

        log.info(
            "approval_applied",
            execution_id=execution.id,
            phase=phase.value,
            kind=request.kind.value,
            resolution=resolution.value,
        )

        if request.kind == ApprovalKind.ESCALATION_RESUME:
            try:
                require_approved(request)
            except ApprovalError as e:
                log.warning("escalation_aborted", execution_id=execution.id, phase=phase.value, reason=e.message)
                execution.state = ExecutionState.FAILED
                await self.store.save_execution(execution)
                return self._result(execution, StepStatus.FAILED, error=execution.error)

            execution.state = ExecutionState.RUNNING
            execution.retry_count = 0
            execution.status_polls = 0
            execution.error = None
            await self.store.save_execution(execution)
            return self._result(execution, StepStatus.ADVANCED)

        decision = {"resolution": resolution.value, "resolver": request.resolver, "comment": request.comment}
        execution.state = ExecutionState.RUNNING

        if request.kind == ApprovalKind.REFACTORING:
            try:
                require_approved(request)
            except ApprovalError as e:
                log.info("refactoring_skipped", execution_id=execution.id, reason=e.message)
                return await self._record_success(
                    execution, phase, decision, target=Phase.CHANGE_SUBMISSION, note=NOTE_SKIPPED, resolver=request.resolver
                )
            started = time.monotonic()
            try:
                output = await self.executor.apply_refactoring(execution, request.payload)
            except Exception as e:
                return await self._handle_failure(execution, e, None, time.monotonic() - started)
            return await self._record_success(
                execution,
                phase,
                output.artifact,
                target=Phase.CHANGE_SUBMISSION,
                duration=time.monotonic() - started,
                resolver=request.resolver,
            )

        if resolution == ApprovalResolution.CHANGES_REQUESTED:
            return await self._record_success(
                execution,
                phase,
                decision,
                target=Phase.PLAN_GENERATION,
                note=NOTE_CHANGES_REQUESTED,
                resolver=request.resolver,
            )

        try:
            require_approved(request)
        except ApprovalError as e:
            log.warning("workflow_cancelled_at_gate", execution_id=execution.id, phase=phase.value, reason=e.message)
        else:
            return await self._record_success(
                execution, phase, decision, target=Phase.BRANCH_CREATION, resolver=request.resolver
            )

        # Rejected or timed out: the workflow ends without further phases
        execution.state = ExecutionState.CANCELLED
        transition = PhaseTransition(
            from_phase=phase,
            to_phase=phase,
            outcome=TransitionOutcome.FAILURE,
            worker_id=request.resolver,
            worker_role=HUMAN_ROLE,
            attempt=execution.retry_count,
            iteration=execution.iteration,
            data=decision,
            note=resolution.value,
        )
        await self._commit(execution, transition)
        return self._result(execution, StepStatus.CANCELLED, transition=transition)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _cancel(self, execution: WorkflowExecution) -> PhaseResult:
        if execution.pending_approval_id is not None:
            await self.approvals.withdraw(execution.pending_approval_id, reason="execution cancelled")
            execution.pending_approval_id = None
        execution.state = ExecutionState.CANCELLED
        execution.updated_at = utcnow()
        await self.store.save_execution(execution)
        log.info("execution_cancelled", execution_id=execution.id, phase=execution.current_phase.value)
        return self._result(execution, StepStatus.CANCELLED)

    async def _commit(self, execution: WorkflowExecution, transition: PhaseTransition) -> None:
        """Record, persist, and publish one transition.

        The transition is appended to the log before the snapshot is
        rewritten; a success is applied to the execution in between.
        """
        execution.record(transition)
        await self.store.append_transition(execution.id, transition)
        if transition.outcome == TransitionOutcome.SUCCESS:
            self._apply_success(execution, transition)
        await self.store.save_execution(execution)

        log.info(
            "phase_transition",
            execution_id=execution.id,
            from_phase=transition.from_phase.value if transition.from_phase else None,
            to_phase=transition.to_phase.value,
            outcome=transition.outcome.value,
            attempt=transition.attempt,
            worker_id=transition.worker_id,
        )
        await self.events.publish(
            WorkflowEvent(
                kind=EventKind.PHASE_TRANSITION,
                execution_id=execution.id,
                phase=transition.from_phase,
                outcome=transition.outcome.value,
                timestamp=transition.timestamp,
                data={
                    "to_phase": transition.to_phase.value,
                    "worker_id": transition.worker_id,
                    "attempt": transition.attempt,
                    "iteration": transition.iteration,
                    "note": transition.note,
                    "state": execution.state.value,
                },
            )
        )

    def _apply_success(self, execution: WorkflowExecution, transition: PhaseTransition) -> None:
        """Apply a success transition to the execution.

        Shared by live execution and recovery replay, so it must depend only
        on the transition and the execution's persisted fields.
        """
        phase = transition.from_phase
        assert phase is not None
        execution.retry_count = 0

        if transition.to_phase == phase:
            execution.state = ExecutionState.CANCELLED if transition.note == NOTE_CANCELLED else ExecutionState.COMPLETED
            if phase == Phase.NEXT_ITEM and execution.item and execution.item not in execution.processed_items:
                execution.processed_items.append(execution.item)
            return

        execution.artifacts[phase.value] = transition.data

        if phase == Phase.ITEM_SELECTION and isinstance(transition.data, dict):
            execution.item = str(transition.data["ref"])
        elif phase == Phase.STATUS_MONITORING:
            execution.status_polls = 0
        elif phase == Phase.PLAN_APPROVAL and transition.to_phase == Phase.PLAN_GENERATION:
            comment = transition.data.get("comment") if isinstance(transition.data, dict) else None
            execution.context["feedback"] = comment
        elif phase == Phase.PLAN_GENERATION:
            execution.context.pop("feedback", None)
        elif phase == Phase.NEXT_ITEM:
            if execution.item and execution.item not in execution.processed_items:
                execution.processed_items.append(execution.item)
            execution.iteration += 1
            execution.item = None
            execution.artifacts = {}
            execution.assigned_workers = {}
            execution.status_polls = 0

        execution.current_phase = transition.to_phase

    def _replayable(self, execution: WorkflowExecution) -> PhaseTransition | None:
        last = execution.last_transition()
        if (
            last is not None
            and last.outcome == TransitionOutcome.SUCCESS
            and last.from_phase == execution.current_phase
            and last.iteration == execution.iteration
        ):
            return last
        return None

    def _status_after_success(self, execution: WorkflowExecution) -> StepStatus:
        if execution.is_terminal:
            return self._terminal_status(execution)
        return StepStatus.ADVANCED

    @staticmethod
    def _counters(retry_count: int, status_polls: int) -> dict[str, int]:
        # Read back by WorkflowExecution.restore_counters
        return {"retry_count": retry_count, "status_polls": status_polls}

    @staticmethod
    def _terminal_status(execution: WorkflowExecution) -> StepStatus:
        if execution.state == ExecutionState.COMPLETED:
            return StepStatus.COMPLETED
        if execution.state == ExecutionState.CANCELLED:
            return StepStatus.CANCELLED
        return StepStatus.FAILED

    @staticmethod
    def _result(execution: WorkflowExecution, status: StepStatus, **kwargs: Any) -> PhaseResult:
        return PhaseResult(execution_id=execution.id, phase=execution.current_phase, status=status, **kwargs)
