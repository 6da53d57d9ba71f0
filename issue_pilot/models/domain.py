"""
Domain models for the orchestration engine.

This module contains the data classes representing the core entities of the
engine: items, workflow executions and their transition log, approval
requests, worker registrations, and the results handed between components.
The persisted forms are defined in ``issue_pilot.engine.types``; every model
that is stored provides ``to_dict()`` / ``from_dict()``.

Example:
    Starting a fresh execution record::

        execution = WorkflowExecution.new(item="42", resource="acme/widgets")
        execution.record(
            PhaseTransition(
                from_phase=None,
                to_phase=Phase.ITEM_SELECTION,
                outcome=TransitionOutcome.SUCCESS,
            )
        )
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from issue_pilot.engine.types import (
    ApprovalRecord,
    ExecutionRecord,
    StateVariant,
    TransitionRecord,
    WorkflowErrorRecord,
)
from issue_pilot.enums import (
    ApprovalKind,
    ApprovalResolution,
    EventKind,
    ExecutionState,
    FailureClassification,
    Phase,
    StepStatus,
    TransitionOutcome,
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def new_id() -> str:
    """Generate an opaque identifier for executions and approval requests."""
    return uuid.uuid4().hex


@dataclass
class Item:
    """A unit of work supplied by the platform (e.g., a tracked issue).

    The engine treats items as opaque apart from ``ref``, which must be
    stable across restarts because it is what gets persisted.
    """

    ref: str
    """Stable platform reference, e.g. the issue number as a string."""

    title: str = ""
    body: str = ""
    labels: list[str] = field(default_factory=list)
    url: str = ""


@dataclass(frozen=True)
class ChangeRef:
    """Reference to a submitted change (pull request, merge request)."""

    id: str
    branch: str
    url: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "branch": self.branch, "url": self.url}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeRef":
        return cls(id=str(data["id"]), branch=data["branch"], url=data.get("url", ""))


@dataclass(frozen=True)
class PhaseTransition:
    """Immutable audit record of one phase attempt.

    Transitions form the append-only audit trail of an execution. A
    ``success`` record moves ``from_phase`` to ``to_phase``; ``retry`` and
    ``failure`` records keep the execution on the same phase.
    """

    from_phase: Phase | None
    to_phase: Phase
    outcome: TransitionOutcome
    timestamp: datetime = field(default_factory=utcnow)
    worker_id: str | None = None
    worker_role: str | None = None
    attempt: int = 0
    duration: float = 0.0
    iteration: int = 1
    data: Any = None
    note: str | None = None

    def to_dict(self) -> TransitionRecord:
        record: TransitionRecord = {
            "from_phase": self.from_phase.value if self.from_phase else None,
            "to_phase": self.to_phase.value,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "worker_id": self.worker_id,
            "worker_role": self.worker_role,
            "attempt": self.attempt,
            "duration": self.duration,
            "iteration": self.iteration,
            "data": self.data,
            "note": self.note,
        }
        return record

    @classmethod
    def from_dict(cls, data: TransitionRecord) -> "PhaseTransition":
        from_phase = data.get("from_phase")
        return cls(
            from_phase=Phase(from_phase) if from_phase else None,
            to_phase=Phase(data["to_phase"]),
            outcome=TransitionOutcome(data["outcome"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            worker_id=data.get("worker_id"),
            worker_role=data.get("worker_role"),
            attempt=data.get("attempt", 0),
            duration=data.get("duration", 0.0),
            iteration=data.get("iteration", 1),
            data=data.get("data"),
            note=data.get("note"),
        )


@dataclass
class WorkflowError:
    """Failure attached to an execution once automated recovery gave up.

    Only present while the execution is paused, escalated, or terminal.
    """

    phase: Phase
    classification: FailureClassification
    message: str
    retry_attempts: int = 0
    escalated: bool = False
    escalated_at: datetime | None = None

    def to_dict(self) -> WorkflowErrorRecord:
        return {
            "phase": self.phase.value,
            "classification": self.classification.value,
            "message": self.message,
            "retry_attempts": self.retry_attempts,
            "escalated": self.escalated,
            "escalated_at": _iso(self.escalated_at),
        }

    @classmethod
    def from_dict(cls, data: WorkflowErrorRecord) -> "WorkflowError":
        return cls(
            phase=Phase(data["phase"]),
            classification=FailureClassification(data["classification"]),
            message=data["message"],
            retry_attempts=data.get("retry_attempts", 0),
            escalated=data.get("escalated", False),
            escalated_at=_parse(data.get("escalated_at")),
        )


@dataclass
class WorkflowExecution:
    """One workflow instance driving items through the phase sequence.

    Owned exclusively by a single ``WorkflowStateMachine`` at a time and
    persisted after every transition. ``phase_history`` must only grow
    through ``record()``.

    Attributes:
        id: Unique execution identifier.
        item: Reference of the item currently being processed.
        resource: Shared-resource key used for concurrency limits
            (typically the target repository).
        current_phase: Phase to run next (or being waited on).
        state: Lifecycle state.
        phase_history: Append-only transition log.
        assigned_workers: Worker chosen for each phase of the current item.
        retry_count: Retries consumed on the current phase.
        iteration: 1-based count of items processed by this execution.
        max_iterations: Stop after this many items (None = unbounded).
        error: Failure attached in terminal, paused, or escalation states.
        artifacts: Output of each completed phase for the current item.
        pending_approval_id: The single unresolved approval request, if any.
        processed_items: Item references already handled by this execution.
        status_polls: Status checks spent on the current change.
        cancel_requested: Cancellation flag observed at phase boundaries.
        pause_requested: Pause flag observed at phase boundaries (not persisted).
        pause_reason: Why the execution was paused.
        context: Extra structured context handed to collaborators.
    """

    id: str
    item: str | None
    resource: str
    current_phase: Phase = Phase.ITEM_SELECTION
    state: ExecutionState = ExecutionState.RUNNING
    phase_history: list[PhaseTransition] = field(default_factory=list)
    assigned_workers: dict[str, str] = field(default_factory=dict)
    retry_count: int = 0
    iteration: int = 1
    max_iterations: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    error: WorkflowError | None = None
    artifacts: dict[str, Any] = field(default_factory=dict)
    pending_approval_id: str | None = None
    processed_items: list[str] = field(default_factory=list)
    status_polls: int = 0
    cancel_requested: bool = False
    pause_requested: bool = False
    pause_reason: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        item: str | None,
        resource: str,
        max_iterations: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> "WorkflowExecution":
        """Create a fresh execution positioned at item-selection."""
        return cls(
            id=new_id(),
            item=item,
            resource=resource,
            max_iterations=max_iterations,
            context=dict(context or {}),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def record(self, transition: PhaseTransition) -> None:
        """Append a transition to the audit trail."""
        self.phase_history.append(transition)
        self.updated_at = transition.timestamp

    def last_transition(self) -> PhaseTransition | None:
        return self.phase_history[-1] if self.phase_history else None

    def restore_counters(self) -> None:
        """Take retry and poll counters from a trailing retry transition.

        Retry transitions carry the counters they leave behind, so an
        execution whose snapshot missed the last write resumes with the
        budget it had actually spent.
        """
        last = self.last_transition()
        if (
            last is None
            or last.outcome != TransitionOutcome.RETRY
            or last.from_phase != self.current_phase
            or last.iteration != self.iteration
            or not isinstance(last.data, dict)
        ):
            return
        self.retry_count = int(last.data.get("retry_count", self.retry_count))
        self.status_polls = int(last.data.get("status_polls", self.status_polls))

    def to_dict(self) -> ExecutionRecord:
        state: StateVariant = {"tag": self.state.value}
        if self.state.is_blocked_on_human and self.pending_approval_id:
            state["approval_id"] = self.pending_approval_id
        if self.state == ExecutionState.PAUSED and self.pause_reason:
            state["reason"] = self.pause_reason

        return {
            "id": self.id,
            "item": self.item,
            "resource": self.resource,
            "current_phase": self.current_phase.value,
            "state": state,
            "phase_history": [t.to_dict() for t in self.phase_history],
            "assigned_workers": dict(self.assigned_workers),
            "retry_count": self.retry_count,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "error": self.error.to_dict() if self.error else None,
            "artifacts": dict(self.artifacts),
            "processed_items": list(self.processed_items),
            "status_polls": self.status_polls,
            "cancel_requested": self.cancel_requested,
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: ExecutionRecord) -> "WorkflowExecution":
        variant = data["state"]
        error = data.get("error")
        return cls(
            id=data["id"],
            item=data.get("item"),
            resource=data["resource"],
            current_phase=Phase(data["current_phase"]),
            state=ExecutionState(variant["tag"]),
            phase_history=[PhaseTransition.from_dict(t) for t in data.get("phase_history", [])],
            assigned_workers=dict(data.get("assigned_workers", {})),
            retry_count=data.get("retry_count", 0),
            iteration=data.get("iteration", 1),
            max_iterations=data.get("max_iterations"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            error=WorkflowError.from_dict(error) if error else None,
            artifacts=dict(data.get("artifacts", {})),
            pending_approval_id=variant.get("approval_id"),
            processed_items=list(data.get("processed_items", [])),
            status_polls=data.get("status_polls", 0),
            cancel_requested=data.get("cancel_requested", False),
            pause_reason=variant.get("reason"),
            context=dict(data.get("context", {})),
        )


@dataclass
class ApprovalRequest:
    """A pending or resolved human decision gating an execution.

    Resolved exactly once: the first resolution wins and is never
    overwritten. Resolved requests are archived but remain readable.
    """

    id: str
    execution_id: str
    phase: Phase
    kind: ApprovalKind = ApprovalKind.PHASE_GATE
    payload: Any = None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    resolution: ApprovalResolution = ApprovalResolution.PENDING
    resolver: str | None = None
    resolved_at: datetime | None = None
    comment: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolution.is_resolved

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the request is still pending past its expiry."""
        if self.is_resolved or self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> ApprovalRecord:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "phase": self.phase.value,
            "kind": self.kind.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "expires_at": _iso(self.expires_at),
            "resolution": self.resolution.value,
            "resolver": self.resolver,
            "resolved_at": _iso(self.resolved_at),
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: ApprovalRecord) -> "ApprovalRequest":
        return cls(
            id=data["id"],
            execution_id=data["execution_id"],
            phase=Phase(data["phase"]),
            kind=ApprovalKind(data.get("kind", ApprovalKind.PHASE_GATE.value)),
            payload=data.get("payload"),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=_parse(data.get("expires_at")),
            resolution=ApprovalResolution(data.get("resolution", ApprovalResolution.PENDING.value)),
            resolver=data.get("resolver"),
            resolved_at=_parse(data.get("resolved_at")),
            comment=data.get("comment"),
        )


@dataclass
class WorkerMetrics:
    """Live and historical metrics for a registered worker."""

    phase_successes: dict[str, int] = field(default_factory=dict)
    phase_failures: dict[str, int] = field(default_factory=dict)
    completed: int = 0
    total_duration: float = 0.0
    current_load: int = 0

    def success_rate(self, phase: Phase | str | None = None) -> float:
        """Success rate for a phase, falling back to the overall rate.

        A worker with no recorded history scores 1.0 so new workers are
        not starved behind established ones.
        """
        if phase is not None:
            key = str(phase)
            ok = self.phase_successes.get(key, 0)
            total = ok + self.phase_failures.get(key, 0)
            if total:
                return ok / total

        ok = sum(self.phase_successes.values())
        total = ok + sum(self.phase_failures.values())
        return ok / total if total else 1.0

    @property
    def average_duration(self) -> float:
        return self.total_duration / self.completed if self.completed else 0.0


@dataclass
class WorkerRegistration:
    """A connected worker, its declared capabilities, and live metrics."""

    id: str
    roles: frozenset[str]
    specializations: frozenset[str] = frozenset()
    max_concurrent: int = 1
    sequence: int = 0
    registered_at: datetime = field(default_factory=utcnow)
    last_heartbeat: datetime = field(default_factory=utcnow)
    metrics: WorkerMetrics = field(default_factory=WorkerMetrics)

    @property
    def has_capacity(self) -> bool:
        return self.metrics.current_load < self.max_concurrent


@dataclass(frozen=True)
class WorkerSelection:
    """Worker chosen by the role router for one phase attempt."""

    worker_id: str
    role: str
    phase: Phase
    success_rate: float = 1.0
    load: int = 0
    specialization_matches: int = 0


@dataclass
class PhaseOutput:
    """Normalised outcome of a successful Phase Executor call.

    Attributes:
        artifact: Collaborator output recorded on the transition.
        next_phase: Overrides the default successor (e.g., skip refactoring).
        pending: The phase must be polled again later (status monitoring).
        finished: No more work is available; the workflow completes.
        note: Short annotation stored on the transition.
    """

    artifact: Any = None
    next_phase: Phase | None = None
    pending: bool = False
    finished: bool = False
    note: str | None = None


@dataclass
class PhaseResult:
    """Result of a single ``WorkflowStateMachine.advance`` step."""

    execution_id: str
    phase: Phase
    status: StepStatus
    transition: PhaseTransition | None = None
    delay: float = 0.0
    approval_id: str | None = None
    error: WorkflowError | None = None


@dataclass(frozen=True)
class WorkflowEvent:
    """Event emitted on the engine event stream.

    Minimally carries ``execution_id``, ``phase``, ``timestamp`` and
    ``outcome``; ``data`` holds kind-specific detail.
    """

    kind: EventKind
    execution_id: str
    phase: Phase | None
    outcome: str
    timestamp: datetime = field(default_factory=utcnow)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "execution_id": self.execution_id,
            "phase": self.phase.value if self.phase else None,
            "outcome": self.outcome,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }
