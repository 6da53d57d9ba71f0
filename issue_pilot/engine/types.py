"""Type definitions for persisted workflow records.

This module provides TypedDict definitions for the JSON documents the durable
store reads and writes, enabling static type checking for record access.
These shapes are the on-disk contract; the in-memory dataclasses in
``issue_pilot.models.domain`` convert to and from them.

Example:
    A persisted execution awaiting plan approval::

        record: ExecutionRecord = {
            "id": "3f2a9c",
            "item": "42",
            "resource": "acme/widgets",
            "current_phase": "plan-approval",
            "state": {"tag": "awaiting-approval", "approval_id": "b71e04"},
            "phase_history": [...],
            "retry_count": 0,
            ...
        }
"""

from typing import Any, NotRequired, TypedDict


class StateVariant(TypedDict):
    """Tagged-variant representation of ``WorkflowExecution.state``.

    The tag is the ExecutionState value. Variant payload keys are only
    present for the tags that carry them.
    """

    tag: str
    """ExecutionState value, e.g. "running" or "escalation"."""

    approval_id: NotRequired[str]
    """Pending approval request; present for awaiting-approval and escalation."""

    reason: NotRequired[str]
    """Why the execution is paused (operator request, storage failure)."""


class TransitionRecord(TypedDict):
    """One entry of the append-only transition log."""

    from_phase: str | None
    """Phase left by this transition. None only for the start record."""

    to_phase: str
    """Phase entered (or re-entered, for retries)."""

    outcome: str
    """One of "success", "failure", "retry"."""

    timestamp: str
    """ISO 8601 UTC timestamp of the attempt's completion."""

    worker_id: str | None
    worker_role: str | None
    attempt: int
    duration: float
    iteration: int
    data: NotRequired[Any]
    """Artifact produced by the phase; replayed during recovery."""

    note: NotRequired[str | None]


class WorkflowErrorRecord(TypedDict):
    """Terminal or escalation error attached to an execution."""

    phase: str
    classification: str
    message: str
    retry_attempts: int
    escalated: bool
    escalated_at: str | None


class ExecutionRecord(TypedDict):
    """Persisted form of a WorkflowExecution."""

    id: str
    item: str | None
    resource: str
    current_phase: str
    state: StateVariant
    phase_history: list[TransitionRecord]
    assigned_workers: dict[str, str]
    retry_count: int
    iteration: int
    max_iterations: int | None
    created_at: str
    updated_at: str
    error: WorkflowErrorRecord | None
    artifacts: dict[str, Any]
    processed_items: list[str]
    status_polls: int
    cancel_requested: bool
    context: dict[str, Any]


class ApprovalRecord(TypedDict):
    """Persisted form of an ApprovalRequest."""

    id: str
    execution_id: str
    phase: str
    kind: str
    payload: Any
    created_at: str
    expires_at: str | None
    resolution: str
    resolver: str | None
    resolved_at: str | None
    comment: str | None
