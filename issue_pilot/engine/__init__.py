"""Workflow orchestration engine.

This package provides the core engine that drives items through the phase
sequence: the phase state machine, the role-based router and capability
registry, the retry/escalation policy, the approval checkpoint protocol,
and the supervisor that runs many executions concurrently.

Key Components:
    - WorkflowStateMachine: Per-execution phase transitions
    - WorkflowSupervisor: Concurrent executions, limits, and recovery
    - RoleRouter / CapabilityRegistry: Worker selection by role and load
    - RetryPolicy / classify: Bounded failure handling
    - ApprovalCheckpointManager: Human decision checkpoints
    - FileExecutionStore: Durable JSON persistence

Type Definitions:
    - ExecutionRecord: TypedDict for a persisted execution
    - TransitionRecord: TypedDict for a transition log entry
    - ApprovalRecord: TypedDict for a persisted approval request
    - StateVariant: Tagged-variant execution state

Example:
    >>> from issue_pilot.factory import create_engine
    >>> engine = create_engine(settings, generator, platform)
    >>> await engine.recover_all()
    >>> execution_id = await engine.start(item)
"""

from issue_pilot.engine.types import (
    ApprovalRecord,
    ExecutionRecord,
    StateVariant,
    TransitionRecord,
    WorkflowErrorRecord,
)

__all__ = [
    "ApprovalRecord",
    "ExecutionRecord",
    "StateVariant",
    "TransitionRecord",
    "WorkflowErrorRecord",
]
