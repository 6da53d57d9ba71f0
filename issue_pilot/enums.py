"""Enumerations for issue-pilot phases, states and decisions."""

from enum import Enum


class Phase(str, Enum):
    """Ordered steps of an item's processing lifecycle.

    The declaration order is the execution order; see
    ``issue_pilot.engine.phases`` for the transition rules.
    """

    ITEM_SELECTION = "item-selection"
    CONTEXT_ANALYSIS = "context-analysis"
    PLAN_GENERATION = "plan-generation"
    PLAN_APPROVAL = "plan-approval"
    BRANCH_CREATION = "branch-creation"
    TEST_GENERATION = "test-generation"
    CODE_GENERATION = "code-generation"
    REFACTORING = "refactoring"
    CHANGE_SUBMISSION = "change-submission"
    STATUS_MONITORING = "status-monitoring"
    INTEGRATION = "integration"
    NEXT_ITEM = "next-item"

    def __str__(self) -> str:
        return self.value


class ExecutionState(str, Enum):
    """Lifecycle state of a workflow execution.

    ``escalation`` is non-terminal: it blocks until a human resumes or aborts.
    """

    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting-approval"
    ESCALATION = "escalation"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition will ever be scheduled."""
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED)

    @property
    def is_blocked_on_human(self) -> bool:
        """Check if the execution waits on an unresolved approval request."""
        return self in (ExecutionState.AWAITING_APPROVAL, ExecutionState.ESCALATION)


class TransitionOutcome(str, Enum):
    """Outcome recorded on a PhaseTransition."""

    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"

    def __str__(self) -> str:
        return self.value


class FailureClassification(str, Enum):
    """Classification of a raw phase failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    ESCALATION_REQUIRED = "escalation-required"

    def __str__(self) -> str:
        return self.value


class RetryAction(str, Enum):
    """Decision taken by the retry policy for a classified failure."""

    RETRY = "retry"
    ESCALATE = "escalate"
    FAIL = "fail"

    def __str__(self) -> str:
        return self.value


class ApprovalKind(str, Enum):
    """Kind of human decision an approval request asks for."""

    PHASE_GATE = "phase-gate"
    ESCALATION_RESUME = "escalation-resume"
    REFACTORING = "refactoring"

    def __str__(self) -> str:
        return self.value


class ApprovalResolution(str, Enum):
    """Resolution status of an approval request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes-requested"
    TIMED_OUT = "timed-out"

    def __str__(self) -> str:
        return self.value

    @property
    def is_resolved(self) -> bool:
        """Check if the request has left the pending state."""
        return self != ApprovalResolution.PENDING


class Decision(str, Enum):
    """Decision a human submits for an approval request."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request-changes"

    def __str__(self) -> str:
        return self.value

    def to_resolution(self) -> ApprovalResolution:
        """Map the submitted decision to the stored resolution."""
        if self == Decision.APPROVE:
            return ApprovalResolution.APPROVED
        elif self == Decision.REQUEST_CHANGES:
            return ApprovalResolution.CHANGES_REQUESTED
        else:
            return ApprovalResolution.REJECTED


class ResolveStatus(str, Enum):
    """Result status of ``ApprovalCheckpointManager.resolve``."""

    RESOLVED = "resolved"
    ALREADY_RESOLVED = "already-resolved"
    NOT_FOUND = "not-found"

    def __str__(self) -> str:
        return self.value


class WorkerRole(str, Enum):
    """Capability labels workers declare and phases accept."""

    COORDINATOR = "coordinator"
    ANALYST = "analyst"
    ARCHITECT = "architect"
    PLANNER = "planner"
    DEVELOPER = "developer"
    TESTER = "tester"
    REVIEWER = "reviewer"
    INTEGRATOR = "integrator"

    def __str__(self) -> str:
        return self.value


class EventKind(str, Enum):
    """Kinds of events emitted on the engine event stream."""

    PHASE_TRANSITION = "phase-transition"
    APPROVAL_REQUESTED = "approval-requested"
    APPROVAL_RESOLVED = "approval-resolved"
    ESCALATION = "escalation"

    def __str__(self) -> str:
        return self.value


class ApprovalMode(str, Enum):
    """Delivery mode for approval checkpoints."""

    SYNC = "sync"
    ASYNC = "async"

    def __str__(self) -> str:
        return self.value


class ChangeStatus(str, Enum):
    """Normalised CI / review status of a submitted change."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"

    def __str__(self) -> str:
        return self.value


class StepStatus(str, Enum):
    """What a single ``WorkflowStateMachine.advance`` call achieved."""

    ADVANCED = "advanced"
    RETRY_SCHEDULED = "retry-scheduled"
    POLL_SCHEDULED = "poll-scheduled"
    DEFERRED = "deferred"
    AWAITING_APPROVAL = "awaiting-approval"
    ESCALATED = "escalated"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def needs_delay(self) -> bool:
        """Check if the driver should wait before calling advance again."""
        return self in (StepStatus.RETRY_SCHEDULED, StepStatus.POLL_SCHEDULED, StepStatus.DEFERRED)
