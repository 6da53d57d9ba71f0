"""Custom exception hierarchy for the issue-pilot orchestration engine.

This module defines a structured exception hierarchy that lets the engine
separate failures it absorbs (phase errors, scheduling deferrals) from
failures it must surface (storage, configuration).

Exception Hierarchy:
    IssuePilotError (base)
    ├── ConfigurationError
    ├── PhaseError
    │   ├── TransientPhaseError
    │   ├── PermanentPhaseError
    │   └── EscalationRequired
    ├── ApprovalError
    │   ├── ApprovalRejected
    │   ├── ApprovalTimedOut
    │   └── ApprovalNotFoundError
    ├── NoCapableWorker
    ├── WorkerRegistrationError
    ├── StorageError
    ├── ExecutionNotFoundError
    ├── InvalidStateError
    └── CollaboratorError
        ├── GenerationError
        └── PlatformError

Example Usage:
    >>> from issue_pilot.exceptions import StorageError
    >>> try:
    ...     await store.save_execution(execution)
    ... except OSError as e:
    ...     raise StorageError("Cannot write execution", operation="save_execution") from e
"""

from collections.abc import Iterable


class IssuePilotError(Exception):
    """Base exception for all issue-pilot errors.

    All custom exceptions in the engine inherit from this base class,
    allowing callers to catch every engine-specific error with a single
    except clause.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(IssuePilotError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Phase role override naming an unknown phase
        - Phase role override with an empty role list
    """

    pass


# =============================================================================
# Phase Errors
# =============================================================================


class PhaseError(IssuePilotError):
    """Base exception for failures raised while executing a phase.

    Phase errors never cross the state machine boundary: they are classified,
    handed to the retry policy, and end up as a ``WorkflowError`` record on
    the execution when automated recovery is exhausted.

    Attributes:
        message: Human-readable error description
        phase: Value of the phase that failed, if known
    """

    def __init__(self, message: str, phase: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            phase: Phase that was executing when the error occurred
        """
        self.phase = phase
        full_message = f"{message} (phase: {phase})" if phase else message
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class TransientPhaseError(PhaseError):
    """Retry-eligible phase failure (network, timeout, rate limit)."""

    pass


class PermanentPhaseError(PhaseError):
    """Phase failure that retrying cannot fix; escalates immediately."""

    pass


class EscalationRequired(PhaseError):
    """Retries are exhausted or a collaborator explicitly asked for a human."""

    pass


# =============================================================================
# Approval Errors
# =============================================================================


class ApprovalError(IssuePilotError):
    """Base exception for approval checkpoint errors.

    Attributes:
        message: Human-readable error description
        request_id: Approval request involved, if any
    """

    def __init__(self, message: str, request_id: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            request_id: Identifier of the approval request
        """
        self.request_id = request_id
        full_message = f"{message} (request: {request_id})" if request_id else message
        super().__init__(full_message)
        self.message = message


class ApprovalRejected(ApprovalError):
    """A human rejected the checkpoint. The workflow aborts cleanly."""

    pass


class ApprovalTimedOut(ApprovalError):
    """Nobody resolved the checkpoint before it expired."""

    pass


class ApprovalNotFoundError(ApprovalError):
    """No approval request exists with the given identifier."""

    pass


# =============================================================================
# Scheduling Errors
# =============================================================================


class NoCapableWorker(IssuePilotError):
    """No registered worker can take the phase right now.

    This is a scheduling deferral, not a failure: the caller queues the phase
    and retries selection after the configured interval.

    Attributes:
        phase: Phase that could not be routed
        roles: Roles that would have been accepted
    """

    def __init__(self, phase: str, roles: Iterable[str] = ()) -> None:
        """Initialize exception.

        Args:
            phase: Phase that could not be routed
            roles: Acceptable roles for the phase
        """
        self.phase = phase
        self.roles = tuple(str(role) for role in roles)
        message = f"No capable worker available for phase '{phase}'"
        if self.roles:
            message = f"{message} (roles: {', '.join(self.roles)})"
        super().__init__(message)


class WorkerRegistrationError(IssuePilotError):
    """Worker registration is invalid (empty roles, duplicate id, unknown id)."""

    pass


# =============================================================================
# Infrastructure Errors
# =============================================================================


class StorageError(IssuePilotError):
    """Durable store operation failed.

    Fatal to the process-level operation that triggered it. The persistence
    layer retries with backoff before raising; the supervisor pauses the
    affected execution rather than dropping state.

    Attributes:
        operation: Store operation that failed (e.g., "append_transition")
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            operation: Name of the failing store operation
        """
        self.operation = operation
        full_message = f"{message} (operation: {operation})" if operation else message
        super().__init__(full_message)
        self.message = message


class ExecutionNotFoundError(IssuePilotError):
    """No workflow execution exists with the given identifier."""

    pass


class InvalidStateError(IssuePilotError):
    """Requested operation is not valid in the execution's current state."""

    pass


# =============================================================================
# Collaborator Errors
# =============================================================================


class CollaboratorError(IssuePilotError):
    """Failure reported by an external collaborator.

    Attributes:
        message: Human-readable error description
        transient: Whether the collaborator considers the failure retryable
    """

    def __init__(self, message: str, transient: bool = False) -> None:
        """Initialize exception.

        Args:
            message: Error message
            transient: True when a retry may succeed
        """
        self.transient = transient
        super().__init__(message)


class GenerationError(CollaboratorError):
    """The AI generation backend failed to produce an artifact."""

    pass


class PlatformError(CollaboratorError):
    """The version-control / issue-tracking platform rejected an operation."""

    pass
