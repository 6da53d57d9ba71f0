"""
Failure classification for phase errors.

Maps a raw failure raised by a collaborator (or by the engine itself) into
one of ``transient``, ``permanent`` or ``escalation-required``. The mapping
is pure: the same error and retry count always produce the same result.

Classification Rules:
    1. Engine phase errors carry their classification in their type.
    2. Collaborator errors carry a ``transient`` flag.
    3. Built-in exception types: TimeoutError / ConnectionError are
       transient; PermissionError / ValueError / KeyError are permanent.
    4. Otherwise the message is matched against known patterns.
    5. Anything unrecognised is transient until three transient retries
       have been spent, after which it requires escalation.
"""

import asyncio

import structlog

from issue_pilot.enums import FailureClassification
from issue_pilot.exceptions import (
    CollaboratorError,
    EscalationRequired,
    PermanentPhaseError,
    TransientPhaseError,
)

log = structlog.get_logger(__name__)

UNRECOGNISED_RETRY_LIMIT = 3

TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "rate limit",
    "rate-limit",
    "too many requests",
    "429",
    "connection reset",
    "connection refused",
    "connection lost",
    "network",
    "temporarily unavailable",
    "service unavailable",
    "503",
    "502",
    "econnreset",
    "econnrefused",
    "etimedout",
    "eai_again",
)

PERMANENT_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "401",
    "forbidden",
    "403",
    "permission denied",
    "invalid api key",
    "malformed",
    "invalid",
    "validation",
    "not found",
    "404",
    "unprocessable",
    "422",
)


def classify(raw_error: BaseException, prior_transient_retries: int = 0) -> FailureClassification:
    """Classify a raw phase failure.

    Args:
        raw_error: Exception raised while executing a phase.
        prior_transient_retries: Transient retries already consumed on the
            current phase. Only consulted for unrecognised errors.

    Returns:
        The failure classification.

    Example:
        >>> classify(TimeoutError("generation timed out"))
        <FailureClassification.TRANSIENT: 'transient'>
        >>> classify(RuntimeError("boom"), prior_transient_retries=3)
        <FailureClassification.ESCALATION_REQUIRED: 'escalation-required'>
    """
    if isinstance(raw_error, EscalationRequired):
        return FailureClassification.ESCALATION_REQUIRED
    if isinstance(raw_error, TransientPhaseError):
        return FailureClassification.TRANSIENT
    if isinstance(raw_error, PermanentPhaseError):
        return FailureClassification.PERMANENT

    if isinstance(raw_error, CollaboratorError):
        return FailureClassification.TRANSIENT if raw_error.transient else FailureClassification.PERMANENT

    if isinstance(raw_error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return FailureClassification.TRANSIENT
    if isinstance(raw_error, (PermissionError, ValueError, KeyError, TypeError)):
        return FailureClassification.PERMANENT

    message = str(raw_error).lower()
    if any(pattern in message for pattern in TRANSIENT_PATTERNS):
        return FailureClassification.TRANSIENT
    if any(pattern in message for pattern in PERMANENT_PATTERNS):
        return FailureClassification.PERMANENT

    if prior_transient_retries >= UNRECOGNISED_RETRY_LIMIT:
        log.debug("unrecognised_failure_exhausted", error_type=type(raw_error).__name__)
        return FailureClassification.ESCALATION_REQUIRED

    return FailureClassification.TRANSIENT
