"""
Bounded retry and escalation policy for phase failures.

The policy is a pure decision function: given a failure classification and
the number of retries already spent on the phase, it returns whether to
retry (and after how long), escalate to a human, or fail the workflow.

Policy:
    - Transient failures retry up to ``max_retries`` times with exponential
      backoff: ``base_delay * 2**attempt``, capped at ``max_delay``.
    - Permanent and escalation-required failures escalate immediately
      without consuming a retry.
    - Once ``max_retries`` retries are spent, any further failure escalates
      regardless of classification.
    - With escalation disabled, every escalation becomes a terminal failure.

Example:
    >>> policy = RetryPolicy(base_delay=2.0)
    >>> policy.decide(FailureClassification.TRANSIENT, attempt=0)
    RetryDecision(action=<RetryAction.RETRY: 'retry'>, delay=2.0, ...)
    >>> policy.decide(FailureClassification.TRANSIENT, attempt=3).action
    <RetryAction.ESCALATE: 'escalate'>
"""

import random
from dataclasses import dataclass

from issue_pilot.enums import FailureClassification, RetryAction


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of ``RetryPolicy.decide``.

    Attributes:
        action: Retry, escalate, or fail.
        delay: Seconds to wait before the retry (0 unless retrying).
        classification: Classification to record if this ends the phase;
            upgraded to escalation-required when retries are exhausted.
    """

    action: RetryAction
    delay: float = 0.0
    classification: FailureClassification = FailureClassification.TRANSIENT


class RetryPolicy:
    """Decide retry, escalate, or fail for a classified phase failure."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 300.0,
        jitter: bool = False,
        escalation_enabled: bool = True,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.escalation_enabled = escalation_enabled

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            # Between 0.5x and 1.5x, still capped
            delay = min(delay * (0.5 + random.random()), self.max_delay)
        return delay

    def decide(self, classification: FailureClassification, attempt: int) -> RetryDecision:
        """Decide what to do with a failure.

        Args:
            classification: Result of the failure classifier.
            attempt: Retries already consumed on the current phase.

        Returns:
            The retry decision.
        """
        if attempt >= self.max_retries:
            return self._stop(FailureClassification.ESCALATION_REQUIRED)

        if classification == FailureClassification.TRANSIENT:
            return RetryDecision(
                action=RetryAction.RETRY,
                delay=self.backoff(attempt),
                classification=classification,
            )

        return self._stop(classification)

    def _stop(self, classification: FailureClassification) -> RetryDecision:
        action = RetryAction.ESCALATE if self.escalation_enabled else RetryAction.FAIL
        return RetryDecision(action=action, classification=classification)
