"""
Resolution Value Objects
=========================

The external push retry state machine.

States: ``pending -> attempting -> {success | retryable | terminal}``.
``next_push_state`` is a pure transition function; the synchronizer and the
ledger sweep drive it and perform the side effects.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from incident_sync.core import DomainException
from incident_sync.infrastructure.ticketing import UpdateResult, is_transient_status


class PushState(str, Enum):
    """Delivery state of a resolution push."""
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


class PushOutcome(str, Enum):
    """Classified result of one push attempt."""
    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    CLIENT_ERROR = "client_error"


# States from which a new attempt may start
ATTEMPTABLE_STATES = (PushState.PENDING, PushState.RETRYABLE)


def classify_update_result(result: UpdateResult) -> PushOutcome:
    """
    Map a client update result to a push outcome.

    5xx, 429, timeouts and network errors are retryable; any other 4xx is a
    client error and is never retried.
    """
    if result.success:
        return PushOutcome.SUCCESS
    if is_transient_status(result.status_code):
        return PushOutcome.RETRYABLE_ERROR
    return PushOutcome.CLIENT_ERROR


def begin_attempt(state: PushState) -> PushState:
    """Enter ``attempting``; only pending and retryable pushes may be attempted."""
    if state not in ATTEMPTABLE_STATES:
        raise DomainException(
            f"Cannot attempt a push in state '{state.value}'",
            {"state": state.value}
        )
    return PushState.ATTEMPTING


def next_push_state(
    state: PushState,
    outcome: PushOutcome,
    attempts: int,
    max_attempts: int
) -> PushState:
    """
    Transition out of ``attempting``.

    Args:
        state: Current state, must be ATTEMPTING
        outcome: Classified result of the attempt
        attempts: Attempts made so far, including this one
        max_attempts: Attempt cap

    Returns:
        SUCCESS, RETRYABLE or TERMINAL
    """
    if state != PushState.ATTEMPTING:
        raise DomainException(
            f"Push outcome received in state '{state.value}'",
            {"state": state.value, "outcome": outcome.value}
        )

    if outcome == PushOutcome.SUCCESS:
        return PushState.SUCCESS
    if outcome == PushOutcome.CLIENT_ERROR:
        return PushState.TERMINAL
    if attempts >= max_attempts:
        return PushState.TERMINAL
    return PushState.RETRYABLE


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt cap and exponential backoff between push attempts."""
    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0

    def backoff(self, attempts: int) -> float:
        """Delay before the attempt following attempt number ``attempts`` (1-based)."""
        exponent = max(0, attempts - 1)
        return min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)

    def next_retry_at(self, now: datetime, attempts: int) -> datetime:
        return now + timedelta(seconds=self.backoff(attempts))
