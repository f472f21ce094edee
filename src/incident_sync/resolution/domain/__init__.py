"""
Resolution Domain Layer
========================

Resolution entities and the push retry state machine.
"""

from incident_sync.resolution.domain.entities import PendingUpdate, ResolutionRecord
from incident_sync.resolution.domain.value_objects import (
    ATTEMPTABLE_STATES,
    PushOutcome,
    PushState,
    RetryPolicy,
    begin_attempt,
    classify_update_result,
    next_push_state,
)

__all__ = [
    "PendingUpdate",
    "ResolutionRecord",
    "ATTEMPTABLE_STATES",
    "PushOutcome",
    "PushState",
    "RetryPolicy",
    "begin_attempt",
    "classify_update_result",
    "next_push_state",
]
