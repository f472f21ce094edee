"""
Resolution Domain Entities
===========================

Pure Python entities for resolution records and the pending-update ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from incident_sync.config import IncidentState, ResolutionMethod
from incident_sync.resolution.domain.value_objects import ATTEMPTABLE_STATES, PushState


@dataclass
class ResolutionRecord:
    """
    Resolution of a canonical ticket.

    One record per ticket; resolving again replaces the content and resets
    the push status.
    """

    ticket_id: int
    ticket_external_id: str
    source: str
    root_cause: str
    close_code: str
    customer_summary: str
    resolved_at: datetime

    problem_statement: Optional[str] = None
    analysis: Optional[str] = None
    resolved_by: Optional[str] = None
    resolution_method: str = ResolutionMethod.AI_ASSISTED
    processing_time_ms: Optional[int] = None

    # Push status
    pushed: bool = False
    push_attempts: int = 0
    last_push_attempt_at: Optional[datetime] = None
    last_push_error: Optional[str] = None

    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def close_payload(self) -> Dict[str, Any]:
        """Partial incident update that resolves the ticket externally."""
        return {
            "state": IncidentState.RESOLVED,
            "close_code": self.close_code,
            "close_notes": self.customer_summary,
        }


@dataclass
class PendingUpdate:
    """Ledger entry for a resolution whose push has not been delivered."""

    resolution_id: int
    state: PushState = PushState.PENDING
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_status_code: Optional[int] = None

    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        if self.state not in ATTEMPTABLE_STATES:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now

    @property
    def is_terminal(self) -> bool:
        return self.state == PushState.TERMINAL
