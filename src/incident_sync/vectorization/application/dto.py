"""
Vectorization Application DTOs
===============================

Results reported by vectorization runs.
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from incident_sync.vectorization.domain import VectorizeOutcome

RunStatusStr = Literal["completed", "skipped", "error"]


class FailedTicket(BaseModel):
    """A ticket whose embedding failed during a run."""
    ticket_id: Optional[int] = None
    external_id: Optional[str] = None
    error: Optional[str] = None


class VectorizationRunResult(BaseModel):
    """Outcome of a batch or store vectorization run."""
    status: RunStatusStr
    scope: str
    reason: Optional[str] = None
    error: Optional[str] = None
    start_index: int = 0
    processed_count: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    skip_reasons: Dict[str, int] = Field(default_factory=dict)
    failed_tickets: List[FailedTicket] = Field(default_factory=list)
    credential_rotations: int = 0
    current_credential_index: int = 0
    duration_ms: Optional[float] = None

    def record(self, outcome: VectorizeOutcome) -> None:
        if outcome.status == VectorizeOutcome.SUCCESS:
            self.succeeded += 1
        elif outcome.status == VectorizeOutcome.SKIPPED:
            self.skipped += 1
            self.skip_reasons[outcome.reason] = self.skip_reasons.get(outcome.reason, 0) + 1
        else:
            self.failed += 1
            self.failed_tickets.append(FailedTicket(
                ticket_id=outcome.ticket_id,
                external_id=outcome.external_id,
                error=outcome.error,
            ))
