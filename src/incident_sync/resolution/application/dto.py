"""
Resolution Application DTOs
============================

Input validation for resolve calls and the results reported back.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from incident_sync.config import VALID_CLOSE_CODES, VALID_RESOLUTION_METHODS, ResolutionMethod
from incident_sync.resolution.domain import PendingUpdate, ResolutionRecord
from incident_sync.vectorization.domain import VectorizeOutcome


# ========== Request DTOs ==========

class ResolutionInput(BaseModel):
    """Resolution content supplied by the caller."""
    root_cause: str = Field(..., min_length=1, description="Root cause of the incident")
    close_code: str = Field(..., description="ServiceNow close code")
    customer_summary: str = Field(..., min_length=1, description="Customer facing summary, sent as close notes")
    problem_statement: Optional[str] = Field(None, description="Restated problem")
    analysis: Optional[str] = Field(None, description="Investigation notes")
    resolved_by: Optional[str] = Field(None, description="Person or agent that resolved the ticket")
    resolution_method: str = Field(default=ResolutionMethod.AI_ASSISTED, description="How the resolution was produced")
    processing_time_ms: Optional[int] = Field(None, ge=0, description="Time taken to produce the resolution")

    @field_validator("close_code")
    @classmethod
    def validate_close_code(cls, v: str) -> str:
        if v not in VALID_CLOSE_CODES:
            raise ValueError(f"close_code must be one of: {', '.join(VALID_CLOSE_CODES)}")
        return v

    @field_validator("resolution_method")
    @classmethod
    def validate_resolution_method(cls, v: str) -> str:
        if v not in VALID_RESOLUTION_METHODS:
            raise ValueError(f"resolution_method must be one of: {', '.join(VALID_RESOLUTION_METHODS)}")
        return v


# ========== Response DTOs ==========

class ResolutionRecordDTO(BaseModel):
    """Saved resolution record."""
    id: int
    ticket_id: int
    ticket_external_id: str
    source: str
    root_cause: str
    close_code: str
    customer_summary: str
    problem_statement: Optional[str] = None
    analysis: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: datetime
    resolution_method: str
    processing_time_ms: Optional[int] = None
    pushed: bool = False
    push_attempts: int = 0
    last_push_attempt_at: Optional[datetime] = None
    last_push_error: Optional[str] = None

    @classmethod
    def from_entity(cls, record: ResolutionRecord) -> "ResolutionRecordDTO":
        return cls(
            id=record.id,
            ticket_id=record.ticket_id,
            ticket_external_id=record.ticket_external_id,
            source=record.source,
            root_cause=record.root_cause,
            close_code=record.close_code,
            customer_summary=record.customer_summary,
            problem_statement=record.problem_statement,
            analysis=record.analysis,
            resolved_by=record.resolved_by,
            resolved_at=record.resolved_at,
            resolution_method=record.resolution_method,
            processing_time_ms=record.processing_time_ms,
            pushed=record.pushed,
            push_attempts=record.push_attempts,
            last_push_attempt_at=record.last_push_attempt_at,
            last_push_error=record.last_push_error,
        )


class ExternalPushResult(BaseModel):
    """Where the external push ended up after the inline attempts."""
    success: bool
    state: str
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None


class VectorizationSummary(BaseModel):
    """Best-effort vectorization outcome of a resolved ticket."""
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: VectorizeOutcome) -> "VectorizationSummary":
        return cls(status=outcome.status, reason=outcome.reason, error=outcome.error)


class ResolveResult(BaseModel):
    """
    Result of a resolve call.

    ``success`` is true once the record is saved; ``external_push`` is None
    when the ticket has no external identifier.
    """
    success: bool
    record: ResolutionRecordDTO
    external_push: Optional[ExternalPushResult] = None
    vectorization: Optional[VectorizationSummary] = None


class PendingUpdateDTO(BaseModel):
    """Ledger entry as exposed for manual intervention."""
    id: int
    resolution_id: int
    state: str
    attempts: int
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_status_code: Optional[int] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, entry: PendingUpdate) -> "PendingUpdateDTO":
        return cls(
            id=entry.id,
            resolution_id=entry.resolution_id,
            state=entry.state.value,
            attempts=entry.attempts,
            next_retry_at=entry.next_retry_at,
            last_error=entry.last_error,
            last_status_code=entry.last_status_code,
            updated_at=entry.updated_at,
        )


class UpdateStatistics(BaseModel):
    """Push statistics across all resolutions."""
    total: int = 0
    pushed: int = 0
    pending: int = 0
    failed: int = 0
    success_rate: float = 0.0
    ledger: Dict[str, int] = Field(default_factory=dict)


class SweepResult(BaseModel):
    """Outcome of one ledger sweep."""
    status: str = "completed"
    reason: Optional[str] = None
    examined: int = 0
    succeeded: int = 0
    retryable: int = 0
    terminal: int = 0
    errors: List[str] = Field(default_factory=list)
