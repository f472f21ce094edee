"""
Ingestion Application DTOs
===========================

Options and results exchanged with the poller and the bulk importer.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

RunStatusStr = Literal["completed", "skipped", "error"]


class UpsertOutcome(str):
    """Result of upserting one ticket."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"


class PageCounters(BaseModel):
    """Per-run record counters."""
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    stale: int = 0
    invalid: int = 0
    pages: int = 0

    def record(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


class InvalidRecord(BaseModel):
    """A record skipped because it could not be mapped to a ticket."""
    record_id: Optional[str] = None
    reason: str


class PollResult(BaseModel):
    """Outcome of one incremental poll."""
    status: RunStatusStr
    trigger: str = "scheduled"
    reason: Optional[str] = None
    error: Optional[str] = None
    cursor_before: Optional[datetime] = None
    cursor_after: Optional[datetime] = None
    counters: PageCounters = Field(default_factory=PageCounters)
    invalid_records: List[InvalidRecord] = Field(default_factory=list)
    duration_ms: Optional[float] = None


class BulkImportOptions(BaseModel):
    """Options for a historical import run."""
    force: bool = Field(default=False, description="Re-run even when a previous import completed")
    batch_size: Optional[int] = Field(default=None, ge=1, le=10000, description="Records per page")
    query: Optional[str] = Field(default=None, description="Extra encoded query restricting the import")
    max_records: Optional[int] = Field(default=None, ge=1, description="Stop after this many records")


class BulkImportResult(BaseModel):
    """Outcome of a bulk import run."""
    status: RunStatusStr
    reason: Optional[str] = None
    error: Optional[str] = None
    start_offset: int = 0
    next_offset: int = 0
    counters: PageCounters = Field(default_factory=PageCounters)
    invalid_records: List[InvalidRecord] = Field(default_factory=list)
    duration_ms: Optional[float] = None
