"""
Resolution Infrastructure Models
=================================

SQLAlchemy ORM models for resolutions and the pending-update ledger.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from incident_sync.infrastructure.database import Base, UTCDateTime
from incident_sync.shared.infrastructure.clock import utc_now


class ResolutionModel(Base):
    """
    Database model for ResolutionRecord.

    Maps to the 'resolutions' table; one row per ticket.
    """
    __tablename__ = "resolutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tickets.id"), nullable=False, unique=True, index=True
    )
    ticket_external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)

    # Resolution content
    root_cause: Mapped[str] = mapped_column(Text, nullable=False)
    close_code: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_summary: Mapped[str] = mapped_column(Text, nullable=False)
    problem_statement: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analysis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Metadata
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolution_method: Mapped[str] = mapped_column(String(20), nullable=False)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Push status
    pushed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    push_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_push_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_push_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)


class PendingUpdateModel(Base):
    """
    Database model for the pending-update ledger.

    Maps to the 'pending_updates' table. Rows are deleted on delivery;
    terminal rows stay until requeued.
    """
    __tablename__ = "pending_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resolution_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("resolutions.id"), nullable=False, unique=True, index=True
    )
    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
