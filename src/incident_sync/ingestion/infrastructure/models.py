"""
Ingestion Infrastructure Models
================================

SQLAlchemy ORM models for the canonical ticket store.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from incident_sync.infrastructure.database import Base, UTCDateTime
from incident_sync.shared.infrastructure.clock import utc_now


class TicketModel(Base):
    """
    Database model for Ticket entity.

    Maps to the 'tickets' table. Rows are never deleted by the sync core.
    """
    __tablename__ = "tickets"

    # Monotonic surrogate key; vector points reference it as ticket_ref
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Business identifier
    external_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    sys_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Ticket content
    short_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subcategory: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    impact: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    urgency: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    assignment_group: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    raw: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # External timestamps
    opened_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    external_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)

    # Sync bookkeeping
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    vector_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    vectorized_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("external_id", "source", name="uq_tickets_external_id_source"),
    )
