"""
Vectorization Domain
=====================

Pure functions turning a ticket into embedding text, a point id and a
vector payload.

Weighted text: each field is repeated ``ceil(weight * multiplier)`` times so
heavier fields dominate the embedding. Category and source are labelled.
"""

import hashlib
import json
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import NAMESPACE_URL, uuid5

from incident_sync.ingestion.domain import Ticket

FIELD_WEIGHTS: Dict[str, float] = {
    "short_description": 0.35,
    "description": 0.35,
    "category": 0.20,
    "source": 0.10,
}

FIELD_LABELS = {
    "category": "Category",
    "source": "Source",
}

# Fields that carry ticket content; source alone is not worth embedding
CONTENT_FIELDS = ("short_description", "description", "category")

MAX_PAYLOAD_TEXT = 2000


class SkipReason(str):
    """Why a ticket was not vectorized."""
    MISSING_FIELDS = "missing required fields"
    EMPTY_TEXT = "empty text"
    UNCHANGED = "unchanged"


@dataclass
class ResolutionSnapshot:
    """Resolution fields denormalized into the vector payload."""
    close_code: str
    root_cause: str
    customer_summary: str
    resolved_at: Optional[datetime] = None


@dataclass
class VectorizeOutcome:
    """Result of vectorizing one ticket."""
    ticket_id: Optional[int]
    external_id: Optional[str]
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    point_id: Optional[str] = None

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"

    @classmethod
    def success(cls, ticket: Ticket, point_id: str) -> "VectorizeOutcome":
        return cls(ticket.id, ticket.external_id, cls.SUCCESS, point_id=point_id)

    @classmethod
    def skipped(cls, ticket: Ticket, reason: str) -> "VectorizeOutcome":
        return cls(ticket.id, ticket.external_id, cls.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, ticket: Ticket, error: str) -> "VectorizeOutcome":
        return cls(ticket.id, ticket.external_id, cls.FAILED, error=error)

    @property
    def ok(self) -> bool:
        return self.status == self.SUCCESS


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split())


def repetitions(weight: float, multiplier: int) -> int:
    """Repetition count for a field weight; monotonic in weight, at least one."""
    return max(1, math.ceil(round(weight * multiplier, 6)))


def has_text_content(ticket: Ticket) -> bool:
    return any(_clean(getattr(ticket, name)) for name in CONTENT_FIELDS)


def build_weighted_text(
    ticket: Ticket,
    weights: Optional[Dict[str, float]] = None,
    multiplier: int = 10
) -> str:
    """
    Build the text embedded for a ticket.

    Args:
        ticket: Ticket to describe
        weights: Field weights (defaults to FIELD_WEIGHTS)
        multiplier: Converts a weight into a repetition count

    Returns:
        Weighted text, empty when the ticket has no content
    """
    if not has_text_content(ticket):
        return ""

    parts = []
    for name, weight in (weights or FIELD_WEIGHTS).items():
        value = _clean(getattr(ticket, name, None))
        if not value:
            continue
        label = FIELD_LABELS.get(name)
        segment = f"{label}: {value}" if label else value
        parts.extend([segment] * repetitions(weight, multiplier))
    return " ".join(parts)


def point_id_for(ticket: Ticket) -> str:
    """Deterministic point id, so re-vectorizing replaces the previous point."""
    return str(uuid5(NAMESPACE_URL, f"{ticket.source}:{ticket.external_id}"))


def build_payload(ticket: Ticket, resolution: Optional[ResolutionSnapshot] = None) -> Dict[str, Any]:
    """
    Denormalized payload stored next to the vector.

    ``ticket_ref`` is the canonical store id used to find and delete the
    ticket's points.
    """
    payload: Dict[str, Any] = {
        "ticket_ref": ticket.id,
        "external_id": ticket.external_id,
        "source": ticket.source,
        "short_description": (ticket.short_description or "")[:MAX_PAYLOAD_TEXT],
        "category": ticket.category,
        "subcategory": ticket.subcategory,
        "status": ticket.status,
        "priority": ticket.priority,
        "opened_at": ticket.opened_at.isoformat() if ticket.opened_at else None,
        "resolved_at": ticket.resolved_at.isoformat() if ticket.resolved_at else None,
        "has_resolution": resolution is not None,
    }
    if resolution is not None:
        payload.update(
            close_code=resolution.close_code,
            root_cause=resolution.root_cause[:MAX_PAYLOAD_TEXT],
            customer_summary=resolution.customer_summary[:MAX_PAYLOAD_TEXT],
            resolution_resolved_at=resolution.resolved_at.isoformat() if resolution.resolved_at else None,
        )
    return {key: value for key, value in payload.items() if value is not None}


def vector_hash(text: str, payload: Dict[str, Any]) -> str:
    """Hash of what would be written to the index; equal hashes mean nothing to do."""
    encoded = json.dumps({"text": text, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
