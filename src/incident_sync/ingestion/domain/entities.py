"""
Ingestion Domain Entities
==========================

The canonical Ticket and the mapping from raw ServiceNow records.

Records are requested with ``sysparm_display_value=all``, so every field is
either a plain string or a ``{"value": ..., "display_value": ...}`` dict.
Machine values (sys_id, timestamps) use ``value``; human labels (state,
priority, assignee) use ``display_value``.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from incident_sync.core import InvalidTicketRecordException

SERVICENOW_DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S")

# Fields whose change makes a stored ticket "updated"
CONTENT_FIELDS = (
    "sys_id", "short_description", "description", "category", "subcategory",
    "status", "priority", "impact", "urgency", "opened_at", "closed_at",
    "resolved_at", "external_updated_at", "tags", "assigned_to", "assignment_group",
)


@dataclass
class Ticket:
    """
    Canonical ticket, keyed by (external_id, source).

    ``id`` is assigned by the canonical store and is the back-reference
    carried by vector points.
    """

    external_id: str
    source: str
    external_updated_at: datetime

    sys_id: Optional[str] = None
    short_description: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    impact: Optional[str] = None
    urgency: Optional[str] = None
    assigned_to: Optional[str] = None
    assignment_group: Optional[str] = None

    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    tags: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    # Store-assigned
    id: Optional[int] = None
    vector_hash: Optional[str] = None
    vectorized_at: Optional[datetime] = None

    @property
    def content_hash(self) -> str:
        """Stable hash of the synchronized fields (raw payload excluded)."""
        content = {}
        for name in CONTENT_FIELDS:
            value = getattr(self, name)
            content[name] = value.isoformat() if isinstance(value, datetime) else value
        encoded = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    @property
    def has_external_id(self) -> bool:
        return bool(self.sys_id)


def _value(record: Dict[str, Any], name: str) -> Optional[str]:
    raw = record.get(name)
    if isinstance(raw, dict):
        raw = raw.get("value")
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def _display(record: Dict[str, Any], name: str) -> Optional[str]:
    raw = record.get(name)
    if isinstance(raw, dict):
        raw = raw.get("display_value") or raw.get("value")
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def parse_servicenow_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a ServiceNow timestamp (UTC ``YYYY-MM-DD HH:MM:SS``) or ISO string.

    Raises:
        ValueError: If the value is not a recognizable timestamp
    """
    if not value:
        return None
    for fmt in SERVICENOW_DATETIME_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def ticket_from_record(record: Dict[str, Any], source: str) -> Ticket:
    """
    Map a raw ServiceNow incident to a Ticket.

    Args:
        record: Table API record
        source: Source label (e.g. "ServiceNow")

    Returns:
        Ticket ready to be upserted

    Raises:
        InvalidTicketRecordException: Missing number, or no usable change timestamp
    """
    if not isinstance(record, dict):
        raise InvalidTicketRecordException("record is not an object")

    number = _value(record, "number")
    sys_id = _value(record, "sys_id")
    if not number:
        raise InvalidTicketRecordException("missing required field 'number'", sys_id)

    try:
        updated_at = parse_servicenow_datetime(_value(record, "sys_updated_on"))
        created_at = parse_servicenow_datetime(_value(record, "sys_created_on"))
        opened_at = parse_servicenow_datetime(_value(record, "opened_at"))
        closed_at = parse_servicenow_datetime(_value(record, "closed_at"))
        resolved_at = parse_servicenow_datetime(_value(record, "resolved_at"))
    except ValueError as e:
        raise InvalidTicketRecordException(f"unparseable timestamp: {e}", number)

    changed_at = updated_at or created_at
    if changed_at is None:
        raise InvalidTicketRecordException("missing change timestamp (sys_updated_on)", number)

    tags_value = _display(record, "sys_tags")
    tags = [tag.strip() for tag in tags_value.split(",") if tag.strip()] if tags_value else []

    return Ticket(
        external_id=number,
        source=source,
        external_updated_at=changed_at,
        sys_id=sys_id,
        short_description=_display(record, "short_description"),
        description=_display(record, "description"),
        category=_display(record, "category"),
        subcategory=_display(record, "subcategory"),
        status=_display(record, "state"),
        priority=_display(record, "priority"),
        impact=_display(record, "impact"),
        urgency=_display(record, "urgency"),
        assigned_to=_display(record, "assigned_to"),
        assignment_group=_display(record, "assignment_group"),
        opened_at=opened_at or created_at,
        closed_at=closed_at,
        resolved_at=resolved_at,
        tags=tags,
        raw=record,
    )
