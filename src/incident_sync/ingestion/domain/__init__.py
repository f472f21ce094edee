"""
Ingestion Domain Layer
=======================

Pure Python ticket entity and record mapping, free of infrastructure concerns.
"""

from incident_sync.ingestion.domain.entities import (
    Ticket,
    ticket_from_record,
    parse_servicenow_datetime,
)

__all__ = [
    "Ticket",
    "ticket_from_record",
    "parse_servicenow_datetime",
]
