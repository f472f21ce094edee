"""
Ingestion Application Layer
============================

Contains:
- Services: PollingService and BulkImportService
- DTOs: run options and results

This layer depends on the domain layer and repository interfaces,
but not on concrete repository implementations.
"""

from incident_sync.ingestion.application.dto import (
    BulkImportOptions,
    BulkImportResult,
    InvalidRecord,
    PageCounters,
    PollResult,
    UpsertOutcome,
)
from incident_sync.ingestion.application.services import (
    BulkImportService,
    ITicketRepository,
    PollingService,
    ticket_repository,
)

__all__ = [
    # DTOs
    "BulkImportOptions",
    "BulkImportResult",
    "InvalidRecord",
    "PageCounters",
    "PollResult",
    "UpsertOutcome",
    # Services
    "BulkImportService",
    "PollingService",
    # Repository Interfaces
    "ITicketRepository",
    "ticket_repository",
]
