"""
Resolution Application Layer
=============================

Contains:
- Services: ResolutionSynchronizer, PendingUpdateSweeper
- DTOs: resolve input and results, ledger views

This layer depends on the domain layer and repository interfaces,
but not on concrete repository implementations.
"""

from incident_sync.resolution.application.dto import (
    ExternalPushResult,
    PendingUpdateDTO,
    ResolutionInput,
    ResolutionRecordDTO,
    ResolveResult,
    SweepResult,
    UpdateStatistics,
    VectorizationSummary,
)
from incident_sync.resolution.application.services import (
    IPendingUpdateRepository,
    IResolutionRepository,
    PendingUpdateSweeper,
    ResolutionSynchronizer,
    pending_update_repository,
    resolution_repository,
)

__all__ = [
    # DTOs
    "ExternalPushResult",
    "PendingUpdateDTO",
    "ResolutionInput",
    "ResolutionRecordDTO",
    "ResolveResult",
    "SweepResult",
    "UpdateStatistics",
    "VectorizationSummary",
    # Services
    "PendingUpdateSweeper",
    "ResolutionSynchronizer",
    # Repository Interfaces
    "IPendingUpdateRepository",
    "IResolutionRepository",
    "pending_update_repository",
    "resolution_repository",
]
