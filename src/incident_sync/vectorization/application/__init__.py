"""
Vectorization Application Layer
================================

Contains:
- Services: VectorizationPipeline
- DTOs: run results
"""

from incident_sync.vectorization.application.dto import FailedTicket, VectorizationRunResult
from incident_sync.vectorization.application.services import (
    PreparedPoint,
    VectorizationPipeline,
    batch_key,
)

__all__ = [
    "FailedTicket",
    "VectorizationRunResult",
    "PreparedPoint",
    "VectorizationPipeline",
    "batch_key",
]
