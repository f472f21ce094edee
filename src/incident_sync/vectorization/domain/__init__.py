"""
Vectorization Domain Layer
===========================

Weighted embedding text, deterministic point ids and vector payloads.
"""

from incident_sync.vectorization.domain.entities import (
    FIELD_WEIGHTS,
    ResolutionSnapshot,
    SkipReason,
    VectorizeOutcome,
    build_payload,
    build_weighted_text,
    point_id_for,
    repetitions,
    vector_hash,
)

__all__ = [
    "FIELD_WEIGHTS",
    "ResolutionSnapshot",
    "SkipReason",
    "VectorizeOutcome",
    "build_payload",
    "build_weighted_text",
    "point_id_for",
    "repetitions",
    "vector_hash",
]
