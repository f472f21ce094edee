"""
Ingestion Module
================

Bounded context that brings external tickets into the canonical store.

Responsibilities:
- Incremental polling with a persisted time-window cursor
- Resumable, re-runnable historical bulk import
- Idempotent upserts keyed by (external id, source)
"""
