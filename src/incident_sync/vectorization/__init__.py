"""
Vectorization Module
====================

Bounded context that keeps the vector index derived from the canonical store.

Responsibilities:
- Weighted ticket text and denormalized payloads
- Batch embedding with bounded concurrency and credential failover
- Resumable progress through the vectorization checkpoint
- Removing a ticket's points by back-reference
"""
