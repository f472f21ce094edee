"""
Incident Sync
=============

Keeps three stores of incident data synchronized:

- the external ticketing system (ServiceNow), the source of truth
- the canonical relational store
- the derived vector index (Milvus)

Modules:
- Ingestion: incremental polling and historical bulk import
- Vectorization: weighted ticket embeddings with credential failover
- Resolution: local resolution records pushed back with a durable retry ledger
"""

__version__ = "1.0.0"
