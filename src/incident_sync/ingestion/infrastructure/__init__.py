"""
Ingestion Infrastructure Layer
===============================

SQLAlchemy models and repositories for the canonical ticket store.
"""
