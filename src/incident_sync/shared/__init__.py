"""
Shared Kernel Module
====================

Generic infrastructure used by every synchronization module (ingestion,
vectorization and resolution).

DO NOT add ingestion, vectorization or resolution logic to the shared kernel.
"""
