"""
Infrastructure Layer
=====================

Low-level technical concerns shared by the sync modules:
- Canonical store connection management
- Sync checkpoints
- ServiceNow, embedding and Milvus clients
"""
