"""
Shared Infrastructure
=====================

Low-level technical concerns:
- Structured logging
- Background job scheduling
- Clock helpers
"""
