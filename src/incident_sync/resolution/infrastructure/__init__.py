"""
Resolution Infrastructure Layer
================================

Contains:
- ORM models: ResolutionModel, PendingUpdateModel
- Repositories: SQLAlchemy implementations
"""
