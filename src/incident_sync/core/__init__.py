"""
Core Module
============

Shared core abstractions used across the synchronization modules.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from incident_sync.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    CheckpointException,
    ValidationException,
    InvalidTicketRecordException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    TicketingException,
    EmbeddingException,
    EmbeddingQuotaException,
    VectorStoreException,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "CheckpointException",
    "ValidationException",
    "InvalidTicketRecordException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "TicketingException",
    "EmbeddingException",
    "EmbeddingQuotaException",
    "VectorStoreException",
]
