"""
Core Exceptions
================

Custom exceptions for the synchronization core.

Transient failures (timeouts, 5xx, 429) are retried by the component that
hit them. Permanent failures (4xx, malformed records) surface as skips or
failed results. Checkpoint failures after a remote write are fatal to the
run that hit them.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class CheckpointException(RepositoryException):
    """A sync checkpoint could not be read or written."""

    def __init__(self, stream: str, message: str, details: Optional[dict] = None):
        self.stream = stream
        super().__init__(f"Checkpoint '{stream}': {message}", details)


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class InvalidTicketRecordException(ValidationException):
    """An external record cannot be turned into a ticket."""

    def __init__(self, reason: str, record_id: Optional[str] = None):
        self.reason = reason
        self.record_id = record_id
        super().__init__(reason, {"record_id": record_id} if record_id else None)


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class TicketingException(ExternalServiceException):
    """Unexpected failure talking to the external ticketing system."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("ServiceNow", message, details)


class EmbeddingException(ExternalServiceException):
    """Exception for embedding API failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Embedding Service", message, details)


class EmbeddingQuotaException(EmbeddingException):
    """The current embedding credential is rate limited, out of quota or rejected."""


class VectorStoreException(ExternalServiceException):
    """Exception for vector store failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Vector Store", message, details)
