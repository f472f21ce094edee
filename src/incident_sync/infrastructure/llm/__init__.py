"""
Embedding Client Infrastructure
================================

Wrappers for embedding providers (OpenAI, Z.AI) behind a small interface,
plus a provider that rotates across several API credentials.

Credential rotation is explicit: the provider reports quota/auth failures
as ``EmbeddingQuotaException`` and the caller decides when to ``rotate()``.
"""

import asyncio
import hashlib
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from zai import ZaiClient

from incident_sync.config import Settings
from incident_sync.core import ConfigurationException, EmbeddingException, EmbeddingQuotaException
from incident_sync.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

QUOTA_STATUS_CODES = {401, 403, 429}
QUOTA_MARKERS = ("quota", "rate limit", "rate_limit", "limit exceeded", "api key", "api_key", "insufficient")


class EmbeddingResult:
    """Result of an embedding generation."""

    def __init__(self, embedding: List[float], model: str):
        self.embedding = embedding
        self.model = model
        self.dimension = len(embedding)


def is_quota_error(error: Exception) -> bool:
    """
    Classify an SDK error as a credential problem (quota, rate limit, auth).

    Args:
        error: Exception raised by an embedding SDK

    Returns:
        True when switching to another credential may help
    """
    if isinstance(error, (openai.RateLimitError, openai.AuthenticationError, openai.PermissionDeniedError)):
        return True
    status_code = getattr(error, "status_code", None)
    if status_code in QUOTA_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in QUOTA_MARKERS)


def _wrap_error(error: Exception, label: str) -> EmbeddingException:
    details = {"credential": label, "error_type": type(error).__name__}
    if is_quota_error(error):
        return EmbeddingQuotaException(f"Credential {label} rejected: {error}", details)
    return EmbeddingException(f"Embedding generation failed: {error}", details)


class IEmbeddingClient(ABC):
    """Interface for a single-credential embedding client."""

    label: str = "embedding"

    @abstractmethod
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding for text."""


class OpenAIEmbeddingClient(IEmbeddingClient):
    """
    OpenAI (or OpenAI-compatible) embeddings for one API key.

    Provides async wrapper around OpenAI SDK operations.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        dimension: Optional[int] = None,
        base_url: Optional[str] = None,
        label: str = "openai"
    ):
        if not api_key:
            raise ConfigurationException("OpenAI API key not configured")

        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._model = model
        self._dimension = dimension
        self.label = label

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for text using OpenAI embedding model.

        Args:
            text: Text to embed

        Returns:
            EmbeddingResult with embedding vector

        Raises:
            EmbeddingQuotaException: If the key is rate limited or rejected
            EmbeddingException: If embedding generation fails otherwise
        """
        kwargs: Dict[str, Any] = {"model": self._model, "input": text}
        if self._dimension:
            kwargs["dimensions"] = self._dimension
        try:
            response = await self._client.embeddings.create(**kwargs)
        except openai.OpenAIError as e:
            raise _wrap_error(e, self.label)
        return EmbeddingResult(embedding=response.data[0].embedding, model=self._model)


class ZAIEmbeddingClient(IEmbeddingClient):
    """
    Z.AI SDK embeddings for one API key.

    The SDK is synchronous, so calls run in a worker thread.
    """

    def __init__(self, api_key: str, model: str, label: str = "zai"):
        if not api_key:
            raise ConfigurationException("Z.AI API key not configured")

        self._client = ZaiClient(api_key=api_key)
        self._model = model
        self.label = label

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        try:
            response = await asyncio.to_thread(
                self._client.embeddings.create,
                model=self._model,
                input=text
            )
        except Exception as e:
            raise _wrap_error(e, self.label)
        return EmbeddingResult(embedding=response.data[0].embedding, model=self._model)


class MockEmbeddingClient(IEmbeddingClient):
    """
    Mock embedding client for local runs.

    Returns deterministic pseudo-embeddings without calling external APIs.
    """

    def __init__(self, dimension: int, label: str = "mock"):
        self._dimension = dimension
        self.label = label

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        seed = int(hashlib.sha256(text.encode()).hexdigest()[:8], 16)
        rng = random.Random(seed)
        embedding = [rng.uniform(-1, 1) for _ in range(self._dimension)]
        return EmbeddingResult(embedding=embedding, model="mock-embedding")


class RotatingEmbeddingProvider:
    """
    Embedding provider holding several credentials in priority order.

    ``current_index`` is persisted by the vectorization pipeline so a
    restarted run keeps using the credential that last worked.
    """

    def __init__(self, clients: List[IEmbeddingClient], dimension: Optional[int] = None):
        if not clients:
            raise ConfigurationException("At least one embedding credential is required")
        self._clients = clients
        self._dimension = dimension
        self._index = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RotatingEmbeddingProvider":
        """Build one client per configured API key."""
        provider = settings.embedding_provider
        dimension = settings.embedding_dimension

        if provider == "mock":
            return cls([MockEmbeddingClient(dimension)], dimension=dimension)

        if not settings.embedding_api_keys:
            raise ConfigurationException(f"No API keys configured for embedding provider '{provider}'")

        clients: List[IEmbeddingClient] = []
        for position, key in enumerate(settings.embedding_api_keys):
            label = f"{provider}#{position}"
            if provider == "openai":
                clients.append(OpenAIEmbeddingClient(
                    key,
                    settings.embedding_model,
                    dimension=dimension,
                    base_url=settings.embedding_base_url,
                    label=label
                ))
            else:
                clients.append(ZAIEmbeddingClient(key, settings.embedding_model, label=label))

        logger.info(
            "Embedding provider configured",
            extra={"provider": provider, "credentials": len(clients), "model": settings.embedding_model}
        )
        return cls(clients, dimension=dimension)

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def credential_count(self) -> int:
        return len(self._clients)

    def set_index(self, index: int) -> None:
        """Resume with a previously persisted credential index."""
        self._index = index % len(self._clients)

    def rotate(self) -> int:
        """
        Switch to the next credential (wrapping around).

        Returns:
            The new credential index
        """
        previous = self._index
        self._index = (self._index + 1) % len(self._clients)
        logger.warning(
            "Rotating embedding credential",
            extra={
                "from_credential": self._clients[previous].label,
                "to_credential": self._clients[self._index].label,
            }
        )
        return self._index

    async def embed(self, text: str) -> List[float]:
        """
        Embed text with the current credential.

        Raises:
            EmbeddingQuotaException: Current credential is exhausted or rejected
            EmbeddingException: Any other embedding failure (including a
                dimension mismatch)
        """
        result = await self._clients[self._index].generate_embedding(text)
        if self._dimension and result.dimension != self._dimension:
            raise EmbeddingException(
                f"Expected {self._dimension} dimensions, got {result.dimension}",
                {"model": result.model}
            )
        return result.embedding

    async def health_check(self) -> Dict[str, Any]:
        try:
            vector = await self.embed("health check")
        except EmbeddingException as e:
            return {"healthy": False, "credential_index": self._index, "error": e.message}
        return {"healthy": True, "credential_index": self._index, "dimension": len(vector)}


__all__ = [
    "EmbeddingResult",
    "IEmbeddingClient",
    "OpenAIEmbeddingClient",
    "ZAIEmbeddingClient",
    "MockEmbeddingClient",
    "RotatingEmbeddingProvider",
    "is_quota_error",
]
