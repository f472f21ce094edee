"""
Vector Store Infrastructure
============================

Milvus vector index for ticket embeddings.

Points carry a deterministic string id, the vector, and a denormalized
payload (stored as dynamic fields) including ``ticket_ref``, the canonical
store id used to find and delete a ticket's points.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pymilvus import MilvusClient

from incident_sync.config import Settings
from incident_sync.core import VectorStoreException
from incident_sync.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

MAX_QUERY_RESULTS = 16384


@dataclass
class VectorPoint:
    """Point for vector storage."""
    id: str
    vector: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)


class IVectorStore(ABC):
    """
    Interface for vector index operations.

    Following Interface Segregation and Dependency Inversion principles.
    """

    @abstractmethod
    async def ensure_collection(self, name: str, dimension: int) -> None:
        """Create the collection when it does not exist."""

    @abstractmethod
    async def upsert(self, collection: str, points: List[VectorPoint]) -> None:
        """Insert or replace points by id."""

    @abstractmethod
    async def scroll_by_payload_filter(self, collection: str, field_name: str, value: Any) -> List[str]:
        """Ids of every point whose payload field equals ``value``."""

    @abstractmethod
    async def delete(self, collection: str, ids: List[str]) -> None:
        """Delete points by id."""

    @abstractmethod
    async def check_health(self) -> Dict[str, Any]:
        """Reachability probe."""


def build_equality_filter(field_name: str, value: Any) -> str:
    """Milvus boolean expression matching a scalar payload field."""
    if isinstance(value, bool):
        return f"{field_name} == {str(value).lower()}"
    if isinstance(value, (int, float)):
        return f"{field_name} == {value}"
    return f"{field_name} == {json.dumps(str(value))}"


class MilvusVectorStore(IVectorStore):
    """
    Milvus / Zilliz Cloud implementation of the vector index.

    The pymilvus client is synchronous; calls run in a worker thread so the
    event loop keeps serving the other sync streams.
    """

    def __init__(self, uri: str, token: Optional[str] = None, client: Optional[MilvusClient] = None):
        self._uri = uri
        self._token = token
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "MilvusVectorStore":
        return cls(uri=settings.milvus_uri, token=settings.milvus_token)

    def _get_client(self) -> MilvusClient:
        if self._client is None:
            try:
                if self._token:
                    self._client = MilvusClient(uri=self._uri, token=self._token)
                else:
                    self._client = MilvusClient(uri=self._uri)
            except Exception as e:
                raise VectorStoreException(f"Failed to connect to Milvus: {e}")
        return self._client

    async def _call(self, operation: str, func, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except VectorStoreException:
            raise
        except Exception as e:
            raise VectorStoreException(f"{operation} failed: {e}", {"operation": operation})

    async def ensure_collection(self, name: str, dimension: int) -> None:
        client = self._get_client()
        exists = await self._call("has_collection", client.has_collection, name)
        if exists:
            return

        await self._call(
            "create_collection",
            client.create_collection,
            collection_name=name,
            dimension=dimension,
            primary_field_name="id",
            id_type="string",
            max_length=64,
            vector_field_name="vector",
            metric_type="COSINE",
            auto_id=False,
            enable_dynamic_field=True,
        )
        logger.info("Vector collection created", extra={"collection": name, "dimension": dimension})

    async def upsert(self, collection: str, points: List[VectorPoint]) -> None:
        """
        Insert or replace points.

        Args:
            collection: Collection name
            points: Points with embeddings and payload

        Raises:
            VectorStoreException: If the upsert fails
        """
        if not points:
            return

        data = []
        for point in points:
            row = {k: v for k, v in point.payload.items() if v is not None}
            row["id"] = point.id
            row["vector"] = point.vector
            data.append(row)

        client = self._get_client()
        await self._call("upsert", client.upsert, collection_name=collection, data=data)

    async def scroll_by_payload_filter(self, collection: str, field_name: str, value: Any) -> List[str]:
        client = self._get_client()
        rows = await self._call(
            "query",
            client.query,
            collection_name=collection,
            filter=build_equality_filter(field_name, value),
            output_fields=["id"],
            limit=MAX_QUERY_RESULTS,
        )
        return [str(row["id"]) for row in rows]

    async def delete(self, collection: str, ids: List[str]) -> None:
        if not ids:
            return
        client = self._get_client()
        await self._call("delete", client.delete, collection_name=collection, ids=ids)

    async def check_health(self) -> Dict[str, Any]:
        try:
            client = self._get_client()
            collections = await self._call("list_collections", client.list_collections)
        except VectorStoreException as e:
            return {"healthy": False, "error": e.message}
        return {"healthy": True, "collections": len(collections)}


__all__ = ["VectorPoint", "IVectorStore", "MilvusVectorStore", "build_equality_filter"]
