"""
Checkpoint Store
================

Durable per-stream progress for the sync streams (``poll``, ``bulk-import``
and ``vectorization``).

Checkpoints are rows in the canonical store. A stream writes its checkpoint
in the same transaction as the page it just stored, or right after the
remote write it depends on, so a checkpoint never runs ahead of the data.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import JSON, String, Text, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from incident_sync.config import CheckpointStatus, VALID_STREAMS
from incident_sync.core import CheckpointException
from incident_sync.infrastructure.database import Base, Database, UTCDateTime
from incident_sync.shared.infrastructure.clock import Clock, utc_now
from incident_sync.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

INTERRUPTED_ERROR = "interrupted: process stopped while the run was in progress"


@dataclass
class SyncCheckpoint:
    """Progress marker of one sync stream."""

    stream: str
    cursor: Optional[str] = None
    status: str = CheckpointStatus.IDLE
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def evolve(self, **changes: Any) -> "SyncCheckpoint":
        """Copy with changes; ``details`` is copied so the original stays untouched."""
        changes.setdefault("details", dict(self.details))
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stream": self.stream,
            "cursor": self.cursor,
            "status": self.status,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
            "details": dict(self.details),
        }


class SyncCheckpointModel(Base):
    """
    Database model for SyncCheckpoint.

    Maps to the 'sync_checkpoints' table, one row per stream.
    """
    __tablename__ = "sync_checkpoints"

    stream: Mapped[str] = mapped_column(String(50), primary_key=True)
    cursor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CheckpointStatus.IDLE)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)


class ICheckpointRepository(ABC):
    """Interface for checkpoint data access."""

    @abstractmethod
    async def get(self, stream: str) -> SyncCheckpoint:
        """Get the checkpoint of a stream (a fresh idle one when none exists)."""

    @abstractmethod
    async def save(self, checkpoint: SyncCheckpoint) -> None:
        """Insert or replace the checkpoint of a stream."""

    @abstractmethod
    async def reset(self, stream: str) -> None:
        """Remove the checkpoint of a stream."""

    @abstractmethod
    async def list_all(self) -> List[SyncCheckpoint]:
        """List every stored checkpoint."""


class SQLAlchemyCheckpointRepository(ICheckpointRepository):
    """
    SQLAlchemy implementation of the checkpoint repository.

    Works inside the caller's session so a checkpoint can share a transaction
    with the data it describes.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, stream: str) -> Optional[SyncCheckpointModel]:
        stmt = select(SyncCheckpointModel).where(SyncCheckpointModel.stream == stream)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, stream: str) -> SyncCheckpoint:
        _validate_stream(stream)
        try:
            model = await self._get_model(stream)
        except SQLAlchemyError as e:
            raise CheckpointException(stream, f"read failed: {e}")

        if model is None:
            return SyncCheckpoint(stream=stream)

        return SyncCheckpoint(
            stream=model.stream,
            cursor=model.cursor,
            status=model.status,
            last_run_at=model.last_run_at,
            last_error=model.last_error,
            details=dict(model.details or {}),
        )

    async def save(self, checkpoint: SyncCheckpoint) -> None:
        _validate_stream(checkpoint.stream)
        try:
            model = await self._get_model(checkpoint.stream)
            if model is None:
                model = SyncCheckpointModel(stream=checkpoint.stream)
                self._session.add(model)

            model.cursor = checkpoint.cursor
            model.status = checkpoint.status
            model.last_run_at = checkpoint.last_run_at
            model.last_error = checkpoint.last_error
            model.details = dict(checkpoint.details)
            model.updated_at = utc_now()

            await self._session.flush()
        except SQLAlchemyError as e:
            raise CheckpointException(checkpoint.stream, f"write failed: {e}")

    async def reset(self, stream: str) -> None:
        _validate_stream(stream)
        try:
            await self._session.execute(
                delete(SyncCheckpointModel).where(SyncCheckpointModel.stream == stream)
            )
        except SQLAlchemyError as e:
            raise CheckpointException(stream, f"reset failed: {e}")

    async def list_all(self) -> List[SyncCheckpoint]:
        result = await self._session.execute(
            select(SyncCheckpointModel).order_by(SyncCheckpointModel.stream)
        )
        return [
            SyncCheckpoint(
                stream=model.stream,
                cursor=model.cursor,
                status=model.status,
                last_run_at=model.last_run_at,
                last_error=model.last_error,
                details=dict(model.details or {}),
            )
            for model in result.scalars().all()
        ]


class CheckpointStore:
    """
    Checkpoint access in its own short transaction.

    Used for status transitions that are not tied to a data write
    (``running`` at run start, ``error`` after a failure).
    """

    def __init__(self, database: Database, clock: Clock = utc_now):
        self._database = database
        self._clock = clock

    async def load(self, stream: str) -> SyncCheckpoint:
        try:
            async with self._database.session() as session:
                return await SQLAlchemyCheckpointRepository(session).get(stream)
        except SQLAlchemyError as e:
            raise CheckpointException(stream, f"read failed: {e}")

    async def save(self, checkpoint: SyncCheckpoint) -> None:
        try:
            async with self._database.session() as session:
                await SQLAlchemyCheckpointRepository(session).save(checkpoint)
        except SQLAlchemyError as e:
            raise CheckpointException(checkpoint.stream, f"commit failed: {e}")

    async def reset(self, stream: str) -> None:
        try:
            async with self._database.session() as session:
                await SQLAlchemyCheckpointRepository(session).reset(stream)
        except SQLAlchemyError as e:
            raise CheckpointException(stream, f"commit failed: {e}")

        logger.info("Checkpoint reset", extra={"stream": stream})

    async def recover_interrupted(self, streams: Iterable[str] = VALID_STREAMS) -> List[str]:
        """
        Turn ``running`` checkpoints left by a dead process into ``error``.

        Only valid at process start, before any run of this process begins.

        Returns:
            Streams that were recovered
        """
        recovered = []
        for stream in streams:
            checkpoint = await self.load(stream)
            if checkpoint.status != CheckpointStatus.RUNNING:
                continue
            await self.save(checkpoint.evolve(
                status=CheckpointStatus.ERROR,
                last_error=INTERRUPTED_ERROR,
            ))
            recovered.append(stream)
            logger.warning(
                "Recovered interrupted sync run",
                extra={"stream": stream, "cursor": checkpoint.cursor}
            )
        return recovered


def _validate_stream(stream: str) -> None:
    if stream not in VALID_STREAMS:
        raise CheckpointException(stream, f"unknown stream, expected one of {VALID_STREAMS}")


__all__ = [
    "SyncCheckpoint",
    "SyncCheckpointModel",
    "ICheckpointRepository",
    "SQLAlchemyCheckpointRepository",
    "CheckpointStore",
    "INTERRUPTED_ERROR",
]
