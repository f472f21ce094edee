"""
Vectorization Application Services
===================================

Embeds canonical tickets and writes them to the vector index.

A run walks its tickets in fixed-size sub-batches. Embedding calls inside a
sub-batch run concurrently (bounded by a semaphore), the index write for a
sub-batch is a single upsert, and the checkpoint records
``processed_count`` and ``current_credential_index`` after every sub-batch
so a restarted run continues where the previous one stopped.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from incident_sync.config import CheckpointStatus, Settings, SyncStream
from incident_sync.core import (
    CheckpointException,
    ConfigurationException,
    EmbeddingException,
    EmbeddingQuotaException,
    RepositoryException,
    VectorStoreException,
)
from incident_sync.infrastructure.checkpoints import CheckpointStore, SyncCheckpoint
from incident_sync.infrastructure.database import Database
from incident_sync.infrastructure.llm import RotatingEmbeddingProvider
from incident_sync.infrastructure.vectorstore import IVectorStore, VectorPoint
from incident_sync.ingestion.application import ticket_repository
from incident_sync.ingestion.domain import Ticket
from incident_sync.shared.infrastructure.clock import Clock, isoformat_or_none, utc_now
from incident_sync.shared.infrastructure.logging import get_logger, get_run_logger
from incident_sync.shared.infrastructure.scheduler import SyncScheduler
from incident_sync.vectorization.application.dto import VectorizationRunResult
from incident_sync.vectorization.domain import (
    ResolutionSnapshot,
    SkipReason,
    VectorizeOutcome,
    build_payload,
    build_weighted_text,
    point_id_for,
    vector_hash,
)

logger = get_logger(__name__)

VECTORIZATION_JOB_ID = "ticket_vectorization"
STORE_SCOPE = "store"
BACK_REFERENCE_FIELD = "ticket_ref"

Sleep = Callable[[float], Awaitable[None]]
ResolutionLoader = Callable[[AsyncSession, List[int]], Awaitable[Dict[int, ResolutionSnapshot]]]
TicketFetcher = Callable[[int, int], Awaitable[List[Ticket]]]


def batch_key(tickets: Sequence[Ticket]) -> str:
    """Identity of an ordered ticket list; a batch run only resumes over the same list."""
    joined = ",".join(f"{ticket.id}:{ticket.external_id}" for ticket in tickets)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


@dataclass
class PreparedPoint:
    """Everything needed to write one ticket's point."""
    point_id: str
    text: str
    payload: Dict[str, Any]
    digest: str


class VectorizationPipeline:
    """
    Batch and single-ticket vectorization with credential failover.

    Quota/auth errors from the embedding provider rotate to the next
    credential and retry the same sub-batch. After
    ``max_consecutive_failures`` failed sub-batches in a row the run halts
    with status ``error``.
    """

    def __init__(
        self,
        database: Database,
        embeddings: RotatingEmbeddingProvider,
        vector_store: IVectorStore,
        *,
        collection_name: str = "ticket",
        dimension: int = 768,
        sub_batch_size: int = 10,
        max_concurrency: int = 10,
        sub_batch_delay_seconds: float = 0.1,
        retry_delay_seconds: float = 5.0,
        max_consecutive_failures: int = 3,
        weight_multiplier: int = 10,
        resolution_loader: Optional[ResolutionLoader] = None,
        scheduler: Optional[SyncScheduler] = None,
        interval_seconds: int = 900,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._database = database
        self._embeddings = embeddings
        self._vector_store = vector_store
        self._collection = collection_name
        self._dimension = dimension
        self._sub_batch_size = sub_batch_size
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._sub_batch_delay = sub_batch_delay_seconds
        self._retry_delay = retry_delay_seconds
        self._max_consecutive_failures = max_consecutive_failures
        self._multiplier = weight_multiplier
        self._resolution_loader = resolution_loader
        self._scheduler = scheduler
        self._interval_seconds = interval_seconds
        self._checkpoints = CheckpointStore(database, clock)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._collection_ready = False
        # Set when vectorize_one rotates; the next run keeps the in-memory credential
        self._rotated_since_run = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        embeddings: RotatingEmbeddingProvider,
        vector_store: IVectorStore,
        **kwargs: Any
    ) -> "VectorizationPipeline":
        return cls(
            database,
            embeddings,
            vector_store,
            collection_name=settings.ticket_collection_name,
            dimension=settings.embedding_dimension,
            sub_batch_size=settings.vectorization_sub_batch_size,
            max_concurrency=settings.vectorization_max_concurrency,
            sub_batch_delay_seconds=settings.vectorization_sub_batch_delay_seconds,
            retry_delay_seconds=settings.vectorization_retry_delay_seconds,
            max_consecutive_failures=settings.vectorization_max_consecutive_failures,
            weight_multiplier=settings.vectorization_weight_multiplier,
            interval_seconds=settings.vectorization_interval_seconds,
            **kwargs,
        )

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    # ---------- lifecycle ----------

    def start(self) -> None:
        """Schedule periodic store vectorization."""
        if self._scheduler is None:
            raise ConfigurationException("Scheduled vectorization requires a scheduler")
        self._scheduler.add_interval_job(
            self._scheduled_run,
            job_id=VECTORIZATION_JOB_ID,
            seconds=self._interval_seconds,
            name="Ticket store vectorization"
        )

    async def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.remove_job(VECTORIZATION_JOB_ID)
        async with self._lock:
            pass

    async def _scheduled_run(self) -> None:
        try:
            await self.vectorize_store()
        except Exception:
            logger.exception("Scheduled vectorization crashed")

    # ---------- preparation ----------

    async def _ensure_collection(self) -> None:
        if not self._collection_ready:
            await self._vector_store.ensure_collection(self._collection, self._dimension)
            self._collection_ready = True

    def _prepare(
        self,
        ticket: Ticket,
        resolution: Optional[ResolutionSnapshot]
    ) -> Union[VectorizeOutcome, PreparedPoint]:
        if ticket.id is None or not ticket.external_id or not ticket.source:
            return VectorizeOutcome.skipped(ticket, SkipReason.MISSING_FIELDS)

        text = build_weighted_text(ticket, multiplier=self._multiplier)
        if not text:
            return VectorizeOutcome.skipped(ticket, SkipReason.EMPTY_TEXT)

        payload = build_payload(ticket, resolution)
        digest = vector_hash(text, payload)
        if digest == ticket.vector_hash:
            return VectorizeOutcome.skipped(ticket, SkipReason.UNCHANGED)

        return PreparedPoint(point_id_for(ticket), text, payload, digest)

    async def _load_resolutions(self, tickets: Sequence[Ticket]) -> Dict[int, ResolutionSnapshot]:
        ids = [ticket.id for ticket in tickets if ticket.id is not None]
        if self._resolution_loader is None or not ids:
            return {}
        async with self._database.session() as session:
            return await self._resolution_loader(session, ids)

    async def _mark_vectorized(self, written: List[Tuple[Ticket, PreparedPoint]]) -> None:
        if not written:
            return
        now = self._clock()
        try:
            async with self._database.session() as session:
                repo = ticket_repository(session)
                for ticket, prepared in written:
                    await repo.mark_vectorized(ticket.id, prepared.digest, now)
        except (RepositoryException, SQLAlchemyError) as e:
            # Points are already written; the next run re-embeds and overwrites them
            logger.error(
                "Failed to record vector state",
                extra={"error": str(e), "tickets": [t.external_id for t, _ in written]}
            )
            return
        for ticket, prepared in written:
            ticket.vector_hash = prepared.digest
            ticket.vectorized_at = now

    # ---------- single ticket ----------

    async def _embed_with_failover(self, text: str) -> List[float]:
        attempts = self._embeddings.credential_count
        for attempt in range(attempts):
            try:
                return await self._embeddings.embed(text)
            except EmbeddingQuotaException:
                if attempt == attempts - 1:
                    raise
                self._embeddings.rotate()
                self._rotated_since_run = True
        raise EmbeddingException("No embedding credentials available")

    async def vectorize_one(
        self,
        ticket: Ticket,
        resolution: Optional[ResolutionSnapshot] = None
    ) -> VectorizeOutcome:
        """
        Vectorize a single ticket.

        Args:
            ticket: Stored ticket (must carry its store id)
            resolution: Resolution to denormalize; looked up when omitted

        Returns:
            VectorizeOutcome: success, skipped (with reason) or failed (with error)
        """
        if resolution is None and ticket.id is not None:
            resolution = (await self._load_resolutions([ticket])).get(ticket.id)

        prepared = self._prepare(ticket, resolution)
        if isinstance(prepared, VectorizeOutcome):
            logger.info(
                "Ticket not vectorized",
                extra={"external_id": ticket.external_id, "reason": prepared.reason}
            )
            return prepared

        try:
            await self._ensure_collection()
            vector = await self._embed_with_failover(prepared.text)
            await self._vector_store.upsert(
                self._collection,
                [VectorPoint(prepared.point_id, vector, prepared.payload)]
            )
        except (EmbeddingException, VectorStoreException) as e:
            logger.warning(
                "Ticket vectorization failed",
                extra={"external_id": ticket.external_id, "error": e.message}
            )
            return VectorizeOutcome.failed(ticket, e.message)

        await self._mark_vectorized([(ticket, prepared)])
        logger.info("Ticket vectorized", extra={"external_id": ticket.external_id, "point_id": prepared.point_id})
        return VectorizeOutcome.success(ticket, prepared.point_id)

    # ---------- batch runs ----------

    async def vectorize_batch(self, tickets: Sequence[Ticket], scope: str = "batch") -> VectorizationRunResult:
        """
        Vectorize an explicit list of tickets, resuming at the checkpoint's
        ``processed_count`` when the previous run over the same tickets did
        not complete.
        """
        items = list(tickets)

        async def fetch(offset: int, limit: int) -> List[Ticket]:
            return items[offset:offset + limit]

        return await self._run(scope, fetch, total=len(items), input_key=batch_key(items))

    async def vectorize_store(self) -> VectorizationRunResult:
        """Walk the whole canonical store in id order."""

        async def fetch(offset: int, limit: int) -> List[Ticket]:
            async with self._database.session() as session:
                return await ticket_repository(session).list_ordered(offset, limit)

        return await self._run(STORE_SCOPE, fetch, total=None, input_key=None)

    async def _run(
        self,
        scope: str,
        fetch: TicketFetcher,
        total: Optional[int],
        input_key: Optional[str]
    ) -> VectorizationRunResult:
        if self._lock.locked():
            return VectorizationRunResult(status="skipped", scope=scope, reason="already running")

        async with self._lock:
            return await self._run_locked(scope, fetch, total, input_key)

    async def _run_locked(
        self,
        scope: str,
        fetch: TicketFetcher,
        total: Optional[int],
        input_key: Optional[str]
    ) -> VectorizationRunResult:
        log = get_run_logger(__name__, uuid4().hex[:12], stream=SyncStream.VECTORIZATION, scope=scope)
        started = time.perf_counter()

        previous = await self._checkpoints.load(SyncStream.VECTORIZATION)
        resume = (
            previous.status != CheckpointStatus.COMPLETED
            and previous.details.get("scope") == scope
            and previous.details.get("total") == total
            and previous.details.get("input_key") == input_key
        )
        index = int(previous.details.get("processed_count", 0)) if resume else 0
        if not self._rotated_since_run:
            self._embeddings.set_index(int(previous.details.get("current_credential_index", 0)))
        self._rotated_since_run = False

        checkpoint = SyncCheckpoint(
            stream=SyncStream.VECTORIZATION,
            cursor=str(index),
            status=CheckpointStatus.RUNNING,
            last_run_at=self._clock(),
            details={
                "scope": scope,
                "total": total,
                "input_key": input_key,
                "processed_count": index,
                "current_credential_index": self._embeddings.current_index,
            },
        )
        await self._checkpoints.save(checkpoint)

        result = VectorizationRunResult(status="completed", scope=scope, start_index=index, processed_count=index)
        log.info("Vectorization started", extra={"start_index": index, "total": total, "resumed": resume})

        try:
            await self._ensure_collection()
        except VectorStoreException as e:
            return await self._halt(checkpoint, result, e, log, started)

        consecutive_failures = 0
        while True:
            chunk = await fetch(index, self._sub_batch_size)
            if not chunk:
                break

            try:
                outcomes = await self._process_sub_batch(chunk)
            except (EmbeddingException, VectorStoreException) as e:
                consecutive_failures += 1
                if isinstance(e, EmbeddingQuotaException):
                    self._embeddings.rotate()
                    result.credential_rotations += 1
                log.warning(
                    "Sub-batch failed",
                    extra={
                        "index": index,
                        "error": e.message,
                        "consecutive_failures": consecutive_failures,
                        "credential_index": self._embeddings.current_index,
                    }
                )

                details = dict(checkpoint.details)
                details["current_credential_index"] = self._embeddings.current_index
                checkpoint = checkpoint.evolve(details=details)

                if consecutive_failures >= self._max_consecutive_failures:
                    return await self._halt(checkpoint, result, e, log, started)

                await self._checkpoints.save(checkpoint)
                await self._sleep(self._retry_delay)
                continue

            consecutive_failures = 0
            index += len(chunk)
            for outcome in outcomes:
                result.record(outcome)
            result.processed_count = index

            details = dict(checkpoint.details)
            details.update(
                processed_count=index,
                current_credential_index=self._embeddings.current_index,
                succeeded=details.get("succeeded", 0) + sum(1 for o in outcomes if o.ok),
            )
            checkpoint = checkpoint.evolve(cursor=str(index), details=details)
            try:
                await self._checkpoints.save(checkpoint)
            except CheckpointException:
                log.error("Vectorization checkpoint write failed, halting", extra={"index": index})
                raise

            if len(chunk) < self._sub_batch_size:
                break
            await self._sleep(self._sub_batch_delay)

        checkpoint = checkpoint.evolve(status=CheckpointStatus.COMPLETED, last_error=None)
        await self._checkpoints.save(checkpoint)

        result.current_credential_index = self._embeddings.current_index
        result.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        log.info(
            "Vectorization completed",
            extra={
                "processed_count": index,
                "succeeded": result.succeeded,
                "skipped": result.skipped,
                "failed": result.failed,
                "duration_ms": result.duration_ms,
            }
        )
        return result

    async def _halt(
        self,
        checkpoint: SyncCheckpoint,
        result: VectorizationRunResult,
        error: Exception,
        log,
        started: float
    ) -> VectorizationRunResult:
        message = getattr(error, "message", str(error))
        checkpoint = checkpoint.evolve(status=CheckpointStatus.ERROR, last_error=message)
        await self._checkpoints.save(checkpoint)
        log.error(
            "Vectorization halted",
            extra={"error": message, "processed_count": checkpoint.details.get("processed_count")}
        )
        result.status = "error"
        result.error = message
        result.current_credential_index = self._embeddings.current_index
        result.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        return result

    async def _process_sub_batch(self, chunk: List[Ticket]) -> List[VectorizeOutcome]:
        """
        Embed and write one sub-batch.

        Raises:
            EmbeddingQuotaException: Any call hit a quota/auth error (whole sub-batch retried)
            EmbeddingException: Every embedding of the sub-batch failed
            VectorStoreException: The index write failed
        """
        resolutions = await self._load_resolutions(chunk)
        outcomes: List[VectorizeOutcome] = []
        ready: List[Tuple[Ticket, PreparedPoint]] = []

        for ticket in chunk:
            prepared = self._prepare(ticket, resolutions.get(ticket.id))
            if isinstance(prepared, VectorizeOutcome):
                outcomes.append(prepared)
            else:
                ready.append((ticket, prepared))

        if not ready:
            return outcomes

        async def embed(prepared: PreparedPoint) -> List[float]:
            async with self._semaphore:
                return await self._embeddings.embed(prepared.text)

        results = await asyncio.gather(*(embed(p) for _, p in ready), return_exceptions=True)

        for item in results:
            if isinstance(item, EmbeddingQuotaException):
                raise item
            if isinstance(item, BaseException) and not isinstance(item, EmbeddingException):
                raise item

        errors = [item for item in results if isinstance(item, EmbeddingException)]
        if len(errors) == len(ready):
            raise errors[0]

        points: List[VectorPoint] = []
        written: List[Tuple[Ticket, PreparedPoint]] = []
        for (ticket, prepared), item in zip(ready, results):
            if isinstance(item, EmbeddingException):
                outcomes.append(VectorizeOutcome.failed(ticket, item.message))
                continue
            points.append(VectorPoint(prepared.point_id, item, prepared.payload))
            written.append((ticket, prepared))

        await self._vector_store.upsert(self._collection, points)
        await self._mark_vectorized(written)
        outcomes.extend(VectorizeOutcome.success(ticket, prepared.point_id) for ticket, prepared in written)
        return outcomes

    # ---------- removal & status ----------

    async def remove_vector(self, ticket_id: int) -> int:
        """
        Delete every point whose back-reference is ``ticket_id``.

        Returns:
            Number of points deleted
        """
        await self._ensure_collection()
        ids = await self._vector_store.scroll_by_payload_filter(self._collection, BACK_REFERENCE_FIELD, ticket_id)
        if ids:
            await self._vector_store.delete(self._collection, ids)

        async with self._database.session() as session:
            repo = ticket_repository(session)
            if await repo.get_by_id(ticket_id) is not None:
                await repo.mark_vectorized(ticket_id, None, None)

        logger.info("Ticket vectors removed", extra={"ticket_id": ticket_id, "points": len(ids)})
        return len(ids)

    async def status(self) -> Dict[str, Any]:
        checkpoint = await self._checkpoints.load(SyncStream.VECTORIZATION)
        return {
            "stream": SyncStream.VECTORIZATION,
            "status": checkpoint.status,
            "in_flight": self.in_flight,
            "last_run_at": isoformat_or_none(checkpoint.last_run_at),
            "last_error": checkpoint.last_error,
            "processed_count": checkpoint.details.get("processed_count", 0),
            "current_credential_index": checkpoint.details.get("current_credential_index", 0),
            "scope": checkpoint.details.get("scope"),
            "collection": self._collection,
        }

    async def health_check(self) -> Dict[str, Any]:
        embeddings = await self._embeddings.health_check()
        index = await self._vector_store.check_health()
        return {
            "healthy": bool(embeddings.get("healthy") and index.get("healthy")),
            "embeddings": embeddings,
            "vector_store": index,
        }
