"""
Ingestion Application Services
===============================

Incremental polling and historical bulk import of external tickets into the
canonical store.

Both streams follow the same unit of work: fetch a page, upsert it, and
write the stream checkpoint in the same transaction. A failed page leaves
the checkpoint at the previous page boundary; the next run re-reads that
page and the idempotent upsert absorbs the overlap.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from incident_sync.config import CheckpointStatus, Settings, SyncStream
from incident_sync.core import (
    ConfigurationException,
    InvalidTicketRecordException,
    RepositoryException,
    TicketingException,
)
from incident_sync.infrastructure.checkpoints import (
    CheckpointStore,
    SQLAlchemyCheckpointRepository,
    SyncCheckpoint,
)
from incident_sync.infrastructure.database import Database
from incident_sync.infrastructure.ticketing import ITicketingClient
from incident_sync.ingestion.application.dto import (
    BulkImportOptions,
    BulkImportResult,
    InvalidRecord,
    PageCounters,
    PollResult,
)
from incident_sync.ingestion.domain import Ticket, ticket_from_record
from incident_sync.shared.infrastructure.clock import Clock, isoformat_or_none, parse_iso, utc_now
from incident_sync.shared.infrastructure.logging import get_logger, get_run_logger
from incident_sync.shared.infrastructure.scheduler import SyncScheduler

logger = get_logger(__name__)

POLL_JOB_ID = "incident_poll"
ALREADY_RUNNING = "already running"
MAX_REPORTED_INVALID = 50

Sleep = Callable[[float], Awaitable[None]]


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketRepository(ABC):
    """Interface for canonical ticket data access."""

    @abstractmethod
    async def get_by_id(self, ticket_id: int) -> Optional[Ticket]:
        """Get ticket by store id."""

    @abstractmethod
    async def get_by_external_id(self, external_id: str, source: str) -> Optional[Ticket]:
        """Get ticket by (external id, source)."""

    @abstractmethod
    async def upsert(self, ticket: Ticket) -> str:
        """Insert or update; returns an UpsertOutcome value and sets ``ticket.id``."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored tickets."""

    @abstractmethod
    async def list_ordered(self, offset: int = 0, limit: int = 100) -> List[Ticket]:
        """List tickets in store id order."""

    @abstractmethod
    async def mark_vectorized(self, ticket_id: int, vector_hash: Optional[str], at: Optional[datetime]) -> None:
        """Record (or clear) the vector state of a ticket."""


def ticket_repository(session: AsyncSession) -> ITicketRepository:
    """Default repository factory bound to a session."""
    from incident_sync.ingestion.infrastructure.repositories import SQLAlchemyTicketRepository

    return SQLAlchemyTicketRepository(session)


CheckpointBuilder = Callable[[Optional[datetime], PageCounters], SyncCheckpoint]


async def store_page(
    database: Database,
    records: List[Dict[str, Any]],
    source: str,
    build_checkpoint: CheckpointBuilder
) -> Tuple[PageCounters, List[InvalidRecord], SyncCheckpoint]:
    """
    Upsert one page and persist the stream checkpoint atomically.

    Args:
        database: Canonical store
        records: Raw external records
        source: Source label stored on tickets
        build_checkpoint: Builds the checkpoint to commit from the max change
            timestamp seen on the page and the page counters

    Returns:
        Page counters, skipped records and the committed checkpoint

    Raises:
        RepositoryException: If the page or the checkpoint cannot be written
    """
    counters = PageCounters(fetched=len(records), pages=1)
    invalid: List[InvalidRecord] = []
    max_seen: Optional[datetime] = None

    try:
        async with database.session() as session:
            repo = ticket_repository(session)
            for record in records:
                try:
                    ticket = ticket_from_record(record, source)
                except InvalidTicketRecordException as e:
                    counters.invalid += 1
                    invalid.append(InvalidRecord(record_id=e.record_id, reason=e.reason))
                    continue

                outcome = await repo.upsert(ticket)
                counters.record(outcome)
                if max_seen is None or ticket.external_updated_at > max_seen:
                    max_seen = ticket.external_updated_at

            checkpoint = build_checkpoint(max_seen, counters)
            await SQLAlchemyCheckpointRepository(session).save(checkpoint)
    except SQLAlchemyError as e:
        raise RepositoryException(f"Page commit failed: {e}")

    return counters, invalid, checkpoint


def _merge_counters(total: PageCounters, page: PageCounters) -> None:
    for name in PageCounters.model_fields:
        setattr(total, name, getattr(total, name) + getattr(page, name))


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


# ========== Application Services ==========

class PollingService:
    """
    Incremental poller driven by a persisted time-window cursor.

    Each poll queries tickets changed at or after ``cursor - overlap`` and
    advances the cursor to the newest change timestamp of every committed
    page. Only one poll runs at a time; a concurrent caller gets a
    ``skipped`` result and never touches the cursor.
    """

    def __init__(
        self,
        database: Database,
        client: ITicketingClient,
        scheduler: Optional[SyncScheduler] = None,
        *,
        source: str = "ServiceNow",
        interval_seconds: int = 300,
        batch_size: int = 100,
        overlap_seconds: int = 60,
        initial_lookback_hours: int = 24,
        max_pages: int = 50,
        max_consecutive_failures: int = 5,
        page_delay_seconds: float = 0.1,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._database = database
        self._client = client
        self._scheduler = scheduler
        self._checkpoints = CheckpointStore(database, clock)
        self._source = source
        self._interval_seconds = interval_seconds
        self._batch_size = batch_size
        self._overlap = timedelta(seconds=overlap_seconds)
        self._initial_lookback = timedelta(hours=initial_lookback_hours)
        self._max_pages = max_pages
        self._max_consecutive_failures = max_consecutive_failures
        self._page_delay = page_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._active = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        client: ITicketingClient,
        scheduler: Optional[SyncScheduler] = None,
        **kwargs: Any
    ) -> "PollingService":
        return cls(
            database,
            client,
            scheduler,
            source=settings.servicenow_source,
            interval_seconds=settings.polling_interval_seconds,
            batch_size=settings.polling_batch_size,
            overlap_seconds=settings.polling_overlap_seconds,
            initial_lookback_hours=settings.polling_initial_lookback_hours,
            max_pages=settings.polling_max_pages,
            max_consecutive_failures=settings.polling_max_consecutive_failures,
            page_delay_seconds=settings.polling_page_delay_seconds,
            **kwargs,
        )

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    # ---------- lifecycle ----------

    def start(self) -> None:
        """Schedule the periodic poll."""
        if self._scheduler is None:
            raise ConfigurationException("Polling requires a scheduler")
        self._scheduler.add_interval_job(
            self._scheduled_poll,
            job_id=POLL_JOB_ID,
            seconds=self._interval_seconds,
            name="Incremental incident poll"
        )
        self._active = True
        logger.info("Incremental polling started", extra={"interval_seconds": self._interval_seconds})

    async def stop(self) -> None:
        """Unschedule the poll and wait for an in-flight poll to finish."""
        self._deactivate()
        async with self._lock:
            pass
        logger.info("Incremental polling stopped")

    def _deactivate(self) -> None:
        if self._scheduler is not None:
            self._scheduler.remove_job(POLL_JOB_ID)
        self._active = False

    async def _scheduled_poll(self) -> None:
        try:
            await self.poll(trigger="scheduled")
        except Exception:
            logger.exception("Scheduled poll crashed")

    # ---------- operations ----------

    async def poll(self, trigger: str = "scheduled") -> PollResult:
        """
        Run one incremental poll.

        Returns:
            PollResult with status ``completed``, ``error`` or ``skipped``

        Raises:
            CheckpointException: If the final checkpoint write fails after
                pages were stored
        """
        if self._lock.locked():
            logger.info("Poll skipped, another poll is in flight", extra={"trigger": trigger})
            return PollResult(status="skipped", trigger=trigger, reason=ALREADY_RUNNING)

        async with self._lock:
            return await self._run_poll(trigger)

    async def trigger_manual_poll(self) -> PollResult:
        """Poll now, outside the timer (still single-flight)."""
        return await self.poll(trigger="manual")

    async def _run_poll(self, trigger: str) -> PollResult:
        log = get_run_logger(__name__, uuid4().hex[:12], stream=SyncStream.POLL, trigger=trigger)
        started = time.perf_counter()
        now = self._clock()

        checkpoint = await self._checkpoints.load(SyncStream.POLL)
        cursor = parse_iso(checkpoint.cursor) or (now - self._initial_lookback)
        since = cursor - self._overlap

        details = dict(checkpoint.details)
        details["total_polls"] = details.get("total_polls", 0) + 1
        checkpoint = checkpoint.evolve(
            cursor=cursor.isoformat(),
            status=CheckpointStatus.RUNNING,
            last_run_at=now,
            details=details,
        )
        await self._checkpoints.save(checkpoint)

        result = PollResult(status="completed", trigger=trigger, cursor_before=cursor)
        log.info("Poll started", extra={"cursor": cursor.isoformat(), "since": since.isoformat()})

        offset = 0
        try:
            while True:
                fetch = await self._client.fetch_updated_since(since, self._batch_size, offset)
                if not fetch.success:
                    raise TicketingException(
                        fetch.error or "fetch failed",
                        {"status_code": fetch.status_code, "offset": offset}
                    )
                if not fetch.records:
                    break

                previous = checkpoint

                def advance(max_seen: Optional[datetime], _page: PageCounters) -> SyncCheckpoint:
                    current = parse_iso(previous.cursor)
                    if max_seen is not None and max_seen > current:
                        current = max_seen
                    return previous.evolve(cursor=current.isoformat())

                page, invalid, checkpoint = await store_page(
                    self._database, fetch.records, self._source, advance
                )
                _merge_counters(result.counters, page)
                self._remember_invalid(result.invalid_records, invalid, log)
                log.info(
                    "Poll page stored",
                    extra={"offset": offset, "records": len(fetch.records), "cursor": checkpoint.cursor}
                )

                if len(fetch.records) < self._batch_size:
                    break
                if result.counters.pages >= self._max_pages:
                    log.warning("Poll page limit reached", extra={"max_pages": self._max_pages})
                    break
                offset += len(fetch.records)
                await self._sleep(self._page_delay)

        except (TicketingException, RepositoryException) as e:
            return await self._fail(checkpoint, result, e, log, started)

        details = dict(checkpoint.details)
        details.update(
            successful_polls=details.get("successful_polls", 0) + 1,
            consecutive_failures=0,
            last_successful_poll=self._clock().isoformat(),
            last_counts=result.counters.model_dump(),
        )
        checkpoint = checkpoint.evolve(status=CheckpointStatus.IDLE, last_error=None, details=details)
        await self._checkpoints.save(checkpoint)

        result.cursor_after = parse_iso(checkpoint.cursor)
        result.duration_ms = _elapsed_ms(started)
        log.info(
            "Poll completed",
            extra={"cursor": checkpoint.cursor, "duration_ms": result.duration_ms, **result.counters.model_dump()}
        )
        return result

    async def _fail(
        self,
        checkpoint: SyncCheckpoint,
        result: PollResult,
        error: Exception,
        log,
        started: float
    ) -> PollResult:
        details = dict(checkpoint.details)
        consecutive = details.get("consecutive_failures", 0) + 1
        details.update(
            failed_polls=details.get("failed_polls", 0) + 1,
            consecutive_failures=consecutive,
        )
        checkpoint = checkpoint.evolve(status=CheckpointStatus.ERROR, last_error=str(error), details=details)
        try:
            await self._checkpoints.save(checkpoint)
        except RepositoryException as e:
            log.error("Could not record poll failure", extra={"error": str(e)})

        log.error(
            "Poll failed",
            extra={"error": str(error), "cursor": checkpoint.cursor, "consecutive_failures": consecutive}
        )

        if consecutive >= self._max_consecutive_failures and self._active:
            self._deactivate()
            log.error(
                "Polling deactivated after consecutive failures",
                extra={"consecutive_failures": consecutive}
            )

        result.status = "error"
        result.error = str(error)
        result.cursor_after = parse_iso(checkpoint.cursor)
        result.duration_ms = _elapsed_ms(started)
        return result

    @staticmethod
    def _remember_invalid(target: List[InvalidRecord], invalid: List[InvalidRecord], log) -> None:
        for item in invalid:
            log.warning("Skipped malformed record", extra={"record_id": item.record_id, "reason": item.reason})
        room = MAX_REPORTED_INVALID - len(target)
        if room > 0:
            target.extend(invalid[:room])

    async def status(self) -> Dict[str, Any]:
        """Cursor, schedule state, in-flight flag, last error and counters."""
        checkpoint = await self._checkpoints.load(SyncStream.POLL)
        details = checkpoint.details
        return {
            "stream": SyncStream.POLL,
            "cursor": checkpoint.cursor,
            "status": checkpoint.status,
            "is_active": self._active,
            "in_flight": self.in_flight,
            "interval_seconds": self._interval_seconds,
            "last_run_at": isoformat_or_none(checkpoint.last_run_at),
            "last_error": checkpoint.last_error,
            "counters": {
                "total_polls": details.get("total_polls", 0),
                "successful_polls": details.get("successful_polls", 0),
                "failed_polls": details.get("failed_polls", 0),
                "consecutive_failures": details.get("consecutive_failures", 0),
                "last_successful_poll": details.get("last_successful_poll"),
            },
        }

    async def reset_polling_state(self) -> SyncCheckpoint:
        """
        Reset the cursor to the initial lookback and clear counters and errors.

        Waits for an in-flight poll to finish first.
        """
        async with self._lock:
            checkpoint = SyncCheckpoint(
                stream=SyncStream.POLL,
                cursor=(self._clock() - self._initial_lookback).isoformat(),
                status=CheckpointStatus.IDLE,
            )
            await self._checkpoints.save(checkpoint)
        logger.info("Polling state reset", extra={"cursor": checkpoint.cursor})
        return checkpoint

    async def health_check(self) -> Dict[str, Any]:
        """Reachability/auth probe of the external API, independent of the cursor."""
        return await self._client.check_health()


class BulkImportService:
    """
    Resumable historical import.

    The checkpoint cursor is the next record offset. A completed import is
    not repeated unless forced; an interrupted one resumes at the offset of
    the last committed page.
    """

    def __init__(
        self,
        database: Database,
        client: ITicketingClient,
        *,
        source: str = "ServiceNow",
        batch_size: int = 1000,
        max_records: Optional[int] = None,
        page_delay_seconds: float = 0.1,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._database = database
        self._client = client
        self._checkpoints = CheckpointStore(database, clock)
        self._source = source
        self._batch_size = batch_size
        self._max_records = max_records
        self._page_delay = page_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        client: ITicketingClient,
        **kwargs: Any
    ) -> "BulkImportService":
        return cls(
            database,
            client,
            source=settings.servicenow_source,
            batch_size=settings.bulk_import_batch_size,
            max_records=settings.bulk_import_max_records,
            page_delay_seconds=settings.bulk_import_page_delay_seconds,
            **kwargs,
        )

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    async def bulk_import(self, options: Optional[BulkImportOptions] = None) -> BulkImportResult:
        """
        Import historical tickets page by page.

        Args:
            options: force / batch_size / query / max_records overrides

        Returns:
            BulkImportResult; ``skipped`` when already completed (and not
            forced) or when another import is running
        """
        options = options or BulkImportOptions()
        if self._lock.locked():
            return BulkImportResult(status="skipped", reason=ALREADY_RUNNING)

        async with self._lock:
            return await self._run(options)

    async def _run(self, options: BulkImportOptions) -> BulkImportResult:
        log = get_run_logger(__name__, uuid4().hex[:12], stream=SyncStream.BULK_IMPORT)
        started = time.perf_counter()
        now = self._clock()

        checkpoint = await self._checkpoints.load(SyncStream.BULK_IMPORT)
        if checkpoint.status == CheckpointStatus.COMPLETED and not options.force:
            log.info("Bulk import skipped, already completed")
            return BulkImportResult(
                status="skipped",
                reason="already completed",
                next_offset=int(checkpoint.cursor or 0),
            )

        query = options.query or ""
        resume = (
            not options.force
            and checkpoint.cursor is not None
            and checkpoint.details.get("query", "") == query
        )
        offset = int(checkpoint.cursor) if resume else 0
        details = dict(checkpoint.details) if resume else {"started_at": now.isoformat()}
        details["query"] = query

        batch_size = options.batch_size or self._batch_size
        max_records = options.max_records or self._max_records

        checkpoint = SyncCheckpoint(
            stream=SyncStream.BULK_IMPORT,
            cursor=str(offset),
            status=CheckpointStatus.RUNNING,
            last_run_at=now,
            last_error=None,
            details=details,
        )
        await self._checkpoints.save(checkpoint)

        result = BulkImportResult(status="completed", start_offset=offset, next_offset=offset)
        log.info(
            "Bulk import started",
            extra={"offset": offset, "resumed": resume, "batch_size": batch_size, "query": query}
        )

        encoded_query = f"{query}^ORDERBYsys_created_on" if query else "ORDERBYsys_created_on"

        try:
            while True:
                limit = batch_size
                if max_records is not None:
                    if offset >= max_records:
                        log.info("Bulk import record limit reached", extra={"max_records": max_records})
                        break
                    limit = min(batch_size, max_records - offset)

                fetch = await self._client.fetch_page(encoded_query, limit, offset)
                if not fetch.success:
                    raise TicketingException(
                        fetch.error or "fetch failed",
                        {"status_code": fetch.status_code, "offset": offset}
                    )
                if not fetch.records:
                    break

                previous = checkpoint
                next_offset = offset + len(fetch.records)

                def advance(_max_seen: Optional[datetime], page: PageCounters) -> SyncCheckpoint:
                    totals = dict(previous.details)
                    for name in ("fetched", "created", "updated", "unchanged", "stale", "invalid"):
                        totals[name] = totals.get(name, 0) + getattr(page, name)
                    return previous.evolve(cursor=str(next_offset), details=totals)

                page, invalid, checkpoint = await store_page(
                    self._database, fetch.records, self._source, advance
                )
                _merge_counters(result.counters, page)
                for item in invalid:
                    log.warning("Skipped malformed record", extra={"record_id": item.record_id, "reason": item.reason})
                room = MAX_REPORTED_INVALID - len(result.invalid_records)
                if room > 0:
                    result.invalid_records.extend(invalid[:room])

                offset = next_offset
                result.next_offset = offset
                log.info("Bulk import page stored", extra={"next_offset": offset, "records": len(fetch.records)})

                if len(fetch.records) < limit:
                    break
                await self._sleep(self._page_delay)

        except (TicketingException, RepositoryException) as e:
            failed = checkpoint.evolve(status=CheckpointStatus.ERROR, last_error=str(e))
            try:
                await self._checkpoints.save(failed)
            except RepositoryException as save_error:
                log.error("Could not record bulk import failure", extra={"error": str(save_error)})
            log.error("Bulk import failed", extra={"error": str(e), "next_offset": checkpoint.cursor})
            result.status = "error"
            result.error = str(e)
            result.next_offset = int(checkpoint.cursor or 0)
            result.duration_ms = _elapsed_ms(started)
            return result

        details = dict(checkpoint.details)
        details["completed_at"] = self._clock().isoformat()
        checkpoint = checkpoint.evolve(status=CheckpointStatus.COMPLETED, last_error=None, details=details)
        await self._checkpoints.save(checkpoint)

        result.duration_ms = _elapsed_ms(started)
        log.info(
            "Bulk import completed",
            extra={"next_offset": offset, "duration_ms": result.duration_ms, **result.counters.model_dump()}
        )
        return result

    async def get_bulk_import_status(self) -> Dict[str, Any]:
        checkpoint = await self._checkpoints.load(SyncStream.BULK_IMPORT)
        return {
            "stream": SyncStream.BULK_IMPORT,
            "status": checkpoint.status,
            "completed": checkpoint.status == CheckpointStatus.COMPLETED,
            "in_flight": self.in_flight,
            "next_offset": int(checkpoint.cursor or 0),
            "last_run_at": isoformat_or_none(checkpoint.last_run_at),
            "last_error": checkpoint.last_error,
            "details": dict(checkpoint.details),
        }

    async def has_completed_bulk_import(self) -> bool:
        checkpoint = await self._checkpoints.load(SyncStream.BULK_IMPORT)
        return checkpoint.status == CheckpointStatus.COMPLETED

    async def reset_bulk_import_state(self) -> None:
        """Clear the import checkpoint so the next run starts from offset 0."""
        async with self._lock:
            await self._checkpoints.reset(SyncStream.BULK_IMPORT)

    async def ticket_count(self) -> int:
        async with self._database.session() as session:
            return await ticket_repository(session).count()
