"""
Resolution Application Services
================================

Records resolutions and delivers them to the external ticketing system.

``resolve`` always saves the record first; vectorization and the external
push are best effort on top of it. A push that cannot be delivered inline
leaves an entry in the pending-update ledger, which the sweeper retries with
exponential backoff until it succeeds or becomes terminal.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from incident_sync.config import Settings
from incident_sync.core import (
    ApplicationException,
    ConfigurationException,
    DomainException,
    RepositoryException,
    ResourceNotFoundException,
    ValidationException,
)
from incident_sync.infrastructure.database import Database
from incident_sync.infrastructure.ticketing import ITicketingClient, UpdateResult
from incident_sync.ingestion.application import ticket_repository
from incident_sync.ingestion.domain import Ticket
from incident_sync.resolution.application.dto import (
    ExternalPushResult,
    PendingUpdateDTO,
    ResolutionInput,
    ResolutionRecordDTO,
    ResolveResult,
    SweepResult,
    UpdateStatistics,
    VectorizationSummary,
)
from incident_sync.resolution.domain import (
    ATTEMPTABLE_STATES,
    PendingUpdate,
    PushOutcome,
    PushState,
    ResolutionRecord,
    RetryPolicy,
    begin_attempt,
    classify_update_result,
    next_push_state,
)
from incident_sync.shared.infrastructure.clock import Clock, utc_now
from incident_sync.shared.infrastructure.logging import get_logger
from incident_sync.shared.infrastructure.scheduler import SyncScheduler
from incident_sync.vectorization.application import VectorizationPipeline
from incident_sync.vectorization.domain import ResolutionSnapshot

logger = get_logger(__name__)

SWEEP_JOB_ID = "pending_update_sweep"
NO_CLIENT_ERROR = "ticketing client not configured"
NO_EXTERNAL_ID_ERROR = "ticket has no external identifier"
# Reported when the push ran but its status could not be written
PUSH_STATE_UNRECORDED = "unrecorded"

Sleep = Callable[[float], Awaitable[None]]


# ========== Repository Interfaces (Dependency Inversion) ==========

class IResolutionRepository(ABC):
    """Interface for resolution record data access."""

    @abstractmethod
    async def save_for_ticket(self, record: ResolutionRecord) -> ResolutionRecord:
        """Create or replace the resolution of a ticket; resets push status."""

    @abstractmethod
    async def get(self, resolution_id: int) -> Optional[ResolutionRecord]:
        """Get resolution by id."""

    @abstractmethod
    async def get_by_ticket_id(self, ticket_id: int) -> Optional[ResolutionRecord]:
        """Get the resolution of a ticket."""

    @abstractmethod
    async def record_push_attempt(
        self,
        resolution_id: int,
        success: bool,
        error: Optional[str],
        at: datetime
    ) -> ResolutionRecord:
        """Count one push attempt and store its outcome."""

    @abstractmethod
    async def reset_push(self, resolution_id: int) -> ResolutionRecord:
        """Give a resolution a fresh attempt budget."""

    @abstractmethod
    async def push_counts(self) -> Tuple[int, int]:
        """(total resolutions, pushed resolutions)."""


class IPendingUpdateRepository(ABC):
    """Interface for the pending-update ledger."""

    @abstractmethod
    async def get_by_resolution_id(self, resolution_id: int) -> Optional[PendingUpdate]:
        """Get the ledger entry of a resolution."""

    @abstractmethod
    async def save(self, entry: PendingUpdate) -> PendingUpdate:
        """Create or refresh a ledger entry."""

    @abstractmethod
    async def delete_for_resolution(self, resolution_id: int) -> bool:
        """Remove the entry of a resolution; True when one existed."""

    @abstractmethod
    async def list_due(self, now: datetime, limit: int) -> List[PendingUpdate]:
        """Pending or retryable entries whose retry time has passed."""

    @abstractmethod
    async def list_by_state(self, state: PushState) -> List[PendingUpdate]:
        """Entries in a given state."""

    @abstractmethod
    async def counts_by_state(self) -> Dict[str, int]:
        """Entry count per state."""

    @abstractmethod
    async def reset_attempting(self) -> int:
        """Move entries stuck in ``attempting`` back to ``retryable``."""


def resolution_repository(session: AsyncSession) -> IResolutionRepository:
    from incident_sync.resolution.infrastructure.repositories import SQLAlchemyResolutionRepository

    return SQLAlchemyResolutionRepository(session)


def pending_update_repository(session: AsyncSession) -> IPendingUpdateRepository:
    from incident_sync.resolution.infrastructure.repositories import SQLAlchemyPendingUpdateRepository

    return SQLAlchemyPendingUpdateRepository(session)


@dataclass
class PushAttempt:
    """State reached by one driven push attempt."""
    state: PushState
    record: ResolutionRecord
    result: Optional[UpdateResult] = None
    entry: Optional[PendingUpdate] = None

    def to_result(self) -> ExternalPushResult:
        error = self.entry.last_error if self.entry else None
        if self.result is not None and self.result.error:
            error = self.result.error
        return ExternalPushResult(
            success=self.state == PushState.SUCCESS,
            state=self.state.value,
            attempts=self.record.push_attempts,
            status_code=self.result.status_code if self.result else None,
            error=error,
            next_retry_at=self.entry.next_retry_at if self.entry else None,
        )


def _snapshot(record: ResolutionRecord) -> ResolutionSnapshot:
    return ResolutionSnapshot(
        close_code=record.close_code,
        root_cause=record.root_cause,
        customer_summary=record.customer_summary,
        resolved_at=record.resolved_at,
    )


# ========== Application Services ==========

class ResolutionSynchronizer:
    """
    Local write, best-effort vectorization and bounded external push.

    Pushes for the same resolution never overlap: the inline attempts of
    ``resolve`` and the sweeper share a per-resolution lock.
    """

    def __init__(
        self,
        database: Database,
        client: Optional[ITicketingClient],
        vectorizer: Optional[VectorizationPipeline] = None,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        inline_attempts: int = 2,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._database = database
        self._client = client
        self._vectorizer = vectorizer
        self._policy = retry_policy or RetryPolicy()
        # The sweep always keeps at least one attempt of the budget
        self._inline_attempts = max(1, min(inline_attempts, self._policy.max_attempts - 1))
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        database: Database,
        client: Optional[ITicketingClient],
        vectorizer: Optional[VectorizationPipeline] = None,
        **kwargs: Any
    ) -> "ResolutionSynchronizer":
        policy = RetryPolicy(
            max_attempts=settings.resolution_max_push_attempts,
            base_delay_seconds=settings.resolution_backoff_base_seconds,
            max_delay_seconds=settings.resolution_backoff_max_seconds,
        )
        return cls(
            database,
            client,
            vectorizer,
            policy,
            inline_attempts=settings.resolution_inline_attempts,
            **kwargs,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def held_locks(self) -> int:
        """Resolutions with a push in progress or waiting for one."""
        return len(self._locks)

    @asynccontextmanager
    async def _lock_for(self, resolution_id: int) -> AsyncIterator[None]:
        """Serialize pushes of one resolution; the lock is dropped with its last user."""
        lock = self._locks.setdefault(resolution_id, asyncio.Lock())
        self._lock_users[resolution_id] = self._lock_users.get(resolution_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[resolution_id] -= 1
            if not self._lock_users[resolution_id]:
                del self._lock_users[resolution_id]
                del self._locks[resolution_id]

    # ---------- resolve ----------

    async def resolve(self, ticket: Ticket, data: ResolutionInput) -> ResolveResult:
        """
        Resolve a canonical ticket.

        Args:
            ticket: Stored ticket (must carry its store id)
            data: Validated resolution content

        Returns:
            ResolveResult; ``external_push`` is None when the ticket has no
            external identifier

        Raises:
            ValidationException: The ticket was never stored
            ResourceNotFoundException: The ticket is not in the store
            RepositoryException: The resolution could not be saved
        """
        if ticket.id is None:
            raise ValidationException(
                "Ticket must be stored before it can be resolved",
                {"external_id": ticket.external_id}
            )

        record, stored = await self._save(ticket, data)
        logger.info(
            "Resolution saved",
            extra={
                "resolution_id": record.id,
                "external_id": record.ticket_external_id,
                "close_code": record.close_code,
            }
        )

        vectorization = await self._vectorize(stored, record)

        external_push: Optional[ExternalPushResult] = None
        if stored.has_external_id:
            try:
                attempt = await self._push_inline(record, stored.sys_id)
            except (ApplicationException, SQLAlchemyError) as e:
                # The record is already committed; only the push status is lost
                error = getattr(e, "message", str(e))
                logger.error(
                    "Recording resolution push failed",
                    extra={"resolution_id": record.id, "error": error}
                )
                external_push = ExternalPushResult(
                    success=False,
                    state=PUSH_STATE_UNRECORDED,
                    attempts=record.push_attempts,
                    error=error,
                )
            else:
                record = attempt.record
                external_push = attempt.to_result()
        else:
            logger.info(
                "Ticket has no external identifier, push skipped",
                extra={"external_id": stored.external_id}
            )

        return ResolveResult(
            success=True,
            record=ResolutionRecordDTO.from_entity(record),
            external_push=external_push,
            vectorization=vectorization,
        )

    async def _save(self, ticket: Ticket, data: ResolutionInput) -> Tuple[ResolutionRecord, Ticket]:
        try:
            async with self._database.session() as session:
                stored = await ticket_repository(session).get_by_id(ticket.id)
                if stored is None:
                    raise ResourceNotFoundException("Ticket", str(ticket.id))

                record = await resolution_repository(session).save_for_ticket(ResolutionRecord(
                    ticket_id=stored.id,
                    ticket_external_id=stored.external_id,
                    source=stored.source,
                    root_cause=data.root_cause,
                    close_code=data.close_code,
                    customer_summary=data.customer_summary,
                    problem_statement=data.problem_statement,
                    analysis=data.analysis,
                    resolved_by=data.resolved_by,
                    resolved_at=self._clock(),
                    resolution_method=data.resolution_method,
                    processing_time_ms=data.processing_time_ms,
                ))
                # A re-resolve replaces any delivery still owed for the old content
                await pending_update_repository(session).delete_for_resolution(record.id)
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to save resolution for ticket {ticket.external_id}: {e}",
                {"ticket_id": ticket.id}
            )
        return record, stored

    async def _vectorize(self, ticket: Ticket, record: ResolutionRecord) -> Optional[VectorizationSummary]:
        if self._vectorizer is None:
            return None
        try:
            outcome = await self._vectorizer.vectorize_one(ticket, _snapshot(record))
        except ApplicationException as e:
            logger.warning(
                "Vectorization of resolved ticket failed",
                extra={"external_id": ticket.external_id, "error": e.message}
            )
            return VectorizationSummary(status="failed", error=e.message)
        return VectorizationSummary.from_outcome(outcome)

    # ---------- push driver ----------

    async def _push_inline(self, record: ResolutionRecord, sys_id: str) -> PushAttempt:
        async with self._lock_for(record.id):
            if self._client is None:
                return await self._park(record, PushState.PENDING, NO_CLIENT_ERROR)

            attempt = PushAttempt(state=PushState.PENDING, record=record)
            for number in range(1, self._inline_attempts + 1):
                attempt = await self._attempt_once(attempt.record, sys_id, attempt.state)
                if attempt.state != PushState.RETRYABLE:
                    break
                if number < self._inline_attempts:
                    await self._sleep(self._policy.backoff(attempt.record.push_attempts))
            return attempt

    async def _park(self, record: ResolutionRecord, state: PushState, error: str) -> PushAttempt:
        """Write a ledger entry without attempting a push."""
        async with self._database.session() as session:
            entry = await pending_update_repository(session).save(PendingUpdate(
                resolution_id=record.id,
                state=state,
                attempts=record.push_attempts,
                last_error=error,
            ))
        logger.warning(
            "Resolution push deferred",
            extra={"resolution_id": record.id, "state": state.value, "error": error}
        )
        return PushAttempt(state=state, record=record, entry=entry)

    async def _attempt_once(self, record: ResolutionRecord, sys_id: str, state: PushState) -> PushAttempt:
        """
        Drive one push attempt through the state machine.

        The resolution's attempt counter and the ledger entry are updated
        in one transaction; success removes the entry.
        """
        state = begin_attempt(state)
        result = await self._client.update_incident(sys_id, record.close_payload())
        outcome = classify_update_result(result)
        now = self._clock()

        async with self._database.session() as session:
            record = await resolution_repository(session).record_push_attempt(
                record.id, outcome == PushOutcome.SUCCESS, result.error, now
            )
            state = next_push_state(state, outcome, record.push_attempts, self._policy.max_attempts)

            ledger = pending_update_repository(session)
            entry: Optional[PendingUpdate] = None
            if state == PushState.SUCCESS:
                await ledger.delete_for_resolution(record.id)
            else:
                entry = await ledger.save(PendingUpdate(
                    resolution_id=record.id,
                    state=state,
                    attempts=record.push_attempts,
                    next_retry_at=(
                        self._policy.next_retry_at(now, record.push_attempts)
                        if state == PushState.RETRYABLE else None
                    ),
                    last_error=result.error,
                    last_status_code=result.status_code,
                ))

        log_extra = {
            "resolution_id": record.id,
            "state": state.value,
            "attempts": record.push_attempts,
            "status_code": result.status_code,
        }
        if state == PushState.SUCCESS:
            logger.info("Resolution pushed", extra=log_extra)
        elif state == PushState.TERMINAL:
            logger.error("Resolution push failed permanently", extra={**log_extra, "error": result.error})
        else:
            logger.warning("Resolution push will be retried", extra={**log_extra, "error": result.error})

        return PushAttempt(state=state, record=record, result=result, entry=entry)

    async def attempt_push(self, resolution_id: int, only_due: bool = False) -> Optional[ExternalPushResult]:
        """
        Make one push attempt for a resolution.

        Args:
            resolution_id: Resolution to deliver
            only_due: Skip (return None) unless the ledger entry is due now

        Returns:
            Push state after the attempt, or None when nothing was attempted
        """
        async with self._lock_for(resolution_id):
            async with self._database.session() as session:
                record = await resolution_repository(session).get(resolution_id)
                if record is None:
                    raise ResourceNotFoundException("Resolution", str(resolution_id))
                entry = await pending_update_repository(session).get_by_resolution_id(resolution_id)
                ticket = await ticket_repository(session).get_by_id(record.ticket_id)

            if entry is None:
                if only_due:
                    return None
                if record.pushed:
                    return PushAttempt(state=PushState.SUCCESS, record=record).to_result()
                state = PushState.PENDING
            else:
                state = entry.state
                if only_due and not entry.is_due(self._clock()):
                    return None
                if state not in ATTEMPTABLE_STATES:
                    return PushAttempt(state=state, record=record, entry=entry).to_result()

            if ticket is None or not ticket.has_external_id:
                return (await self._park(record, PushState.TERMINAL, NO_EXTERNAL_ID_ERROR)).to_result()
            if self._client is None:
                return (await self._park(record, PushState.PENDING, NO_CLIENT_ERROR)).to_result()

            if entry is not None:
                # Visible while the call is in flight; recovered on restart
                async with self._database.session() as session:
                    entry.state = PushState.ATTEMPTING
                    await pending_update_repository(session).save(entry)

            return (await self._attempt_once(record, ticket.sys_id, state)).to_result()

    # ---------- ledger access ----------

    async def due_updates(self, limit: int) -> List[PendingUpdate]:
        async with self._database.session() as session:
            return await pending_update_repository(session).list_due(self._clock(), limit)

    async def recover_interrupted(self) -> int:
        """Return pushes left ``attempting`` by a previous process to ``retryable``."""
        async with self._database.session() as session:
            recovered = await pending_update_repository(session).reset_attempting()
        if recovered:
            logger.warning("Recovered interrupted resolution pushes", extra={"count": recovered})
        return recovered

    async def get_update_statistics(self) -> UpdateStatistics:
        async with self._database.session() as session:
            total, pushed = await resolution_repository(session).push_counts()
            ledger = await pending_update_repository(session).counts_by_state()

        pending = sum(ledger.get(state.value, 0) for state in (
            PushState.PENDING, PushState.ATTEMPTING, PushState.RETRYABLE
        ))
        return UpdateStatistics(
            total=total,
            pushed=pushed,
            pending=pending,
            failed=ledger.get(PushState.TERMINAL.value, 0),
            success_rate=round(pushed / total * 100, 2) if total else 0.0,
            ledger=ledger,
        )

    async def list_terminal_failures(self) -> List[PendingUpdateDTO]:
        async with self._database.session() as session:
            entries = await pending_update_repository(session).list_by_state(PushState.TERMINAL)
        return [PendingUpdateDTO.from_entity(entry) for entry in entries]

    async def requeue_terminal(self, resolution_id: int) -> PendingUpdateDTO:
        """
        Give a terminally failed push a fresh attempt budget.

        Raises:
            ResourceNotFoundException: No ledger entry for the resolution
            DomainException: The entry is not terminal
        """
        async with self._lock_for(resolution_id):
            async with self._database.session() as session:
                ledger = pending_update_repository(session)
                entry = await ledger.get_by_resolution_id(resolution_id)
                if entry is None:
                    raise ResourceNotFoundException("PendingUpdate", str(resolution_id))
                if not entry.is_terminal:
                    raise DomainException(
                        f"Only terminal pushes can be requeued (state '{entry.state.value}')",
                        {"resolution_id": resolution_id}
                    )

                await resolution_repository(session).reset_push(resolution_id)
                entry = await ledger.save(PendingUpdate(
                    resolution_id=resolution_id,
                    state=PushState.PENDING,
                    attempts=0,
                    last_error=entry.last_error,
                    last_status_code=entry.last_status_code,
                ))

        logger.info("Terminal push requeued", extra={"resolution_id": resolution_id})
        return PendingUpdateDTO.from_entity(entry)


class PendingUpdateSweeper:
    """
    Periodic reconciliation of the pending-update ledger.

    Each sweep makes at most one attempt per due entry; backoff between
    attempts comes from the entry's ``next_retry_at``.
    """

    def __init__(
        self,
        synchronizer: ResolutionSynchronizer,
        scheduler: Optional[SyncScheduler] = None,
        *,
        interval_seconds: int = 60,
        batch_size: int = 50,
    ):
        self._synchronizer = synchronizer
        self._scheduler = scheduler
        self._interval_seconds = interval_seconds
        self._batch_size = batch_size
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        synchronizer: ResolutionSynchronizer,
        scheduler: Optional[SyncScheduler] = None
    ) -> "PendingUpdateSweeper":
        return cls(
            synchronizer,
            scheduler,
            interval_seconds=settings.sweep_interval_seconds,
            batch_size=settings.sweep_batch_size,
        )

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        if self._scheduler is None:
            raise ConfigurationException("The pending-update sweep requires a scheduler")
        self._scheduler.add_interval_job(
            self._scheduled_sweep,
            job_id=SWEEP_JOB_ID,
            seconds=self._interval_seconds,
            name="Pending resolution update sweep"
        )

    async def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.remove_job(SWEEP_JOB_ID)
        async with self._lock:
            pass

    async def _scheduled_sweep(self) -> None:
        try:
            await self.sweep()
        except Exception:
            logger.exception("Scheduled pending-update sweep crashed")

    async def sweep(self) -> SweepResult:
        """Re-attempt every due pending or retryable ledger entry."""
        if self._lock.locked():
            return SweepResult(status="skipped", reason="already running")

        async with self._lock:
            result = SweepResult()
            for entry in await self._synchronizer.due_updates(self._batch_size):
                result.examined += 1
                try:
                    pushed = await self._synchronizer.attempt_push(entry.resolution_id, only_due=True)
                except (ApplicationException, SQLAlchemyError) as e:
                    error = getattr(e, "message", str(e))
                    logger.error(
                        "Pending update sweep entry failed",
                        extra={"resolution_id": entry.resolution_id, "error": error}
                    )
                    result.errors.append(f"{entry.resolution_id}: {error}")
                    continue

                if pushed is None:
                    continue
                if pushed.success:
                    result.succeeded += 1
                elif pushed.state == PushState.TERMINAL.value:
                    result.terminal += 1
                else:
                    result.retryable += 1

            if result.examined:
                logger.info(
                    "Pending update sweep finished",
                    extra=result.model_dump(exclude={"errors"})
                )
            return result
