"""
Resolution Infrastructure Repositories
=======================================

SQLAlchemy implementations of the resolution and pending-update
repositories.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from incident_sync.core import RepositoryException, ResourceNotFoundException
from incident_sync.resolution.application.services import (
    IPendingUpdateRepository,
    IResolutionRepository,
)
from incident_sync.resolution.domain import (
    ATTEMPTABLE_STATES,
    PendingUpdate,
    PushState,
    ResolutionRecord,
)
from incident_sync.resolution.infrastructure.models import PendingUpdateModel, ResolutionModel
from incident_sync.shared.infrastructure.clock import utc_now
from incident_sync.vectorization.domain import ResolutionSnapshot


def to_record(model: ResolutionModel) -> ResolutionRecord:
    """Map a ResolutionModel row to the domain ResolutionRecord."""
    return ResolutionRecord(
        id=model.id,
        ticket_id=model.ticket_id,
        ticket_external_id=model.ticket_external_id,
        source=model.source,
        root_cause=model.root_cause,
        close_code=model.close_code,
        customer_summary=model.customer_summary,
        problem_statement=model.problem_statement,
        analysis=model.analysis,
        resolved_by=model.resolved_by,
        resolved_at=model.resolved_at,
        resolution_method=model.resolution_method,
        processing_time_ms=model.processing_time_ms,
        pushed=model.pushed,
        push_attempts=model.push_attempts,
        last_push_attempt_at=model.last_push_attempt_at,
        last_push_error=model.last_push_error,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def to_pending(model: PendingUpdateModel) -> PendingUpdate:
    """Map a PendingUpdateModel row to the domain PendingUpdate."""
    return PendingUpdate(
        id=model.id,
        resolution_id=model.resolution_id,
        state=PushState(model.state),
        attempts=model.attempts,
        next_retry_at=model.next_retry_at,
        last_error=model.last_error,
        last_status_code=model.last_status_code,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class SQLAlchemyResolutionRepository(IResolutionRepository):
    """
    SQLAlchemy implementation of the resolution repository.

    One row per ticket; saving for a ticket that already has a resolution
    replaces its content and resets the push status.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_by_ticket(self, ticket_id: int) -> Optional[ResolutionModel]:
        stmt = select(ResolutionModel).where(ResolutionModel.ticket_id == ticket_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_for_ticket(self, record: ResolutionRecord) -> ResolutionRecord:
        try:
            model = await self._get_by_ticket(record.ticket_id)
            now = utc_now()
            if model is None:
                model = ResolutionModel(ticket_id=record.ticket_id, created_at=now)
                self._session.add(model)

            model.ticket_external_id = record.ticket_external_id
            model.source = record.source
            model.root_cause = record.root_cause
            model.close_code = record.close_code
            model.customer_summary = record.customer_summary
            model.problem_statement = record.problem_statement
            model.analysis = record.analysis
            model.resolved_by = record.resolved_by
            model.resolved_at = record.resolved_at
            model.resolution_method = record.resolution_method
            model.processing_time_ms = record.processing_time_ms

            # A new resolution starts a new delivery
            model.pushed = False
            model.push_attempts = 0
            model.last_push_attempt_at = None
            model.last_push_error = None
            model.updated_at = now

            await self._session.flush()
            return to_record(model)

        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to save resolution for ticket {record.ticket_external_id}: {e}",
                {"ticket_id": record.ticket_id}
            )

    async def get(self, resolution_id: int) -> Optional[ResolutionRecord]:
        model = await self._session.get(ResolutionModel, resolution_id)
        return to_record(model) if model else None

    async def get_by_ticket_id(self, ticket_id: int) -> Optional[ResolutionRecord]:
        model = await self._get_by_ticket(ticket_id)
        return to_record(model) if model else None

    async def record_push_attempt(
        self,
        resolution_id: int,
        success: bool,
        error: Optional[str],
        at: datetime
    ) -> ResolutionRecord:
        model = await self._session.get(ResolutionModel, resolution_id)
        if model is None:
            raise ResourceNotFoundException("Resolution", str(resolution_id))

        try:
            model.push_attempts += 1
            model.last_push_attempt_at = at
            model.pushed = success
            model.last_push_error = None if success else error
            model.updated_at = utc_now()
            await self._session.flush()
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to record push attempt for resolution {resolution_id}: {e}",
                {"resolution_id": resolution_id}
            )
        return to_record(model)

    async def reset_push(self, resolution_id: int) -> ResolutionRecord:
        model = await self._session.get(ResolutionModel, resolution_id)
        if model is None:
            raise ResourceNotFoundException("Resolution", str(resolution_id))

        try:
            model.pushed = False
            model.push_attempts = 0
            model.updated_at = utc_now()
            await self._session.flush()
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to reset push status of resolution {resolution_id}: {e}",
                {"resolution_id": resolution_id}
            )
        return to_record(model)

    async def push_counts(self) -> Tuple[int, int]:
        stmt = select(
            func.count(ResolutionModel.id),
            func.sum(case((ResolutionModel.pushed.is_(True), 1), else_=0)),
        )
        total, pushed = (await self._session.execute(stmt)).one()
        return int(total), int(pushed or 0)

    async def load_snapshots(self, ticket_ids: List[int]) -> Dict[int, ResolutionSnapshot]:
        if not ticket_ids:
            return {}
        stmt = select(ResolutionModel).where(ResolutionModel.ticket_id.in_(ticket_ids))
        result = await self._session.execute(stmt)
        return {
            model.ticket_id: ResolutionSnapshot(
                close_code=model.close_code,
                root_cause=model.root_cause,
                customer_summary=model.customer_summary,
                resolved_at=model.resolved_at,
            )
            for model in result.scalars().all()
        }


class SQLAlchemyPendingUpdateRepository(IPendingUpdateRepository):
    """SQLAlchemy implementation of the pending-update ledger."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, resolution_id: int) -> Optional[PendingUpdateModel]:
        stmt = select(PendingUpdateModel).where(PendingUpdateModel.resolution_id == resolution_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_resolution_id(self, resolution_id: int) -> Optional[PendingUpdate]:
        model = await self._get_model(resolution_id)
        return to_pending(model) if model else None

    async def save(self, entry: PendingUpdate) -> PendingUpdate:
        """Create or refresh the ledger entry of a resolution."""
        try:
            model = await self._get_model(entry.resolution_id)
            now = utc_now()
            if model is None:
                model = PendingUpdateModel(resolution_id=entry.resolution_id, created_at=now)
                self._session.add(model)

            model.state = entry.state.value
            model.attempts = entry.attempts
            model.next_retry_at = entry.next_retry_at
            model.last_error = entry.last_error
            model.last_status_code = entry.last_status_code
            model.updated_at = now

            await self._session.flush()
            return to_pending(model)

        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to save pending update for resolution {entry.resolution_id}: {e}",
                {"resolution_id": entry.resolution_id}
            )

    async def delete_for_resolution(self, resolution_id: int) -> bool:
        result = await self._session.execute(
            delete(PendingUpdateModel).where(PendingUpdateModel.resolution_id == resolution_id)
        )
        return bool(result.rowcount)

    async def list_due(self, now: datetime, limit: int) -> List[PendingUpdate]:
        stmt = (
            select(PendingUpdateModel)
            .where(
                PendingUpdateModel.state.in_([state.value for state in ATTEMPTABLE_STATES]),
                or_(PendingUpdateModel.next_retry_at.is_(None), PendingUpdateModel.next_retry_at <= now),
            )
            .order_by(PendingUpdateModel.next_retry_at.asc(), PendingUpdateModel.id.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [to_pending(model) for model in result.scalars().all()]

    async def list_by_state(self, state: PushState) -> List[PendingUpdate]:
        stmt = (
            select(PendingUpdateModel)
            .where(PendingUpdateModel.state == state.value)
            .order_by(PendingUpdateModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [to_pending(model) for model in result.scalars().all()]

    async def counts_by_state(self) -> Dict[str, int]:
        stmt = select(PendingUpdateModel.state, func.count(PendingUpdateModel.id)).group_by(PendingUpdateModel.state)
        result = await self._session.execute(stmt)
        return {state: int(count) for state, count in result.all()}

    async def reset_attempting(self) -> int:
        """Return entries left in ``attempting`` by a dead process to ``retryable``."""
        result = await self._session.execute(
            update(PendingUpdateModel)
            .where(PendingUpdateModel.state == PushState.ATTEMPTING.value)
            .values(state=PushState.RETRYABLE.value, next_retry_at=None, updated_at=utc_now())
        )
        return int(result.rowcount or 0)


async def load_resolution_snapshots(session: AsyncSession, ticket_ids: List[int]) -> Dict[int, ResolutionSnapshot]:
    """Resolution loader used by the vectorization pipeline."""
    return await SQLAlchemyResolutionRepository(session).load_snapshots(ticket_ids)
