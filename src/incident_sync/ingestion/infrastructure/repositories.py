"""
Ingestion Infrastructure Repositories
======================================

SQLAlchemy implementation of the canonical ticket repository.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from incident_sync.core import RepositoryException
from incident_sync.ingestion.application.dto import UpsertOutcome
from incident_sync.ingestion.application.services import ITicketRepository
from incident_sync.ingestion.domain import Ticket
from incident_sync.ingestion.infrastructure.models import TicketModel
from incident_sync.shared.infrastructure.clock import utc_now


def to_entity(model: TicketModel) -> Ticket:
    """Map a TicketModel row to the domain Ticket."""
    return Ticket(
        id=model.id,
        external_id=model.external_id,
        source=model.source,
        external_updated_at=model.external_updated_at,
        sys_id=model.sys_id,
        short_description=model.short_description,
        description=model.description,
        category=model.category,
        subcategory=model.subcategory,
        status=model.status,
        priority=model.priority,
        impact=model.impact,
        urgency=model.urgency,
        assigned_to=model.assigned_to,
        assignment_group=model.assignment_group,
        opened_at=model.opened_at,
        closed_at=model.closed_at,
        resolved_at=model.resolved_at,
        tags=list(model.tags or []),
        raw=dict(model.raw or {}),
        vector_hash=model.vector_hash,
        vectorized_at=model.vectorized_at,
    )


class SQLAlchemyTicketRepository(ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.

    Handles persistence of Ticket entities using async SQLAlchemy.
    Upserts are idempotent on (external_id, source).
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, external_id: str, source: str) -> Optional[TicketModel]:
        stmt = select(TicketModel).where(
            TicketModel.external_id == external_id,
            TicketModel.source == source
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, ticket_id: int) -> Optional[Ticket]:
        model = await self._session.get(TicketModel, ticket_id)
        return to_entity(model) if model else None

    async def get_by_external_id(self, external_id: str, source: str) -> Optional[Ticket]:
        model = await self._get_model(external_id, source)
        return to_entity(model) if model else None

    async def upsert(self, ticket: Ticket) -> UpsertOutcome:
        """
        Insert or update a ticket.

        An unchanged ticket (same content hash) is not written. An incoming
        version older than the stored one is ignored so per-ticket ordering
        holds even when pages overlap.
        """
        try:
            model = await self._get_model(ticket.external_id, ticket.source)
            content_hash = ticket.content_hash
            now = utc_now()

            if model is None:
                model = TicketModel(
                    external_id=ticket.external_id,
                    source=ticket.source,
                    content_hash=content_hash,
                    created_at=now,
                    updated_at=now,
                )
                self._apply(model, ticket)
                self._session.add(model)
                await self._session.flush()
                ticket.id = model.id
                return UpsertOutcome.CREATED

            ticket.id = model.id
            if model.content_hash == content_hash:
                return UpsertOutcome.UNCHANGED
            if ticket.external_updated_at < model.external_updated_at:
                return UpsertOutcome.STALE

            self._apply(model, ticket)
            model.content_hash = content_hash
            model.updated_at = now
            await self._session.flush()
            return UpsertOutcome.UPDATED

        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to upsert ticket {ticket.external_id}: {e}",
                {"external_id": ticket.external_id, "source": ticket.source}
            )

    @staticmethod
    def _apply(model: TicketModel, ticket: Ticket) -> None:
        model.sys_id = ticket.sys_id
        model.short_description = ticket.short_description
        model.description = ticket.description
        model.category = ticket.category
        model.subcategory = ticket.subcategory
        model.status = ticket.status
        model.priority = ticket.priority
        model.impact = ticket.impact
        model.urgency = ticket.urgency
        model.assigned_to = ticket.assigned_to
        model.assignment_group = ticket.assignment_group
        model.opened_at = ticket.opened_at
        model.closed_at = ticket.closed_at
        model.resolved_at = ticket.resolved_at
        model.external_updated_at = ticket.external_updated_at
        model.tags = list(ticket.tags)
        model.raw = dict(ticket.raw)

    async def count(self) -> int:
        result = await self._session.execute(select(func.count(TicketModel.id)))
        return int(result.scalar_one())

    async def list_ordered(self, offset: int = 0, limit: int = 100) -> List[Ticket]:
        """List tickets in store id order (stable for offset resumption)."""
        stmt = select(TicketModel).order_by(TicketModel.id.asc()).offset(offset).limit(limit)
        result = await self._session.execute(stmt)
        return [to_entity(model) for model in result.scalars().all()]

    async def mark_vectorized(self, ticket_id: int, vector_hash: Optional[str], at: Optional[datetime]) -> None:
        model = await self._session.get(TicketModel, ticket_id)
        if model is None:
            raise RepositoryException(f"Ticket {ticket_id} not found")
        model.vector_hash = vector_hash
        model.vectorized_at = at
        await self._session.flush()
