"""
Shared pytest fixtures.

Every test gets a fresh in-memory SQLite canonical store plus in-process
fakes for ServiceNow, the embedding provider, the vector index and the
scheduler, so no test needs network access.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytest

from incident_sync.infrastructure.database import Database
from incident_sync.infrastructure.llm import EmbeddingResult, IEmbeddingClient
from incident_sync.infrastructure.ticketing import FetchResult, ITicketingClient, UpdateResult
from incident_sync.infrastructure.vectorstore import IVectorStore, VectorPoint
from incident_sync.ingestion.application import ticket_repository
from incident_sync.ingestion.domain import Ticket, parse_servicenow_datetime

SOURCE = "ServiceNow"
DIMENSION = 8


def make_record(
    number: str,
    updated_on: str = "2024-05-01 10:00:00",
    sys_id: Optional[str] = None,
    short_description: str = "VPN connection drops every few minutes",
    **fields: Any
) -> Dict[str, Any]:
    """A Table API record in the ``sysparm_display_value=all`` shape."""
    record = {
        "number": {"value": number, "display_value": number},
        "sys_id": {"value": sys_id or f"sys-{number.lower()}", "display_value": sys_id or f"sys-{number.lower()}"},
        "short_description": {"value": short_description, "display_value": short_description},
        "description": {"value": "User reports the tunnel resets.", "display_value": "User reports the tunnel resets."},
        "category": {"value": "network", "display_value": "Network"},
        "state": {"value": "2", "display_value": "In Progress"},
        "priority": {"value": "2", "display_value": "2 - High"},
        "sys_created_on": {"value": "2024-05-01 09:00:00", "display_value": "2024-05-01 02:00:00"},
        "sys_updated_on": {"value": updated_on, "display_value": updated_on},
    }
    record.update(fields)
    return record


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def no_sleep(_seconds: float) -> None:
    return None


class FixedClock:
    """Controllable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeTicketingClient(ITicketingClient):
    """In-memory ServiceNow table."""

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None):
        self.records: List[Dict[str, Any]] = list(records or [])
        self.fail_offsets: Dict[int, int] = {}
        self.fetch_calls: List[Dict[str, Any]] = []
        self.update_calls: List[Dict[str, Any]] = []
        self.update_responses: List[UpdateResult] = []
        self.before_fetch: Optional[Callable[[], Awaitable[None]]] = None

    async def fetch_page(self, query: str, limit: int, offset: int) -> FetchResult:
        self.fetch_calls.append({"query": query, "limit": limit, "offset": offset})
        if self.before_fetch is not None:
            await self.before_fetch()
        if offset in self.fail_offsets:
            return FetchResult(success=False, status_code=self.fail_offsets[offset], error="HTTP 503: unavailable")
        return FetchResult(success=True, records=self.records[offset:offset + limit], status_code=200)

    async def fetch_updated_since(self, since: datetime, limit: int, offset: int) -> FetchResult:
        self.fetch_calls.append({"since": since, "limit": limit, "offset": offset})
        if self.before_fetch is not None:
            await self.before_fetch()
        if offset in self.fail_offsets:
            return FetchResult(success=False, status_code=self.fail_offsets[offset], error="HTTP 503: unavailable")

        def changed_at(record: Dict[str, Any]) -> datetime:
            return parse_servicenow_datetime(record["sys_updated_on"]["value"])

        matching = sorted((r for r in self.records if changed_at(r) >= since), key=changed_at)
        return FetchResult(success=True, records=matching[offset:offset + limit], status_code=200)

    async def update_incident(self, sys_id: str, payload: Dict[str, Any]) -> UpdateResult:
        self.update_calls.append({"sys_id": sys_id, "payload": payload})
        if self.update_responses:
            return self.update_responses.pop(0)
        return UpdateResult(success=True, status_code=200, data={"sys_id": sys_id})

    async def check_health(self) -> Dict[str, Any]:
        return {"healthy": True}


class FakeEmbeddingClient(IEmbeddingClient):
    """Deterministic embeddings; ``error`` makes every call fail."""

    def __init__(self, label: str = "fake#0", dimension: int = DIMENSION, error: Optional[Exception] = None):
        self.label = label
        self.dimension = dimension
        self.error = error
        self.texts: List[str] = []

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        base = float(len(text) % 97) / 97
        return EmbeddingResult(embedding=[base + i / 100 for i in range(self.dimension)], model="fake")


class FakeVectorStore(IVectorStore):
    """In-memory vector index."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, VectorPoint]] = {}
        self.upsert_calls = 0
        self.error: Optional[Exception] = None

    async def ensure_collection(self, name: str, dimension: int) -> None:
        self.collections.setdefault(name, {})

    async def upsert(self, collection: str, points: List[VectorPoint]) -> None:
        if self.error is not None:
            raise self.error
        self.upsert_calls += 1
        for point in points:
            self.collections[collection][point.id] = point

    async def scroll_by_payload_filter(self, collection: str, field_name: str, value: Any) -> List[str]:
        return [
            point.id for point in self.collections.get(collection, {}).values()
            if point.payload.get(field_name) == value
        ]

    async def delete(self, collection: str, ids: List[str]) -> None:
        for point_id in ids:
            self.collections.get(collection, {}).pop(point_id, None)

    async def check_health(self) -> Dict[str, Any]:
        return {"healthy": True, "collections": len(self.collections)}

    def points(self, collection: str = "ticket") -> Dict[str, VectorPoint]:
        return self.collections.get(collection, {})


class FakeScheduler:
    """Records interval jobs instead of running them."""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.is_running = False

    def add_interval_job(self, job_func, job_id: str, seconds: int, name: Optional[str] = None) -> None:
        self.jobs[job_id] = {"func": job_func, "seconds": seconds, "name": name}

    def remove_job(self, job_id: str) -> bool:
        return self.jobs.pop(job_id, None) is not None

    def has_job(self, job_id: str) -> bool:
        return job_id in self.jobs

    async def start(self) -> None:
        self.is_running = True

    async def stop(self) -> None:
        self.jobs.clear()
        self.is_running = False


async def store_tickets(database: Database, *tickets: Ticket) -> List[Ticket]:
    """Upsert tickets and return them with their store ids."""
    async with database.session() as session:
        repo = ticket_repository(session)
        for ticket in tickets:
            await repo.upsert(ticket)
    return list(tickets)


def make_ticket(number: str, **fields: Any) -> Ticket:
    values = {
        "external_id": number,
        "source": SOURCE,
        "external_updated_at": utc(2024, 5, 1, 10, 0, 0),
        "sys_id": f"sys-{number.lower()}",
        "short_description": "Outlook keeps asking for the password",
        "description": "Started after the password change on Monday.",
        "category": "Email",
    }
    values.update(fields)
    return Ticket(**values)


@pytest.fixture
async def database():
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def ticketing_client():
    return FakeTicketingClient()


@pytest.fixture
def vector_store():
    return FakeVectorStore()


@pytest.fixture
def scheduler():
    return FakeScheduler()
