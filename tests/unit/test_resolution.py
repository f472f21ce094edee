from datetime import timedelta

import pytest
from pydantic import ValidationError

from incident_sync.config import CloseCode
from incident_sync.core import (
    DomainException,
    RepositoryException,
    ResourceNotFoundException,
    ValidationException,
    VectorStoreException,
)
from incident_sync.infrastructure.llm import RotatingEmbeddingProvider
from incident_sync.infrastructure.ticketing import UpdateResult
from incident_sync.resolution.application import (
    PendingUpdateSweeper,
    ResolutionInput,
    ResolutionSynchronizer,
    pending_update_repository,
)
from incident_sync.resolution.domain import PendingUpdate, PushState, RetryPolicy
from incident_sync.resolution.infrastructure.repositories import SQLAlchemyPendingUpdateRepository
from incident_sync.vectorization.application import VectorizationPipeline

from tests.conftest import (
    DIMENSION,
    FakeEmbeddingClient,
    FixedClock,
    make_ticket,
    no_sleep,
    store_tickets,
    utc,
)

NOW = utc(2024, 5, 1, 12, 0, 0)
POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=5.0, max_delay_seconds=60.0)

RESOLUTION = ResolutionInput(
    root_cause="Expired TLS certificate on the mail gateway",
    close_code=CloseCode.SOLUTION_PROVIDED,
    customer_summary="We renewed the certificate; Outlook connects again.",
)

UNAVAILABLE = UpdateResult(success=False, status_code=503, error="HTTP 503: Service Unavailable")


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def make_synchronizer(database, ticketing_client, clock):
    def factory(client=ticketing_client, **kwargs):
        kwargs.setdefault("sleep", no_sleep)
        return ResolutionSynchronizer(database, client, retry_policy=POLICY, clock=clock, **kwargs)
    return factory


@pytest.fixture
async def ticket(database):
    [stored] = await store_tickets(database, make_ticket("INC0001"))
    return stored


# ========== Inline push ==========

async def test_resolve_pushes_close_payload(make_synchronizer, ticketing_client, ticket):
    result = await make_synchronizer().resolve(ticket, RESOLUTION)

    assert result.success
    assert result.external_push.success
    assert result.external_push.state == "success"
    assert result.record.pushed is True
    assert result.record.push_attempts == 1
    assert ticketing_client.update_calls == [{
        "sys_id": "sys-inc0001",
        "payload": {
            "state": "6",
            "close_code": "Solution provided",
            "close_notes": "We renewed the certificate; Outlook connects again.",
        },
    }]


async def test_ticket_without_sys_id_is_not_pushed(database, make_synchronizer, ticketing_client):
    [ticket] = await store_tickets(database, make_ticket("INC0002", sys_id=None))
    synchronizer = make_synchronizer()

    result = await synchronizer.resolve(ticket, RESOLUTION)

    assert result.success
    assert result.external_push is None
    assert ticketing_client.update_calls == []
    stats = await synchronizer.get_update_statistics()
    assert (stats.total, stats.pushed, stats.pending, stats.failed) == (1, 0, 0, 0)


async def test_transient_errors_leave_attempts_for_the_sweep(make_synchronizer, ticketing_client, ticket, clock):
    ticketing_client.update_responses = [UNAVAILABLE, UNAVAILABLE, UNAVAILABLE]
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    synchronizer = make_synchronizer(sleep=record_sleep)

    result = await synchronizer.resolve(ticket, RESOLUTION)

    assert result.success
    assert result.external_push.state == "retryable"
    assert result.external_push.attempts == 2
    assert result.external_push.next_retry_at == NOW + timedelta(seconds=10)
    assert len(ticketing_client.update_calls) == 2
    assert delays == [5.0]

    clock.now = NOW + timedelta(seconds=15)
    swept = await PendingUpdateSweeper(synchronizer).sweep()

    assert swept.examined == 1
    assert swept.terminal == 1
    assert len(ticketing_client.update_calls) == 3
    [failure] = await synchronizer.list_terminal_failures()
    assert failure.resolution_id == result.record.id
    assert failure.attempts == 3
    assert failure.last_status_code == 503
    stats = await synchronizer.get_update_statistics()
    assert stats.failed == 1
    assert stats.success_rate == 0.0


async def test_inline_attempts_are_capped_below_the_attempt_budget(make_synchronizer, ticketing_client, ticket):
    ticketing_client.update_responses = [UNAVAILABLE, UNAVAILABLE, UNAVAILABLE]

    result = await make_synchronizer(inline_attempts=10).resolve(ticket, RESOLUTION)

    assert result.external_push.state == "retryable"
    assert len(ticketing_client.update_calls) == POLICY.max_attempts - 1


async def test_ledger_write_failure_keeps_the_saved_resolution(
    monkeypatch, make_synchronizer, ticketing_client, ticket
):
    async def failing_save(self, entry):
        raise RepositoryException("pending update ledger unavailable")

    monkeypatch.setattr(SQLAlchemyPendingUpdateRepository, "save", failing_save)
    ticketing_client.update_responses = [UNAVAILABLE]
    synchronizer = make_synchronizer()

    result = await synchronizer.resolve(ticket, RESOLUTION)

    assert result.success
    assert result.record.root_cause == RESOLUTION.root_cause
    assert result.external_push.success is False
    assert result.external_push.state == "unrecorded"
    assert "ledger unavailable" in result.external_push.error
    assert len(ticketing_client.update_calls) == 1
    assert synchronizer.held_locks == 0


async def test_client_error_is_terminal_after_one_attempt(make_synchronizer, ticketing_client, ticket):
    ticketing_client.update_responses = [UpdateResult(success=False, status_code=400, error="HTTP 400: bad close code")]

    result = await make_synchronizer().resolve(ticket, RESOLUTION)

    assert result.external_push.state == "terminal"
    assert result.external_push.attempts == 1
    assert result.external_push.status_code == 400
    assert result.record.last_push_error == "HTTP 400: bad close code"
    assert len(ticketing_client.update_calls) == 1


async def test_missing_client_parks_the_push(make_synchronizer, ticket):
    synchronizer = make_synchronizer(client=None)

    result = await synchronizer.resolve(ticket, RESOLUTION)

    assert result.success
    assert result.external_push.state == "pending"
    assert result.external_push.attempts == 0
    stats = await synchronizer.get_update_statistics()
    assert stats.pending == 1


async def test_unsaved_ticket_cannot_be_resolved(make_synchronizer):
    with pytest.raises(ValidationException):
        await make_synchronizer().resolve(make_ticket("INC0003"), RESOLUTION)


async def test_unknown_ticket_cannot_be_resolved(make_synchronizer):
    with pytest.raises(ResourceNotFoundException):
        await make_synchronizer().resolve(make_ticket("INC0004", id=999), RESOLUTION)


def test_unknown_close_code_is_rejected():
    with pytest.raises(ValidationError):
        ResolutionInput(root_cause="x", close_code="Fixed it", customer_summary="y")


async def test_resolving_again_resets_push_state(make_synchronizer, ticketing_client, ticket):
    synchronizer = make_synchronizer()
    ticketing_client.update_responses = [UpdateResult(success=False, status_code=400, error="HTTP 400")]
    first = await synchronizer.resolve(ticket, RESOLUTION)

    second = await synchronizer.resolve(ticket, RESOLUTION.model_copy(update={"root_cause": "Gateway restarted"}))

    assert second.record.id == first.record.id
    assert second.record.root_cause == "Gateway restarted"
    assert second.record.pushed is True
    assert second.record.push_attempts == 1
    assert await synchronizer.list_terminal_failures() == []


# ========== Ledger sweep ==========

async def test_sweep_delivers_retryable_push_once_due(make_synchronizer, ticketing_client, ticket, clock):
    ticketing_client.update_responses = [UNAVAILABLE]
    synchronizer = make_synchronizer(inline_attempts=1)
    sweeper = PendingUpdateSweeper(synchronizer)

    result = await synchronizer.resolve(ticket, RESOLUTION)
    assert result.external_push.state == "retryable"
    assert result.external_push.next_retry_at == NOW + timedelta(seconds=5)

    early = await sweeper.sweep()
    assert early.examined == 0
    assert len(ticketing_client.update_calls) == 1

    clock.now = NOW + timedelta(seconds=10)
    swept = await sweeper.sweep()

    assert swept.examined == 1
    assert swept.succeeded == 1
    assert len(ticketing_client.update_calls) == 2
    stats = await synchronizer.get_update_statistics()
    assert (stats.pushed, stats.pending, stats.failed) == (1, 0, 0)
    assert stats.ledger == {}


async def test_sweep_marks_push_terminal_at_attempt_cap(make_synchronizer, ticketing_client, ticket, clock):
    ticketing_client.update_responses = [UNAVAILABLE, UNAVAILABLE, UNAVAILABLE]
    synchronizer = make_synchronizer(inline_attempts=1)
    sweeper = PendingUpdateSweeper(synchronizer)
    await synchronizer.resolve(ticket, RESOLUTION)

    clock.now = NOW + timedelta(seconds=10)
    second = await sweeper.sweep()
    clock.now = NOW + timedelta(minutes=5)
    third = await sweeper.sweep()

    assert second.retryable == 1
    assert third.terminal == 1
    [failure] = await synchronizer.list_terminal_failures()
    assert failure.attempts == 3
    assert synchronizer.held_locks == 0


async def test_requeue_terminal_gives_a_fresh_budget(make_synchronizer, ticketing_client, ticket):
    ticketing_client.update_responses = [UpdateResult(success=False, status_code=400, error="HTTP 400")]
    synchronizer = make_synchronizer()
    result = await synchronizer.resolve(ticket, RESOLUTION)

    requeued = await synchronizer.requeue_terminal(result.record.id)

    assert requeued.state == "pending"
    assert requeued.attempts == 0
    swept = await PendingUpdateSweeper(synchronizer).sweep()
    assert swept.succeeded == 1
    assert (await synchronizer.get_update_statistics()).success_rate == 100.0


async def test_requeue_requires_a_terminal_entry(make_synchronizer, ticket):
    synchronizer = make_synchronizer(client=None)
    result = await synchronizer.resolve(ticket, RESOLUTION)

    with pytest.raises(DomainException):
        await synchronizer.requeue_terminal(result.record.id)
    with pytest.raises(ResourceNotFoundException):
        await synchronizer.requeue_terminal(result.record.id + 100)


async def test_interrupted_attempts_are_recovered(database, make_synchronizer, ticket):
    synchronizer = make_synchronizer(client=None)
    result = await synchronizer.resolve(ticket, RESOLUTION)
    async with database.session() as session:
        await pending_update_repository(session).save(
            PendingUpdate(resolution_id=result.record.id, state=PushState.ATTEMPTING, attempts=1)
        )

    recovered = await synchronizer.recover_interrupted()

    assert recovered == 1
    [entry] = await synchronizer.due_updates(10)
    assert entry.state == PushState.RETRYABLE


# ========== Vectorization ==========

def make_vectorizer(database, vector_store):
    provider = RotatingEmbeddingProvider([FakeEmbeddingClient()], dimension=DIMENSION)
    return VectorizationPipeline(database, provider, vector_store, dimension=DIMENSION, sleep=no_sleep)


async def test_resolution_is_denormalized_into_the_vector(database, make_synchronizer, vector_store, ticket):
    synchronizer = make_synchronizer(vectorizer=make_vectorizer(database, vector_store))

    result = await synchronizer.resolve(ticket, RESOLUTION)

    assert result.vectorization.status == "success"
    [point] = vector_store.points().values()
    assert point.payload["ticket_ref"] == ticket.id
    assert point.payload["close_code"] == "Solution provided"
    assert point.payload["has_resolution"] is True


async def test_vectorization_failure_does_not_fail_resolve(database, make_synchronizer, vector_store, ticket):
    vector_store.error = VectorStoreException("index offline")
    synchronizer = make_synchronizer(vectorizer=make_vectorizer(database, vector_store))

    result = await synchronizer.resolve(ticket, RESOLUTION)

    assert result.success
    assert result.vectorization.status == "failed"
    assert "index offline" in result.vectorization.error
    assert result.external_push.success
