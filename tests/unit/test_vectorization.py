from incident_sync.config import CheckpointStatus, SyncStream
from incident_sync.core import EmbeddingException, EmbeddingQuotaException, VectorStoreException
from incident_sync.infrastructure.checkpoints import CheckpointStore, SyncCheckpoint
from incident_sync.infrastructure.llm import RotatingEmbeddingProvider
from incident_sync.ingestion.application import ticket_repository
from incident_sync.vectorization.application import VectorizationPipeline, batch_key
from incident_sync.vectorization.domain import (
    ResolutionSnapshot,
    SkipReason,
    VectorizeOutcome,
    build_payload,
    build_weighted_text,
    point_id_for,
    repetitions,
)

from tests.conftest import DIMENSION, FakeEmbeddingClient, make_ticket, no_sleep, store_tickets, utc


def make_pipeline(database, vector_store, *clients, **kwargs):
    provider = RotatingEmbeddingProvider(list(clients) or [FakeEmbeddingClient()], dimension=DIMENSION)
    kwargs.setdefault("sub_batch_size", 10)
    return VectorizationPipeline(
        database,
        provider,
        vector_store,
        dimension=DIMENSION,
        sleep=no_sleep,
        **kwargs,
    )


# ========== Weighted text ==========

def test_repetitions_are_monotonic_in_weight():
    counts = [repetitions(weight, 10) for weight in (0.05, 0.10, 0.20, 0.35)]

    assert counts == sorted(counts)
    assert counts == [1, 1, 2, 4]


def test_weighted_text_emphasizes_heavier_fields():
    ticket = make_ticket("INC0100", short_description="Disk full", description=None, category="Storage")

    text = build_weighted_text(ticket, multiplier=10)

    assert text.count("Disk full") == 4
    assert text.count("Category: Storage") == 2
    assert text.count("Source: ServiceNow") == 1


def test_ticket_with_only_a_source_has_no_text():
    ticket = make_ticket("INC0101", short_description=" ", description=None, category=None)

    assert build_weighted_text(ticket) == ""


def test_point_id_is_stable_per_source_and_external_id():
    first = make_ticket("INC0102")
    again = make_ticket("INC0102", short_description="changed")
    other_source = make_ticket("INC0102", source="Jira")

    assert point_id_for(first) == point_id_for(again)
    assert point_id_for(first) != point_id_for(other_source)


def test_payload_carries_back_reference_and_resolution():
    ticket = make_ticket("INC0103", id=42)
    resolution = ResolutionSnapshot(
        close_code="Solution provided",
        root_cause="Expired certificate",
        customer_summary="We renewed the certificate.",
        resolved_at=utc(2024, 5, 2, 9, 0, 0),
    )

    payload = build_payload(ticket, resolution)

    assert payload["ticket_ref"] == 42
    assert payload["has_resolution"] is True
    assert payload["close_code"] == "Solution provided"
    assert payload["customer_summary"] == "We renewed the certificate."
    assert "subcategory" not in payload


# ========== Single ticket ==========

async def test_vectorize_one_writes_point_and_records_hash(database, vector_store):
    [ticket] = await store_tickets(database, make_ticket("INC0200"))
    pipeline = make_pipeline(database, vector_store)

    outcome = await pipeline.vectorize_one(ticket)

    assert outcome.ok
    point = vector_store.points()[outcome.point_id]
    assert point.payload["ticket_ref"] == ticket.id
    assert len(point.vector) == DIMENSION
    async with database.session() as session:
        stored = await ticket_repository(session).get_by_id(ticket.id)
    assert stored.vector_hash is not None
    assert stored.vectorized_at is not None


async def test_vectorize_one_skips_with_reasons(database, vector_store):
    pipeline = make_pipeline(database, vector_store)
    [empty] = await store_tickets(database, make_ticket("INC0201", short_description=None, description=None, category=None))

    unsaved = await pipeline.vectorize_one(make_ticket("INC0202"))
    blank = await pipeline.vectorize_one(empty)

    assert unsaved.status == VectorizeOutcome.SKIPPED
    assert unsaved.reason == SkipReason.MISSING_FIELDS
    assert blank.reason == SkipReason.EMPTY_TEXT
    assert vector_store.points() == {}


async def test_vectorize_one_reports_index_failures(database, vector_store):
    [ticket] = await store_tickets(database, make_ticket("INC0203"))
    vector_store.error = VectorStoreException("collection unavailable")
    pipeline = make_pipeline(database, vector_store)

    outcome = await pipeline.vectorize_one(ticket)

    assert outcome.status == VectorizeOutcome.FAILED
    assert "collection unavailable" in outcome.error


async def test_vectorize_one_fails_over_to_next_credential(database, vector_store):
    [ticket] = await store_tickets(database, make_ticket("INC0204"))
    exhausted = FakeEmbeddingClient("key#0", error=EmbeddingQuotaException("quota exceeded"))
    pipeline = make_pipeline(database, vector_store, exhausted, FakeEmbeddingClient("key#1"))

    outcome = await pipeline.vectorize_one(ticket)

    assert outcome.ok
    assert len(exhausted.texts) == 1


# ========== Batch runs ==========

async def test_batch_resumes_after_processed_count(database, vector_store):
    tickets = await store_tickets(database, *[make_ticket(f"INC{n:04d}") for n in range(300, 325)])
    await CheckpointStore(database).save(SyncCheckpoint(
        stream=SyncStream.VECTORIZATION,
        cursor="10",
        status=CheckpointStatus.ERROR,
        details={
            "scope": "batch",
            "total": 25,
            "input_key": batch_key(tickets),
            "processed_count": 10,
            "current_credential_index": 0,
        },
    ))
    pipeline = make_pipeline(database, vector_store)

    result = await pipeline.vectorize_batch(tickets)

    assert result.status == "completed"
    assert result.start_index == 10
    assert result.processed_count == 25
    assert result.succeeded == 15
    stored_refs = {point.payload["ticket_ref"] for point in vector_store.points().values()}
    assert stored_refs == {ticket.id for ticket in tickets[10:]}

    checkpoint = await CheckpointStore(database).load(SyncStream.VECTORIZATION)
    assert checkpoint.status == CheckpointStatus.COMPLETED
    assert checkpoint.details["processed_count"] == 25


async def test_completed_run_starts_over_for_a_new_batch(database, vector_store):
    tickets = await store_tickets(database, make_ticket("INC0400"), make_ticket("INC0401"))
    pipeline = make_pipeline(database, vector_store)
    await pipeline.vectorize_batch(tickets)

    result = await pipeline.vectorize_batch(tickets)

    assert result.start_index == 0
    assert result.skip_reasons == {SkipReason.UNCHANGED: 2}


async def test_halted_batch_does_not_resume_over_different_tickets(database, vector_store):
    halted = await store_tickets(database, *[make_ticket(f"INC{n:04d}") for n in range(340, 360)])
    other = await store_tickets(database, *[make_ticket(f"INC{n:04d}") for n in range(360, 380)])
    await CheckpointStore(database).save(SyncCheckpoint(
        stream=SyncStream.VECTORIZATION,
        cursor="10",
        status=CheckpointStatus.ERROR,
        details={
            "scope": "batch",
            "total": 20,
            "input_key": batch_key(halted),
            "processed_count": 10,
            "current_credential_index": 0,
        },
    ))
    pipeline = make_pipeline(database, vector_store)

    result = await pipeline.vectorize_batch(other)

    assert result.status == "completed"
    assert result.start_index == 0
    assert result.succeeded == 20
    stored_refs = {point.payload["ticket_ref"] for point in vector_store.points().values()}
    assert stored_refs == {ticket.id for ticket in other}

    checkpoint = await CheckpointStore(database).load(SyncStream.VECTORIZATION)
    assert checkpoint.details["input_key"] == batch_key(other)


def test_batch_key_depends_on_ticket_order():
    first, second = make_ticket("INC0390", id=1), make_ticket("INC0391", id=2)

    assert batch_key([first, second]) == batch_key([first, second])
    assert batch_key([first, second]) != batch_key([second, first])


async def test_quota_error_rotates_credential_and_batch_succeeds(database, vector_store):
    tickets = await store_tickets(database, *[make_ticket(f"INC{n:04d}") for n in range(500, 503)])
    exhausted = FakeEmbeddingClient("key#0", error=EmbeddingQuotaException("insufficient quota"))
    pipeline = make_pipeline(database, vector_store, exhausted, FakeEmbeddingClient("key#1"))

    result = await pipeline.vectorize_batch(tickets)

    assert result.status == "completed"
    assert result.succeeded == 3
    assert result.credential_rotations == 1
    assert result.current_credential_index == 1
    checkpoint = await CheckpointStore(database).load(SyncStream.VECTORIZATION)
    assert checkpoint.details["current_credential_index"] == 1


async def test_rotation_by_single_ticket_carries_into_next_batch(database, vector_store):
    first, second = await store_tickets(database, make_ticket("INC0510"), make_ticket("INC0511"))
    exhausted = FakeEmbeddingClient("key#0", error=EmbeddingQuotaException("insufficient quota"))
    pipeline = make_pipeline(database, vector_store, exhausted, FakeEmbeddingClient("key#1"))

    assert (await pipeline.vectorize_one(first)).ok
    result = await pipeline.vectorize_batch([second])

    assert result.status == "completed"
    assert result.credential_rotations == 0
    assert result.current_credential_index == 1
    assert len(exhausted.texts) == 1
    checkpoint = await CheckpointStore(database).load(SyncStream.VECTORIZATION)
    assert checkpoint.details["current_credential_index"] == 1


async def test_run_halts_after_consecutive_failures(database, vector_store):
    tickets = await store_tickets(database, *[make_ticket(f"INC{n:04d}") for n in range(600, 603)])
    broken = [
        FakeEmbeddingClient("key#0", error=EmbeddingException("model overloaded")),
        FakeEmbeddingClient("key#1", error=EmbeddingException("model overloaded")),
    ]
    pipeline = make_pipeline(database, vector_store, *broken, max_consecutive_failures=3)

    result = await pipeline.vectorize_batch(tickets)

    assert result.status == "error"
    assert "model overloaded" in result.error
    assert result.processed_count == 0
    assert len(broken[0].texts) == 9
    checkpoint = await CheckpointStore(database).load(SyncStream.VECTORIZATION)
    assert checkpoint.status == CheckpointStatus.ERROR
    assert checkpoint.details["processed_count"] == 0


async def test_store_run_walks_tickets_in_id_order(database, vector_store):
    await store_tickets(database, *[make_ticket(f"INC{n:04d}") for n in range(700, 712)])
    pipeline = make_pipeline(database, vector_store, sub_batch_size=5)

    result = await pipeline.vectorize_store()

    assert result.scope == "store"
    assert result.processed_count == 12
    assert len(vector_store.points()) == 12
    assert vector_store.upsert_calls == 3


async def test_remove_vector_deletes_points_by_back_reference(database, vector_store):
    [ticket] = await store_tickets(database, make_ticket("INC0800"))
    pipeline = make_pipeline(database, vector_store)
    await pipeline.vectorize_one(ticket)

    removed = await pipeline.remove_vector(ticket.id)

    assert removed == 1
    assert vector_store.points() == {}
    async with database.session() as session:
        stored = await ticket_repository(session).get_by_id(ticket.id)
    assert stored.vector_hash is None
