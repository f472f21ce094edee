import pytest

from incident_sync.config import CheckpointStatus, SyncStream
from incident_sync.core import CheckpointException
from incident_sync.infrastructure.checkpoints import INTERRUPTED_ERROR, CheckpointStore, SyncCheckpoint

from tests.conftest import utc


async def test_missing_checkpoint_loads_as_idle(database):
    store = CheckpointStore(database)

    checkpoint = await store.load(SyncStream.POLL)

    assert checkpoint.status == CheckpointStatus.IDLE
    assert checkpoint.cursor is None
    assert checkpoint.details == {}


async def test_saved_checkpoint_round_trips(database):
    store = CheckpointStore(database)
    await store.save(SyncCheckpoint(
        stream=SyncStream.VECTORIZATION,
        cursor="20",
        status=CheckpointStatus.ERROR,
        last_run_at=utc(2024, 5, 1, 12, 0, 0),
        last_error="quota",
        details={"processed_count": 20, "current_credential_index": 1},
    ))

    checkpoint = await store.load(SyncStream.VECTORIZATION)

    assert checkpoint.cursor == "20"
    assert checkpoint.last_error == "quota"
    assert checkpoint.last_run_at == utc(2024, 5, 1, 12, 0, 0)
    assert checkpoint.details["current_credential_index"] == 1


def test_evolve_does_not_share_details():
    original = SyncCheckpoint(stream=SyncStream.POLL, details={"total_polls": 1})

    changed = original.evolve(status=CheckpointStatus.RUNNING)
    changed.details["total_polls"] = 2

    assert original.details["total_polls"] == 1


async def test_running_checkpoints_are_recovered_as_interrupted(database):
    store = CheckpointStore(database)
    await store.save(SyncCheckpoint(stream=SyncStream.BULK_IMPORT, cursor="300", status=CheckpointStatus.RUNNING))
    await store.save(SyncCheckpoint(stream=SyncStream.POLL, cursor="2024-05-01T10:00:00+00:00"))

    recovered = await store.recover_interrupted()

    assert recovered == [SyncStream.BULK_IMPORT]
    checkpoint = await store.load(SyncStream.BULK_IMPORT)
    assert checkpoint.status == CheckpointStatus.ERROR
    assert checkpoint.last_error == INTERRUPTED_ERROR
    assert checkpoint.cursor == "300"


async def test_reset_removes_checkpoint(database):
    store = CheckpointStore(database)
    await store.save(SyncCheckpoint(stream=SyncStream.BULK_IMPORT, cursor="10", status=CheckpointStatus.COMPLETED))

    await store.reset(SyncStream.BULK_IMPORT)

    assert (await store.load(SyncStream.BULK_IMPORT)).status == CheckpointStatus.IDLE


async def test_unknown_stream_is_rejected(database):
    with pytest.raises(CheckpointException):
        await CheckpointStore(database).load("mystery")
