# tests/test_attention_ingestion.py
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.models.meeting import AttentionSnapshot, Participant
from app.schemas.attention import AttentionState, MeetingCreate
from app.services import attention_ingestion
from app.services.attention_ingestion import AttentionIngestionService, IngestionStateTable
from app.services.backpressure import BackpressureGuard
from app.services.batch_mutator import BatchMutator
from app.services.meeting_lifecycle import create_meeting, end_meeting

T0 = datetime(2025, 3, 1, 9, 0, 0)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


async def _meeting_id(db, room_id: str = "ingest-room") -> int:
    meeting = await create_meeting(db, MeetingCreate(room_id=room_id, start_time=T0))
    return meeting.id


async def _participants(db, meeting_id: int) -> dict[str, Participant]:
    result = await db.execute(
        select(Participant)
        .where(Participant.meeting_id == meeting_id)
        .execution_options(populate_existing=True)
    )
    return {p.user_id: p for p in result.scalars().all()}


async def _snapshots(db, meeting_id: int) -> list[AttentionSnapshot]:
    result = await db.execute(
        select(AttentionSnapshot)
        .where(AttentionSnapshot.meeting_id == meeting_id)
        .order_by(AttentionSnapshot.id)
    )
    return list(result.scalars().all())


async def _snapshot_count(db, meeting_id: int) -> int:
    result = await db.execute(
        select(func.count(AttentionSnapshot.id)).where(AttentionSnapshot.meeting_id == meeting_id)
    )
    return int(result.scalar_one())


def test_validate_skips_bad_user_ids_and_states():
    valid = AttentionIngestionService.validate(
        {
            "": "attentive",
            "undefined": "attentive",
            "u1": "Looking Away",
            "u2": {"data": {"state": "drowsy"}},
            "u3": "sleeping",
            "u4": None,
        }
    )

    assert valid == {
        "u1": AttentionState.LOOKING_AWAY,
        "u2": AttentionState.DROWSY,
    }


@pytest.mark.asyncio
async def test_repeat_state_records_single_snapshot_and_accumulates(db_session, ingestion_service):
    """
    Same state twice, 5 seconds apart: one transition, two increments.
    """
    meeting_id = await _meeting_id(db_session)

    assert await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(0))
    assert await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(5))

    snapshots = await _snapshots(db_session, meeting_id)
    assert len(snapshots) == 1
    assert snapshots[0].user_id == "u1"
    assert snapshots[0].attention_state == "attentive"
    assert snapshots[0].timestamp == _at(0)

    participant = (await _participants(db_session, meeting_id))["u1"]
    assert participant.attentive == 10
    assert participant.join_time == _at(0)


@pytest.mark.asyncio
async def test_state_change_records_new_transition(db_session, ingestion_service):
    meeting_id = await _meeting_id(db_session)

    await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive", "u2": "active"}, timestamp=_at(0))
    await ingestion_service.ingest(db_session, meeting_id, {"u1": "drowsy", "u2": "active"}, timestamp=_at(3))

    snapshots = await _snapshots(db_session, meeting_id)
    assert [(s.user_id, s.attention_state) for s in snapshots] == [
        ("u1", "attentive"),
        ("u2", "active"),
        ("u1", "drowsy"),
    ]

    rows = await _participants(db_session, meeting_id)
    assert rows["u1"].attentive == 5
    assert rows["u1"].drowsy == 3
    assert rows["u2"].active == 8


@pytest.mark.asyncio
async def test_gap_since_last_snapshot_drives_increment(db_session, ingestion_service):
    meeting_id = await _meeting_id(db_session)

    await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(0))
    # 7s after the last snapshot
    await ingestion_service.ingest(db_session, meeting_id, {"u1": "absent"}, timestamp=_at(7))
    # 60s later: gap too large, only 1s credited
    await ingestion_service.ingest(db_session, meeting_id, {"u1": "absent"}, timestamp=_at(67))

    participant = (await _participants(db_session, meeting_id))["u1"]
    assert participant.attentive == 5
    assert participant.absent == 8


@pytest.mark.asyncio
async def test_call_time_is_truncated_to_whole_seconds(db_session, ingestion_service):
    meeting_id = await _meeting_id(db_session)

    await ingestion_service.ingest(db_session, meeting_id, {"u1": "active"}, timestamp=_at(2.75))

    snapshots = await _snapshots(db_session, meeting_id)
    assert snapshots[0].timestamp == _at(2)


@pytest.mark.asyncio
async def test_invalid_entries_are_skipped_but_valid_ones_land(db_session, ingestion_service):
    meeting_id = await _meeting_id(db_session)

    ok = await ingestion_service.ingest(
        db_session,
        meeting_id,
        {"u1": "attentive", "undefined": "attentive", "u2": "bogus"},
        timestamp=_at(0),
    )

    assert ok is True
    assert sorted(await _participants(db_session, meeting_id)) == ["u1"]


@pytest.mark.asyncio
async def test_only_invalid_entries_is_success_without_writes(db_session, ingestion_service):
    meeting_id = await _meeting_id(db_session)

    assert await ingestion_service.ingest(db_session, meeting_id, {"u1": "bogus"}, timestamp=_at(0)) is True
    assert await ingestion_service.ingest(db_session, meeting_id, {}, timestamp=_at(1)) is True

    assert await _participants(db_session, meeting_id) == {}
    assert await _snapshot_count(db_session, meeting_id) == 0


@pytest.mark.asyncio
async def test_unknown_meeting_is_rejected(db_session, ingestion_service):
    assert await ingestion_service.ingest(db_session, 4242, {"u1": "attentive"}) is False


@pytest.mark.asyncio
async def test_backpressure_drops_call_without_touching_storage(db_session, ingestion_service, memory_sampler, state_table):
    meeting_id = await _meeting_id(db_session)
    memory_sampler.heap_mb = 4096.0

    ok = await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(0))

    assert ok is False
    assert await _participants(db_session, meeting_id) == {}
    assert await _snapshot_count(db_session, meeting_id) == 0
    assert meeting_id not in state_table


@pytest.mark.asyncio
async def test_buffer_never_exceeds_cap(db_session, ingestion_service):
    meeting_id = await _meeting_id(db_session)
    states = ["attentive", "drowsy"]

    for call in range(30):
        signals = {f"u{index}": states[(call + index) % 2] for index in range(12)}
        assert await ingestion_service.ingest(db_session, meeting_id, signals, timestamp=_at(call * 5))
        assert await _snapshot_count(db_session, meeting_id) <= 200

    assert await _snapshot_count(db_session, meeting_id) == 200


@pytest.mark.asyncio
async def test_side_state_tracks_last_states(db_session, ingestion_service, state_table):
    meeting_id = await _meeting_id(db_session)

    await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive", "u2": "junk"}, timestamp=_at(0))

    assert meeting_id in state_table
    assert state_table.get(meeting_id).last_states == {"u1": AttentionState.ATTENTIVE}


@pytest.mark.asyncio
async def test_storage_failure_returns_false(db_session, ingestion_service, monkeypatch):
    meeting_id = await _meeting_id(db_session)

    async def broken_apply(self, *args, **kwargs):
        raise OperationalError("UPDATE meeting_participants", {}, Exception("database is locked"))

    monkeypatch.setattr(BatchMutator, "apply", broken_apply)

    ok = await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(0))

    assert ok is False
    # last states are not advanced on failure
    assert ingestion_service._state_table.get(meeting_id).last_states == {}


@pytest.mark.asyncio
async def test_progress_log_is_throttled(db_session, ingestion_service, caplog):
    caplog.set_level("INFO", logger=attention_ingestion.logger.name)
    meeting_id = await _meeting_id(db_session)

    for seconds in (0, 5, 10, 60):
        await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(seconds))

    progress = [r for r in caplog.records if "Processing attention snapshot" in r.getMessage()]
    assert len(progress) == 2


class _FailingMemorySampler:
    def heap_used_mb(self) -> float:
        raise RuntimeError("access denied")


@pytest.mark.asyncio
async def test_memory_read_failure_returns_false(db_session, state_table):
    meeting_id = await _meeting_id(db_session)
    service = AttentionIngestionService(
        guard=BackpressureGuard(_FailingMemorySampler(), limit_mb=1800),
        state_table=state_table,
    )

    ok = await service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(0))

    assert ok is False
    assert await _participants(db_session, meeting_id) == {}
    assert meeting_id not in state_table


@pytest.mark.asyncio
async def test_failed_rollback_still_returns_false(db_session, ingestion_service, monkeypatch, caplog):
    caplog.set_level("ERROR", logger="attention.db")
    meeting_id = await _meeting_id(db_session)

    async def broken_apply(self, *args, **kwargs):
        raise OperationalError("UPDATE meeting_participants", {}, Exception("database is locked"))

    async def broken_rollback():
        raise OperationalError("ROLLBACK", {}, Exception("connection lost"))

    monkeypatch.setattr(BatchMutator, "apply", broken_apply)
    monkeypatch.setattr(db_session, "rollback", broken_rollback)

    ok = await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(0))

    assert ok is False
    assert "Rollback failed" in caplog.text


@pytest.mark.asyncio
async def test_late_signals_for_ended_meeting_keep_no_side_state(db_session, ingestion_service, state_table):
    meeting_id = await _meeting_id(db_session)
    await end_meeting(db_session, meeting_id, state_table, end_time=_at(60))

    ok = await ingestion_service.ingest(db_session, meeting_id, {"u1": "attentive"}, timestamp=_at(90))

    assert ok is True
    assert meeting_id not in state_table
    assert await _snapshot_count(db_session, meeting_id) == 1


def test_state_table_evicts_least_recently_used_meeting(caplog):
    caplog.set_level("INFO", logger=attention_ingestion.logger.name)
    table = IngestionStateTable(max_meetings=2)

    table.get(1)
    table.get(2)
    table.get(1)
    table.get(3)

    assert len(table) == 2
    assert 1 in table
    assert 3 in table
    assert 2 not in table
    assert "Evicted ingestion state of meeting 2" in caplog.text
