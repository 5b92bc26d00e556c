# tests/test_batch_mutator.py
import asyncio
from datetime import datetime

import pytest
from sqlalchemy import select

from app.db.session import AsyncSessionLocal
from app.models.meeting import Participant
from app.schemas.attention import AttentionState, MeetingCreate
from app.services.batch_mutator import BatchMutator
from app.services.meeting_lifecycle import create_meeting
from app.services.snapshot_buffer import SnapshotBuffer, SnapshotEntry

T0 = datetime(2025, 3, 1, 9, 0, 0)


async def _participants(db, meeting_id: int) -> dict[str, Participant]:
    result = await db.execute(
        select(Participant)
        .where(Participant.meeting_id == meeting_id)
        .execution_options(populate_existing=True)
    )
    return {p.user_id: p for p in result.scalars().all()}


def _mutator(db, cap: int = 200, max_state_seconds: int = 86400, write_batch: int = 10) -> BatchMutator:
    return BatchMutator(
        db,
        SnapshotBuffer(db, cap=cap),
        max_state_seconds=max_state_seconds,
        write_batch=write_batch,
    )


@pytest.mark.asyncio
async def test_register_inserts_only_unseen_users(db_session):
    meeting = await create_meeting(db_session, MeetingCreate(room_id="mutator-1"))
    mutator = _mutator(db_session)

    assert await mutator.register_participants(meeting.id, ["a", "b"], T0) == ["a", "b"]
    assert await mutator.register_participants(meeting.id, ["b", "c"], T0) == ["c"]

    rows = await _participants(db_session, meeting.id)
    assert sorted(rows) == ["a", "b", "c"]
    assert rows["a"].name == "Anonymous"
    assert rows["a"].role == "student"
    assert rows["a"].join_time == T0
    assert all(getattr(rows["c"], state.value) == 0 for state in AttentionState)


@pytest.mark.asyncio
async def test_increments_hit_only_the_current_state_bucket(db_session):
    meeting = await create_meeting(db_session, MeetingCreate(room_id="mutator-2"))
    mutator = _mutator(db_session)
    states = {"a": AttentionState.ATTENTIVE, "b": AttentionState.DROWSY}

    await mutator.register_participants(meeting.id, list(states), T0)
    await mutator.apply_increments(meeting.id, states, 5)
    await mutator.apply_increments(meeting.id, {"a": AttentionState.ATTENTIVE}, 3)

    rows = await _participants(db_session, meeting.id)
    assert rows["a"].attentive == 8
    assert rows["a"].drowsy == 0
    assert rows["b"].drowsy == 5
    assert rows["b"].attentive == 0


@pytest.mark.asyncio
async def test_increment_is_bounded_by_max_state_seconds(db_session):
    meeting = await create_meeting(db_session, MeetingCreate(room_id="mutator-3"))
    mutator = _mutator(db_session, max_state_seconds=12)
    states = {"a": AttentionState.ABSENT}

    await mutator.register_participants(meeting.id, ["a"], T0)
    for _ in range(4):
        await mutator.apply_increments(meeting.id, states, 5)

    rows = await _participants(db_session, meeting.id)
    assert rows["a"].absent == 12


@pytest.mark.asyncio
async def test_snapshots_are_written_in_sub_batches_under_cap(db_session):
    meeting = await create_meeting(db_session, MeetingCreate(room_id="mutator-4"))
    buffer = SnapshotBuffer(db_session, cap=7)
    mutator = BatchMutator(db_session, buffer, max_state_seconds=86400, write_batch=3)
    entries = [
        SnapshotEntry(user_id=f"u{index}", state=AttentionState.ACTIVE, timestamp=T0)
        for index in range(10)
    ]

    await mutator.append_snapshots(meeting.id, entries)

    rows = await buffer.list_for_meeting(meeting.id)
    assert [row.user_id for row in rows] == [f"u{index}" for index in range(3, 10)]


@pytest.mark.asyncio
async def test_apply_with_empty_batch_is_noop(db_session):
    meeting = await create_meeting(db_session, MeetingCreate(room_id="mutator-5"))
    mutator = _mutator(db_session)

    await mutator.apply(meeting.id, states={}, transitions=[], increment=5, timestamp=T0)

    assert await _participants(db_session, meeting.id) == {}


@pytest.mark.asyncio
async def test_concurrent_increments_on_same_bucket_are_not_lost(db_session):
    """
    Each writer bumps the bucket with its own session; the database
    evaluates every increment so none of them overwrites another.
    """
    meeting = await create_meeting(db_session, MeetingCreate(room_id="mutator-concurrent"))
    await _mutator(db_session).register_participants(meeting.id, ["a"], T0)

    async def bump() -> None:
        async with AsyncSessionLocal() as session:
            await _mutator(session).apply_increments(meeting.id, {"a": AttentionState.ATTENTIVE}, 5)

    await asyncio.gather(*(bump() for _ in range(5)))

    rows = await _participants(db_session, meeting.id)
    assert rows["a"].attentive == 25
