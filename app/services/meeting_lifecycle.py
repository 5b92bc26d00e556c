# app/services/meeting_lifecycle.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.time_utils import to_naive_utc, utcnow
from app.models.meeting import Meeting, Participant
from app.schemas.attention import (
    MeetingCreate,
    MeetingRead,
    OverallStats,
    ParticipantRead,
    SnapshotRead,
)
from app.services.attention_ingestion import IngestionStateTable
from app.services.snapshot_buffer import SnapshotBuffer, group_by_user
from app.services.stats_reconciler import (
    STATE_KEYS,
    reconcile_meeting_stats,
    stored_overall_stats,
)

logger = logging.getLogger("attention.meetings")


async def create_meeting(db: AsyncSession, payload: MeetingCreate) -> Meeting:
    """
    Start a new monitored meeting.

    Raises ValueError if another meeting already uses ``room_id``.
    """
    existing = await db.execute(select(Meeting.id).where(Meeting.room_id == payload.room_id))
    if existing.scalar_one_or_none() is not None:
        raise ValueError(f"Meeting with room_id '{payload.room_id}' already exists.")

    meeting = Meeting(
        room_id=payload.room_id,
        title=payload.title,
        creator_name=payload.creator_name,
        start_time=to_naive_utc(payload.start_time) if payload.start_time else utcnow(),
        is_active=True,
    )
    db.add(meeting)
    await db.commit()

    logger.info("Meeting %s started for room %s", meeting.id, meeting.room_id)
    return await get_meeting(db, meeting.id)


async def get_meeting(db: AsyncSession, meeting_id: int) -> Meeting:
    """
    Load a meeting with its participants. Raises LookupError if missing.
    """
    result = await db.execute(
        select(Meeting)
        .where(Meeting.id == meeting_id)
        .execution_options(populate_existing=True)
    )
    meeting = result.scalar_one_or_none()
    if meeting is None:
        raise LookupError(f"Meeting with id={meeting_id} not found")
    return meeting


async def end_meeting(
    db: AsyncSession,
    meeting_id: int,
    state_table: IngestionStateTable,
    end_time: Optional[datetime] = None,
) -> tuple[Meeting, Optional[OverallStats]]:
    """
    Mark a meeting as ended and run a final reconciliation.

    - ``end_time`` is only set the first time; ending twice keeps it.
    - The meeting's ingestion side state is discarded. Late signals are
      still accepted and simply start a fresh side state.
    """
    meeting = await get_meeting(db, meeting_id)

    if meeting.end_time is None:
        meeting.end_time = to_naive_utc(end_time) if end_time else utcnow()
    meeting.is_active = False
    await db.commit()

    state_table.discard(meeting_id)
    logger.info("Meeting %s ended at %s", meeting_id, meeting.end_time.isoformat())

    stats = await reconcile_meeting_stats(db, meeting_id)
    meeting = await get_meeting(db, meeting_id)
    return meeting, stats


async def record_participant_leave(
    db: AsyncSession,
    meeting_id: int,
    user_id: str,
    leave_time: Optional[datetime] = None,
) -> Participant:
    """
    Set the leave time of a participant. Raises LookupError if either the
    meeting or the participant is unknown.
    """
    result = await db.execute(
        select(Participant).where(
            Participant.meeting_id == meeting_id,
            Participant.user_id == user_id,
        )
    )
    participant = result.scalar_one_or_none()
    if participant is None:
        raise LookupError(f"Participant '{user_id}' not found in meeting id={meeting_id}")

    participant.leave_time = to_naive_utc(leave_time) if leave_time else utcnow()
    await db.commit()
    await db.refresh(participant)
    return participant


async def build_meeting_read(db: AsyncSession, meeting: Meeting) -> MeetingRead:
    """
    Assemble the public view of a meeting, attaching each participant's
    transitions from the meeting-wide snapshot buffer.
    """
    buffer = SnapshotBuffer(db, cap=get_settings().SNAPSHOT_BUFFER_CAP)
    snapshots = await buffer.list_for_meeting(meeting.id)
    by_user = group_by_user(snapshots)

    participants = [
        ParticipantRead(
            user_id=p.user_id,
            name=p.name,
            role=p.role,
            join_time=p.join_time,
            leave_time=p.leave_time,
            attention_data={key: getattr(p, key) or 0 for key in STATE_KEYS},
            snapshots=[SnapshotRead.model_validate(s) for s in by_user.get(p.user_id, [])],
        )
        for p in meeting.participants
    ]

    return MeetingRead(
        id=meeting.id,
        room_id=meeting.room_id,
        title=meeting.title,
        creator_name=meeting.creator_name,
        start_time=meeting.start_time,
        end_time=meeting.end_time,
        is_active=meeting.is_active,
        participants=participants,
        snapshot_count=len(snapshots),
        overall_stats=stored_overall_stats(meeting),
    )
