# app/services/log_analytics.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.time_utils import utcnow
from app.models.attention_log import AttentionLog
from app.models.meeting import Meeting, Participant
from app.schemas.attention import empty_state_breakdown
from app.schemas.attention_log import (
    AnalyticsOverview,
    AttentionLogCreate,
    MeetingAnalytics,
    ParticipantAnalytics,
    TimeSeriesPoint,
)
from app.services.state_normalizer import StateNormalizer
from app.services.stats_reconciler import compute_meeting_duration


async def record_attention_log(db: AsyncSession, payload: AttentionLogCreate) -> AttentionLog:
    """
    Append one raw detector event to the attention log.

    Raises
    ------
    LookupError
        If the referenced meeting does not exist.
    ValueError
        If the attention state does not normalize to a canonical state.
    """
    state = StateNormalizer.normalize(payload.attention_state)
    if state is None:
        raise ValueError(f"Unknown attention state '{payload.attention_state}'.")

    meeting = await db.execute(select(Meeting.id).where(Meeting.id == payload.meeting_id))
    if meeting.scalar_one_or_none() is None:
        raise LookupError(f"Meeting with id={payload.meeting_id} not found")

    measurements = (
        json.dumps(payload.measurements.model_dump(exclude_none=True))
        if payload.measurements is not None
        else None
    )

    log = AttentionLog(
        meeting_id=payload.meeting_id,
        user_id=payload.user_id,
        user_name=payload.user_name or "Anonymous",
        attention_state=state.value,
        attention_percentage=payload.attention_percentage,
        confidence=payload.confidence,
        measurements=measurements,
        session_id=payload.session_id,
        room_id=payload.room_id,
        timestamp=utcnow(),
    )
    db.add(log)
    await db.commit()
    await db.refresh(log)
    return log


def _minute_bucket(timestamp: datetime) -> datetime:
    return timestamp.replace(second=0, microsecond=0)


def build_time_series(logs: List[AttentionLog]) -> List[TimeSeriesPoint]:
    """
    Percentage of log entries per state within each minute, oldest first.
    """
    groups: Dict[datetime, Dict[str, int]] = {}
    for log in logs:
        counts = groups.setdefault(_minute_bucket(log.timestamp), empty_state_breakdown())
        if log.attention_state in counts:
            counts[log.attention_state] += 1

    points: List[TimeSeriesPoint] = []
    for minute in sorted(groups):
        counts = groups[minute]
        total = sum(counts.values())
        shares = {
            state: (round(count / total * 100, 2) if total > 0 else 0.0)
            for state, count in counts.items()
        }
        points.append(TimeSeriesPoint(timestamp=minute, **shares))
    return points


async def compute_meeting_analytics(
    db: AsyncSession,
    meeting_id: int,
    now: datetime | None = None,
) -> MeetingAnalytics:
    """
    Project the raw attention log of a meeting into analytics.

    This read path is independent of the meeting's reconciled statistics:
    counts here are numbers of log entries, not seconds.

    Raises LookupError if the meeting does not exist.
    """
    result = await db.execute(select(Meeting).where(Meeting.id == meeting_id))
    meeting = result.scalar_one_or_none()
    if meeting is None:
        raise LookupError(f"Meeting with id={meeting_id} not found")

    settings = get_settings()
    duration = compute_meeting_duration(
        meeting.start_time,
        meeting.end_time,
        now or utcnow(),
        settings.MAX_MEETING_DURATION_SECONDS,
    )

    logs_res = await db.execute(
        select(AttentionLog)
        .where(AttentionLog.meeting_id == meeting_id)
        .order_by(AttentionLog.timestamp.asc(), AttentionLog.id.asc())
    )
    logs: List[AttentionLog] = list(logs_res.scalars().all())

    if not logs:
        return MeetingAnalytics(overview=AnalyticsOverview(), duration=duration)

    names_res = await db.execute(
        select(Participant.user_id, Participant.name).where(Participant.meeting_id == meeting_id)
    )
    participant_names = {user_id: name for user_id, name in names_res.all() if name}

    breakdown = empty_state_breakdown()
    per_user: Dict[str, dict] = {}
    total_percentage = 0.0

    for log in logs:
        entry = per_user.get(log.user_id)
        if entry is None:
            entry = {
                "user_id": log.user_id,
                "user_name": participant_names.get(log.user_id) or log.user_name or "Anonymous",
                "total_logs": 0,
                "attention_states": empty_state_breakdown(),
                "total_percentage": 0.0,
                "first_seen": log.timestamp,
                "last_seen": log.timestamp,
            }
            per_user[log.user_id] = entry

        entry["total_logs"] += 1
        entry["total_percentage"] += log.attention_percentage
        entry["last_seen"] = log.timestamp
        if log.attention_state in entry["attention_states"]:
            entry["attention_states"][log.attention_state] += 1
            breakdown[log.attention_state] += 1

        total_percentage += log.attention_percentage

    participant_data = [
        ParticipantAnalytics(
            user_id=entry["user_id"],
            user_name=entry["user_name"],
            total_logs=entry["total_logs"],
            attention_states=entry["attention_states"],
            average_attention=round(entry["total_percentage"] / entry["total_logs"], 2),
            first_seen=entry["first_seen"],
            last_seen=entry["last_seen"],
        )
        for entry in per_user.values()
    ]

    overview = AnalyticsOverview(
        total_logs=len(logs),
        total_participants=len(participant_data),
        average_attention=round(total_percentage / len(logs), 2),
        state_breakdown=breakdown,
    )

    return MeetingAnalytics(
        overview=overview,
        participant_data=participant_data,
        time_series=build_time_series(logs),
        duration=duration,
    )

