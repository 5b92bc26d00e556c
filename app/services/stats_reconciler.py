# app/services/stats_reconciler.py
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.time_utils import utcnow
from app.db.session import rollback_quietly
from app.models.meeting import Meeting, Participant
from app.schemas.attention import (
    ABSENT_STATES,
    ATTENTIVE_STATES,
    DISTRACTED_STATES,
    AttentionState,
    OverallStats,
    empty_state_breakdown,
)

logger = logging.getLogger("attention.stats")

STATE_KEYS = tuple(state.value for state in AttentionState)


# ---------------------------------------------------------------------------
# Pure computations
# ---------------------------------------------------------------------------

def compute_max_concurrent(
    join_times: Sequence[datetime],
    leave_times: Sequence[datetime],
    total_participants: int,
) -> int:
    """
    Peak number of simultaneously present participants.

    When at least half as many leave times as join times are known, sweep
    over the sorted timestamps (a leave at the same instant as a join is
    processed first). Otherwise there is not enough leave data and the
    participant count is used as an estimate.
    """
    joins = sorted(join_times)
    leaves = sorted(leave_times)

    if len(leaves) < len(joins) / 2:
        return total_participants

    current = 0
    peak = 0
    i = j = 0
    while i < len(joins) or j < len(leaves):
        if i >= len(joins) or (j < len(leaves) and leaves[j] <= joins[i]):
            current -= 1
            j += 1
        else:
            current += 1
            peak = max(peak, current)
            i += 1
    return peak


def compute_meeting_duration(
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    now: datetime,
    max_duration: int,
) -> int:
    """
    Whole seconds between start and end (or ``now`` while the meeting is
    running), clamped to ``[0, max_duration]``.
    """
    if start_time is None:
        return 0

    effective_end = end_time or now
    duration = max(0, math.floor((effective_end - start_time).total_seconds()))

    if duration > max_duration:
        logger.warning(
            "Meeting has excessive duration: %ss. Capping to %ss",
            duration,
            max_duration,
        )
        duration = max_duration
    return duration


def sanitize_seconds(value: Any, max_seconds: int) -> int:
    """
    Coerce a stored bucket value to an integer in ``[0, max_seconds]``.

    Non-numeric, NaN and negative values become 0.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and math.isnan(value):
        return 0
    if value < 0:
        return 0
    if value > max_seconds:
        return max_seconds
    return int(value)


@dataclass
class StatsComputation:
    """
    Result of recomputing meeting statistics from participant buckets.
    """

    buckets: list[dict[str, int]]
    state_breakdown: dict[str, int] = field(default_factory=empty_state_breakdown)
    attentive_seconds: int = 0
    distracted_seconds: int = 0
    absent_seconds: int = 0
    total_time: int = 0
    average_attention: float = 0.0
    scale_factor: Optional[float] = None


def _sanitize_bucket(raw: Mapping[str, Any], max_seconds: int, owner: str) -> dict[str, int]:
    bucket: dict[str, int] = {}
    for key in STATE_KEYS:
        value = raw.get(key, 0)
        clean = sanitize_seconds(value, max_seconds)
        if clean != value:
            logger.warning("Corrected %s value for participant %s: %r -> %s", key, owner, value, clean)
        bucket[key] = clean
    return bucket


def _group_total(bucket: Mapping[str, int], states: Sequence[AttentionState]) -> int:
    return sum(bucket[state.value] for state in states)


def compute_attention_totals(
    raw_buckets: Sequence[Mapping[str, Any]],
    meeting_duration: int,
    max_state_seconds: int,
    owners: Sequence[str] | None = None,
) -> StatsComputation:
    """
    Sanitize per-participant buckets, sum them, and correct drift.

    Drift correction
    ----------------
    If the summed recorded time exceeds ``meeting_duration`` (polling
    overcounts wall-clock time), every breakdown entry, every super-bucket
    and every participant bucket is multiplied by
    ``meeting_duration / total_time`` and floored; total time becomes
    ``meeting_duration``.
    """
    owners = owners or [str(index) for index in range(len(raw_buckets))]
    buckets = [
        _sanitize_bucket(raw, max_state_seconds, owner)
        for raw, owner in zip(raw_buckets, owners)
    ]

    breakdown = empty_state_breakdown()
    attentive = distracted = absent = 0
    for bucket in buckets:
        for key in STATE_KEYS:
            breakdown[key] += bucket[key]
        attentive += _group_total(bucket, ATTENTIVE_STATES)
        distracted += _group_total(bucket, DISTRACTED_STATES)
        absent += _group_total(bucket, ABSENT_STATES)

    total_time = attentive + distracted + absent
    scale_factor: Optional[float] = None

    if meeting_duration > 0 and total_time > meeting_duration:
        scale_factor = meeting_duration / total_time

        breakdown = {key: math.floor(value * scale_factor) for key, value in breakdown.items()}
        attentive = math.floor(attentive * scale_factor)
        distracted = math.floor(distracted * scale_factor)
        absent = math.floor(absent * scale_factor)
        total_time = meeting_duration
        buckets = [
            {key: math.floor(value * scale_factor) for key, value in bucket.items()}
            for bucket in buckets
        ]

    average_attention = round(attentive / total_time * 100, 2) if total_time > 0 else 0.0

    return StatsComputation(
        buckets=buckets,
        state_breakdown=breakdown,
        attentive_seconds=attentive,
        distracted_seconds=distracted,
        absent_seconds=absent,
        total_time=total_time,
        average_attention=average_attention,
        scale_factor=scale_factor,
    )


# ---------------------------------------------------------------------------
# Persistence boundary
# ---------------------------------------------------------------------------

def stored_overall_stats(meeting: Meeting) -> OverallStats:
    """
    OverallStats as last persisted on the meeting row.
    """
    breakdown = empty_state_breakdown()
    if meeting.stats_state_breakdown:
        try:
            breakdown.update(json.loads(meeting.stats_state_breakdown))
        except ValueError:
            logger.warning("Unreadable state breakdown stored for meeting %s", meeting.id)

    return OverallStats(
        total_participants=meeting.stats_total_participants or 0,
        max_concurrent_participants=meeting.stats_max_concurrent_participants or 0,
        average_attention=meeting.stats_average_attention or 0.0,
        attentive_seconds=meeting.stats_attentive_seconds or 0,
        distracted_seconds=meeting.stats_distracted_seconds or 0,
        absent_seconds=meeting.stats_absent_seconds or 0,
        state_breakdown=breakdown,
        meeting_duration=meeting.stats_meeting_duration or 0,
        last_reconciled_at=meeting.stats_reconciled_at,
    )


def participant_bucket(participant: Participant) -> dict[str, Any]:
    return {key: getattr(participant, key) for key in STATE_KEYS}


async def _load_fresh(db: AsyncSession, meeting_id: int) -> tuple[Optional[Meeting], list[Participant]]:
    meeting_result = await db.execute(
        select(Meeting)
        .where(Meeting.id == meeting_id)
        .execution_options(populate_existing=True)
    )
    meeting = meeting_result.scalar_one_or_none()
    if meeting is None:
        return None, []

    participants_result = await db.execute(
        select(Participant)
        .where(Participant.meeting_id == meeting_id)
        .order_by(Participant.id.asc())
        .execution_options(populate_existing=True)
    )
    return meeting, list(participants_result.scalars().all())


async def reconcile_meeting_stats(
    db: AsyncSession,
    meeting_id: int,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> Optional[OverallStats]:
    """
    Recompute and persist OverallStats for a meeting from its participants.

    Steps
    -----
    1) Reload the meeting and its participants from the database.
    2) Count participants and compute the concurrency peak.
    3) Compute the clamped meeting duration.
    4) Sanitize buckets, build the breakdown, correct drift.
    5) Overwrite participant buckets and the stats columns.

    Returns
    -------
    OverallStats | None
        The new statistics; the previously stored statistics if anything
        failed after the meeting was read (nothing is persisted then);
        None if the meeting could not be read from storage at all.

    Raises
    ------
    LookupError
        If no meeting exists with ``meeting_id``.
    """
    settings = settings or get_settings()
    now = now or utcnow()

    try:
        meeting, participants = await _load_fresh(db, meeting_id)
    except SQLAlchemyError:
        await rollback_quietly(db)
        logger.exception("Could not load meeting %s for stats calculation", meeting_id)
        return None

    if meeting is None:
        raise LookupError(f"Meeting with id={meeting_id} not found")

    previous = stored_overall_stats(meeting)

    try:
        total_participants = len(participants)
        logger.info(
            "Calculating stats for meeting %s with %d participants",
            meeting_id,
            total_participants,
        )

        max_concurrent = compute_max_concurrent(
            [p.join_time for p in participants if p.join_time],
            [p.leave_time for p in participants if p.leave_time],
            total_participants,
        )
        meeting_duration = compute_meeting_duration(
            meeting.start_time,
            meeting.end_time,
            now,
            settings.MAX_MEETING_DURATION_SECONDS,
        )
        totals = compute_attention_totals(
            [participant_bucket(p) for p in participants],
            meeting_duration,
            settings.MAX_STATE_SECONDS,
            owners=[p.user_id for p in participants],
        )
        if totals.scale_factor is not None:
            logger.info(
                "Scaling attention data of meeting %s by factor %s to match meeting duration",
                meeting_id,
                totals.scale_factor,
            )

        stats = OverallStats(
            total_participants=total_participants,
            max_concurrent_participants=max_concurrent,
            average_attention=totals.average_attention,
            attentive_seconds=totals.attentive_seconds,
            distracted_seconds=totals.distracted_seconds,
            absent_seconds=totals.absent_seconds,
            state_breakdown=totals.state_breakdown,
            meeting_duration=meeting_duration,
            last_reconciled_at=now,
        )

        for participant, bucket in zip(participants, totals.buckets):
            await db.execute(
                update(Participant)
                .where(Participant.id == participant.id)
                .values(**bucket)
                .execution_options(synchronize_session=False)
            )

        await db.execute(
            update(Meeting)
            .where(Meeting.id == meeting_id)
            .values(
                stats_total_participants=stats.total_participants,
                stats_max_concurrent_participants=stats.max_concurrent_participants,
                stats_average_attention=stats.average_attention,
                stats_attentive_seconds=stats.attentive_seconds,
                stats_distracted_seconds=stats.distracted_seconds,
                stats_absent_seconds=stats.absent_seconds,
                stats_state_breakdown=json.dumps(stats.state_breakdown),
                stats_meeting_duration=stats.meeting_duration,
                stats_reconciled_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await rollback_quietly(db)
        logger.exception("Error calculating stats for meeting %s", meeting_id)
        return previous

    logger.info(
        "Stats calculation complete for meeting %s: attention=%s%% duration=%ss",
        meeting_id,
        stats.average_attention,
        stats.meeting_duration,
    )
    return stats
