# app/schemas/attention.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AttentionState(str, Enum):
    """
    Closed set of canonical attention states reported by detectors.
    """

    ATTENTIVE = "attentive"
    ACTIVE = "active"
    LOOKING_AWAY = "looking_away"
    DROWSY = "drowsy"
    ABSENT = "absent"
    DARKNESS = "darkness"


ATTENTIVE_STATES = (AttentionState.ATTENTIVE, AttentionState.ACTIVE)
DISTRACTED_STATES = (AttentionState.LOOKING_AWAY, AttentionState.DROWSY)
ABSENT_STATES = (AttentionState.ABSENT, AttentionState.DARKNESS)


def empty_state_breakdown() -> dict[str, int]:
    return {state.value: 0 for state in AttentionState}


class OverallStats(BaseModel):
    """
    Meeting-wide derived statistics.

    Always recomputable from the participant buckets; the reconciler
    rewrites it wholesale on every pass.
    """

    total_participants: int = Field(0, ge=0, example=3)
    max_concurrent_participants: int = Field(0, ge=0, example=2)
    average_attention: float = Field(
        0.0,
        ge=0.0,
        le=100.0,
        description="Share of attentive time over all recorded time, in percent (2 dp).",
        example=72.5,
    )
    attentive_seconds: int = Field(0, ge=0, description="attentive + active seconds.")
    distracted_seconds: int = Field(0, ge=0, description="looking_away + drowsy seconds.")
    absent_seconds: int = Field(0, ge=0, description="absent + darkness seconds.")
    state_breakdown: dict[str, int] = Field(
        default_factory=empty_state_breakdown,
        description="Seconds per canonical attention state across all participants.",
    )
    meeting_duration: int = Field(
        0,
        ge=0,
        description="Elapsed meeting time in seconds, clamped to the configured maximum.",
        example=3600,
    )
    last_reconciled_at: datetime | None = Field(
        None,
        description="When these statistics were last recomputed (UTC).",
    )


class SnapshotRead(BaseModel):
    """
    A recorded attention state transition.
    """

    user_id: str = Field(..., example="socket-7f3a")
    attention_state: AttentionState = Field(..., example="attentive")
    timestamp: datetime = Field(..., example="2025-01-01T10:30:05")

    class Config:
        from_attributes = True


class ParticipantRead(BaseModel):
    """
    Public representation of a meeting participant and their accumulated
    seconds per attention state.
    """

    user_id: str = Field(..., example="socket-7f3a")
    name: str = Field(..., example="Anonymous")
    role: str = Field(..., example="student")
    join_time: datetime | None = None
    leave_time: datetime | None = None
    attention_data: dict[str, int] = Field(
        default_factory=empty_state_breakdown,
        description="Accumulated seconds per canonical attention state.",
    )
    snapshots: list[SnapshotRead] = Field(
        default_factory=list,
        description="This participant's state transitions still held in the meeting buffer.",
    )


class MeetingCreate(BaseModel):
    """
    Schema for starting a new monitored meeting.
    """

    room_id: str = Field(
        ...,
        min_length=1,
        description="Unique room identifier used by the conferencing frontend.",
        example="room-42",
    )
    title: str = Field(default="Untitled Class", example="Linear Algebra – Week 3")
    creator_name: str | None = Field(default=None, example="Dr. Ada")
    start_time: datetime | None = Field(
        default=None,
        description="Session start (UTC). Defaults to the server's current time.",
    )


class MeetingEnd(BaseModel):
    """
    Optional payload for ending a meeting.
    """

    end_time: datetime | None = Field(
        default=None,
        description="Session end (UTC). Defaults to the server's current time.",
    )


class MeetingRead(BaseModel):
    """
    Response schema for a meeting, its participants and stored statistics.
    """

    id: int = Field(..., example=1)
    room_id: str = Field(..., example="room-42")
    title: str = Field(..., example="Untitled Class")
    creator_name: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    is_active: bool = True
    participants: list[ParticipantRead] = Field(default_factory=list)
    snapshot_count: int = Field(
        0,
        description="Number of snapshots currently held in the meeting-wide buffer.",
    )
    overall_stats: OverallStats = Field(default_factory=OverallStats)


class AttentionIngestRequest(BaseModel):
    """
    One batch of raw per-participant attention signals for a meeting.

    Each value is either a bare state string or an object carrying the state
    under ``attentionState``, ``state`` or ``data.attentionState`` /
    ``data.state``.
    """

    signals: dict[str, Any] = Field(
        ...,
        description="Mapping of userId to raw signal.",
        example={
            "socket-7f3a": "attentive",
            "socket-9b21": {"attentionState": "Looking Away"},
            "socket-c0d4": {"data": {"state": "drowsy"}},
        },
    )
    timestamp: datetime | None = Field(
        default=None,
        description="Call timestamp (UTC). Defaults to the server's current time.",
    )


class AttentionIngestResponse(BaseModel):
    """
    Result of an ingestion call. ``success=False`` means the sample was
    dropped (backpressure or internal failure); callers simply continue.
    """

    success: bool = Field(..., example=True)


class ParticipantLeave(BaseModel):
    leave_time: datetime | None = Field(
        default=None,
        description="When the participant left (UTC). Defaults to now.",
    )
