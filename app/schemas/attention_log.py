# app/schemas/attention_log.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.schemas.attention import empty_state_breakdown


class Measurements(BaseModel):
    """
    Detector measurements attached to a raw attention event.
    """

    brightness: float | None = None
    contrast: float | None = None
    face_presence: float | None = None
    eye_openness: float | None = None
    looking_score: float | None = None


class AttentionLogCreate(BaseModel):
    """
    Raw attention event posted by the attention detector.
    """

    meeting_id: int = Field(..., ge=1, example=1)
    user_id: str = Field(..., min_length=1, example="socket-7f3a")
    user_name: str | None = Field(default=None, example="Grace")
    attention_state: str = Field(
        ...,
        min_length=1,
        description="Raw state label; must normalize to a canonical attention state.",
        example="looking away",
    )
    attention_percentage: float = Field(default=0.0, ge=0.0, le=100.0, example=64.0)
    confidence: float = Field(default=0.0, ge=0.0, le=100.0, example=88.0)
    measurements: Measurements | None = None
    session_id: str = Field(..., min_length=1, example="sess-1")
    room_id: str = Field(..., min_length=1, example="room-42")


class AttentionLogCreated(BaseModel):
    success: bool = Field(..., example=True)
    message: str = Field(..., example="Log stored successfully")


class ParticipantAnalytics(BaseModel):
    """
    Per-participant projection of the raw attention log.
    """

    user_id: str
    user_name: str
    total_logs: int
    attention_states: dict[str, int] = Field(
        ...,
        description="Number of log entries per canonical attention state.",
    )
    average_attention: float = Field(..., description="Mean attention percentage (2 dp).")
    first_seen: datetime
    last_seen: datetime


class AnalyticsOverview(BaseModel):
    total_logs: int = 0
    total_participants: int = 0
    average_attention: float = 0.0
    state_breakdown: dict[str, int] = Field(default_factory=empty_state_breakdown)


class TimeSeriesPoint(BaseModel):
    """
    Share of log entries per state (percent, 2 dp) within one minute.
    """

    timestamp: datetime
    attentive: float = 0.0
    active: float = 0.0
    looking_away: float = 0.0
    drowsy: float = 0.0
    absent: float = 0.0
    darkness: float = 0.0


class MeetingAnalytics(BaseModel):
    """
    Analytics computed from the raw attention log of a meeting,
    independently of the meeting's reconciled statistics.
    """

    overview: AnalyticsOverview
    participant_data: list[ParticipantAnalytics] = Field(default_factory=list)
    time_series: list[TimeSeriesPoint] = Field(default_factory=list)
    duration: int = Field(0, description="Meeting duration in seconds (clamped).")
