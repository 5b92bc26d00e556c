# app/models/meeting.py
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.time_utils import utcnow
from app.db.base import Base


class Meeting(Base):
    """
    Aggregate root for a live session: participants, the meeting-wide
    attention snapshot buffer and the last reconciled overall statistics.

    The ``stats_*`` columns are derived data. They are rewritten wholesale
    by the stats reconciler and never patched incrementally.
    """

    __tablename__ = "meetings"

    id = Column(Integer, primary_key=True, index=True)

    room_id = Column(String(128), nullable=False, unique=True, index=True)
    title = Column(String(255), nullable=False, default="Untitled Class")
    creator_name = Column(String(255), nullable=True)

    start_time = Column(DateTime, nullable=False, default=utcnow)
    end_time = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    stats_total_participants = Column(Integer, nullable=False, default=0)
    stats_max_concurrent_participants = Column(Integer, nullable=False, default=0)
    stats_average_attention = Column(Float, nullable=False, default=0.0)
    stats_attentive_seconds = Column(Integer, nullable=False, default=0)
    stats_distracted_seconds = Column(Integer, nullable=False, default=0)
    stats_absent_seconds = Column(Integer, nullable=False, default=0)
    # JSON-encoded {state: seconds}
    stats_state_breakdown = Column(Text, nullable=True)
    stats_meeting_duration = Column(Integer, nullable=False, default=0)
    stats_reconciled_at = Column(DateTime, nullable=True)

    participants = relationship(
        "Participant",
        back_populates="meeting",
        order_by="Participant.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Meeting id={self.id} room_id={self.room_id} "
            f"active={self.is_active} participants={len(self.participants or [])}>"
        )


class Participant(Base):
    """
    A participant of a meeting with accumulated seconds per attention state.

    One integer column per canonical attention state; the column names match
    ``AttentionState`` values so storage updates can address them by state.
    """

    __tablename__ = "meeting_participants"

    id = Column(Integer, primary_key=True, index=True)

    meeting_id = Column(
        Integer,
        ForeignKey("meetings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id = Column(String(128), nullable=False)
    name = Column(String(255), nullable=False, default="Anonymous")
    role = Column(String(32), nullable=False, default="student")
    join_time = Column(DateTime, nullable=True)
    leave_time = Column(DateTime, nullable=True)

    attentive = Column(Integer, nullable=False, default=0)
    active = Column(Integer, nullable=False, default=0)
    looking_away = Column(Integer, nullable=False, default=0)
    drowsy = Column(Integer, nullable=False, default=0)
    absent = Column(Integer, nullable=False, default=0)
    darkness = Column(Integer, nullable=False, default=0)

    meeting = relationship("Meeting", back_populates="participants")

    __table_args__ = (
        UniqueConstraint(
            "meeting_id",
            "user_id",
            name="uq_meeting_participants_meeting_user",
        ),
    )

    def __repr__(self) -> str:
        return f"<Participant id={self.id} meeting_id={self.meeting_id} user_id={self.user_id}>"


class AttentionSnapshot(Base):
    """
    A recorded state transition of one participant at one instant.

    Rows belong to the meeting-wide buffer; they are only ever removed by
    the buffer cap, oldest first.
    """

    __tablename__ = "attention_snapshots"

    id = Column(Integer, primary_key=True, index=True)

    meeting_id = Column(
        Integer,
        ForeignKey("meetings.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(String(128), nullable=False)
    attention_state = Column(String(32), nullable=False)
    timestamp = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_attention_snapshots_meeting_id_id", "meeting_id", "id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AttentionSnapshot id={self.id} meeting_id={self.meeting_id} "
            f"user_id={self.user_id} state={self.attention_state}>"
        )
