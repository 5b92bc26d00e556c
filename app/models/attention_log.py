# app/models/attention_log.py
from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text

from app.core.time_utils import utcnow
from app.db.base import Base


class AttentionLog(Base):
    """
    Raw, append-only attention event as reported by a detector.

    Kept independently of the meeting aggregate; only the analytics
    projection reads it.
    """

    __tablename__ = "attention_logs"

    id = Column(Integer, primary_key=True, index=True)

    meeting_id = Column(
        Integer,
        ForeignKey("meetings.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(String(128), nullable=False, index=True)
    user_name = Column(String(255), nullable=False, default="Anonymous")

    attention_state = Column(String(32), nullable=False)
    attention_percentage = Column(Float, nullable=False, default=0.0)
    confidence = Column(Float, nullable=False, default=0.0)
    # JSON-encoded detector measurements
    measurements = Column(Text, nullable=True)

    session_id = Column(String(128), nullable=False)
    room_id = Column(String(128), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_attention_logs_meeting_timestamp", "meeting_id", "timestamp"),
        Index("ix_attention_logs_meeting_user_timestamp", "meeting_id", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<AttentionLog id={self.id} meeting_id={self.meeting_id} "
            f"user_id={self.user_id} state={self.attention_state}>"
        )
