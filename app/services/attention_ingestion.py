# app/services/attention_ingestion.py
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.time_utils import to_naive_utc, truncate_to_second, utcnow
from app.db.session import rollback_quietly
from app.models.meeting import Meeting
from app.schemas.attention import AttentionState
from app.services.backpressure import BackpressureGuard
from app.services.batch_mutator import BatchMutator
from app.services.snapshot_buffer import SnapshotBuffer, SnapshotEntry
from app.services.state_normalizer import StateNormalizer
from app.services.time_accumulator import compute_time_increment

logger = logging.getLogger("attention.ingestion")

PROGRESS_LOG_INTERVAL = timedelta(seconds=50)


@dataclass
class MeetingIngestionState:
    """
    Process-local bookkeeping for one meeting's ingestion.
    """

    last_states: dict[str, AttentionState] = field(default_factory=dict)
    last_progress_log_at: Optional[datetime] = None


class IngestionStateTable:
    """
    In-memory side state keyed by meeting id.

    Entries are created on first use and discarded when the meeting ends.
    They are never persisted and never attached to ORM instances.

    The table holds at most ``max_meetings`` entries; the least recently
    used one is evicted first. An evicted meeting simply starts over: its
    next signal from every participant counts as a transition.
    """

    def __init__(self, max_meetings: int = 1000) -> None:
        self._max_meetings = max(1, max_meetings)
        self._meetings: OrderedDict[int, MeetingIngestionState] = OrderedDict()

    def get(self, meeting_id: int) -> MeetingIngestionState:
        state = self._meetings.get(meeting_id)
        if state is None:
            state = MeetingIngestionState()
            self._meetings[meeting_id] = state
            while len(self._meetings) > self._max_meetings:
                evicted, _ = self._meetings.popitem(last=False)
                logger.info("Evicted ingestion state of meeting %s", evicted)
        else:
            self._meetings.move_to_end(meeting_id)
        return state

    def discard(self, meeting_id: int) -> None:
        self._meetings.pop(meeting_id, None)

    def __contains__(self, meeting_id: object) -> bool:
        return meeting_id in self._meetings

    def __len__(self) -> int:
        return len(self._meetings)


class AttentionIngestionService:
    """
    Public ingestion call: one batch of raw per-participant signals for one
    meeting.

    Flow
    ----
    1) Backpressure guard (may drop the whole call, nothing is touched).
    2) Normalize every signal; unrecognized entries are skipped.
    3) Trim the snapshot buffer, derive the shared time increment.
    4) Register / increment / append snapshots through the batch mutator.

    ``ingest`` never raises: it returns False when the sample was dropped
    or failed, True otherwise.
    """

    def __init__(
        self,
        guard: BackpressureGuard,
        state_table: IngestionStateTable,
        settings: Settings | None = None,
    ) -> None:
        self._guard = guard
        self._state_table = state_table
        self._settings = settings or get_settings()

    @staticmethod
    def validate(signals: Mapping[str, Any]) -> dict[str, AttentionState]:
        """
        Normalize raw signals, dropping entries with no usable user id or
        an unrecognized state.
        """
        valid: dict[str, AttentionState] = {}
        for user_id, raw in signals.items():
            if not user_id or user_id == "undefined":
                continue
            state = StateNormalizer.normalize(raw)
            if state is None:
                logger.debug("Skipping unrecognized attention signal for user %s: %r", user_id, raw)
                continue
            valid[user_id] = state
        return valid

    def _log_progress(self, meeting_id: int, session: MeetingIngestionState, timestamp: datetime) -> None:
        last = session.last_progress_log_at
        if last is None or timestamp - last > PROGRESS_LOG_INTERVAL:
            logger.info(
                "Processing attention snapshot for meeting %s at %s",
                meeting_id,
                timestamp.isoformat(),
            )
            session.last_progress_log_at = timestamp

    async def _meeting_activity(self, db: AsyncSession, meeting_id: int) -> Optional[bool]:
        """
        ``is_active`` of the meeting, or None if it does not exist.
        """
        result = await db.execute(select(Meeting.is_active).where(Meeting.id == meeting_id))
        return result.scalar_one_or_none()

    async def ingest(
        self,
        db: AsyncSession,
        meeting_id: int,
        signals: Mapping[str, Any],
        timestamp: datetime | None = None,
    ) -> bool:
        try:
            if self._guard.should_drop():
                return False

            call_time = truncate_to_second(to_naive_utc(timestamp or utcnow()))

            valid = self.validate(signals)
            if not valid:
                return True

            is_active = await self._meeting_activity(db, meeting_id)
            if is_active is None:
                logger.warning("Attention signals for unknown meeting %s dropped", meeting_id)
                return False

            session = self._state_table.get(meeting_id)
            self._log_progress(meeting_id, session, call_time)

            buffer = SnapshotBuffer(db, cap=self._settings.SNAPSHOT_BUFFER_CAP)
            await buffer.trim(meeting_id)

            increment = compute_time_increment(await buffer.last_timestamp(meeting_id), call_time)

            transitions = [
                SnapshotEntry(user_id=user_id, state=valid[user_id], timestamp=call_time)
                for user_id in SnapshotBuffer.detect_transitions(session.last_states, valid)
            ]

            mutator = BatchMutator(
                db,
                buffer,
                max_state_seconds=self._settings.MAX_STATE_SECONDS,
                write_batch=self._settings.SNAPSHOT_WRITE_BATCH,
            )
            await mutator.apply(
                meeting_id,
                states=valid,
                transitions=transitions,
                increment=increment,
                timestamp=call_time,
            )

            session.last_states = valid
            if not is_active:
                # late signals for an ended meeting keep no side state
                self._state_table.discard(meeting_id)
            return True
        except SQLAlchemyError:
            await rollback_quietly(db)
            logger.exception("Storage failure while saving attention snapshot for meeting %s", meeting_id)
            return False
        except Exception:
            await rollback_quietly(db)
            logger.exception("Error in attention ingestion for meeting %s", meeting_id)
            return False
