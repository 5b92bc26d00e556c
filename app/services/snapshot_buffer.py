# app/services/snapshot_buffer.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.meeting import AttentionSnapshot
from app.schemas.attention import AttentionState

logger = logging.getLogger("attention.snapshots")


@dataclass(frozen=True)
class SnapshotEntry:
    user_id: str
    state: AttentionState
    timestamp: datetime


class SnapshotBuffer:
    """
    Meeting-wide, capped, insertion-ordered log of attention transitions.

    Responsibilities
    ----------------
    - Decide which participants changed state since the last call.
    - Append new transitions as push-then-truncate-to-last-N, so the buffer
      never holds more than ``cap`` rows once an append returns.
    - Expose the last recorded timestamp for the time accumulator.

    Notes
    -----
    - Row ids give the buffer order; the oldest rows are dropped first.
    - Each append commits on its own; nothing spans two appends.
    """

    def __init__(self, db: AsyncSession, cap: int) -> None:
        self._db = db
        self._cap = cap

    @property
    def cap(self) -> int:
        return self._cap

    @staticmethod
    def detect_transitions(
        last_states: Optional[Mapping[str, AttentionState]],
        current_states: Mapping[str, AttentionState],
    ) -> list[str]:
        """
        Return user ids (in input order) whose state differs from the last
        known one. Users missing from ``last_states`` count as a transition.
        """
        if not last_states:
            return list(current_states)
        return [
            user_id
            for user_id, state in current_states.items()
            if last_states.get(user_id) != state
        ]

    async def last_timestamp(self, meeting_id: int) -> Optional[datetime]:
        stmt = (
            select(AttentionSnapshot.timestamp)
            .where(AttentionSnapshot.meeting_id == meeting_id)
            .order_by(AttentionSnapshot.id.desc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def count(self, meeting_id: int) -> int:
        stmt = select(func.count(AttentionSnapshot.id)).where(
            AttentionSnapshot.meeting_id == meeting_id
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())

    async def list_for_meeting(self, meeting_id: int) -> list[AttentionSnapshot]:
        stmt = (
            select(AttentionSnapshot)
            .where(AttentionSnapshot.meeting_id == meeting_id)
            .order_by(AttentionSnapshot.id.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _truncate(self, meeting_id: int) -> int:
        newest = (
            select(AttentionSnapshot.id)
            .where(AttentionSnapshot.meeting_id == meeting_id)
            .order_by(AttentionSnapshot.id.desc())
            .limit(self._cap)
        )
        stmt = (
            delete(AttentionSnapshot)
            .where(
                AttentionSnapshot.meeting_id == meeting_id,
                AttentionSnapshot.id.not_in(newest),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount or 0

    async def trim(self, meeting_id: int) -> int:
        """
        Drop the oldest rows if the buffer currently exceeds the cap.

        Returns the number of rows removed.
        """
        current = await self.count(meeting_id)
        if current <= self._cap:
            return 0

        logger.info(
            "Trimming attention snapshots for meeting %s. Current count: %s, cap: %s",
            meeting_id,
            current,
            self.cap,
        )
        removed = await self._truncate(meeting_id)
        await self._db.commit()
        return removed

    async def append(self, meeting_id: int, entries: Sequence[SnapshotEntry]) -> None:
        """
        Push ``entries`` then truncate the buffer to its newest ``cap`` rows,
        in a single commit.
        """
        if not entries:
            return

        self._db.add_all(
            AttentionSnapshot(
                meeting_id=meeting_id,
                user_id=entry.user_id,
                attention_state=entry.state.value,
                timestamp=entry.timestamp,
            )
            for entry in entries
        )
        await self._db.flush()
        await self._truncate(meeting_id)
        await self._db.commit()


def group_by_user(snapshots: Iterable[AttentionSnapshot]) -> dict[str, list[AttentionSnapshot]]:
    grouped: dict[str, list[AttentionSnapshot]] = {}
    for snapshot in snapshots:
        grouped.setdefault(snapshot.user_id, []).append(snapshot)
    return grouped
