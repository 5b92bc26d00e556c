# app/services/batch_mutator.py
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.meeting import Participant
from app.schemas.attention import AttentionState
from app.services.snapshot_buffer import SnapshotBuffer, SnapshotEntry

logger = logging.getLogger("attention.mutator")


class BatchMutator:
    """
    Applies one ingestion call to storage as three coalesced steps, always in
    this order:

    1) register participants not seen before in the meeting;
    2) add the shared time increment to each participant's current state
       bucket (one bounded atomic UPDATE per state);
    3) append transition snapshots in sub-batches of ``write_batch``.

    Each step commits on its own and is safe to retry or drop without
    corrupting the others. A failure in a later step does not undo an
    earlier one.
    """

    def __init__(
        self,
        db: AsyncSession,
        buffer: SnapshotBuffer,
        max_state_seconds: int,
        write_batch: int,
    ) -> None:
        self._db = db
        self._buffer = buffer
        self._max_state_seconds = max_state_seconds
        self._write_batch = max(1, write_batch)

    async def _existing_user_ids(self, meeting_id: int, user_ids: Iterable[str]) -> set[str]:
        stmt = select(Participant.user_id).where(
            Participant.meeting_id == meeting_id,
            Participant.user_id.in_(list(user_ids)),
        )
        result = await self._db.execute(stmt)
        return set(result.scalars().all())

    async def _insert_missing(
        self,
        meeting_id: int,
        user_ids: Sequence[str],
        joined_at: datetime,
    ) -> list[str]:
        existing = await self._existing_user_ids(meeting_id, user_ids)
        missing = [user_id for user_id in user_ids if user_id not in existing]
        if not missing:
            return []

        self._db.add_all(
            Participant(
                meeting_id=meeting_id,
                user_id=user_id,
                name="Anonymous",
                role="student",
                join_time=joined_at,
                **{state.value: 0 for state in AttentionState},
            )
            for user_id in missing
        )
        await self._db.commit()
        return missing

    async def register_participants(
        self,
        meeting_id: int,
        user_ids: Sequence[str],
        joined_at: datetime,
    ) -> list[str]:
        """
        Insert a zeroed participant for every unseen user id.

        Insert-if-absent: if a concurrent call registered some of the same
        users first, the unique constraint rejects our batch, and we retry
        once with the users that are still missing.
        """
        if not user_ids:
            return []

        try:
            registered = await self._insert_missing(meeting_id, user_ids, joined_at)
        except IntegrityError:
            await self._db.rollback()
            logger.info(
                "Concurrent participant registration in meeting %s, retrying",
                meeting_id,
            )
            registered = await self._insert_missing(meeting_id, user_ids, joined_at)

        if registered:
            logger.debug("Registered %d participant(s) in meeting %s", len(registered), meeting_id)
        return registered

    async def apply_increments(
        self,
        meeting_id: int,
        states: Mapping[str, AttentionState],
        increment: int,
    ) -> None:
        """
        ``bucket = min(bucket + increment, max_state_seconds)`` for each
        participant's current state, evaluated by the database.
        """
        if not states or increment <= 0:
            return

        users_by_state: dict[AttentionState, list[str]] = defaultdict(list)
        for user_id, state in states.items():
            users_by_state[state].append(user_id)

        for state, user_ids in users_by_state.items():
            column = getattr(Participant, state.value)
            bumped = column + increment
            stmt = (
                update(Participant)
                .where(
                    Participant.meeting_id == meeting_id,
                    Participant.user_id.in_(user_ids),
                )
                .values(
                    {
                        state.value: case(
                            (bumped > self._max_state_seconds, self._max_state_seconds),
                            else_=bumped,
                        )
                    }
                )
                .execution_options(synchronize_session=False)
            )
            await self._db.execute(stmt)

        await self._db.commit()

    async def append_snapshots(self, meeting_id: int, entries: Sequence[SnapshotEntry]) -> None:
        for start in range(0, len(entries), self._write_batch):
            await self._buffer.append(meeting_id, entries[start:start + self._write_batch])

    async def apply(
        self,
        meeting_id: int,
        states: Mapping[str, AttentionState],
        transitions: Sequence[SnapshotEntry],
        increment: int,
        timestamp: datetime,
    ) -> None:
        """
        Run the three steps for one validated batch. An empty batch is a no-op.
        """
        if not states:
            return

        await self.register_participants(meeting_id, list(states), timestamp)
        await self.apply_increments(meeting_id, states, increment)
        await self.append_snapshots(meeting_id, transitions)
