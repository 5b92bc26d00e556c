# app/services/time_accumulator.py
from __future__ import annotations

import logging
from datetime import datetime
from math import floor

logger = logging.getLogger("attention.time")

DEFAULT_INCREMENT_SECONDS = 5
MAX_TRUSTED_GAP_SECONDS = 10
GAP_INCREMENT_SECONDS = 1


def compute_time_increment(
    last_snapshot_at: datetime | None,
    now: datetime,
) -> int:
    """
    Seconds of dwell time credited to every participant updated by one
    ingestion call.

    Rules
    -----
    - No previous snapshot              => DEFAULT_INCREMENT_SECONDS (5)
    - 1 <= gap <= 10                    => gap
    - gap > 10 (reconnect, pause, skew) => GAP_INCREMENT_SECONDS (1)
    - gap <= 0                          => DEFAULT_INCREMENT_SECONDS (5)

    ``gap`` is the whole number of seconds between the last meeting-wide
    snapshot and ``now``.
    """
    if last_snapshot_at is None:
        return DEFAULT_INCREMENT_SECONDS

    gap = floor((now - last_snapshot_at).total_seconds())

    if 1 <= gap <= MAX_TRUSTED_GAP_SECONDS:
        return gap

    if gap > MAX_TRUSTED_GAP_SECONDS:
        logger.warning(
            "Large time gap detected: %ss, capping increment at %ss",
            gap,
            GAP_INCREMENT_SECONDS,
        )
        return GAP_INCREMENT_SECONDS

    logger.warning(
        "Unusual time increment detected: %ss, using default: %ss",
        gap,
        DEFAULT_INCREMENT_SECONDS,
    )
    return DEFAULT_INCREMENT_SECONDS
