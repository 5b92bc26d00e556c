# app/services/state_normalizer.py
from __future__ import annotations

from typing import Any, Mapping, Optional

from app.schemas.attention import AttentionState


_ALIASES: dict[str, AttentionState] = {
    "attentive": AttentionState.ATTENTIVE,
    "active": AttentionState.ACTIVE,
    "looking_away": AttentionState.LOOKING_AWAY,
    "lookingaway": AttentionState.LOOKING_AWAY,
    "looking away": AttentionState.LOOKING_AWAY,
    "drowsy": AttentionState.DROWSY,
    "absent": AttentionState.ABSENT,
    "darkness": AttentionState.DARKNESS,
}

_STATE_KEYS = ("attentionState", "state")


class StateNormalizer:
    """
    Maps raw detector payloads to a canonical AttentionState.

    Rules
    -----
    - A bare string is used as-is.
    - A mapping is searched, in order, at ``attentionState``, ``state``,
      ``data.attentionState`` and ``data.state``; the first non-empty value
      wins.
    - The candidate is lowercased and trimmed, then looked up in the alias
      table.
    - Anything else (missing, empty, unknown alias, other payload types)
      yields None.
    """

    @staticmethod
    def extract_candidate(raw: Any) -> Optional[Any]:
        if isinstance(raw, str):
            return raw

        if not isinstance(raw, Mapping):
            return None

        for key in _STATE_KEYS:
            if raw.get(key):
                return raw[key]

        nested = raw.get("data")
        if isinstance(nested, Mapping):
            for key in _STATE_KEYS:
                if nested.get(key):
                    return nested[key]

        return None

    @staticmethod
    def normalize(raw: Any) -> Optional[AttentionState]:
        """
        Return the canonical state for ``raw`` or None if it is not recognized.
        """
        candidate = StateNormalizer.extract_candidate(raw)
        if not candidate:
            return None

        return _ALIASES.get(str(candidate).lower().strip())
