from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence


HISTORY_CAPACITY = 50

_ONLINE = "online"
_OFFLINE = "offline"


@dataclass(frozen=True)
class Observation:
    """One completed probe. Status is online or offline, never unknown."""

    timestamp: str
    status: str
    response_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "status": self.status, "responseTime": self.response_time}


def coerce_history(raw: Any) -> list[Observation]:
    """
    Best-effort decode for a history list loaded from the machines file.
    Invalid entries are skipped; stored order is kept since it is the chronological order.
    """
    if not isinstance(raw, list):
        return []

    out: list[Observation] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        status = item.get("status")
        if status not in (_ONLINE, _OFFLINE):
            continue
        ts = str(item.get("timestamp") or "").strip()
        if not ts:
            continue

        response_time = None
        value = item.get("responseTime")
        if value is not None and not isinstance(value, bool):
            try:
                response_time = float(value)
            except Exception:
                response_time = None

        out.append(Observation(timestamp=ts, status=status, response_time=response_time))
    return out


def record_observation(
    history: list[Observation],
    observation: Observation,
    *,
    capacity: int = HISTORY_CAPACITY,
) -> None:
    # Appends at the tail, evicts from the head. Never reorders.
    capacity = max(1, int(capacity))
    history.append(observation)
    overflow = len(history) - capacity
    if overflow > 0:
        del history[:overflow]


def compute_availability(history: Sequence[Observation]) -> tuple[int, int]:
    """Returns (total, online_count)."""
    total = len(history)
    online = sum(1 for obs in history if obs.status == _ONLINE)
    return total, online


def compute_uptime_percentage(history: Sequence[Observation]) -> int:
    total, online = compute_availability(history)
    if total <= 0:
        return 0
    # Half-up rounding, so 12.5 -> 13 rather than banker's 12.
    return int(math.floor((online * 100.0 / total) + 0.5))
