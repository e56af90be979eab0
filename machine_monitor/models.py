from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from machine_monitor.history import Observation, coerce_history, compute_uptime_percentage


STATUS_UNKNOWN = "unknown"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
MACHINE_STATUSES = (STATUS_UNKNOWN, STATUS_ONLINE, STATUS_OFFLINE)

ALERT_DOWN = "down"
ALERT_UP = "up"
ALERT_SLOW = "slow"
ALERT_TYPES = (ALERT_DOWN, ALERT_UP, ALERT_SLOW)

DEFAULT_CATEGORY = "Server"
# Open set: anything else is accepted as-is.
MACHINE_CATEGORIES = (
    "Server",
    "Router",
    "Switch",
    "Firewall",
    "Workstation",
    "Printer",
    "Database",
    "Web Server",
    "Application Server",
    "Load Balancer",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _IdClock:
    """Millisecond ids that never repeat or go backwards within the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def next_id(self) -> str:
        with self._lock:
            now_ms = int(time.time() * 1000)
            self._last = max(now_ms, self._last + 1)
            return str(self._last)


_ID_CLOCK = _IdClock()


def new_id() -> str:
    return _ID_CLOCK.next_id()


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except Exception:
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass(frozen=True)
class ProbeOutcome:
    reachable: bool
    latency_ms: float | None = None


@dataclass(frozen=True)
class ProbeResult:
    """What a probe produced for one host, after transport errors were collapsed."""

    host: str
    outcome: ProbeOutcome
    timestamp: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "alive": self.outcome.reachable,
            "time": self.outcome.latency_ms,
            "timestamp": self.timestamp,
            "host": self.host,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class Machine:
    id: str
    name: str
    host: str
    description: str = ""
    category: str = DEFAULT_CATEGORY
    status: str = STATUS_UNKNOWN
    last_check: str | None = None
    response_time: float | None = None
    history: list[Observation] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def uptime_percentage(self) -> int:
        return compute_uptime_percentage(self.history)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "description": self.description,
            "category": self.category,
            "status": self.status,
            "lastCheck": self.last_check,
            "responseTime": self.response_time,
            "history": [obs.to_dict() for obs in self.history],
            "uptimePercentage": self.uptime_percentage,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, history_capacity: int | None = None) -> Machine:
        """
        Best-effort decode of a persisted machine record.
        A stored uptimePercentage is ignored; it is always derived from history.
        """
        machine_id = _optional_str(raw.get("id"))
        host = _optional_str(raw.get("host"))
        if not machine_id or not host:
            raise ValueError("machine record requires id and host")

        status = str(raw.get("status") or STATUS_UNKNOWN)
        if status not in MACHINE_STATUSES:
            status = STATUS_UNKNOWN

        history = coerce_history(raw.get("history"))
        if history_capacity is not None and len(history) > history_capacity:
            history = history[-history_capacity:]

        return cls(
            id=machine_id,
            name=str(raw.get("name") or host),
            host=host,
            description=str(raw.get("description") or ""),
            category=_optional_str(raw.get("category")) or DEFAULT_CATEGORY,
            status=status,
            last_check=_optional_str(raw.get("lastCheck")),
            response_time=_optional_float(raw.get("responseTime")),
            history=history,
            created_at=_optional_str(raw.get("createdAt")) or utc_now_iso(),
        )


@dataclass
class Alert:
    id: str
    machine_id: str
    machine_name: str  # snapshot at creation, not kept in sync with renames
    type: str
    message: str
    timestamp: str = field(default_factory=utc_now_iso)
    acknowledged: bool = False
    acknowledged_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "machineId": self.machine_id,
            "machineName": self.machine_name,
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged,
        }
        if self.acknowledged_at is not None:
            data["acknowledgedAt"] = self.acknowledged_at
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Alert:
        alert_id = _optional_str(raw.get("id"))
        alert_type = str(raw.get("type") or "")
        if not alert_id or alert_type not in ALERT_TYPES:
            raise ValueError("alert record requires id and a known type")
        acknowledged = raw.get("acknowledged") is True
        return cls(
            id=alert_id,
            machine_id=str(raw.get("machineId") or ""),
            machine_name=str(raw.get("machineName") or ""),
            type=alert_type,
            message=str(raw.get("message") or ""),
            timestamp=_optional_str(raw.get("timestamp")) or utc_now_iso(),
            acknowledged=acknowledged,
            acknowledged_at=_optional_str(raw.get("acknowledgedAt")) if acknowledged else None,
        )
