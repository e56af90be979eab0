from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Iterable

import structlog

from machine_monitor.errors import NotFound
from machine_monitor.models import (
    ALERT_DOWN,
    ALERT_SLOW,
    ALERT_UP,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_UNKNOWN,
    Alert,
    Machine,
    new_id,
    utc_now_iso,
)


logger = structlog.get_logger(__name__)

ALERT_LOG_CAPACITY = 100
SLOW_RESPONSE_MS = 1000.0


def evaluate_alerts(
    previous_status: str,
    new_status: str,
    response_time: float | None,
    *,
    slow_threshold_ms: float = SLOW_RESPONSE_MS,
) -> list[str]:
    """
    Decides which alert types one probe produces.

    - nothing for the first probe of a machine (previous status unknown)
    - up/down only on a real online<->offline transition
    - slow on every online probe over the threshold, with no cooldown, so a
      single probe can yield both "up" and "slow"
    """
    # First probe of a machine: nothing to compare against yet.
    if previous_status == STATUS_UNKNOWN:
        return []

    types: list[str] = []
    if previous_status == STATUS_ONLINE and new_status == STATUS_OFFLINE:
        types.append(ALERT_DOWN)
    elif previous_status == STATUS_OFFLINE and new_status == STATUS_ONLINE:
        types.append(ALERT_UP)

    if new_status == STATUS_ONLINE and response_time is not None and float(response_time) > float(slow_threshold_ms):
        types.append(ALERT_SLOW)
    return types


def _format_ms(value: float | None) -> str:
    if value is None:
        return "n/a"
    v = float(value)
    return f"{int(v)}ms" if v.is_integer() else f"{round(v, 1)}ms"


def build_alert_message(alert_type: str, *, machine_name: str, response_time: float | None = None) -> str:
    if alert_type == ALERT_DOWN:
        return f"Machine {machine_name} is now offline"
    if alert_type == ALERT_UP:
        return f"Machine {machine_name} is back online"
    if alert_type == ALERT_SLOW:
        return f"Machine {machine_name} has slow response time: {_format_ms(response_time)}"
    raise ValueError(f"Unknown alert type {alert_type!r}")


def build_alerts(machine: Machine, alert_types: Iterable[str], *, timestamp: str | None = None) -> list[Alert]:
    ts = timestamp or utc_now_iso()
    return [
        Alert(
            id=new_id(),
            machine_id=machine.id,
            machine_name=machine.name,
            type=alert_type,
            message=build_alert_message(alert_type, machine_name=machine.name, response_time=machine.response_time),
            timestamp=ts,
        )
        for alert_type in alert_types
    ]


class AlertLog:
    """
    Bounded alert log, newest first. Appends and acknowledgements go through one lock
    so concurrent probe pipelines cannot interleave a push with a truncation.
    """

    def __init__(self, alerts: Iterable[Alert] | None = None, *, capacity: int = ALERT_LOG_CAPACITY) -> None:
        self.capacity = max(1, int(capacity))
        self._alerts: list[Alert] = list(alerts or [])[: self.capacity]
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._alerts)

    def snapshot(self) -> list[Alert]:
        return [replace(a) for a in self._alerts]

    def get(self, alert_id: str) -> Alert:
        for alert in self._alerts:
            if alert.id == alert_id:
                return replace(alert)
        raise NotFound(f"Alert {alert_id} not found", code="alert_not_found")

    async def append(self, alerts: Iterable[Alert]) -> list[Alert]:
        """Pushes alerts in the given order, so the last one ends up at index 0."""
        added = list(alerts)
        if not added:
            return []
        async with self._lock:
            for alert in added:
                self._alerts.insert(0, alert)
            del self._alerts[self.capacity :]
        for alert in added:
            log = logger.info if alert.type == ALERT_UP else logger.warning
            log("Alert emitted", alert_id=alert.id, machine_id=alert.machine_id, type=alert.type, message=alert.message)
        return added

    async def acknowledge(self, alert_id: str, *, at: str | None = None) -> Alert:
        async with self._lock:
            for alert in self._alerts:
                if alert.id != alert_id:
                    continue
                if not alert.acknowledged:
                    alert.acknowledged = True
                    alert.acknowledged_at = at or utc_now_iso()
                    logger.info("Alert acknowledged", alert_id=alert_id, machine_id=alert.machine_id)
                return replace(alert)
        raise NotFound(f"Alert {alert_id} not found", code="alert_not_found")
