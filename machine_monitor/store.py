from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import structlog

from machine_monitor.alerts import ALERT_LOG_CAPACITY, AlertLog
from machine_monitor.errors import DuplicateHost, NotFound
from machine_monitor.history import HISTORY_CAPACITY
from machine_monitor.models import Alert, Machine
from machine_monitor.settings import MonitorSettings


logger = structlog.get_logger(__name__)


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


def _read_json_list(path: Path | None) -> list[Any]:
    if path is None:
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except Exception as exc:
        logger.warning("Failed to read state file", path=str(path), error=str(exc))
        return []
    if not isinstance(raw, list):
        logger.warning("Ignoring state file with unexpected shape", path=str(path), type=type(raw).__name__)
        return []
    return raw


def copy_machine(machine: Machine) -> Machine:
    return replace(machine, history=list(machine.history))


class MonitorStore:
    """
    Owns the machine collection and the alert log, snapshotting both to JSON files.

    Readers get copies. Probe pipelines mutate the live record synchronously (no await
    between read and write), so a reader or a snapshot never sees a half-applied probe.
    Without a data_dir everything stays in memory.
    """

    def __init__(
        self,
        data_dir: str | Path | None = None,
        *,
        machines_file: str = "machines.json",
        alerts_file: str = "alerts.json",
        history_capacity: int = HISTORY_CAPACITY,
        alert_log_capacity: int = ALERT_LOG_CAPACITY,
    ) -> None:
        self.machines_path = Path(data_dir) / machines_file if data_dir else None
        self.alerts_path = Path(data_dir) / alerts_file if data_dir else None
        self.history_capacity = max(1, int(history_capacity))
        self._machines: dict[str, Machine] = {}
        self.alerts = AlertLog(capacity=alert_log_capacity)
        self._machine_locks: dict[str, asyncio.Lock] = {}
        self._machines_write_lock = asyncio.Lock()
        self._alerts_write_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: MonitorSettings) -> MonitorStore:
        return cls(
            settings.data_dir,
            machines_file=settings.machines_file,
            alerts_file=settings.alerts_file,
            history_capacity=settings.history_capacity,
            alert_log_capacity=settings.alert_log_capacity,
        )

    def load(self) -> None:
        machines: dict[str, Machine] = {}
        for item in _read_json_list(self.machines_path):
            if not isinstance(item, dict):
                continue
            try:
                machine = Machine.from_dict(item, history_capacity=self.history_capacity)
            except ValueError as exc:
                logger.warning("Skipping invalid machine record", error=str(exc))
                continue
            if machine.id in machines or any(m.host == machine.host for m in machines.values()):
                logger.warning("Skipping duplicate machine record", machine_id=machine.id, host=machine.host)
                continue
            machines[machine.id] = machine

        alerts: list[Alert] = []
        for item in _read_json_list(self.alerts_path):
            if not isinstance(item, dict):
                continue
            try:
                alerts.append(Alert.from_dict(item))
            except ValueError as exc:
                logger.warning("Skipping invalid alert record", error=str(exc))

        self._machines = machines
        self.alerts = AlertLog(alerts, capacity=self.alerts.capacity)
        logger.info("State loaded", machines=len(self._machines), alerts=len(self.alerts))

    # Machines

    def list_machines(self) -> list[Machine]:
        return [copy_machine(m) for m in self._machines.values()]

    def get_machine(self, machine_id: str) -> Machine:
        return copy_machine(self.live_machine(machine_id))

    def live_machine(self, machine_id: str) -> Machine:
        machine = self._machines.get(machine_id)
        if machine is None:
            raise NotFound(f"Machine {machine_id} not found", code="machine_not_found")
        return machine

    def ensure_host_available(self, host: str, *, exclude_id: str | None = None) -> None:
        for machine in self._machines.values():
            if machine.host == host and machine.id != exclude_id:
                raise DuplicateHost(f"A machine with host {host} already exists")

    def insert_machine(self, machine: Machine) -> None:
        self.ensure_host_available(machine.host)
        if machine.id in self._machines:
            raise ValueError(f"machine id {machine.id} already present")
        self._machines[machine.id] = machine

    def remove_machine(self, machine_id: str) -> Machine:
        machine = self.live_machine(machine_id)
        del self._machines[machine_id]
        self._machine_locks.pop(machine_id, None)
        return machine

    def machine_lock(self, machine_id: str) -> asyncio.Lock:
        """Serializes probe pipelines of one machine so its observations stay chronological."""
        lock = self._machine_locks.get(machine_id)
        if lock is None:
            lock = asyncio.Lock()
            self._machine_locks[machine_id] = lock
        return lock

    # Persistence

    async def save_machines(self) -> None:
        if self.machines_path is None:
            return
        async with self._machines_write_lock:
            # Snapshot in the loop thread; only the file write happens off-loop.
            payload = [m.to_dict() for m in self._machines.values()]
            await asyncio.to_thread(_write_json_atomic, self.machines_path, payload)

    async def save_alerts(self) -> None:
        if self.alerts_path is None:
            return
        async with self._alerts_write_lock:
            payload = [a.to_dict() for a in self.alerts.snapshot()]
            await asyncio.to_thread(_write_json_atomic, self.alerts_path, payload)

    async def record_alerts(self, alerts: list[Alert], *, persist: bool = True) -> list[Alert]:
        added = await self.alerts.append(alerts)
        if added and persist:
            await self.save_alerts()
        return added
