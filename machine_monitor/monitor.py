from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from machine_monitor.alerts import SLOW_RESPONSE_MS, build_alerts, evaluate_alerts
from machine_monitor.errors import NotFound, ProtectedFieldError, ValidationError
from machine_monitor.models import (
    DEFAULT_CATEGORY,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_UNKNOWN,
    Alert,
    Machine,
    ProbeResult,
    new_id,
    utc_now_iso,
)
from machine_monitor.notifier import AlertNotifier
from machine_monitor.probe import DEFAULT_PROBE_TIMEOUT_SECONDS, ProbeCapability, build_probe, run_probe
from machine_monitor.settings import MonitorSettings
from machine_monitor.status import apply_probe_outcome
from machine_monitor.store import MonitorStore, copy_machine


logger = structlog.get_logger(__name__)

ADMIN_FIELDS = frozenset({"name", "host", "description", "category"})
PROTECTED_FIELDS = frozenset(
    {
        "id",
        "status",
        "history",
        "uptimePercentage",
        "uptime_percentage",
        "lastCheck",
        "last_check",
        "responseTime",
        "response_time",
        "createdAt",
        "created_at",
    }
)


@dataclass(frozen=True)
class MachineProbeResult:
    machine: Machine
    probe: ProbeResult
    alerts: list[Alert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"machine": self.machine.to_dict(), "pingResult": self.probe.to_dict()}


@dataclass(frozen=True)
class MonitorStats:
    total_machines: int
    online_machines: int
    offline_machines: int
    unknown_machines: int
    average_response_time: float
    total_alerts: int
    unacknowledged_alerts: int
    average_uptime: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalMachines": self.total_machines,
            "onlineMachines": self.online_machines,
            "offlineMachines": self.offline_machines,
            "unknownMachines": self.unknown_machines,
            "averageResponseTime": self.average_response_time,
            "totalAlerts": self.total_alerts,
            "unacknowledgedAlerts": self.unacknowledged_alerts,
            "averageUptime": self.average_uptime,
        }


def _required_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    return value.strip()


def _optional_text(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    return value.strip()


class MachineMonitor:
    """
    Runs probes and applies their outcomes: status transition, history ring,
    derived uptime and alert emission. All machine/alert state lives in the store.
    """

    def __init__(
        self,
        store: MonitorStore,
        probe: ProbeCapability,
        *,
        probe_timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        connectivity_timeout_seconds: float = 1.0,
        slow_threshold_ms: float = SLOW_RESPONSE_MS,
        notifier: AlertNotifier | None = None,
    ) -> None:
        self.store = store
        self.probe = probe
        self.probe_timeout_seconds = float(probe_timeout_seconds)
        self.connectivity_timeout_seconds = float(connectivity_timeout_seconds)
        self.slow_threshold_ms = float(slow_threshold_ms)
        self.notifier = notifier
        self._forwarding: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: MonitorSettings,
        *,
        store: MonitorStore | None = None,
        probe: ProbeCapability | None = None,
    ) -> MachineMonitor:
        if store is None:
            store = MonitorStore.from_settings(settings)
            store.load()
        return cls(
            store,
            probe or build_probe(settings.probe_method, tcp_port=settings.tcp_port),
            probe_timeout_seconds=settings.probe_timeout_seconds,
            connectivity_timeout_seconds=settings.connectivity_timeout_seconds,
            slow_threshold_ms=settings.slow_response_ms,
            notifier=AlertNotifier.from_settings(settings),
        )

    async def aclose(self) -> None:
        await self.flush_notifications()
        if self.notifier is not None:
            await self.notifier.aclose()

    # Machines

    def list_machines(self) -> list[Machine]:
        return self.store.list_machines()

    def get_machine(self, machine_id: str) -> Machine:
        return self.store.get_machine(machine_id)

    async def add_machine(
        self,
        name: Any,
        host: Any,
        description: Any = None,
        category: Any = None,
    ) -> Machine:
        if not (isinstance(name, str) and name.strip()) or not (isinstance(host, str) and host.strip()):
            raise ValidationError("Name and host are required")
        machine = Machine(
            id=new_id(),
            name=name.strip(),
            host=host.strip(),
            description=_optional_text(description, "description") or "",
            category=_optional_text(category, "category") or DEFAULT_CATEGORY,
        )
        self.store.insert_machine(machine)
        await self.store.save_machines()
        logger.info("Added machine", machine_id=machine.id, name=machine.name, host=machine.host)
        return copy_machine(machine)

    async def delete_machine(self, machine_id: str) -> Machine:
        machine = self.store.remove_machine(machine_id)
        await self.store.save_machines()
        logger.info("Deleted machine", machine_id=machine_id, name=machine.name)
        return copy_machine(machine)

    async def update_machine(self, machine_id: str, fields: dict[str, Any]) -> Machine:
        """Administrative update. Probe-owned fields are rejected, never silently applied."""
        if not isinstance(fields, dict):
            raise ValidationError("update body must be a mapping")
        protected = [k for k in fields if k in PROTECTED_FIELDS]
        if protected:
            raise ProtectedFieldError(protected)
        unknown = sorted(k for k in fields if k not in ADMIN_FIELDS)
        if unknown:
            raise ValidationError(f"unknown fields: {', '.join(unknown)}")

        machine = self.store.live_machine(machine_id)
        changes: dict[str, str] = {}
        if "name" in fields:
            changes["name"] = _required_text(fields["name"], "name")
        if "host" in fields:
            host = _required_text(fields["host"], "host")
            self.store.ensure_host_available(host, exclude_id=machine_id)
            changes["host"] = host
        if "description" in fields:
            changes["description"] = _optional_text(fields["description"], "description") or ""
        if "category" in fields:
            changes["category"] = _optional_text(fields["category"], "category") or DEFAULT_CATEGORY

        for key, value in changes.items():
            setattr(machine, key, value)
        await self.store.save_machines()
        logger.info("Updated machine", machine_id=machine_id, fields=sorted(changes))
        return copy_machine(machine)

    # Probing

    async def _probe_pipeline(self, machine_id: str) -> MachineProbeResult:
        # The per-machine lock keeps observations of one machine in probe order even when
        # probe_one and probe_all overlap.
        self.store.live_machine(machine_id)
        async with self.store.machine_lock(machine_id):
            host = self.store.live_machine(machine_id).host
            result = await run_probe(self.probe, host, timeout_seconds=self.probe_timeout_seconds)

            # From here to the end of the block nothing awaits until the alert append,
            # so the record is updated in one step.
            machine = self.store.live_machine(machine_id)
            previous_status, _observation = apply_probe_outcome(
                machine,
                result.outcome,
                checked_at=result.timestamp,
                history_capacity=self.store.history_capacity,
            )
            alert_types = evaluate_alerts(
                previous_status,
                machine.status,
                machine.response_time,
                slow_threshold_ms=self.slow_threshold_ms,
            )
            snapshot = copy_machine(machine)
            alerts = build_alerts(snapshot, alert_types, timestamp=result.timestamp)

        logger.debug(
            "Probe applied",
            machine_id=machine_id,
            previous_status=previous_status,
            status=snapshot.status,
            response_time=snapshot.response_time,
            uptime_percentage=snapshot.uptime_percentage,
        )
        return MachineProbeResult(machine=snapshot, probe=result, alerts=alerts)

    def _forward_alerts(self, alerts: list[Alert]) -> None:
        """Hands alerts to the notifier in a background task; probing never waits on delivery."""
        if self.notifier is None or not alerts:
            return
        task = asyncio.create_task(self.notifier.notify(list(alerts)))
        self._forwarding.add(task)
        task.add_done_callback(self._forwarding_done)

    def _forwarding_done(self, task: asyncio.Task) -> None:
        self._forwarding.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Alert forwarding failed", error=f"{type(exc).__name__}: {exc}")

    async def flush_notifications(self) -> None:
        """Waits for alert deliveries still in flight."""
        if self._forwarding:
            await asyncio.gather(*list(self._forwarding), return_exceptions=True)

    async def probe_one(self, machine_id: str) -> MachineProbeResult:
        result = await self._probe_pipeline(machine_id)
        await self.store.record_alerts(result.alerts)
        await self.store.save_machines()
        self._forward_alerts(result.alerts)
        return result

    async def probe_all(self) -> list[MachineProbeResult]:
        """
        Probes every machine concurrently and persists once at the end.
        Output order is unspecified; sort by machine id if order matters.
        """
        machine_ids = [m.id for m in self.store.list_machines()]
        logger.info("Probing all machines", count=len(machine_ids))

        async def pipeline(machine_id: str) -> MachineProbeResult:
            res = await self._probe_pipeline(machine_id)
            await self.store.record_alerts(res.alerts, persist=False)
            return res

        outcomes = await asyncio.gather(*(pipeline(mid) for mid in machine_ids), return_exceptions=True)

        results: list[MachineProbeResult] = []
        for machine_id, outcome in zip(machine_ids, outcomes):
            if isinstance(outcome, NotFound):
                logger.info("Machine removed during probe batch", machine_id=machine_id)
                continue
            if isinstance(outcome, BaseException):
                logger.error("Probe pipeline failed", machine_id=machine_id, error=f"{type(outcome).__name__}: {outcome}")
                continue
            results.append(outcome)

        await self.store.save_machines()
        await self.store.save_alerts()
        emitted = [a for r in results for a in r.alerts]
        self._forward_alerts(emitted)
        online = sum(1 for r in results if r.machine.status == STATUS_ONLINE)
        logger.info("Probe batch completed", machines=len(results), online=online, alerts=len(emitted))
        return results

    async def test_connectivity(self, host: Any) -> ProbeResult:
        """One fast probe against any host; nothing is created or persisted."""
        target = _required_text(host, "host")
        return await run_probe(self.probe, target, timeout_seconds=self.connectivity_timeout_seconds)

    # Alerts

    def list_alerts(self) -> list[Alert]:
        return self.store.alerts.snapshot()

    async def acknowledge_alert(self, alert_id: str) -> Alert:
        before = self.store.alerts.get(alert_id)
        alert = await self.store.alerts.acknowledge(alert_id, at=utc_now_iso())
        if not before.acknowledged:
            await self.store.save_alerts()
        return alert

    # Stats

    def stats(self) -> MonitorStats:
        machines = self.store.list_machines()
        alerts = self.store.alerts.snapshot()

        response_times = [float(m.response_time) for m in machines if m.response_time]
        avg_response = (sum(response_times) / len(response_times)) if response_times else 0.0
        avg_uptime = (sum(m.uptime_percentage for m in machines) / len(machines)) if machines else 0.0

        return MonitorStats(
            total_machines=len(machines),
            online_machines=sum(1 for m in machines if m.status == STATUS_ONLINE),
            offline_machines=sum(1 for m in machines if m.status == STATUS_OFFLINE),
            unknown_machines=sum(1 for m in machines if m.status == STATUS_UNKNOWN),
            average_response_time=avg_response,
            total_alerts=len(alerts),
            unacknowledged_alerts=sum(1 for a in alerts if not a.acknowledged),
            average_uptime=avg_uptime,
        )
