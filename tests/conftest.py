from __future__ import annotations

import asyncio
from typing import Union

import pytest

from machine_monitor.models import ProbeOutcome
from machine_monitor.monitor import MachineMonitor
from machine_monitor.store import MonitorStore


Step = Union[ProbeOutcome, BaseException]


class ScriptedProbe:
    """Probe capability that replays scripted outcomes per host (default: reachable, 10ms)."""

    def __init__(self, default: ProbeOutcome | None = None) -> None:
        self.default = default or ProbeOutcome(reachable=True, latency_ms=10.0)
        self.scripts: dict[str, list[Step]] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []

    def script(self, host: str, *steps: Step) -> None:
        self.scripts.setdefault(host, []).extend(steps)

    async def probe(self, host: str, timeout_ms: float) -> ProbeOutcome:
        self.calls.append(host)
        await asyncio.sleep(self.delays.get(host, 0.0))
        steps = self.scripts.get(host)
        step = steps.pop(0) if steps else self.default
        if isinstance(step, BaseException):
            raise step
        return step


@pytest.fixture
def probe() -> ScriptedProbe:
    return ScriptedProbe()


@pytest.fixture
def store() -> MonitorStore:
    return MonitorStore()


@pytest.fixture
def monitor(store: MonitorStore, probe: ScriptedProbe) -> MachineMonitor:
    return MachineMonitor(store, probe, probe_timeout_seconds=1.0, connectivity_timeout_seconds=0.5)
