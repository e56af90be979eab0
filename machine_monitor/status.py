from __future__ import annotations

from machine_monitor.history import HISTORY_CAPACITY, Observation, record_observation
from machine_monitor.models import STATUS_OFFLINE, STATUS_ONLINE, Machine, ProbeOutcome


def next_status(outcome: ProbeOutcome) -> tuple[str, float | None]:
    """Returns (status, response_time). Unknown is never produced."""
    if outcome.reachable:
        latency = outcome.latency_ms
        return STATUS_ONLINE, (float(latency) if latency is not None else None)
    return STATUS_OFFLINE, None


def apply_probe_outcome(
    machine: Machine,
    outcome: ProbeOutcome,
    *,
    checked_at: str,
    history_capacity: int = HISTORY_CAPACITY,
) -> tuple[str, Observation]:
    """
    Applies one probe outcome to the machine in place, whether or not the status changes.
    Returns (previous_status, recorded_observation).
    """
    previous_status = machine.status
    status, response_time = next_status(outcome)

    machine.status = status
    machine.response_time = response_time
    machine.last_check = checked_at

    observation = Observation(timestamp=checked_at, status=status, response_time=response_time)
    record_observation(machine.history, observation, capacity=history_capacity)
    return previous_status, observation
