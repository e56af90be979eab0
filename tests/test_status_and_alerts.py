from __future__ import annotations

import pytest

from machine_monitor.alerts import build_alert_message, build_alerts, evaluate_alerts
from machine_monitor.models import Machine, ProbeOutcome
from machine_monitor.status import apply_probe_outcome, next_status


def test_next_status_maps_outcomes() -> None:
    assert next_status(ProbeOutcome(reachable=True, latency_ms=40)) == ("online", 40.0)
    assert next_status(ProbeOutcome(reachable=True, latency_ms=None)) == ("online", None)
    # Latency reported with an unreachable outcome is dropped.
    assert next_status(ProbeOutcome(reachable=False, latency_ms=12.0)) == ("offline", None)


def test_apply_probe_outcome_updates_machine_and_history() -> None:
    machine = Machine(id="1", name="srv", host="10.0.0.1")
    assert machine.status == "unknown"

    previous, obs = apply_probe_outcome(machine, ProbeOutcome(True, 40.0), checked_at="t1")
    assert previous == "unknown"
    assert machine.status == "online"
    assert machine.response_time == 40.0
    assert machine.last_check == "t1"
    assert obs.status == "online"
    assert machine.history == [obs]
    assert machine.uptime_percentage == 100

    previous, _ = apply_probe_outcome(machine, ProbeOutcome(False), checked_at="t2")
    assert previous == "online"
    assert machine.status == "offline"
    assert machine.response_time is None
    assert len(machine.history) == 2
    assert machine.uptime_percentage == 50


def test_apply_probe_outcome_is_applied_even_without_change() -> None:
    machine = Machine(id="1", name="srv", host="h")
    for i in range(3):
        apply_probe_outcome(machine, ProbeOutcome(False), checked_at=f"t{i}")
    assert machine.status == "offline"
    assert [o.timestamp for o in machine.history] == ["t0", "t1", "t2"]
    assert machine.uptime_percentage == 0


@pytest.mark.parametrize(
    "previous, new, response_time, expected",
    [
        ("unknown", "online", 40.0, []),
        ("unknown", "offline", None, []),
        ("unknown", "online", 5000.0, []),
        ("online", "offline", None, ["down"]),
        ("offline", "online", 40.0, ["up"]),
        ("offline", "online", 1500.0, ["up", "slow"]),
        ("online", "online", 1500.0, ["slow"]),
        ("online", "online", 1000.0, []),
        ("online", "online", None, []),
        ("offline", "offline", None, []),
        ("online", "online", 40.0, []),
    ],
)
def test_evaluate_alerts_policy(previous: str, new: str, response_time: float | None, expected: list[str]) -> None:
    assert evaluate_alerts(previous, new, response_time) == expected


def test_evaluate_alerts_custom_slow_threshold() -> None:
    assert evaluate_alerts("online", "online", 300.0, slow_threshold_ms=250.0) == ["slow"]
    assert evaluate_alerts("online", "online", 200.0, slow_threshold_ms=250.0) == []


def test_build_alert_message_texts() -> None:
    assert build_alert_message("down", machine_name="srv") == "Machine srv is now offline"
    assert build_alert_message("up", machine_name="srv") == "Machine srv is back online"
    assert build_alert_message("slow", machine_name="srv", response_time=1500.0) == (
        "Machine srv has slow response time: 1500ms"
    )
    with pytest.raises(ValueError):
        build_alert_message("weird", machine_name="srv")


def test_build_alerts_snapshots_machine_name_and_unique_ids() -> None:
    machine = Machine(id="m1", name="srv", host="h", status="online", response_time=1500.0)
    alerts = build_alerts(machine, ["up", "slow"], timestamp="t")
    assert [a.type for a in alerts] == ["up", "slow"]
    assert all(a.machine_name == "srv" and a.machine_id == "m1" for a in alerts)
    assert all(a.acknowledged is False and a.acknowledged_at is None for a in alerts)
    assert alerts[0].id != alerts[1].id
    assert int(alerts[1].id) > int(alerts[0].id)

    machine.name = "renamed"
    assert alerts[0].machine_name == "srv"
