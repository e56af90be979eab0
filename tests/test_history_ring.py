from __future__ import annotations

from machine_monitor.history import (
    HISTORY_CAPACITY,
    Observation,
    coerce_history,
    compute_uptime_percentage,
    record_observation,
)


def _obs(i: int, status: str = "online") -> Observation:
    return Observation(timestamp=f"2024-01-01T00:00:{i:02d}.000Z", status=status, response_time=float(i))


def test_ring_evicts_oldest_first_and_keeps_order() -> None:
    ring: list[Observation] = []
    for i in range(1, 52):
        record_observation(ring, _obs(i))
        assert len(ring) <= HISTORY_CAPACITY

    assert len(ring) == 50
    assert [o.response_time for o in ring] == [float(i) for i in range(2, 52)]
    assert ring[0].response_time == 2.0
    assert ring[-1].response_time == 51.0


def test_ring_respects_custom_capacity() -> None:
    ring: list[Observation] = []
    for i in range(10):
        record_observation(ring, _obs(i), capacity=3)
    assert [o.response_time for o in ring] == [7.0, 8.0, 9.0]


def test_uptime_empty_history_is_zero() -> None:
    assert compute_uptime_percentage([]) == 0


def test_uptime_counts_online_share_and_stays_in_bounds() -> None:
    assert compute_uptime_percentage([_obs(1)]) == 100
    assert compute_uptime_percentage([_obs(1, "offline")]) == 0
    assert compute_uptime_percentage([_obs(1), _obs(2, "offline")]) == 50
    assert compute_uptime_percentage([_obs(1), _obs(2, "offline"), _obs(3, "offline")]) == 33

    for online in range(0, 8):
        history = [_obs(i) for i in range(online)] + [_obs(i, "offline") for i in range(7 - online)]
        assert 0 <= compute_uptime_percentage(history) <= 100


def test_uptime_rounds_half_up() -> None:
    # 1/8 = 12.5%
    history = [_obs(0)] + [_obs(i, "offline") for i in range(1, 8)]
    assert compute_uptime_percentage(history) == 13


def test_coerce_history_skips_invalid_entries_and_keeps_order() -> None:
    raw = [
        {"timestamp": "t1", "status": "online", "responseTime": 12},
        {"timestamp": "t2", "status": "unknown", "responseTime": None},
        "garbage",
        {"timestamp": "", "status": "online"},
        {"timestamp": "t3", "status": "offline", "responseTime": "bad"},
        {"timestamp": "t0", "status": "online", "responseTime": True},
    ]
    history = coerce_history(raw)
    assert [o.timestamp for o in history] == ["t1", "t3", "t0"]
    assert history[0].response_time == 12.0
    assert history[1].response_time is None
    assert history[2].response_time is None
    assert coerce_history({"not": "a list"}) == []
