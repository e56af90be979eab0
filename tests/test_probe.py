from __future__ import annotations

import asyncio
import time

import pytest

from machine_monitor.errors import TransportError
from machine_monitor.models import ProbeOutcome
from machine_monitor.probe import PingProbe, TcpProbe, build_probe, parse_ping_latency_ms, run_probe


LINUX_PING_OK = """PING 10.0.0.1 (10.0.0.1) 56(84) bytes of data.
64 bytes from 10.0.0.1: icmp_seq=1 ttl=64 time=0.045 ms

--- 10.0.0.1 ping statistics ---
1 packets transmitted, 1 received, 0% packet loss, time 0ms
"""

WINDOWS_PING_OK = "Reply from 10.0.0.1: bytes=32 time<1ms TTL=128"


def test_parse_ping_latency_ms() -> None:
    assert parse_ping_latency_ms(LINUX_PING_OK) == 0.045
    assert parse_ping_latency_ms(WINDOWS_PING_OK) == 1.0
    assert parse_ping_latency_ms("64 bytes from x: time=12 ms") == 12.0
    assert parse_ping_latency_ms("Request timed out.") is None
    assert parse_ping_latency_ms("") is None


def test_ping_command_per_platform() -> None:
    # The binary gets the budget minus process startup, rounded down to whole seconds.
    assert PingProbe(platform="linux").build_command("h", 3000) == ["ping", "-c", "1", "-W", "2", "h"]
    assert PingProbe(platform="linux").build_command("h", 2000) == ["ping", "-c", "1", "-W", "1", "h"]
    assert PingProbe(platform="darwin").build_command("h", 3000) == ["ping", "-c", "1", "-t", "2", "h"]
    assert PingProbe(platform="win32").build_command("h", 2000) == ["ping", "-n", "1", "-w", "1750", "h"]
    # Sub-second timeouts still give the binary one full second.
    assert PingProbe(platform="linux").build_command("h", 200)[4] == "1"


class _FakeProcess:
    def __init__(self, returncode: int | None, stdout: bytes = b"", hang: bool = False) -> None:
        self.returncode = returncode
        self._stdout = stdout
        self._hang = hang
        self.killed = False

    async def communicate(self) -> tuple[bytes, bytes]:
        if self._hang:
            await asyncio.sleep(10)
        return self._stdout, b""

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        return self.returncode


def _patch_subprocess(monkeypatch, proc: _FakeProcess | None = None, error: BaseException | None = None) -> list:
    seen: list = []

    async def fake_exec(*cmd, **kwargs):
        seen.append(list(cmd))
        if error is not None:
            raise error
        return proc

    monkeypatch.setattr("machine_monitor.probe.asyncio.create_subprocess_exec", fake_exec)
    return seen


@pytest.mark.asyncio
async def test_ping_probe_reachable(monkeypatch) -> None:
    seen = _patch_subprocess(monkeypatch, _FakeProcess(0, LINUX_PING_OK.encode()))

    outcome = await PingProbe(platform="linux").probe("10.0.0.1", 2000)

    assert outcome == ProbeOutcome(reachable=True, latency_ms=0.045)
    assert seen == [["ping", "-c", "1", "-W", "1", "10.0.0.1"]]


@pytest.mark.asyncio
async def test_ping_probe_nonzero_exit_is_unreachable(monkeypatch) -> None:
    _patch_subprocess(monkeypatch, _FakeProcess(1, b"100% packet loss"))
    outcome = await PingProbe(platform="linux").probe("10.0.0.1", 2000)
    assert outcome == ProbeOutcome(reachable=False)


@pytest.mark.asyncio
async def test_ping_probe_hang_is_killed(monkeypatch) -> None:
    proc = _FakeProcess(None, hang=True)
    _patch_subprocess(monkeypatch, proc)

    outcome = await PingProbe(platform="linux").probe("10.0.0.1", 20)

    assert outcome.reachable is False
    assert proc.killed is True


@pytest.mark.asyncio
async def test_ping_probe_missing_binary(monkeypatch) -> None:
    _patch_subprocess(monkeypatch, error=FileNotFoundError("ping"))
    with pytest.raises(TransportError):
        await PingProbe(executable="definitely-not-ping").probe("10.0.0.1", 1000)


@pytest.mark.asyncio
@pytest.mark.parametrize("host", ["", "   ", "-f", "10.0.0.1 -c 100"])
async def test_ping_probe_rejects_option_like_hosts(monkeypatch, host: str) -> None:
    seen = _patch_subprocess(monkeypatch, _FakeProcess(0))
    with pytest.raises(TransportError):
        await PingProbe().probe(host, 1000)
    assert seen == []


@pytest.mark.asyncio
async def test_tcp_probe_refused_counts_as_reachable(monkeypatch) -> None:
    async def refuse(host, port):
        raise ConnectionRefusedError()

    monkeypatch.setattr("machine_monitor.probe.asyncio.open_connection", refuse)
    outcome = await TcpProbe(port=22).probe("10.0.0.1", 1000)
    assert outcome.reachable is True
    assert outcome.latency_ms is not None


@pytest.mark.asyncio
async def test_tcp_probe_unreachable_network(monkeypatch) -> None:
    async def unreachable(host, port):
        raise OSError(113, "No route to host")

    monkeypatch.setattr("machine_monitor.probe.asyncio.open_connection", unreachable)
    assert await TcpProbe().probe("10.0.0.1", 1000) == ProbeOutcome(reachable=False)


class _Probe:
    def __init__(self, outcome=None, error=None, delay: float = 0.0) -> None:
        self.outcome = outcome
        self.error = error
        self.delay = delay

    async def probe(self, host: str, timeout_ms: float) -> ProbeOutcome:
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.outcome


@pytest.mark.asyncio
async def test_run_probe_normalizes_outcomes() -> None:
    ok = await run_probe(_Probe(ProbeOutcome(True, 12)), "h", timeout_seconds=1)
    assert ok.outcome == ProbeOutcome(True, 12.0)
    assert ok.error is None
    assert ok.timestamp.endswith("Z")

    negative = await run_probe(_Probe(ProbeOutcome(True, -3.0)), "h", timeout_seconds=1)
    assert negative.outcome == ProbeOutcome(True, None)

    down = await run_probe(_Probe(ProbeOutcome(False, 99.0)), "h", timeout_seconds=1)
    assert down.outcome == ProbeOutcome(False, None)


@pytest.mark.asyncio
async def test_run_probe_collapses_errors() -> None:
    failed = await run_probe(_Probe(error=TransportError("dns")), "h", timeout_seconds=1)
    assert failed.outcome.reachable is False
    assert failed.error == "TransportError: dns"
    assert failed.to_dict() == {
        "alive": False,
        "time": None,
        "timestamp": failed.timestamp,
        "host": "h",
        "error": "TransportError: dns",
    }


@pytest.mark.asyncio
async def test_run_probe_enforces_timeout() -> None:
    result = await run_probe(_Probe(ProbeOutcome(True, 1.0), delay=1.0), "h", timeout_seconds=0.05)
    assert result.outcome.reachable is False
    assert result.error == "timeout"


@pytest.mark.asyncio
async def test_run_probe_deadline_is_the_configured_timeout() -> None:
    # A capability that ignores timeout_ms is still cut off at timeout_seconds.
    started = time.perf_counter()
    result = await run_probe(_Probe(ProbeOutcome(True, 1.0), delay=30.0), "h", timeout_seconds=0.2)
    elapsed = time.perf_counter() - started

    assert result.outcome.reachable is False
    assert elapsed < 0.5


@pytest.mark.asyncio
async def test_ping_probe_cancelled_by_deadline_kills_process(monkeypatch) -> None:
    proc = _FakeProcess(None, hang=True)
    _patch_subprocess(monkeypatch, proc)

    result = await run_probe(PingProbe(platform="linux"), "10.0.0.1", timeout_seconds=0.05)

    assert result.outcome.reachable is False
    assert proc.killed is True


def test_build_probe() -> None:
    assert isinstance(build_probe("ping"), PingProbe)
    tcp = build_probe(" TCP ", tcp_port=443)
    assert isinstance(tcp, TcpProbe)
    assert tcp.port == 443
    with pytest.raises(ValueError):
        build_probe("carrier-pigeon")
