from __future__ import annotations

import asyncio
import re
import socket
import sys
import time
from typing import Protocol

import structlog

from machine_monitor.errors import TransportError
from machine_monitor.models import ProbeOutcome, ProbeResult, utc_now_iso


logger = structlog.get_logger(__name__)

DEFAULT_PROBE_TIMEOUT_SECONDS = 2.0
# Share of the probe budget kept back for starting the ping process.
_PING_STARTUP_MS = 250.0

_PING_TIME_RE = re.compile(r"time[=<]\s*([0-9]+(?:\.[0-9]+)?)\s*ms", re.IGNORECASE)


class ProbeCapability(Protocol):
    async def probe(self, host: str, timeout_ms: float) -> ProbeOutcome:
        """Returns reachability + latency, or raises TransportError."""
        ...


def _validate_host(host: str) -> str:
    h = str(host or "").strip()
    if not h:
        raise TransportError("empty host")
    # A leading dash would be parsed as an option by the ping binary.
    if h.startswith("-") or any(ch.isspace() for ch in h):
        raise TransportError(f"invalid host {host!r}")
    return h


def _kill_quietly(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def parse_ping_latency_ms(output: str) -> float | None:
    m = _PING_TIME_RE.search(output or "")
    if not m:
        return None
    try:
        return float(m.group(1))
    except ValueError:
        return None


class PingProbe:
    """ICMP echo through the system ping binary (no raw-socket privileges needed)."""

    def __init__(self, *, executable: str = "ping", platform: str | None = None) -> None:
        self.executable = executable
        self.platform = platform or sys.platform

    def build_command(self, host: str, timeout_ms: float) -> list[str]:
        wait_ms = float(timeout_ms) - _PING_STARTUP_MS
        if self.platform.startswith("win"):
            return [self.executable, "-n", "1", "-w", str(max(1, int(wait_ms))), host]
        timeout_s = max(1, int(wait_ms // 1000.0))
        if self.platform == "darwin":
            return [self.executable, "-c", "1", "-t", str(timeout_s), host]
        return [self.executable, "-c", "1", "-W", str(timeout_s), host]

    async def probe(self, host: str, timeout_ms: float) -> ProbeOutcome:
        target = _validate_host(host)
        cmd = self.build_command(target, timeout_ms)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TransportError(f"ping executable not found: {self.executable}") from exc

        try:
            stdout, _stderr = await asyncio.wait_for(proc.communicate(), timeout=float(timeout_ms) / 1000.0)
        except asyncio.TimeoutError:
            _kill_quietly(proc)
            await proc.wait()
            return ProbeOutcome(reachable=False)
        except asyncio.CancelledError:
            _kill_quietly(proc)
            raise

        if proc.returncode != 0:
            return ProbeOutcome(reachable=False)
        latency = parse_ping_latency_ms(stdout.decode("utf-8", errors="replace"))
        return ProbeOutcome(reachable=True, latency_ms=latency)


class TcpProbe:
    """
    TCP connect probe. A refused connection still proves the host answered,
    so it counts as reachable; silence until the timeout does not.
    """

    def __init__(self, *, port: int = 80) -> None:
        self.port = int(port)

    async def probe(self, host: str, timeout_ms: float) -> ProbeOutcome:
        target = _validate_host(host)
        started = time.perf_counter()
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(target, self.port), timeout=float(timeout_ms) / 1000.0
            )
        except asyncio.TimeoutError:
            return ProbeOutcome(reachable=False)
        except socket.gaierror as exc:
            raise TransportError(f"cannot resolve {target}: {exc}") from exc
        except ConnectionRefusedError:
            return ProbeOutcome(reachable=True, latency_ms=round((time.perf_counter() - started) * 1000.0, 3))
        except OSError:
            return ProbeOutcome(reachable=False)

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeOutcome(reachable=True, latency_ms=round(elapsed_ms, 3))


def build_probe(method: str, *, tcp_port: int = 80) -> ProbeCapability:
    m = str(method or "").strip().lower()
    if m == "ping":
        return PingProbe()
    if m == "tcp":
        return TcpProbe(port=tcp_port)
    raise ValueError(f"Unsupported probe method {method!r}; expected 'ping' or 'tcp'")


def _normalize_outcome(outcome: ProbeOutcome) -> ProbeOutcome:
    if not outcome.reachable:
        return ProbeOutcome(reachable=False)
    latency = outcome.latency_ms
    if latency is not None and (isinstance(latency, bool) or float(latency) < 0):
        latency = None
    return ProbeOutcome(reachable=True, latency_ms=(float(latency) if latency is not None else None))


async def run_probe(
    probe: ProbeCapability,
    host: str,
    *,
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> ProbeResult:
    """
    Runs one probe under a hard deadline of timeout_seconds and collapses every failure into an
    unreachable outcome. Connectivity failure is data here, not an error.
    """
    timeout_ms = max(1.0, float(timeout_seconds) * 1000.0)
    try:
        outcome = await asyncio.wait_for(probe.probe(host, timeout_ms), timeout=float(timeout_seconds))
    except asyncio.TimeoutError:
        logger.info("Probe timed out", host=host, timeout_seconds=timeout_seconds)
        return ProbeResult(host=host, outcome=ProbeOutcome(reachable=False), timestamp=utc_now_iso(), error="timeout")
    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"
        logger.info("Probe failed; treating host as unreachable", host=host, error=error)
        return ProbeResult(host=host, outcome=ProbeOutcome(reachable=False), timestamp=utc_now_iso(), error=error)

    outcome = _normalize_outcome(outcome)
    logger.debug("Probe completed", host=host, reachable=outcome.reachable, latency_ms=outcome.latency_ms)
    return ProbeResult(host=host, outcome=outcome, timestamp=utc_now_iso())
