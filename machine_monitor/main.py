from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

import structlog
import uvicorn

from machine_monitor.app import create_app
from machine_monitor.monitor import MachineMonitor
from machine_monitor.probe import ProbeCapability
from machine_monitor.settings import MonitorSettings, load_config


logger = structlog.get_logger(__name__)


def configure_logging(level: str) -> None:
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_once(settings: MonitorSettings, *, probe: ProbeCapability | None = None) -> int:
    monitor = MachineMonitor.from_settings(settings, probe=probe)
    try:
        results = await monitor.probe_all()
    finally:
        await monitor.aclose()
    summary = [
        {
            "id": r.machine.id,
            "name": r.machine.name,
            "host": r.machine.host,
            "status": r.machine.status,
            "responseTime": r.machine.response_time,
            "uptimePercentage": r.machine.uptime_percentage,
            "alerts": [a.type for a in r.alerts],
        }
        for r in sorted(results, key=lambda r: r.machine.id)
    ]
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Machine reachability and latency monitor")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $MACHINE_MONITOR_CONFIG or config/monitor.yaml)")
    parser.add_argument("--once", action="store_true", help="Probe all machines once, print a summary and exit")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL"), help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args()

    settings = load_config(args.config)
    configure_logging(args.log_level or settings.log_level)

    if args.once:
        return asyncio.run(run_once(settings))

    app = create_app(settings)
    logger.info("Starting machine monitor", host=settings.host, port=settings.port, probe=settings.probe_method)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=str(args.log_level or settings.log_level).lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
