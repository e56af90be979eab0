from __future__ import annotations

import platform
import time
from typing import Any

import structlog
from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse

from machine_monitor import __version__
from machine_monitor.errors import DuplicateHost, MonitorError, NotFound, ValidationError
from machine_monitor.models import MACHINE_CATEGORIES, utc_now_iso
from machine_monitor.monitor import MachineMonitor
from machine_monitor.scheduler import MonitorScheduler
from machine_monitor.schema import ConnectivityRequest, CreateMachineRequest, MonitoringControlRequest, error_body
from machine_monitor.settings import MonitorSettings


logger = structlog.get_logger(__name__)


def _status_code_for(exc: MonitorError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, DuplicateHost):
        return 409
    if isinstance(exc, ValidationError):
        return 400
    return 500


def create_app(settings: MonitorSettings | None = None, monitor: MachineMonitor | None = None) -> FastAPI:
    settings = settings or MonitorSettings()
    monitor = monitor or MachineMonitor.from_settings(settings)

    app = FastAPI(title="Machine Monitor", version=__version__)
    app.state.settings = settings
    app.state.monitor = monitor
    app.state.scheduler = MonitorScheduler(monitor, interval_seconds=settings.monitoring_interval_seconds)
    app.state.started_at = time.monotonic()

    @app.on_event("startup")
    async def _startup() -> None:
        if settings.auto_monitoring:
            await app.state.scheduler.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.scheduler.stop()
        await monitor.aclose()

    @app.exception_handler(MonitorError)
    async def _monitor_error(_req: Request, exc: MonitorError) -> JSONResponse:
        return JSONResponse(status_code=_status_code_for(exc), content=error_body(exc.code, str(exc)))

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "OK",
            "timestamp": utc_now_iso(),
            "uptime": round(time.monotonic() - app.state.started_at, 3),
            "platform": platform.system().lower(),
        }

    @app.get("/api/categories")
    async def categories() -> list[str]:
        return list(MACHINE_CATEGORIES)

    @app.get("/api/machines")
    async def list_machines() -> list[dict[str, Any]]:
        return [m.to_dict() for m in monitor.list_machines()]

    @app.post("/api/machines", status_code=201)
    async def add_machine(req: CreateMachineRequest) -> dict[str, Any]:
        machine = await monitor.add_machine(req.name, req.host, req.description, req.category)
        return machine.to_dict()

    @app.put("/api/machines/{machine_id}")
    async def update_machine(machine_id: str, updates: dict[str, Any] = Body(...)) -> dict[str, Any]:
        machine = await monitor.update_machine(machine_id, updates)
        return machine.to_dict()

    @app.delete("/api/machines/{machine_id}")
    async def delete_machine(machine_id: str) -> dict[str, Any]:
        await monitor.delete_machine(machine_id)
        return {"message": "Machine deleted successfully"}

    @app.post("/api/machines/ping-all")
    async def ping_all() -> list[dict[str, Any]]:
        results = await monitor.probe_all()
        return [r.to_dict() for r in results]

    @app.post("/api/machines/{machine_id}/ping")
    async def ping_machine(machine_id: str) -> dict[str, Any]:
        result = await monitor.probe_one(machine_id)
        return result.to_dict()

    @app.post("/api/test-connectivity")
    async def test_connectivity(req: ConnectivityRequest) -> dict[str, Any]:
        result = await monitor.test_connectivity(req.host)
        return result.to_dict()

    @app.get("/api/alerts")
    async def list_alerts() -> list[dict[str, Any]]:
        return [a.to_dict() for a in monitor.list_alerts()]

    @app.patch("/api/alerts/{alert_id}/acknowledge")
    async def acknowledge_alert(alert_id: str) -> dict[str, Any]:
        alert = await monitor.acknowledge_alert(alert_id)
        return alert.to_dict()

    @app.get("/api/stats")
    async def stats() -> dict[str, Any]:
        return monitor.stats().to_dict()

    @app.get("/api/monitoring")
    async def monitoring_status() -> dict[str, Any]:
        return app.state.scheduler.status()

    @app.post("/api/monitoring")
    async def monitoring_control(req: MonitoringControlRequest) -> dict[str, Any]:
        scheduler: MonitorScheduler = app.state.scheduler
        if req.interval_seconds is not None:
            scheduler.set_interval(req.interval_seconds)
        if req.enabled is True:
            await scheduler.start()
        elif req.enabled is False:
            await scheduler.stop()
        return scheduler.status()

    return app
