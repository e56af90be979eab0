from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class CreateMachineRequest(BaseModel):
    # Presence is validated by the monitor so a missing field maps to one error shape.
    name: str | None = Field(None, max_length=200)
    host: str | None = Field(None, max_length=255)
    description: str | None = Field(None, max_length=2000)
    category: str | None = Field(None, max_length=100)


class ConnectivityRequest(BaseModel):
    host: str | None = Field(None, max_length=255)


class MonitoringControlRequest(BaseModel):
    enabled: bool | None = None
    interval_seconds: int | None = Field(None, ge=5, le=86400, alias="intervalSeconds")

    model_config = {"populate_by_name": True}


def error_body(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message, "code": code}
    if details:
        body["details"] = details
    return body
