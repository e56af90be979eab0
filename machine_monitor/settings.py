"""Configuration management for the machine monitor."""

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_CONFIG_PATH = "config/monitor.yaml"


class MonitorSettings(BaseModel):
    """Main configuration for the machine monitor."""

    # Persistence
    data_dir: Optional[str] = Field(default="data", description="Directory for machines/alerts JSON files; None keeps state in memory")
    machines_file: str = Field(default="machines.json", description="Machines snapshot file name")
    alerts_file: str = Field(default="alerts.json", description="Alert log snapshot file name")

    # Probing
    probe_method: str = Field(default="ping", description="Probe transport: ping or tcp")
    probe_timeout_seconds: float = Field(default=2.0, gt=0, le=30, description="Per-probe timeout")
    connectivity_timeout_seconds: float = Field(default=1.0, gt=0, le=30, description="Timeout for ad-hoc connectivity tests")
    tcp_port: int = Field(default=80, ge=1, le=65535, description="Port used by the tcp probe")

    # Bounds and thresholds
    history_capacity: int = Field(default=50, ge=1, description="Observations kept per machine")
    alert_log_capacity: int = Field(default=100, ge=1, description="Alerts kept in the log")
    slow_response_ms: float = Field(default=1000.0, ge=0, description="Online probes slower than this raise a slow alert")

    # Scheduling
    monitoring_interval_seconds: int = Field(default=30, ge=5, description="Interval between automatic probe-all cycles")
    auto_monitoring: bool = Field(default=False, description="Start automatic monitoring on startup")

    # Server
    log_level: str = Field(default="INFO", description="Logging level")
    host: str = Field(default="0.0.0.0", description="HTTP bind address")
    port: int = Field(default=3001, description="HTTP port")

    # Alert forwarding
    telegram_bot_token: str = Field(default="", description="Telegram bot token; empty disables forwarding")
    telegram_chat_id: str = Field(default="", description="Telegram chat id")
    telegram_alert_types: list[str] = Field(default_factory=lambda: ["down", "up", "slow"], description="Alert types to forward")

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "y", "on")


def load_config(config_path: Optional[str] = None) -> MonitorSettings:
    """Load configuration from file, then apply environment variable overrides."""
    if config_path is None:
        config_path = os.getenv("MACHINE_MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data = {}

    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError("Config YAML must be a mapping")

    env_overrides = {
        "data_dir": os.getenv("MACHINE_MONITOR_DATA_DIR"),
        "probe_method": os.getenv("MACHINE_MONITOR_PROBE_METHOD"),
        "probe_timeout_seconds": os.getenv("MACHINE_MONITOR_PROBE_TIMEOUT"),
        "monitoring_interval_seconds": os.getenv("MACHINE_MONITOR_INTERVAL"),
        "auto_monitoring": os.getenv("MACHINE_MONITOR_AUTO"),
        "log_level": os.getenv("LOG_LEVEL"),
        "telegram_bot_token": os.getenv("TELEGRAM_BOT_TOKEN"),
        "telegram_chat_id": os.getenv("TELEGRAM_CHAT_ID"),
    }

    for key, value in env_overrides.items():
        if value is not None:
            if key == "probe_timeout_seconds":
                value = float(value)
            elif key == "monitoring_interval_seconds":
                value = int(value)
            elif key == "auto_monitoring":
                value = _env_bool(value)
            config_data[key] = value

    return MonitorSettings(**config_data)
