from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import httpx
import structlog

from machine_monitor.models import ALERT_DOWN, ALERT_SLOW, ALERT_UP, Alert
from machine_monitor.settings import MonitorSettings


logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LEN = 3900

_ALERT_HEADLINES = {
    ALERT_DOWN: "Machine DOWN ❌",
    ALERT_UP: "Machine RECOVERED ✅",
    ALERT_SLOW: "Machine SLOW ⚠️",
}


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


def split_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """
    Packs blank-line separated alert blocks into messages of at most max_len chars.
    A single block longer than max_len is hard-cut.
    """
    max_len = max(1, int(max_len))
    blocks = [b.strip() for b in (text or "").split("\n\n") if b.strip()]
    if not blocks:
        return [""]

    parts: list[str] = []
    current = ""
    for block in blocks:
        while len(block) > max_len:
            if current:
                parts.append(current)
                current = ""
            parts.append(block[:max_len].rstrip())
            block = block[max_len:].lstrip()
        if not block:
            continue
        candidate = f"{current}\n\n{block}" if current else block
        if len(candidate) <= max_len:
            current = candidate
        else:
            parts.append(current)
            current = block
    if current:
        parts.append(current)
    return parts


def format_alert_message(alert: Alert) -> str:
    lines = [
        _ALERT_HEADLINES.get(alert.type, f"Machine alert ({alert.type})"),
        f"Machine: {alert.machine_name}",
        f"Machine ID: {alert.machine_id}",
        alert.message,
        f"At: {alert.timestamp}",
    ]
    return "\n".join(lines).strip()


def format_alert_digest(alerts: list[Alert]) -> str:
    if len(alerts) == 1:
        return format_alert_message(alerts[0])
    blocks = [f"{len(alerts)} machine alerts"]
    blocks.extend(format_alert_message(a) for a in alerts)
    return "\n\n".join(blocks)


async def send_telegram_message(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    silent: bool = False,
) -> tuple[bool, dict]:
    url = f"{TELEGRAM_API_BASE}/bot{config.bot_token}/sendMessage"
    payload = {"chat_id": config.chat_id, "text": text, "disable_notification": silent}
    try:
        resp = await client.post(url, json=payload, timeout=15.0)
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        error = f"{type(exc).__name__}: {exc}"
        if config.bot_token:
            error = error.replace(config.bot_token, "<redacted>")
        return False, {"ok": False, "error": error}
    return bool(data.get("ok")), data


class AlertNotifier:
    """Forwards emitted alerts to Telegram. Best-effort: failures are logged, never raised."""

    def __init__(
        self,
        config: TelegramConfig,
        *,
        alert_types: Iterable[str] = (ALERT_DOWN, ALERT_UP, ALERT_SLOW),
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.alert_types = frozenset(alert_types)
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: MonitorSettings) -> AlertNotifier | None:
        if not settings.telegram_enabled:
            return None
        return cls(
            TelegramConfig(bot_token=settings.telegram_bot_token, chat_id=settings.telegram_chat_id),
            alert_types=settings.telegram_alert_types,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def notify(self, alerts: Iterable[Alert]) -> bool:
        selected = [a for a in alerts if a.type in self.alert_types]
        if not selected:
            return True

        # Recoveries alone arrive without a notification sound.
        silent = all(a.type == ALERT_UP for a in selected)
        ok_all = True
        client = self._get_client()
        for part in split_message(format_alert_digest(selected)):
            ok, resp = await send_telegram_message(client, self.config, part, silent=silent)
            ok_all = ok_all and ok
            if not ok:
                logger.warning("Telegram alert delivery failed", error=resp.get("error") or resp.get("description"))
        logger.info("Telegram alerts forwarded", count=len(selected), ok=ok_all)
        return ok_all

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
