"""Incident alerts — severity-based routing of engine status changes to a webhook, Telegram and logs."""
from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import aiohttp

from enginewatch.crisis import StatusTransition
from enginewatch.monitor.config import WatchConfig
from enginewatch.store import EngineStatus

logger = logging.getLogger("enginewatch.alerts")

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"


class Severity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Alert:
    severity: Severity
    engine_id: str
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def alert_for_transition(transition: StatusTransition) -> Alert:
    if transition.forced and transition.new_status != EngineStatus.GREEN:
        severity = Severity.CRITICAL
    elif transition.new_status == EngineStatus.RED:
        severity = Severity.HIGH
    elif transition.new_status == EngineStatus.YELLOW:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    if transition.is_recovery:
        title = "Engine recovered"
    elif transition.forced:
        title = f"Engine forced {transition.new_status.value}"
    else:
        title = f"Engine {transition.new_status.value}"
    return Alert(
        severity=severity,
        engine_id=transition.engine_id,
        title=title,
        message=f"{transition.label}: {transition.reason}",
        metadata={"status_change": transition.label, "metrics": transition.metrics.to_dict()},
    )


class IncidentAlerter:
    def __init__(self, config: WatchConfig) -> None:
        self._config = config
        self._rate_cache: dict[tuple[str, str], float] = {}

    # --- Rate limiting ---

    def _is_rate_limited(self, alert: Alert) -> bool:
        key = (alert.engine_id, alert.title)
        last = self._rate_cache.get(key, 0.0)
        now = time.time()
        if now - last < self._config.alert_cooldown_s:
            return True
        self._rate_cache[key] = now
        return False

    # --- Routing ---

    async def notify_transition(self, transition: StatusTransition) -> Alert:
        alert = alert_for_transition(transition)
        await self.route(alert)
        return alert

    async def route(self, alert: Alert) -> None:
        logger.info("Alert [%s] %s: %s — %s", alert.severity.value, alert.engine_id, alert.title, alert.message)

        if alert.severity == Severity.CRITICAL:
            # bypasses the rate limit
            await self._send_telegram(alert)
            await self._send_webhook(alert)
            return

        if self._is_rate_limited(alert):
            logger.info("Rate-limited: %s/%s", alert.engine_id, alert.title)
            return

        if alert.severity in (Severity.LOW, Severity.MEDIUM):
            await self._send_webhook(alert)
            return

        await self._send_telegram(alert)
        await self._send_webhook(alert)

    # --- Telegram ---

    async def _send_telegram(self, alert: Alert) -> None:
        if not self._config.telegram_bot_token or not self._config.telegram_chat_id:
            return
        if alert.severity == Severity.CRITICAL:
            text = f"🔴 CRITICAL — [{alert.engine_id}] {alert.title}\n{alert.message}"
        else:
            text = f"⚠️ [{alert.engine_id}] {alert.title}\n{alert.message}"
        url = TELEGRAM_API.format(token=self._config.telegram_bot_token)
        try:
            async with aiohttp.ClientSession() as session:
                await session.post(
                    url,
                    json={"chat_id": self._config.telegram_chat_id, "text": text},
                    timeout=aiohttp.ClientTimeout(total=10),
                )
        except Exception:
            logger.exception("Failed to send Telegram alert for %s", alert.engine_id)

    # --- Webhook ---

    async def _send_webhook(self, alert: Alert) -> None:
        if not self._config.webhook_url:
            return
        payload = {
            "id": alert.id,
            "level": alert.severity.value,
            "engine_id": alert.engine_id,
            "message": f"[{alert.engine_id}] {alert.title}: {alert.message}",
            "metadata": alert.metadata,
            "ts": alert.ts,
        }
        headers = {"Content-Type": "application/json"}
        if self._config.webhook_token:
            headers["Authorization"] = f"Bearer {self._config.webhook_token}"
        try:
            async with aiohttp.ClientSession() as session:
                await session.post(
                    self._config.webhook_url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=10),
                )
        except Exception:
            logger.exception("Failed to send webhook alert for %s", alert.engine_id)
