"""
enginewatch monitor — configuration
Loads from environment variables (and .env) with sensible defaults; a YAML
file can override them and seed crisis policies and HTTP engines.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any

import yaml
from dotenv import load_dotenv

from enginewatch.store import CrisisPolicy

load_dotenv()

YELLOW_ACTIONS = {"degrade", "none"}


class ConfigValidationError(ValueError):
    pass


def _env(name: str, default: str = "") -> str:
    return os.getenv(f"ENGINEWATCH_{name}", default)


def parse_policy(raw: dict[str, Any]) -> CrisisPolicy:
    """Validate one ``policies:`` entry."""
    engine_id = str(raw.get("engine_id") or "")
    if not engine_id:
        raise ConfigValidationError("policy without engine_id")
    try:
        error_rate = float(raw["threshold_error_rate"])
        latency_ms = float(raw["threshold_latency_ms"])
        queue_len = int(raw["threshold_queue_length"])
    except KeyError as exc:
        raise ConfigValidationError(f"policy {engine_id}: missing {exc.args[0]}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"policy {engine_id}: {exc}") from exc
    if not 0 < error_rate <= 1:
        raise ConfigValidationError(f"policy {engine_id}: threshold_error_rate must be in (0, 1]")
    if latency_ms <= 0 or queue_len <= 0:
        raise ConfigValidationError(f"policy {engine_id}: latency and queue thresholds must be positive")

    action_on_yellow = str(raw.get("action_on_yellow", "none"))
    if action_on_yellow not in YELLOW_ACTIONS:
        raise ConfigValidationError(f"policy {engine_id}: action_on_yellow must be one of {sorted(YELLOW_ACTIONS)}")
    fallbacks = raw.get("fallback_engine_ids") or []
    if not isinstance(fallbacks, list):
        raise ConfigValidationError(f"policy {engine_id}: fallback_engine_ids must be a list")

    return CrisisPolicy(
        engine_id=engine_id,
        threshold_error_rate=error_rate,
        threshold_latency_ms=latency_ms,
        threshold_queue_length=queue_len,
        action_on_yellow=action_on_yellow,
        action_on_red=str(raw.get("action_on_red", "fallback")),
        fallback_engine_ids=[str(f) for f in fallbacks],
        allow_degraded=bool(raw.get("allow_degraded", False)),
    )


def parse_engine(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate one ``engines:`` entry (an HTTP-backed engine)."""
    engine_id = str(raw.get("id") or "")
    if not engine_id:
        raise ConfigValidationError("engine without id")
    job_types = raw.get("job_types") or []
    if not isinstance(job_types, list) or not job_types:
        raise ConfigValidationError(f"engine {engine_id}: job_types must be a non-empty list")
    if not raw.get("url"):
        raise ConfigValidationError(f"engine {engine_id}: url is required")
    tests = raw.get("tests") or []
    for t in tests:
        if not isinstance(t, dict) or not t.get("name"):
            raise ConfigValidationError(f"engine {engine_id}: every test needs a name")
    return {
        "id": engine_id,
        "name": str(raw.get("name", engine_id)),
        "job_types": [str(j) for j in job_types],
        "sub_types": [str(s) for s in raw.get("sub_types") or []] or None,
        "url": str(raw["url"]),
        "health_url": str(raw.get("health_url", "")),
        "token": str(raw.get("token", "")),
        "department": str(raw.get("department", "")),
        "model_preference": str(raw.get("model_preference", "STANDARD")),
        "tests": [{"name": str(t["name"]), "payload": t.get("payload")} for t in tests],
    }


@dataclass(frozen=True)
class WatchConfig:
    """Immutable configuration for the monitor service."""

    # Storage
    db_path: str = field(default_factory=lambda: _env("DB_PATH", "data/enginewatch.db"))

    # Evaluation loop
    eval_interval_s: float = field(default_factory=lambda: float(_env("EVAL_INTERVAL_S", "30")))
    metrics_window_min: int = field(default_factory=lambda: int(_env("METRICS_WINDOW_MIN", "5")))
    recertify_interval_s: float = field(default_factory=lambda: float(_env("RECERTIFY_INTERVAL_S", "86400")))

    # Status API
    api_host: str = field(default_factory=lambda: _env("API_HOST", "0.0.0.0"))
    api_port: int = field(default_factory=lambda: int(_env("API_PORT", "8087")))

    # Logging
    log_dir: str = field(default_factory=lambda: _env("LOG_DIR", "logs"))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))
    log_retention_days: int = field(default_factory=lambda: int(_env("LOG_RETENTION_DAYS", "7")))

    # Alerts
    webhook_url: str = field(default_factory=lambda: _env("WEBHOOK_URL"))
    webhook_token: str = field(default_factory=lambda: _env("WEBHOOK_TOKEN"))
    telegram_bot_token: str = field(default_factory=lambda: _env("TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str = field(default_factory=lambda: _env("TELEGRAM_CHAT_ID"))
    alert_cooldown_s: float = 600.0

    # Seed data
    policies: tuple[CrisisPolicy, ...] = ()
    engines: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_env(cls) -> WatchConfig:
        cfg = cls()
        if cfg.eval_interval_s <= 0:
            raise ConfigValidationError("ENGINEWATCH_EVAL_INTERVAL_S must be positive")
        return cfg

    @classmethod
    def from_yaml(cls, path: str) -> WatchConfig:
        with open(path, "r") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        base = cls.from_env()
        store = raw.get("store", {})
        evaluation = raw.get("evaluation", {})
        api = raw.get("api", {})
        log_cfg = raw.get("logging", {})
        alerts = raw.get("alerts", {})

        cfg = replace(
            base,
            db_path=store.get("db_path", base.db_path),
            eval_interval_s=float(evaluation.get("interval_s", base.eval_interval_s)),
            metrics_window_min=int(evaluation.get("window_min", base.metrics_window_min)),
            recertify_interval_s=float(evaluation.get("recertify_interval_s", base.recertify_interval_s)),
            api_host=api.get("host", base.api_host),
            api_port=int(api.get("port", base.api_port)),
            log_dir=log_cfg.get("dir", base.log_dir),
            log_level=log_cfg.get("level", base.log_level),
            log_retention_days=int(log_cfg.get("retention_days", base.log_retention_days)),
            webhook_url=alerts.get("webhook_url", base.webhook_url),
            webhook_token=alerts.get("webhook_token", base.webhook_token),
            telegram_bot_token=alerts.get("telegram_bot_token", base.telegram_bot_token),
            telegram_chat_id=str(alerts.get("telegram_chat_id", base.telegram_chat_id)),
            alert_cooldown_s=float(alerts.get("cooldown_s", base.alert_cooldown_s)),
            policies=tuple(parse_policy(p) for p in raw.get("policies") or []),
            engines=tuple(parse_engine(e) for e in raw.get("engines") or []),
        )
        if cfg.eval_interval_s <= 0:
            raise ConfigValidationError("evaluation.interval_s must be positive")
        if not 0 < cfg.api_port < 65536:
            raise ConfigValidationError("api.port out of range")
        return cfg
