"""Tests for WatchConfig loading and validation."""
from __future__ import annotations

from pathlib import Path

import pytest

from enginewatch.monitor import ConfigValidationError, WatchConfig
from enginewatch.monitor.config import parse_engine, parse_policy

YAML = """
store:
  db_path: /tmp/ew/test.db
evaluation:
  interval_s: 15
  window_min: 10
api:
  port: 9100
logging:
  level: DEBUG
alerts:
  webhook_url: http://hooks.local/ew
  telegram_chat_id: -100555
  cooldown_s: 60
policies:
  - engine_id: legal
    threshold_error_rate: 0.5
    threshold_latency_ms: 2000
    threshold_queue_length: 10
    action_on_yellow: degrade
    allow_degraded: true
    fallback_engine_ids: [legacy]
engines:
  - id: legacy
    name: Legacy Legal
    job_types: [LEGAL]
    url: http://legacy.local/run
    department: legal
    model_preference: ECONOMY
    health_url: http://legacy.local/health
    tests:
      - name: smoke
        payload: {q: hello}
"""


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "enginewatch.yaml"
    path.write_text(text)
    return str(path)


def test_defaults_from_env(monkeypatch):
    monkeypatch.setenv("ENGINEWATCH_API_PORT", "9200")
    monkeypatch.setenv("ENGINEWATCH_EVAL_INTERVAL_S", "5")
    cfg = WatchConfig.from_env()
    assert cfg.api_port == 9200
    assert cfg.eval_interval_s == 5.0
    assert cfg.metrics_window_min == 5
    assert cfg.policies == ()


def test_from_env_rejects_non_positive_interval(monkeypatch):
    monkeypatch.setenv("ENGINEWATCH_EVAL_INTERVAL_S", "0")
    with pytest.raises(ConfigValidationError):
        WatchConfig.from_env()


def test_from_yaml(tmp_path):
    cfg = WatchConfig.from_yaml(_write(tmp_path, YAML))
    assert cfg.db_path == "/tmp/ew/test.db"
    assert cfg.eval_interval_s == 15.0
    assert cfg.metrics_window_min == 10
    assert cfg.api_port == 9100
    assert cfg.log_level == "DEBUG"
    assert cfg.webhook_url == "http://hooks.local/ew"
    assert cfg.telegram_chat_id == "-100555"
    assert cfg.alert_cooldown_s == 60.0

    [policy] = cfg.policies
    assert policy.engine_id == "legal"
    assert policy.degrades_on_yellow is True
    assert policy.fallback_engine_ids == ["legacy"]

    [engine] = cfg.engines
    assert engine["id"] == "legacy"
    assert engine["sub_types"] is None
    assert engine["department"] == "legal"
    assert engine["model_preference"] == "ECONOMY"
    assert engine["tests"] == [{"name": "smoke", "payload": {"q": "hello"}}]


def test_from_yaml_empty_file_uses_defaults(tmp_path):
    cfg = WatchConfig.from_yaml(_write(tmp_path, ""))
    assert cfg.api_port == WatchConfig().api_port
    assert cfg.engines == ()


def test_from_yaml_rejects_bad_port(tmp_path):
    with pytest.raises(ConfigValidationError):
        WatchConfig.from_yaml(_write(tmp_path, "api:\n  port: 70000\n"))


@pytest.mark.parametrize("raw", [
    {"threshold_error_rate": 0.5, "threshold_latency_ms": 2000, "threshold_queue_length": 10},
    {"engine_id": "x", "threshold_latency_ms": 2000, "threshold_queue_length": 10},
    {"engine_id": "x", "threshold_error_rate": 1.5, "threshold_latency_ms": 2000, "threshold_queue_length": 10},
    {"engine_id": "x", "threshold_error_rate": 0.5, "threshold_latency_ms": 0, "threshold_queue_length": 10},
    {"engine_id": "x", "threshold_error_rate": "lots", "threshold_latency_ms": 2000, "threshold_queue_length": 10},
    {"engine_id": "x", "threshold_error_rate": 0.5, "threshold_latency_ms": 2000, "threshold_queue_length": 10,
     "action_on_yellow": "panic"},
    {"engine_id": "x", "threshold_error_rate": 0.5, "threshold_latency_ms": 2000, "threshold_queue_length": 10,
     "fallback_engine_ids": "legacy"},
])
def test_parse_policy_rejects(raw):
    with pytest.raises(ConfigValidationError):
        parse_policy(raw)


@pytest.mark.parametrize("raw", [
    {"job_types": ["LEGAL"], "url": "http://x"},
    {"id": "x", "job_types": [], "url": "http://x"},
    {"id": "x", "job_types": ["LEGAL"]},
    {"id": "x", "job_types": ["LEGAL"], "url": "http://x", "tests": [{"payload": {}}]},
])
def test_parse_engine_rejects(raw):
    with pytest.raises(ConfigValidationError):
        parse_engine(raw)
