"""Tests for EngineRegistry and engine definitions."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from enginewatch.registry import (
    EngineDefinition,
    EngineNotFound,
    EngineRegistry,
    ExecutionError,
    http_engine,
)


def _engine(engine_id: str, job_types=("LEGAL",), sub_types=None, run_fn=None, health_check_fn=None) -> EngineDefinition:
    return EngineDefinition(
        id=engine_id,
        name=engine_id.title(),
        job_types=list(job_types),
        sub_types=sub_types,
        run_fn=run_fn or (lambda payload: {"ok": True}),
        health_check_fn=health_check_fn,
    )


@pytest.fixture
def registry():
    return EngineRegistry([
        _engine("contracts", sub_types=["CONTRACT"]),
        _engine("legal-general"),
        _engine("litigation", sub_types=["LAWSUIT", "APPEAL"]),
        _engine("finance", job_types=["FINANCE"]),
    ])


# --- lookup ---

def test_find_exact_sub_type(registry: EngineRegistry):
    assert registry.find("LEGAL", "APPEAL").id == "litigation"


def test_find_without_sub_type_prefers_generic(registry: EngineRegistry):
    assert registry.find("LEGAL").id == "legal-general"


def test_find_unknown_sub_type_falls_back_to_generic(registry: EngineRegistry):
    assert registry.find("LEGAL", "TRADEMARK").id == "legal-general"


def test_find_unknown_job_type_returns_none(registry: EngineRegistry):
    assert registry.find("MEDICAL") is None


def test_find_no_generic_engine_returns_none():
    reg = EngineRegistry([_engine("contracts", sub_types=["CONTRACT"])])
    assert reg.find("LEGAL", "TRADEMARK") is None
    assert reg.find("LEGAL") is None


def test_require_raises_for_unknown(registry: EngineRegistry):
    with pytest.raises(EngineNotFound):
        registry.require("nope")
    assert registry.require("finance").id == "finance"


def test_by_job_type_and_membership(registry: EngineRegistry):
    assert {e.id for e in registry.by_job_type("LEGAL")} == {"contracts", "legal-general", "litigation"}
    assert "finance" in registry
    assert "nope" not in registry
    assert len(registry) == 4


def test_register_replaces_existing(registry: EngineRegistry):
    registry.register(_engine("finance", job_types=["FINANCE", "TAX"]))
    assert registry.get("finance").handles("TAX")
    assert len(registry) == 4


# --- execution ---

def test_run_wraps_exceptions():
    def boom(payload):
        raise RuntimeError("model offline")

    engine = _engine("broken", run_fn=boom)
    with pytest.raises(ExecutionError, match="model offline"):
        engine.run({})


def test_health_check_default_passes():
    engine = _engine("plain")
    assert engine.has_health_check is False
    assert engine.health_check() == {"status": "no_health_check", "passed": True}


def test_health_check_wraps_exceptions():
    def boom():
        raise ConnectionError("refused")

    engine = _engine("flaky", health_check_fn=boom)
    with pytest.raises(ExecutionError):
        engine.health_check()


# --- HTTP engines ---

def test_http_engine_posts_payload_with_token():
    resp = MagicMock(content=b'{"answer": 42}')
    resp.json.return_value = {"answer": 42}
    with patch("enginewatch.registry.engines.requests.post", return_value=resp) as post:
        engine = http_engine("remote", "Remote", ["LEGAL"], "http://engine.local/run", token="secret")
        assert engine.run({"q": "x"}) == {"answer": 42}
    _, kwargs = post.call_args
    assert kwargs["json"] == {"q": "x"}
    assert kwargs["headers"]["Authorization"] == "Bearer secret"


def test_http_engine_http_error_becomes_execution_error():
    resp = MagicMock()
    resp.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
    with patch("enginewatch.registry.engines.requests.post", return_value=resp):
        engine = http_engine("remote", "Remote", ["LEGAL"], "http://engine.local/run")
        with pytest.raises(ExecutionError, match="503"):
            engine.run({})


def test_http_engine_without_health_url_has_no_check():
    engine = http_engine("remote", "Remote", ["LEGAL"], "http://engine.local/run")
    assert engine.has_health_check is False


def test_http_engine_health_unreachable():
    with patch("enginewatch.registry.engines.requests.get", side_effect=requests.ConnectionError("refused")):
        engine = http_engine("remote", "Remote", ["LEGAL"], "http://engine.local/run",
                             health_url="http://engine.local/health")
        result = engine.health_check()
    assert result["passed"] is False
    assert result["status"] == "unreachable"


def test_http_engine_health_ok():
    with patch("enginewatch.registry.engines.requests.get", return_value=MagicMock(ok=True, status_code=200)):
        engine = http_engine("remote", "Remote", ["LEGAL"], "http://engine.local/run",
                             health_url="http://engine.local/health")
        assert engine.health_check() == {"status": "ok", "passed": True}


def test_http_engine_carries_routing_hints():
    engine = http_engine("remote", "Remote", ["LEGAL"], "http://engine.local/run",
                         department="legal", model_preference="ECONOMY")
    assert engine.department == "legal"
    assert engine.model_preference == "ECONOMY"
    assert http_engine("plain", "Plain", ["LEGAL"], "http://x").model_preference == "STANDARD"
