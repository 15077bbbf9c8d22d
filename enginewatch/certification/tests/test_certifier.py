"""Tests for CertificationAuthority."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from enginewatch.certification import CERTIFICATION_TTL_DAYS, CertificationAuthority
from enginewatch.registry import EngineDefinition
from enginewatch.store import EngineStore, PersistenceError

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path):
    return EngineStore(str(tmp_path / "cert.db"))


@pytest.fixture
def authority(store, clock):
    return CertificationAuthority(store, now_fn=clock)


def _engine(run_fn=None, health_check_fn=None) -> EngineDefinition:
    return EngineDefinition(
        id="legacy",
        name="Legacy",
        job_types=["LEGAL"],
        run_fn=run_fn or (lambda payload: {"echo": payload}),
        health_check_fn=health_check_fn,
    )


def test_no_tests_no_health_check_certifies(authority, clock):
    result = authority.certify_engine(_engine())
    assert result.certified is True
    assert result.test_results["message"] == "No tests defined"
    assert result.health_check == {"status": "no_health_check", "passed": True}
    assert result.expires_at == T0 + timedelta(days=CERTIFICATION_TTL_DAYS)
    assert authority.is_certified("legacy") is True


def test_certification_expires_on_read(authority, clock):
    authority.certify_engine(_engine())
    clock.now = T0 + timedelta(days=29)
    assert authority.is_certified("legacy") is True
    clock.now = T0 + timedelta(days=30)
    assert authority.is_certified("legacy") is False


def test_never_certified_engine(authority):
    assert authority.is_certified("unknown") is False


def test_passing_tests_are_recorded(authority, store):
    authority.register_test("legacy", "smoke", {"q": "hi"})
    authority.register_test("legacy", "second", {"q": "there"})
    result = authority.certify_engine(_engine())
    assert result.certified is True
    assert result.test_results["total"] == 2
    assert result.test_results["failed"] == 0
    tests = store.list_engine_tests("legacy")
    assert all(t.passed for t in tests)
    assert tests[0].output == '{"echo": {"q": "hi"}}'
    assert tests[0].last_run == T0


def test_none_result_fails_test(authority):
    authority.register_test("legacy", "smoke", {})
    result = authority.certify_engine(_engine(run_fn=lambda payload: None))
    assert result.certified is False
    assert result.expires_at is None
    assert authority.is_certified("legacy") is False


def test_raising_test_is_recorded_as_error(authority, store):
    def boom(payload):
        raise RuntimeError("model offline")

    authority.register_test("legacy", "smoke", {})
    result = authority.certify_engine(_engine(run_fn=boom))
    assert result.certified is False
    [test] = result.test_results["tests"]
    assert test["passed"] is False
    assert test["output"].startswith("Error: ")
    assert "model offline" in store.list_engine_tests("legacy")[0].output


def test_any_non_none_result_passes(authority):
    # outputs are not compared against expected values
    authority.register_test("legacy", "smoke", {})
    assert authority.certify_engine(_engine(run_fn=lambda payload: "")).certified is True


def test_failing_health_check_blocks_certification(authority):
    result = authority.certify_engine(_engine(health_check_fn=lambda: {"status": "degraded", "passed": False}))
    assert result.certified is False
    assert result.health_check["status"] == "degraded"


def test_raising_health_check_is_recorded(authority):
    def boom():
        raise ConnectionError("refused")

    result = authority.certify_engine(_engine(health_check_fn=boom))
    assert result.certified is False
    assert result.health_check["status"] == "error"
    assert "refused" in result.health_check["error"]


def test_non_mapping_health_check_fails(authority):
    result = authority.certify_engine(_engine(health_check_fn=lambda: True))
    assert result.certified is False
    assert result.health_check["status"] == "error"
    assert result.health_check["passed"] is False


def test_recertify_all_survives_misbehaving_engine(authority):
    bad = EngineDefinition(id="odd", name="Odd", job_types=["LEGAL"], run_fn=lambda p: {"ok": True},
                           health_check_fn=lambda: True)
    results = authority.recertify_all_engines([bad, _engine()])
    assert [(r.engine_id, r.certified) for r in results] == [("odd", False), ("legacy", True)]
    assert authority.is_certified("legacy") is True


def test_recertify_all_continues_after_crash(authority):
    crashing = _engine()
    crashing.id = "crashing"
    real_certify = authority.certify_engine

    def certify(engine):
        if engine.id == "crashing":
            raise KeyError("status")
        return real_certify(engine)

    with patch.object(authority, "certify_engine", side_effect=certify):
        results = authority.recertify_all_engines([crashing, _engine()])
    assert [(r.engine_id, r.certified) for r in results] == [("crashing", False), ("legacy", True)]


def test_failed_recertification_revokes(authority):
    authority.certify_engine(_engine())
    authority.register_test("legacy", "smoke", {})
    authority.certify_engine(_engine(run_fn=lambda payload: None))
    assert authority.is_certified("legacy") is False


def test_is_certified_fails_closed(authority, store):
    authority.certify_engine(_engine())
    with patch.object(store, "get_certification", side_effect=PersistenceError("locked")):
        assert authority.is_certified("legacy") is False


def test_unreadable_tests_fail_certification(authority, store):
    with patch.object(store, "list_engine_tests", side_effect=PersistenceError("locked")):
        result = authority.certify_engine(_engine())
    assert result.certified is False


def test_recertify_all_engines(authority):
    good = _engine()
    bad = EngineDefinition(id="broken", name="Broken", job_types=["LEGAL"], run_fn=lambda p: None)
    authority.register_test("broken", "smoke", {})
    results = authority.recertify_all_engines([good, bad])
    assert [(r.engine_id, r.certified) for r in results] == [("legacy", True), ("broken", False)]
