"""Tests for EngineStore."""
from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from enginewatch.store import (
    CertificationRecord,
    CrisisPolicy,
    CrisisSeverity,
    EngineEvent,
    EngineEventType,
    EngineMetrics,
    EngineState,
    EngineStatus,
    EngineStore,
    IncidentStatus,
    PersistenceError,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return EngineStore(str(tmp_path / "store.db"))


def _state(engine_id: str = "legal", status: EngineStatus = EngineStatus.RED, **kw) -> EngineState:
    return EngineState(engine_id=engine_id, status=status, last_updated=T0, last_reason="test", **kw)


# --- metrics source ---

def test_fetch_job_outcomes_respects_window(store: EngineStore):
    store.record_job_outcome("legal", "COMPLETED", 100, created_at=T0 - timedelta(minutes=10))
    store.record_job_outcome("legal", "FAILED", 200, created_at=T0 - timedelta(minutes=1))
    store.record_job_outcome("other", "FAILED", 300, created_at=T0)
    outcomes = store.fetch_job_outcomes("legal", T0 - timedelta(minutes=5))
    assert outcomes == [("FAILED", 200)]


def test_count_queued_only_counts_queued(store: EngineStore):
    store.enqueue_job("j1")
    store.enqueue_job("j2")
    store.enqueue_job("j3", status="RUNNING")
    assert store.count_queued() == 2
    assert store.update_queue_status("j1", "DONE") == 1
    assert store.count_queued() == 1


# --- engine state ---

def test_get_engine_state_missing_returns_none(store: EngineStore):
    assert store.get_engine_state("nope") is None


def test_cas_insert_then_update(store: EngineStore):
    assert store.compare_and_set_engine_state(_state(), 0) is True
    stored = store.get_engine_state("legal")
    assert stored.version == 1
    assert stored.status == EngineStatus.RED

    assert store.compare_and_set_engine_state(_state(status=EngineStatus.GREEN), 1) is True
    stored = store.get_engine_state("legal")
    assert stored.version == 2
    assert stored.status == EngineStatus.GREEN


def test_cas_rejects_stale_version(store: EngineStore):
    store.compare_and_set_engine_state(_state(), 0)
    store.compare_and_set_engine_state(_state(status=EngineStatus.YELLOW), 1)
    # A second writer still holding version 1 loses
    assert store.compare_and_set_engine_state(_state(status=EngineStatus.GREEN), 1) is False
    assert store.get_engine_state("legal").status == EngineStatus.YELLOW


def test_cas_insert_loses_to_existing_row(store: EngineStore):
    store.compare_and_set_engine_state(_state(), 0)
    assert store.compare_and_set_engine_state(_state(status=EngineStatus.GREEN), 0) is False


def test_save_engine_state_bumps_version(store: EngineStore):
    store.save_engine_state(_state())
    store.save_engine_state(_state(status=EngineStatus.YELLOW, active_fallback_engine_id="backup"))
    stored = store.get_engine_state("legal")
    assert stored.version == 2
    assert stored.active_fallback_engine_id == "backup"


def test_state_metrics_round_trip(store: EngineStore):
    metrics = EngineMetrics(error_rate=0.25, avg_latency_ms=1200.5, queue_length=3, total_jobs=8, failed_jobs=2)
    store.save_engine_state(_state(metrics=metrics))
    assert store.get_engine_state("legal").metrics == metrics


def test_list_engine_states_worst_first(store: EngineStore):
    store.save_engine_state(_state("a", EngineStatus.GREEN))
    store.save_engine_state(_state("b", EngineStatus.YELLOW))
    store.save_engine_state(_state("c", EngineStatus.RED))
    store.save_engine_state(_state("d", EngineStatus.RED))
    assert [s.engine_id for s in store.list_engine_states()] == ["c", "d", "b", "a"]


# --- policies ---

def test_policy_upsert_and_read(store: EngineStore):
    policy = CrisisPolicy("legal", 0.5, 2000, 10, fallback_engine_ids=["b", "c"], allow_degraded=True)
    store.upsert_crisis_policy(policy)
    assert store.get_crisis_policy("legal") == policy
    store.upsert_crisis_policy(CrisisPolicy("legal", 0.3, 1000, 5))
    assert store.get_crisis_policy("legal").fallback_engine_ids == []
    assert len(store.list_crisis_policies()) == 1


# --- incidents ---

def test_single_open_incident_per_engine(store: EngineStore):
    first = store.insert_open_incident("legal", CrisisSeverity.YELLOW, "r", {}, T0)
    assert first is not None
    assert store.insert_open_incident("legal", CrisisSeverity.RED, "r", {}, T0) is None
    assert len(store.list_incidents("legal")) == 1


def test_new_incident_allowed_after_resolve(store: EngineStore):
    store.insert_open_incident("legal", CrisisSeverity.RED, "r", {}, T0)
    assert store.resolve_open_incidents("legal", T0) == 1
    assert store.insert_open_incident("legal", CrisisSeverity.RED, "r2", {}, T0) is not None
    statuses = [i.status for i in store.list_incidents("legal")]
    assert statuses == [IncidentStatus.RESOLVED, IncidentStatus.OPEN]


def test_update_incident_changes_severity(store: EngineStore):
    inc = store.insert_open_incident("legal", CrisisSeverity.YELLOW, "r", {}, T0)
    store.update_incident(inc.id, CrisisSeverity.RED, "worse", {"error_rate": 0.6})
    updated = store.get_incident(inc.id)
    assert updated.severity == CrisisSeverity.RED
    assert updated.reason == "worse"
    assert updated.meta == {"error_rate": 0.6}


def test_resolve_incident_by_id(store: EngineStore):
    inc = store.insert_open_incident("legal", CrisisSeverity.RED, "r", {}, T0)
    resolved = store.resolve_incident(inc.id, T0 + timedelta(minutes=3))
    assert resolved.status == IncidentStatus.RESOLVED
    assert resolved.resolved_at == T0 + timedelta(minutes=3)
    assert store.get_open_incident("legal") is None
    assert store.resolve_incident(9999) is None


def test_resolve_incident_already_resolved_returns_none(store: EngineStore):
    inc = store.insert_open_incident("legal", CrisisSeverity.RED, "r", {}, T0)
    store.resolve_incident(inc.id, T0)
    assert store.resolve_incident(inc.id, T0 + timedelta(hours=1)) is None
    assert store.get_incident(inc.id).resolved_at == T0


def test_list_open_incidents_newest_first(store: EngineStore):
    store.insert_open_incident("a", CrisisSeverity.RED, "r", {}, T0)
    store.insert_open_incident("b", CrisisSeverity.YELLOW, "r", {}, T0 + timedelta(minutes=1))
    assert [i.engine_id for i in store.list_open_incidents()] == ["b", "a"]


# --- certification & tests ---

def test_certification_round_trip(store: EngineStore):
    record = CertificationRecord(
        engine_id="legal", certified=True,
        last_test_result={"passed": True}, last_health_check={"status": "ok", "passed": True},
        certification_date=T0, expires_at=T0 + timedelta(days=30),
    )
    store.put_certification(record)
    assert store.get_certification("legal") == record


def test_engine_test_run_recorded(store: EngineStore):
    test = store.add_engine_test("legal", "smoke", {"q": "hello"})
    store.record_test_run(test.id, True, '"ok"', T0)
    [stored] = store.list_engine_tests("legal")
    assert stored.payload == {"q": "hello"}
    assert stored.passed is True
    assert stored.last_run == T0


# --- audit trails ---

def test_fallback_logs_newest_first(store: EngineStore):
    store.insert_fallback_log("a", "b", "first", T0)
    store.insert_fallback_log("a", "c", "second", T0)
    logs = store.list_fallback_logs(limit=1)
    assert len(logs) == 1
    assert logs[0].fallback_engine_id == "c"


def test_engine_event_assigned_id_and_timestamp(store: EngineStore):
    event = store.insert_engine_event(EngineEvent("legal", EngineEventType.COMPLETED, job_id="j1"))
    assert event.id is not None
    assert event.created_at is not None
    [recent] = store.list_recent_events()
    assert recent.job_id == "j1"
    assert recent.event_type == EngineEventType.COMPLETED


# --- errors ---

def test_sqlite_errors_become_persistence_errors(store: EngineStore):
    with pytest.raises(PersistenceError):
        with store._connect() as conn:
            conn.execute("SELECT * FROM missing_table")


def test_persistence_error_rolls_back(store: EngineStore):
    with pytest.raises(PersistenceError):
        with store._connect() as conn:
            conn.execute("INSERT INTO orchestrator_queue (job_id, status, created_at) VALUES ('x','QUEUED','t')")
            raise sqlite3.OperationalError("boom")
    assert store.count_queued() == 0
