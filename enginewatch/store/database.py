"""SQLite-backed store for engine health state, incidents, certification and audit trails.

Each operation opens its own connection, so the store can be shared between
threads without holding any in-process lock across I/O. WAL journaling lets
readers proceed while an evaluator writes.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from .models import (
    CertificationRecord,
    CrisisIncident,
    CrisisPolicy,
    CrisisSeverity,
    EngineEvent,
    EngineEventType,
    EngineMetrics,
    EngineState,
    EngineStatus,
    EngineTest,
    FallbackLog,
    IncidentStatus,
    iso,
    parse_iso,
    utcnow,
)

logger = logging.getLogger("enginewatch.store")

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS engine_states (
        engine_id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        last_updated TEXT NOT NULL,
        last_reason TEXT,
        metrics TEXT,
        active_fallback_engine_id TEXT,
        version INTEGER NOT NULL DEFAULT 1
    )""",
    """CREATE TABLE IF NOT EXISTS crisis_policies (
        engine_id TEXT PRIMARY KEY,
        threshold_error_rate REAL NOT NULL,
        threshold_latency_ms REAL NOT NULL,
        threshold_queue_length INTEGER NOT NULL,
        action_on_yellow TEXT NOT NULL DEFAULT 'none',
        action_on_red TEXT NOT NULL DEFAULT 'fallback',
        fallback_engine_ids TEXT NOT NULL DEFAULT '[]',
        allow_degraded INTEGER NOT NULL DEFAULT 0
    )""",
    """CREATE TABLE IF NOT EXISTS crisis_incidents (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        engine_id TEXT NOT NULL,
        status TEXT NOT NULL,
        severity TEXT NOT NULL,
        reason TEXT,
        meta TEXT,
        started_at TEXT NOT NULL,
        resolved_at TEXT
    )""",
    # at most one OPEN incident per engine
    """CREATE UNIQUE INDEX IF NOT EXISTS ux_crisis_incidents_open
        ON crisis_incidents (engine_id) WHERE status = 'OPEN'""",
    """CREATE TABLE IF NOT EXISTS engine_certification (
        engine_id TEXT PRIMARY KEY,
        certified INTEGER NOT NULL,
        last_test_result TEXT,
        last_health_check TEXT,
        certification_date TEXT NOT NULL,
        expires_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS engine_tests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        engine_id TEXT NOT NULL,
        test_name TEXT NOT NULL,
        payload TEXT,
        passed INTEGER,
        output TEXT,
        last_run TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS engine_fallback_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        original_engine_id TEXT NOT NULL,
        fallback_engine_id TEXT NOT NULL,
        reason TEXT,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS realtime_engine_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        engine_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        job_id TEXT,
        user_id TEXT,
        payload TEXT,
        created_at TEXT NOT NULL
    )""",
    # metrics source, populated by the job-producing caller
    """CREATE TABLE IF NOT EXISTS orchestrator_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        engine_used TEXT NOT NULL,
        status TEXT NOT NULL,
        duration_ms REAL,
        created_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS orchestrator_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_orchestrator_events_engine ON orchestrator_events (engine_used, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_realtime_engine_events_ts ON realtime_engine_events (created_at)",
)

_STATUS_ORDER = "CASE status WHEN 'RED' THEN 0 WHEN 'YELLOW' THEN 1 ELSE 2 END"


class PersistenceError(Exception):
    """Raised when a store read or write fails."""


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)


class EngineStore:
    def __init__(self, db_path: str = "data/enginewatch.db", busy_timeout_s: float = 5.0) -> None:
        self._db_path = db_path
        self._busy_timeout_s = busy_timeout_s
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout_s)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for stmt in _SCHEMA:
                conn.execute(stmt)

    # ------------------------------------------------------------------
    # Metrics source
    # ------------------------------------------------------------------

    def record_job_outcome(
        self,
        engine_id: str,
        status: str,
        duration_ms: Optional[float] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO orchestrator_events (engine_used, status, duration_ms, created_at) VALUES (?,?,?,?)",
                (engine_id, status, duration_ms, iso(created_at or utcnow())),
            )

    def fetch_job_outcomes(self, engine_id: str, since: datetime) -> list[tuple[str, Optional[float]]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, duration_ms FROM orchestrator_events WHERE engine_used = ? AND created_at >= ?",
                (engine_id, iso(since)),
            ).fetchall()
        return [(r["status"], r["duration_ms"]) for r in rows]

    def enqueue_job(self, job_id: Optional[str] = None, status: str = "QUEUED") -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO orchestrator_queue (job_id, status, created_at) VALUES (?,?,?)",
                (job_id, status, iso(utcnow())),
            )

    def update_queue_status(self, job_id: str, status: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("UPDATE orchestrator_queue SET status = ? WHERE job_id = ?", (status, job_id))
            return cur.rowcount

    def count_queued(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM orchestrator_queue WHERE status = 'QUEUED'").fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Engine state
    # ------------------------------------------------------------------

    @staticmethod
    def _state_from_row(row: sqlite3.Row) -> EngineState:
        return EngineState(
            engine_id=row["engine_id"],
            status=EngineStatus(row["status"]),
            last_updated=parse_iso(row["last_updated"]),
            last_reason=row["last_reason"] or "",
            metrics=EngineMetrics.from_dict(_loads(row["metrics"], {})),
            active_fallback_engine_id=row["active_fallback_engine_id"],
            version=int(row["version"]),
        )

    def get_engine_state(self, engine_id: str) -> Optional[EngineState]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM engine_states WHERE engine_id = ?", (engine_id,)).fetchone()
        return self._state_from_row(row) if row else None

    def list_engine_states(self) -> list[EngineState]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM engine_states ORDER BY {_STATUS_ORDER}, engine_id").fetchall()
        return [self._state_from_row(r) for r in rows]

    def compare_and_set_engine_state(self, state: EngineState, expected_version: int) -> bool:
        """Write ``state`` only if the stored row is still at ``expected_version``.

        ``expected_version == 0`` means the caller saw no row. Returns False when
        another writer got there first.
        """
        updated = iso(state.last_updated or utcnow())
        params = (
            state.status.value, updated, state.last_reason,
            _dumps(state.metrics.to_dict()), state.active_fallback_engine_id,
        )
        with self._connect() as conn:
            if expected_version == 0:
                cur = conn.execute(
                    """INSERT OR IGNORE INTO engine_states
                       (engine_id, status, last_updated, last_reason, metrics, active_fallback_engine_id, version)
                       VALUES (?,?,?,?,?,?,1)""",
                    (state.engine_id, *params),
                )
            else:
                cur = conn.execute(
                    """UPDATE engine_states
                       SET status = ?, last_updated = ?, last_reason = ?, metrics = ?,
                           active_fallback_engine_id = ?, version = version + 1
                       WHERE engine_id = ? AND version = ?""",
                    (*params, state.engine_id, expected_version),
                )
            return cur.rowcount == 1

    def save_engine_state(self, state: EngineState) -> None:
        """Unconditional overwrite, used by administrative overrides."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO engine_states
                   (engine_id, status, last_updated, last_reason, metrics, active_fallback_engine_id, version)
                   VALUES (?,?,?,?,?,?,1)
                   ON CONFLICT(engine_id) DO UPDATE SET
                       status = excluded.status,
                       last_updated = excluded.last_updated,
                       last_reason = excluded.last_reason,
                       metrics = excluded.metrics,
                       active_fallback_engine_id = excluded.active_fallback_engine_id,
                       version = engine_states.version + 1""",
                (
                    state.engine_id, state.status.value, iso(state.last_updated or utcnow()),
                    state.last_reason, _dumps(state.metrics.to_dict()), state.active_fallback_engine_id,
                ),
            )

    # ------------------------------------------------------------------
    # Crisis policies
    # ------------------------------------------------------------------

    @staticmethod
    def _policy_from_row(row: sqlite3.Row) -> CrisisPolicy:
        return CrisisPolicy(
            engine_id=row["engine_id"],
            threshold_error_rate=float(row["threshold_error_rate"]),
            threshold_latency_ms=float(row["threshold_latency_ms"]),
            threshold_queue_length=int(row["threshold_queue_length"]),
            action_on_yellow=row["action_on_yellow"],
            action_on_red=row["action_on_red"],
            fallback_engine_ids=list(_loads(row["fallback_engine_ids"], [])),
            allow_degraded=bool(row["allow_degraded"]),
        )

    def get_crisis_policy(self, engine_id: str) -> Optional[CrisisPolicy]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM crisis_policies WHERE engine_id = ?", (engine_id,)).fetchone()
        return self._policy_from_row(row) if row else None

    def list_crisis_policies(self) -> list[CrisisPolicy]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM crisis_policies ORDER BY engine_id").fetchall()
        return [self._policy_from_row(r) for r in rows]

    def upsert_crisis_policy(self, policy: CrisisPolicy) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO crisis_policies VALUES (?,?,?,?,?,?,?,?)",
                (
                    policy.engine_id, policy.threshold_error_rate, policy.threshold_latency_ms,
                    policy.threshold_queue_length, policy.action_on_yellow, policy.action_on_red,
                    _dumps(list(policy.fallback_engine_ids)), int(policy.allow_degraded),
                ),
            )

    # ------------------------------------------------------------------
    # Crisis incidents
    # ------------------------------------------------------------------

    @staticmethod
    def _incident_from_row(row: sqlite3.Row) -> CrisisIncident:
        return CrisisIncident(
            id=int(row["id"]),
            engine_id=row["engine_id"],
            status=IncidentStatus(row["status"]),
            severity=CrisisSeverity(row["severity"]),
            reason=row["reason"] or "",
            meta=_loads(row["meta"], {}),
            started_at=parse_iso(row["started_at"]),
            resolved_at=parse_iso(row["resolved_at"]),
        )

    def get_incident(self, incident_id: int) -> Optional[CrisisIncident]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM crisis_incidents WHERE id = ?", (incident_id,)).fetchone()
        return self._incident_from_row(row) if row else None

    def get_open_incident(self, engine_id: str) -> Optional[CrisisIncident]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM crisis_incidents WHERE engine_id = ? AND status = 'OPEN'", (engine_id,)
            ).fetchone()
        return self._incident_from_row(row) if row else None

    def list_incidents(self, engine_id: str) -> list[CrisisIncident]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM crisis_incidents WHERE engine_id = ? ORDER BY id", (engine_id,)
            ).fetchall()
        return [self._incident_from_row(r) for r in rows]

    def list_open_incidents(self) -> list[CrisisIncident]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM crisis_incidents WHERE status = 'OPEN' ORDER BY started_at DESC, id DESC"
            ).fetchall()
        return [self._incident_from_row(r) for r in rows]

    def insert_open_incident(
        self,
        engine_id: str,
        severity: CrisisSeverity,
        reason: str,
        meta: dict[str, Any],
        started_at: Optional[datetime] = None,
    ) -> Optional[CrisisIncident]:
        """Insert a new OPEN incident. Returns None if one is already open."""
        ts = started_at or utcnow()
        with self._connect() as conn:
            try:
                cur = conn.execute(
                    """INSERT INTO crisis_incidents (engine_id, status, severity, reason, meta, started_at)
                       VALUES (?, 'OPEN', ?, ?, ?, ?)""",
                    (engine_id, severity.value, reason, _dumps(meta), iso(ts)),
                )
            except sqlite3.IntegrityError:
                return None
            incident_id = cur.lastrowid
        return CrisisIncident(
            id=incident_id, engine_id=engine_id, status=IncidentStatus.OPEN,
            severity=severity, reason=reason, meta=meta, started_at=ts,
        )

    def update_incident(self, incident_id: int, severity: CrisisSeverity, reason: str, meta: dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE crisis_incidents SET severity = ?, reason = ?, meta = ? WHERE id = ?",
                (severity.value, reason, _dumps(meta), incident_id),
            )

    def resolve_open_incidents(self, engine_id: str, resolved_at: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE crisis_incidents SET status = 'RESOLVED', resolved_at = ? WHERE engine_id = ? AND status = 'OPEN'",
                (iso(resolved_at or utcnow()), engine_id),
            )
            return cur.rowcount

    def resolve_incident(self, incident_id: int, resolved_at: Optional[datetime] = None) -> Optional[CrisisIncident]:
        """Close one OPEN incident. Returns None if it does not exist or was already resolved."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE crisis_incidents SET status = 'RESOLVED', resolved_at = ? WHERE id = ? AND status = 'OPEN'",
                (iso(resolved_at or utcnow()), incident_id),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM crisis_incidents WHERE id = ?", (incident_id,)).fetchone()
        return self._incident_from_row(row)

    # ------------------------------------------------------------------
    # Certification
    # ------------------------------------------------------------------

    def get_certification(self, engine_id: str) -> Optional[CertificationRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM engine_certification WHERE engine_id = ?", (engine_id,)).fetchone()
        if not row:
            return None
        return CertificationRecord(
            engine_id=row["engine_id"],
            certified=bool(row["certified"]),
            last_test_result=_loads(row["last_test_result"], {}),
            last_health_check=_loads(row["last_health_check"], {}),
            certification_date=parse_iso(row["certification_date"]),
            expires_at=parse_iso(row["expires_at"]),
        )

    def put_certification(self, record: CertificationRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO engine_certification VALUES (?,?,?,?,?,?)",
                (
                    record.engine_id, int(record.certified),
                    _dumps(record.last_test_result), _dumps(record.last_health_check),
                    iso(record.certification_date),
                    iso(record.expires_at) if record.expires_at else None,
                ),
            )

    @staticmethod
    def _test_from_row(row: sqlite3.Row) -> EngineTest:
        return EngineTest(
            id=int(row["id"]),
            engine_id=row["engine_id"],
            test_name=row["test_name"],
            payload=_loads(row["payload"]),
            passed=None if row["passed"] is None else bool(row["passed"]),
            output=row["output"],
            last_run=parse_iso(row["last_run"]),
        )

    def add_engine_test(self, engine_id: str, test_name: str, payload: Any) -> EngineTest:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO engine_tests (engine_id, test_name, payload) VALUES (?,?,?)",
                (engine_id, test_name, _dumps(payload)),
            )
            test_id = cur.lastrowid
        return EngineTest(id=test_id, engine_id=engine_id, test_name=test_name, payload=payload)

    def list_engine_tests(self, engine_id: str) -> list[EngineTest]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM engine_tests WHERE engine_id = ? ORDER BY id", (engine_id,)).fetchall()
        return [self._test_from_row(r) for r in rows]

    def record_test_run(self, test_id: int, passed: bool, output: str, last_run: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE engine_tests SET passed = ?, output = ?, last_run = ? WHERE id = ?",
                (int(passed), output, iso(last_run), test_id),
            )

    # ------------------------------------------------------------------
    # Fallback logs
    # ------------------------------------------------------------------

    def insert_fallback_log(
        self, original_engine_id: str, fallback_engine_id: str, reason: str, created_at: Optional[datetime] = None
    ) -> FallbackLog:
        ts = created_at or utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO engine_fallback_logs (original_engine_id, fallback_engine_id, reason, created_at)
                   VALUES (?,?,?,?)""",
                (original_engine_id, fallback_engine_id, reason, iso(ts)),
            )
            log_id = cur.lastrowid
        return FallbackLog(log_id, original_engine_id, fallback_engine_id, reason, ts)

    def list_fallback_logs(self, limit: int = 50) -> list[FallbackLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM engine_fallback_logs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            FallbackLog(
                id=int(r["id"]),
                original_engine_id=r["original_engine_id"],
                fallback_engine_id=r["fallback_engine_id"],
                reason=r["reason"] or "",
                created_at=parse_iso(r["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Engine events
    # ------------------------------------------------------------------

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> EngineEvent:
        return EngineEvent(
            id=int(row["id"]),
            engine_id=row["engine_id"],
            event_type=EngineEventType(row["event_type"]),
            job_id=row["job_id"],
            user_id=row["user_id"],
            payload=_loads(row["payload"], {}),
            created_at=parse_iso(row["created_at"]),
        )

    def insert_engine_event(self, event: EngineEvent) -> EngineEvent:
        ts = event.created_at or utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """INSERT INTO realtime_engine_events (engine_id, event_type, job_id, user_id, payload, created_at)
                   VALUES (?,?,?,?,?,?)""",
                (
                    event.engine_id, event.event_type.value, event.job_id, event.user_id,
                    _dumps(event.payload or {}), iso(ts),
                ),
            )
            event_id = cur.lastrowid
        event.id = event_id
        event.created_at = ts
        return event

    def list_recent_events(self, limit: int = 50) -> list[EngineEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM realtime_engine_events ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._event_from_row(r) for r in rows]

    def list_engine_events_since(self, engine_id: str, since: datetime) -> list[EngineEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM realtime_engine_events WHERE engine_id = ? AND created_at >= ? ORDER BY id",
                (engine_id, iso(since)),
            ).fetchall()
        return [self._event_from_row(r) for r in rows]
