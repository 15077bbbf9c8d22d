"""Certification authority — gates which engines may serve as fallbacks.

An engine is certified when every registered test passes and its health check
(if it has one) passes. A test passes when ``run(payload)`` returns anything
other than None without raising; outputs are not compared against expected
values. Certification lasts 30 days and expiry is checked on read.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from enginewatch.registry import EngineDefinition, ExecutionError
from enginewatch.store import CertificationRecord, EngineStore, EngineTest, PersistenceError
from enginewatch.store.models import utcnow

logger = logging.getLogger("enginewatch.certification")

CERTIFICATION_TTL_DAYS = 30
MAX_OUTPUT_CHARS = 2000


@dataclass
class CertificationResult:
    engine_id: str
    certified: bool
    test_results: dict[str, Any] = field(default_factory=dict)
    health_check: dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine_id": self.engine_id,
            "certified": self.certified,
            "test_results": self.test_results,
            "health_check": self.health_check,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def _render_output(result: Any) -> str:
    try:
        text = json.dumps(result, default=str)
    except (TypeError, ValueError):
        text = repr(result)
    return text[:MAX_OUTPUT_CHARS]


class CertificationAuthority:
    def __init__(self, store: EngineStore, now_fn: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._now = now_fn

    def register_test(self, engine_id: str, test_name: str, payload: Any) -> EngineTest:
        return self._store.add_engine_test(engine_id, test_name, payload)

    # --- test suite ---

    def _run_test(self, engine: EngineDefinition, test: EngineTest) -> dict[str, Any]:
        try:
            result = engine.run(test.payload)
            passed = result is not None
            output = _render_output(result)
        except ExecutionError as exc:
            passed = False
            output = f"Error: {exc}"[:MAX_OUTPUT_CHARS]

        try:
            self._store.record_test_run(test.id, passed, output, self._now())
        except PersistenceError as exc:
            logger.error("Recording test %s for %s failed: %s", test.test_name, engine.id, exc,
                         extra={"engine_id": engine.id, "operation": "record_test_run"})
        return {"test_name": test.test_name, "passed": passed, "output": output}

    def run_engine_tests(self, engine: EngineDefinition) -> dict[str, Any]:
        try:
            tests = self._store.list_engine_tests(engine.id)
        except PersistenceError as exc:
            logger.error("Loading tests for %s failed: %s", engine.id, exc,
                         extra={"engine_id": engine.id, "operation": "list_engine_tests"})
            return {"passed": False, "error": str(exc), "total": 0, "failed": 0, "tests": []}
        if not tests:
            return {"passed": True, "message": "No tests defined", "total": 0, "failed": 0, "tests": []}

        results = [self._run_test(engine, t) for t in tests]
        failed = sum(1 for r in results if not r["passed"])
        return {"passed": failed == 0, "total": len(results), "failed": failed, "tests": results}

    def run_health_check(self, engine: EngineDefinition) -> dict[str, Any]:
        if not engine.has_health_check:
            return {"status": "no_health_check", "passed": True}
        try:
            raw = engine.health_check() or {}
        except ExecutionError as exc:
            return {"status": "error", "passed": False, "error": str(exc)}
        if not isinstance(raw, Mapping):
            logger.warning("Health check for %s returned %s, expected a mapping", engine.id, type(raw).__name__,
                           extra={"engine_id": engine.id, "operation": "run_health_check"})
            return {"status": "error", "passed": False, "error": f"unexpected result: {_render_output(raw)}"}
        return {**raw, "status": raw.get("status", "unknown"), "passed": bool(raw.get("passed"))}

    # --- public API ---

    def certify_engine(self, engine: EngineDefinition) -> CertificationResult:
        """Run tests and health check, then persist the verdict."""
        test_results = self.run_engine_tests(engine)
        health = self.run_health_check(engine)
        certified = bool(test_results["passed"]) and bool(health["passed"])

        now = self._now()
        expires_at = now + timedelta(days=CERTIFICATION_TTL_DAYS) if certified else None
        record = CertificationRecord(
            engine_id=engine.id,
            certified=certified,
            last_test_result=test_results,
            last_health_check=health,
            certification_date=now,
            expires_at=expires_at,
        )
        try:
            self._store.put_certification(record)
        except PersistenceError as exc:
            logger.error("Storing certification for %s failed: %s", engine.id, exc,
                         extra={"engine_id": engine.id, "operation": "put_certification"})

        logger.info("Engine %s certification: %s (%s/%s tests failed, health=%s)",
                    engine.id, "PASS" if certified else "FAIL",
                    test_results.get("failed", 0), test_results.get("total", 0), health["status"])
        return CertificationResult(engine.id, certified, test_results, health, expires_at)

    def is_certified(self, engine_id: str) -> bool:
        try:
            record = self._store.get_certification(engine_id)
        except PersistenceError as exc:
            logger.error("Reading certification for %s failed: %s", engine_id, exc,
                         extra={"engine_id": engine_id, "operation": "is_certified"})
            return False
        return record is not None and record.is_valid(self._now())

    def recertify_all_engines(self, engines: list[EngineDefinition]) -> list[CertificationResult]:
        """Sequential on purpose: engines may share test fixtures."""
        results: list[CertificationResult] = []
        for engine in engines:
            try:
                results.append(self.certify_engine(engine))
            except Exception as exc:
                logger.exception("Certification of %s crashed", engine.id)
                health = {"status": "error", "passed": False, "error": str(exc)}
                results.append(CertificationResult(engine.id, False, health_check=health))
        passed = sum(1 for r in results if r.certified)
        logger.info("Recertified %d engine(s): %d certified", len(results), passed)
        return results
