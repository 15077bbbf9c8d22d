"""Crisis router — picks the engine instance that should run a job.

Decision per job, from the base engine's last stored status:
    GREEN  → base engine, normal
    YELLOW → base engine, degraded
    RED    → first fallback (policy order) that is not RED and is certified;
             base engine, degraded, if none qualifies

Routing only reads engine state. Administrative overrides (force_fallback,
resolve_incident) write state directly and win until the next evaluation
reclassifies the engine.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from enginewatch.certification import CertificationAuthority
from enginewatch.registry import EngineDefinition, EngineRegistry
from enginewatch.store import (
    CrisisPolicy,
    CrisisSeverity,
    EngineEventType,
    EngineMetrics,
    EngineState,
    EngineStatus,
    EngineStore,
    FallbackLog,
    PersistenceError,
)
from enginewatch.store.models import utcnow

from .detection import CrisisDetector
from .models import ExecutionMode, ResolvedEngine, StatusTransition

logger = logging.getLogger("enginewatch.crisis.router")

MANUAL_FORCE_REASON = "Manually forced"
MANUAL_RESOLVE_REASON = "Manually resolved"


class CrisisRouter:
    def __init__(
        self,
        store: EngineStore,
        registry: EngineRegistry,
        certifier: CertificationAuthority,
        detector: Optional[CrisisDetector] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._certifier = certifier
        self._detector = detector or CrisisDetector(store, now_fn=now_fn)
        self._now = now_fn

    def _policy(self, engine_id: str) -> Optional[CrisisPolicy]:
        try:
            return self._store.get_crisis_policy(engine_id)
        except PersistenceError as exc:
            logger.error("Reading policy for %s failed: %s", engine_id, exc,
                         extra={"engine_id": engine_id, "operation": "get_crisis_policy"})
            return None

    def _resolve_base(
        self, job_type: str, sub_type: Optional[str], preferred_engine_id: Optional[str]
    ) -> Optional[EngineDefinition]:
        if preferred_engine_id:
            engine = self._registry.get(preferred_engine_id)
            if engine is not None:
                return engine
            logger.warning("Preferred engine %s is not registered; looking up by job type", preferred_engine_id)
        return self._registry.find(job_type, sub_type)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def resolve_engine_for_job(
        self,
        job_type: str,
        sub_type: Optional[str] = None,
        preferred_engine_id: Optional[str] = None,
    ) -> Optional[ResolvedEngine]:
        """None means no engine resolves the job; the caller decides retry or dead-letter."""
        base = self._resolve_base(job_type, sub_type, preferred_engine_id)
        if base is None:
            logger.warning("No engine for job_type=%s sub_type=%s", job_type, sub_type)
            return None

        state = self._detector.get_engine_state(base.id)

        if state.status == EngineStatus.GREEN:
            return ResolvedEngine(engine=base, mode=ExecutionMode.NORMAL)

        if state.status == EngineStatus.YELLOW:
            policy = self._policy(base.id)
            if policy and policy.degrades_on_yellow:
                return ResolvedEngine(engine=base, mode=ExecutionMode.DEGRADED)
            logger.info("%s is YELLOW without a degrade policy; running degraded by default", base.id)

        elif state.status == EngineStatus.RED:
            fallback = self.find_healthy_fallback(base.id, pinned_engine_id=state.active_fallback_engine_id)
            if fallback is not None:
                self._log_fallback(base.id, fallback.id, f"{base.id} is RED: {state.last_reason}")
                return ResolvedEngine(engine=fallback, mode=ExecutionMode.FALLBACK, original_engine_id=base.id)
            logger.warning("%s is RED and no healthy certified fallback is available; running degraded", base.id)

        return ResolvedEngine(engine=base, mode=ExecutionMode.DEGRADED)

    def find_healthy_fallback(
        self, base_engine_id: str, pinned_engine_id: Optional[str] = None
    ) -> Optional[EngineDefinition]:
        """First candidate, in policy order, that is not RED and holds a valid certification."""
        policy = self._policy(base_engine_id)
        candidates = list(policy.fallback_engine_ids) if policy else []
        if pinned_engine_id:
            candidates = [pinned_engine_id] + [c for c in candidates if c != pinned_engine_id]

        for candidate_id in candidates:
            if candidate_id == base_engine_id:
                continue
            engine = self._registry.get(candidate_id)
            if engine is None:
                logger.warning("Fallback %s for %s is not registered", candidate_id, base_engine_id)
                continue
            if self._detector.get_engine_state(candidate_id).status == EngineStatus.RED:
                logger.debug("Fallback %s skipped: RED", candidate_id)
                continue
            if not self._certifier.is_certified(candidate_id):
                logger.debug("Fallback %s skipped: not certified", candidate_id)
                continue
            return engine
        return None

    def _log_fallback(self, original_engine_id: str, fallback_engine_id: str, reason: str) -> None:
        try:
            self._store.insert_fallback_log(original_engine_id, fallback_engine_id, reason, self._now())
        except PersistenceError as exc:
            logger.error("Fallback log %s -> %s failed: %s", original_engine_id, fallback_engine_id, exc,
                         extra={"engine_id": original_engine_id, "operation": "insert_fallback_log"})
        logger.info("Routed %s -> %s (%s)", original_engine_id, fallback_engine_id, reason)

    def recent_fallback_logs(self, limit: int = 50) -> list[FallbackLog]:
        try:
            return self._store.list_fallback_logs(limit)
        except PersistenceError as exc:
            logger.error("Reading fallback logs failed: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Administrative overrides
    # ------------------------------------------------------------------

    def force_fallback(
        self,
        engine_id: str,
        target_status: EngineStatus | str,
        fallback_engine_id: Optional[str] = None,
    ) -> Optional[StatusTransition]:
        """Push an engine to YELLOW or RED by hand, optionally pinning a fallback."""
        target = EngineStatus(target_status)
        if target == EngineStatus.GREEN:
            raise ValueError("force_fallback only accepts YELLOW or RED; use resolve_incident to clear")

        try:
            current = self._store.get_engine_state(engine_id)
            previous = current.status if current else EngineStatus.GREEN
            metrics = current.metrics if current else EngineMetrics()
            self._store.save_engine_state(EngineState(
                engine_id=engine_id,
                status=target,
                last_updated=self._now(),
                last_reason=MANUAL_FORCE_REASON,
                metrics=metrics,
                active_fallback_engine_id=fallback_engine_id,
            ))
        except PersistenceError as exc:
            logger.error("force_fallback failed for %s: %s", engine_id, exc,
                         extra={"engine_id": engine_id, "operation": "force_fallback"})
            return None

        try:
            self._detector.open_or_update_incident(
                engine_id, CrisisSeverity(target.value), metrics, MANUAL_FORCE_REASON
            )
        except PersistenceError as exc:
            logger.error("Opening forced incident for %s failed: %s", engine_id, exc,
                         extra={"engine_id": engine_id, "operation": "force_fallback"})

        transition = StatusTransition(
            engine_id=engine_id, old_status=previous, new_status=target,
            reason=MANUAL_FORCE_REASON, metrics=metrics, forced=True, at=self._now(),
        )
        self._emit(transition)
        logger.warning("Engine %s forced %s", engine_id, transition.label)
        return transition

    def resolve_incident(self, incident_id: int) -> Optional[StatusTransition]:
        """Close an OPEN incident by hand and reset its engine to GREEN.

        An unknown or already-resolved incident is a no-op: the engine may have
        degraded again since, under a newer incident.
        """
        try:
            incident = self._store.resolve_incident(incident_id, self._now())
            if incident is None:
                logger.warning("Incident #%s does not exist or is not open", incident_id)
                return None
            current = self._store.get_engine_state(incident.engine_id)
            previous = current.status if current else EngineStatus.GREEN
            metrics = current.metrics if current else EngineMetrics()
            self._store.save_engine_state(EngineState(
                engine_id=incident.engine_id,
                status=EngineStatus.GREEN,
                last_updated=self._now(),
                last_reason=MANUAL_RESOLVE_REASON,
                metrics=metrics,
            ))
        except PersistenceError as exc:
            logger.error("resolve_incident #%s failed: %s", incident_id, exc,
                         extra={"operation": "resolve_incident", "incident_id": incident_id})
            return None

        transition = StatusTransition(
            engine_id=incident.engine_id, old_status=previous, new_status=EngineStatus.GREEN,
            reason=MANUAL_RESOLVE_REASON, metrics=metrics, forced=True, at=self._now(),
        )
        self._emit(transition)
        logger.info("Incident #%s resolved by hand; %s %s", incident_id, incident.engine_id, transition.label)
        return transition

    def _emit(self, transition: StatusTransition) -> None:
        self._detector.broadcaster.emit(
            transition.engine_id,
            EngineEventType.STARTED,
            payload={
                "status_change": transition.label,
                "reason": transition.reason,
                "forced": True,
                "metrics": transition.metrics.to_dict(),
            },
        )
