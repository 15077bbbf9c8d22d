"""Crisis detection — classifies engine health from recent job outcomes.

Per evaluation: metrics over a trailing window → policy → GREEN/YELLOW/RED →
persist on change → open/update or resolve the engine's incident → event.

YELLOW triggers at 70-80% of the RED thresholds, so an engine drifting
towards a threshold goes GREEN → YELLOW → RED instead of flapping straight
between GREEN and RED.

Failures are swallowed and logged: a monitoring failure must never block job
routing. A failed evaluation leaves the stored state untouched.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from enginewatch.realtime import EngineEventBroadcaster
from enginewatch.store import (
    CrisisIncident,
    CrisisPolicy,
    CrisisSeverity,
    EngineEventType,
    EngineMetrics,
    EngineState,
    EngineStatus,
    EngineStore,
    PersistenceError,
)
from enginewatch.store.models import utcnow

from .models import PolicyMissing, StatusTransition

logger = logging.getLogger("enginewatch.crisis.detection")

METRICS_WINDOW_MIN = 5
YELLOW_ERROR_FACTOR = 0.7
YELLOW_LATENCY_FACTOR = 0.8
YELLOW_QUEUE_FACTOR = 0.8
CAS_MAX_ATTEMPTS = 3


def determine_status(metrics: EngineMetrics, policy: CrisisPolicy) -> EngineStatus:
    if (
        metrics.error_rate >= policy.threshold_error_rate
        or metrics.avg_latency_ms >= policy.threshold_latency_ms
        or metrics.queue_length >= policy.threshold_queue_length
    ):
        return EngineStatus.RED

    if (
        metrics.error_rate >= policy.threshold_error_rate * YELLOW_ERROR_FACTOR
        or metrics.avg_latency_ms >= policy.threshold_latency_ms * YELLOW_LATENCY_FACTOR
        or metrics.queue_length >= policy.threshold_queue_length * YELLOW_QUEUE_FACTOR
    ):
        return EngineStatus.YELLOW

    return EngineStatus.GREEN


def format_reason(metrics: EngineMetrics) -> str:
    return (
        f"Error rate: {metrics.error_rate * 100:.1f}%, "
        f"Latency: {round(metrics.avg_latency_ms)}ms, "
        f"Queue: {metrics.queue_length}"
    )


class CrisisDetector:
    """Metrics-driven status engine for engines that have a crisis policy."""

    def __init__(
        self,
        store: EngineStore,
        broadcaster: Optional[EngineEventBroadcaster] = None,
        now_fn: Callable[[], datetime] = utcnow,
        window_minutes: int = METRICS_WINDOW_MIN,
    ) -> None:
        self._store = store
        self._now = now_fn
        self._broadcaster = broadcaster or EngineEventBroadcaster(store, now_fn)
        self._window = timedelta(minutes=window_minutes)

    @property
    def broadcaster(self) -> EngineEventBroadcaster:
        return self._broadcaster

    @staticmethod
    def _log_swallowed(operation: str, engine_id: str, exc: Exception) -> None:
        logger.error(
            "%s failed for %s: %s", operation, engine_id, exc,
            extra={"engine_id": engine_id, "operation": operation, "error_type": type(exc).__name__},
        )

    # -- inputs -----------------------------------------------------------

    def calculate_metrics(self, engine_id: str) -> EngineMetrics:
        """Metrics over the trailing window. Queue length is system-wide."""
        outcomes = self._store.fetch_job_outcomes(engine_id, self._now() - self._window)
        queue_length = self._store.count_queued()

        total = len(outcomes)
        failed = sum(1 for status, _ in outcomes if status == "FAILED")
        durations = [d for _, d in outcomes if d]
        return EngineMetrics(
            error_rate=failed / total if total else 0.0,
            avg_latency_ms=sum(durations) / len(durations) if durations else 0.0,
            queue_length=queue_length,
            total_jobs=total,
            failed_jobs=failed,
        )

    def load_policy(self, engine_id: str) -> CrisisPolicy:
        policy = self._store.get_crisis_policy(engine_id)
        if policy is None:
            raise PolicyMissing(engine_id)
        return policy

    # -- core -------------------------------------------------------------

    def update_engine_state_from_metrics(self, engine_id: str) -> Optional[StatusTransition]:
        """Re-evaluate one engine. Returns the transition applied, if any. Never raises."""
        try:
            metrics = self.calculate_metrics(engine_id)
            policy = self.load_policy(engine_id)
        except PolicyMissing:
            logger.debug("No crisis policy for %s, skipping", engine_id)
            return None
        except PersistenceError as exc:
            self._log_swallowed("update_engine_state_from_metrics", engine_id, exc)
            return None

        status = determine_status(metrics, policy)
        try:
            return self._apply_status(engine_id, status, metrics)
        except PersistenceError as exc:
            self._log_swallowed("update_engine_state_from_metrics", engine_id, exc)
        except Exception:
            logger.exception("Unexpected error evaluating %s", engine_id)
        return None

    def _apply_status(
        self, engine_id: str, status: EngineStatus, metrics: EngineMetrics
    ) -> Optional[StatusTransition]:
        reason = format_reason(metrics)
        for attempt in range(1, CAS_MAX_ATTEMPTS + 1):
            current = self._store.get_engine_state(engine_id)
            previous = current.status if current else EngineStatus.GREEN
            if current is not None and current.status == status:
                return None  # steady state: no writes

            expected_version = current.version if current else 0
            fallback_id = current.active_fallback_engine_id if current and status != EngineStatus.GREEN else None
            new_state = EngineState(
                engine_id=engine_id,
                status=status,
                last_updated=self._now(),
                last_reason=reason,
                metrics=metrics,
                active_fallback_engine_id=fallback_id,
            )
            if self._store.compare_and_set_engine_state(new_state, expected_version):
                break
            logger.info("Concurrent state write for %s (attempt %d), re-reading", engine_id, attempt)
        else:
            logger.warning("Gave up updating %s after %d conflicting writes", engine_id, CAS_MAX_ATTEMPTS)
            return None

        if previous == status:
            # first evaluation of a healthy engine: row created, nothing changed
            return None

        transition = StatusTransition(
            engine_id=engine_id, old_status=previous, new_status=status,
            reason=reason, metrics=metrics, at=self._now(),
        )
        logger.info("Engine %s: %s | %s", engine_id, transition.label, reason)
        self._apply_side_effects(transition)
        return transition

    def _apply_side_effects(self, transition: StatusTransition) -> None:
        """Each write is independent; a failure here does not undo the state write."""
        engine_id = transition.engine_id
        try:
            if transition.new_status in (EngineStatus.YELLOW, EngineStatus.RED):
                self.open_or_update_incident(
                    engine_id, CrisisSeverity(transition.new_status.value), transition.metrics, transition.reason
                )
            elif transition.old_status != EngineStatus.GREEN:
                self.resolve_open_incidents(engine_id)
        except PersistenceError as exc:
            self._log_swallowed("incident_update", engine_id, exc)

        self._broadcaster.emit(
            engine_id,
            EngineEventType.STARTED,
            payload={
                "status_change": transition.label,
                "reason": transition.reason,
                "forced": transition.forced,
                "metrics": transition.metrics.to_dict(),
            },
        )

    # -- incidents --------------------------------------------------------

    def open_or_update_incident(
        self,
        engine_id: str,
        severity: CrisisSeverity,
        metrics: EngineMetrics,
        reason: Optional[str] = None,
    ) -> Optional[int]:
        """Keep exactly one OPEN incident per engine; returns its id."""
        reason = reason or format_reason(metrics)
        meta = metrics.to_dict()
        for _ in range(2):
            existing = self._store.get_open_incident(engine_id)
            if existing:
                self._store.update_incident(existing.id, severity, reason, meta)
                return existing.id
            created = self._store.insert_open_incident(engine_id, severity, reason, meta, self._now())
            if created:
                logger.warning("Incident #%d opened for %s (%s): %s", created.id, engine_id, severity.value, reason)
                return created.id
            # lost the insert race to another evaluator; update theirs
        return None

    def resolve_open_incidents(self, engine_id: str) -> int:
        count = self._store.resolve_open_incidents(engine_id, self._now())
        if count:
            logger.info("Resolved %d incident(s) for %s", count, engine_id)
        return count

    # -- reads ------------------------------------------------------------

    def get_engine_state(self, engine_id: str) -> EngineState:
        """Stored state; an engine never evaluated is assumed GREEN."""
        try:
            state = self._store.get_engine_state(engine_id)
        except PersistenceError as exc:
            self._log_swallowed("get_engine_state", engine_id, exc)
            state = None
        return state or EngineState(engine_id=engine_id)

    def get_all_engine_states(self) -> list[EngineState]:
        try:
            return self._store.list_engine_states()
        except PersistenceError as exc:
            self._log_swallowed("get_all_engine_states", "*", exc)
            return []

    def get_active_crisis_incidents(self) -> list[CrisisIncident]:
        try:
            return self._store.list_open_incidents()
        except PersistenceError as exc:
            self._log_swallowed("get_active_crisis_incidents", "*", exc)
            return []

    def evaluate_all(self, engine_ids: Iterable[str]) -> list[StatusTransition]:
        transitions: list[StatusTransition] = []
        for engine_id in engine_ids:
            t = self.update_engine_state_from_metrics(engine_id)
            if t is not None:
                transitions.append(t)
        return transitions
