"""Engine event broadcaster — append-only job and state-change events for observers.

Writes are best-effort: a failed broadcast is logged and never reaches the
caller that triggered the underlying job event.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from enginewatch.store import EngineEvent, EngineEventType, EngineStore, PersistenceError
from enginewatch.store.models import utcnow

logger = logging.getLogger("enginewatch.realtime")


class EngineEventBroadcaster:
    def __init__(self, store: EngineStore, now_fn: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._now = now_fn

    def broadcast_engine_event(self, event: EngineEvent) -> Optional[EngineEvent]:
        if event.created_at is None:
            event.created_at = self._now()
        try:
            stored = self._store.insert_engine_event(event)
        except Exception as exc:
            logger.error(
                "Broadcast failed for %s/%s: %s", event.engine_id, event.event_type.value, exc,
                extra={"engine_id": event.engine_id, "operation": "broadcast_engine_event"},
            )
            return None
        logger.debug("Event %s %s job=%s", stored.engine_id, stored.event_type.value, stored.job_id)
        return stored

    def emit(
        self,
        engine_id: str,
        event_type: EngineEventType,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[EngineEvent]:
        return self.broadcast_engine_event(EngineEvent(
            engine_id=engine_id, event_type=event_type,
            job_id=job_id, user_id=user_id, payload=payload or {},
        ))

    # --- read helpers for observers ---

    def get_recent_engine_events(self, limit: int = 50) -> list[EngineEvent]:
        try:
            return self._store.list_recent_events(limit)
        except PersistenceError as exc:
            logger.error("Reading recent events failed: %s", exc)
            return []

    def get_queue_length(self) -> int:
        try:
            return self._store.count_queued()
        except PersistenceError as exc:
            logger.error("Reading queue length failed: %s", exc)
            return 0

    def calculate_engine_metrics(self, engine_id: str, window_minutes: int = 5) -> Optional[dict[str, Any]]:
        """Dashboard view of one engine's recent COMPLETED/FAILED events."""
        since = self._now() - timedelta(minutes=window_minutes)
        try:
            events = self._store.list_engine_events_since(engine_id, since)
        except PersistenceError as exc:
            logger.error("Reading events for %s failed: %s", engine_id, exc)
            return None

        completed = sum(1 for e in events if e.event_type == EngineEventType.COMPLETED)
        failed = sum(1 for e in events if e.event_type == EngineEventType.FAILED)
        total = completed + failed
        return {
            "engine_id": engine_id,
            "window_minutes": window_minutes,
            "total": total,
            "completed": completed,
            "failed": failed,
            "successRate": round(completed / total * 100, 1) if total else 0.0,
            "errorRate": round(failed / total * 100, 1) if total else 0.0,
        }
