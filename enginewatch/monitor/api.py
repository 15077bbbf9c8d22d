"""JSON status and override API for the crisis monitor."""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from enginewatch.crisis.models import transition_to_dict
from enginewatch.store import CrisisIncident, EngineState, FallbackLog
from enginewatch.store.models import iso

if TYPE_CHECKING:
    from .daemon import CrisisMonitor

logger = logging.getLogger("enginewatch.monitor.api")

MAX_EVENT_LIMIT = 500


def state_to_dict(s: EngineState) -> dict[str, Any]:
    return {
        "engine_id": s.engine_id,
        "status": s.status.value,
        "last_updated": iso(s.last_updated) if s.last_updated else None,
        "last_reason": s.last_reason,
        "metrics": s.metrics.to_dict(),
        "active_fallback_engine_id": s.active_fallback_engine_id,
    }


def incident_to_dict(i: CrisisIncident) -> dict[str, Any]:
    return {
        "id": i.id,
        "engine_id": i.engine_id,
        "status": i.status.value,
        "severity": i.severity.value,
        "reason": i.reason,
        "meta": i.meta,
        "started_at": iso(i.started_at),
        "resolved_at": iso(i.resolved_at) if i.resolved_at else None,
    }


def fallback_to_dict(f: FallbackLog) -> dict[str, Any]:
    return {
        "id": f.id,
        "original_engine_id": f.original_engine_id,
        "fallback_engine_id": f.fallback_engine_id,
        "reason": f.reason,
        "created_at": iso(f.created_at),
    }


def _monitor(request: web.Request) -> CrisisMonitor:
    return request.app["monitor"]


def _limit(request: web.Request, default: int = 50) -> int:
    try:
        value = int(request.query.get("limit", default))
    except ValueError:
        raise web.HTTPBadRequest(text="limit must be an integer")
    return max(1, min(value, MAX_EVENT_LIMIT))


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text="body must be JSON")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="body must be a JSON object")
    return body


# --- reads ---

async def handle_states(request: web.Request) -> web.Response:
    states = await asyncio.to_thread(_monitor(request).detector.get_all_engine_states)
    return web.json_response([state_to_dict(s) for s in states])


async def handle_active_incidents(request: web.Request) -> web.Response:
    incidents = await asyncio.to_thread(_monitor(request).detector.get_active_crisis_incidents)
    return web.json_response([incident_to_dict(i) for i in incidents])


async def handle_recent_events(request: web.Request) -> web.Response:
    limit = _limit(request)
    events = await asyncio.to_thread(_monitor(request).broadcaster.get_recent_engine_events, limit)
    queue_length = await asyncio.to_thread(_monitor(request).broadcaster.get_queue_length)
    return web.json_response({"queue_length": queue_length, "events": [e.to_dict() for e in events]})


async def handle_engine_metrics(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    engine_id = request.match_info["engine_id"]
    try:
        window = int(request.query.get("window_minutes", "5"))
    except ValueError:
        raise web.HTTPBadRequest(text="window_minutes must be an integer")
    metrics = await asyncio.to_thread(monitor.broadcaster.calculate_engine_metrics, engine_id, window)
    state = await asyncio.to_thread(monitor.detector.get_engine_state, engine_id)
    return web.json_response({"state": state_to_dict(state), "events": metrics})


async def handle_recent_fallbacks(request: web.Request) -> web.Response:
    logs = await asyncio.to_thread(_monitor(request).router.recent_fallback_logs, _limit(request))
    return web.json_response([fallback_to_dict(f) for f in logs])


# --- routing ---

async def handle_route(request: web.Request) -> web.Response:
    body = await _json_body(request)
    job_type = body.get("job_type")
    if not job_type:
        return web.json_response({"error": "job_type is required"}, status=400)
    resolved = await asyncio.to_thread(
        _monitor(request).router.resolve_engine_for_job,
        str(job_type), body.get("sub_type"), body.get("preferred_engine_id"),
    )
    if resolved is None:
        return web.json_response({"error": "no engine resolves this job"}, status=404)
    return web.json_response(resolved.to_dict())


# --- overrides ---

async def handle_force(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    engine_id = request.match_info["engine_id"]
    body = await _json_body(request)
    try:
        transition = await asyncio.to_thread(
            monitor.router.force_fallback, engine_id, str(body.get("status", "")), body.get("fallback_engine_id"),
        )
    except ValueError as exc:
        return web.json_response({"error": str(exc)}, status=400)
    if transition is None:
        return web.json_response({"error": "state could not be written"}, status=503)
    await monitor.alerter.notify_transition(transition)
    return web.json_response(transition_to_dict(transition))


async def handle_resolve_incident(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    try:
        incident_id = int(request.match_info["incident_id"])
    except ValueError:
        return web.json_response({"error": "incident id must be an integer"}, status=400)
    transition = await asyncio.to_thread(monitor.router.resolve_incident, incident_id)
    if transition is None:
        return web.json_response({"error": "incident not found or not open"}, status=404)
    await monitor.alerter.notify_transition(transition)
    return web.json_response(transition_to_dict(transition))


async def handle_certify(request: web.Request) -> web.Response:
    monitor = _monitor(request)
    engine = monitor.registry.get(request.match_info["engine_id"])
    if engine is None:
        return web.json_response({"error": "unknown engine"}, status=404)
    result = await asyncio.to_thread(monitor.certifier.certify_engine, engine)
    return web.json_response(result.to_dict())


def create_app(monitor: CrisisMonitor) -> web.Application:
    app = web.Application()
    app["monitor"] = monitor
    app.router.add_get("/engines/states", handle_states)
    app.router.add_get("/engines/{engine_id}/metrics", handle_engine_metrics)
    app.router.add_post("/engines/{engine_id}/force", handle_force)
    app.router.add_post("/engines/{engine_id}/certify", handle_certify)
    app.router.add_get("/incidents/active", handle_active_incidents)
    app.router.add_post("/incidents/{incident_id}/resolve", handle_resolve_incident)
    app.router.add_get("/events/recent", handle_recent_events)
    app.router.add_get("/fallbacks/recent", handle_recent_fallbacks)
    app.router.add_post("/route", handle_route)
    return app
