"""Engine registry — maps job types to engine definitions.

An engine is anything with a ``run(payload)`` callable; a ``health_check()``
callable is optional. The registry never executes jobs itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import requests

logger = logging.getLogger("enginewatch.registry")

HTTP_TIMEOUT_S = 30


class ExecutionError(Exception):
    """An engine's run or health check raised."""


class EngineNotFound(LookupError):
    """No registry entry resolves the requested engine or job type."""


@dataclass
class EngineDefinition:
    id: str
    name: str
    job_types: list[str]
    run_fn: Callable[[Any], Any]
    sub_types: Optional[list[str]] = None
    health_check_fn: Optional[Callable[[], dict[str, Any]]] = None
    department: str = ""
    model_preference: str = "STANDARD"
    notes: str = ""

    @property
    def has_health_check(self) -> bool:
        return self.health_check_fn is not None

    def run(self, payload: Any) -> Any:
        try:
            return self.run_fn(payload)
        except ExecutionError:
            raise
        except Exception as exc:
            raise ExecutionError(f"{self.id}: {exc}") from exc

    def health_check(self) -> dict[str, Any]:
        if self.health_check_fn is None:
            return {"status": "no_health_check", "passed": True}
        try:
            return self.health_check_fn()
        except Exception as exc:
            raise ExecutionError(f"{self.id} health check: {exc}") from exc

    def handles(self, job_type: str) -> bool:
        return job_type in self.job_types


def http_engine(
    engine_id: str,
    name: str,
    job_types: list[str],
    url: str,
    health_url: str = "",
    sub_types: Optional[list[str]] = None,
    token: str = "",
    timeout: float = HTTP_TIMEOUT_S,
    department: str = "",
    model_preference: str = "STANDARD",
) -> EngineDefinition:
    """Engine backed by a remote endpoint: POST the payload, JSON result back."""
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    def _run(payload: Any) -> Any:
        r = requests.post(url, json=payload, headers=headers, timeout=timeout)
        r.raise_for_status()
        return r.json() if r.content else None

    def _health() -> dict[str, Any]:
        try:
            r = requests.get(health_url, headers=headers, timeout=5)
        except requests.RequestException as exc:
            return {"status": "unreachable", "passed": False, "error": str(exc)}
        return {"status": "ok" if r.ok else f"http_{r.status_code}", "passed": r.ok}

    return EngineDefinition(
        id=engine_id,
        name=name,
        job_types=list(job_types),
        sub_types=list(sub_types) if sub_types else None,
        run_fn=_run,
        health_check_fn=_health if health_url else None,
        department=department,
        model_preference=model_preference,
        notes=url,
    )


class EngineRegistry:
    def __init__(self, engines: Optional[list[EngineDefinition]] = None) -> None:
        self._engines: dict[str, EngineDefinition] = {}
        for engine in engines or []:
            self.register(engine)

    def register(self, engine: EngineDefinition) -> None:
        if engine.id in self._engines:
            logger.warning("Replacing registered engine %s", engine.id)
        self._engines[engine.id] = engine

    def get(self, engine_id: str) -> Optional[EngineDefinition]:
        return self._engines.get(engine_id)

    def require(self, engine_id: str) -> EngineDefinition:
        engine = self._engines.get(engine_id)
        if engine is None:
            raise EngineNotFound(engine_id)
        return engine

    def find(self, job_type: str, sub_type: Optional[str] = None) -> Optional[EngineDefinition]:
        """Default engine for a job type.

        An exact sub-type match wins; without a sub-type, an engine that
        declares none. Either way, any engine for the job type that declares
        no sub-types is the last resort.
        """
        for engine in self._engines.values():
            if not engine.handles(job_type):
                continue
            if sub_type and engine.sub_types:
                if sub_type in engine.sub_types:
                    return engine
            elif not sub_type and not engine.sub_types:
                return engine
        return next(
            (e for e in self._engines.values() if e.handles(job_type) and not e.sub_types),
            None,
        )

    def by_job_type(self, job_type: str) -> list[EngineDefinition]:
        return [e for e in self._engines.values() if e.handles(job_type)]

    def all(self) -> list[EngineDefinition]:
        return list(self._engines.values())

    def __contains__(self, engine_id: object) -> bool:
        return engine_id in self._engines

    def __len__(self) -> int:
        return len(self._engines)
