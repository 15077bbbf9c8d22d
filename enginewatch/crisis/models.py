"""enginewatch — crisis detection and routing data models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from enginewatch.registry import EngineDefinition
from enginewatch.store import EngineMetrics, EngineStatus
from enginewatch.store.models import iso, utcnow


class PolicyMissing(LookupError):
    """No crisis policy for an engine: the engine is unmanaged."""


class ExecutionMode(str, Enum):
    NORMAL = "normal"
    DEGRADED = "degraded"
    FALLBACK = "fallback"


@dataclass
class StatusTransition:
    engine_id: str
    old_status: EngineStatus
    new_status: EngineStatus
    reason: str
    metrics: EngineMetrics = field(default_factory=EngineMetrics)
    forced: bool = False
    at: datetime = field(default_factory=utcnow)

    @property
    def label(self) -> str:
        return f"{self.old_status.value} → {self.new_status.value}"

    @property
    def is_recovery(self) -> bool:
        return self.new_status == EngineStatus.GREEN


@dataclass
class ResolvedEngine:
    engine: EngineDefinition
    mode: ExecutionMode
    original_engine_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine_id": self.engine.id,
            "engine_name": self.engine.name,
            "department": self.engine.department,
            "model_preference": self.engine.model_preference,
            "mode": self.mode.value,
            "original_engine_id": self.original_engine_id,
        }


def transition_to_dict(t: StatusTransition) -> dict[str, Any]:
    return {
        "engine_id": t.engine_id,
        "status_change": t.label,
        "reason": t.reason,
        "forced": t.forced,
        "metrics": t.metrics.to_dict(),
        "at": iso(t.at),
    }
