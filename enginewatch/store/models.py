"""enginewatch — persisted data models."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime) -> str:
    """Fixed-width ISO timestamp so stored values compare as strings."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class EngineStatus(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class CrisisSeverity(str, Enum):
    YELLOW = "YELLOW"
    RED = "RED"
    BLACKOUT = "BLACKOUT"


class IncidentStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class EngineEventType(str, Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    QUEUED = "QUEUED"


@dataclass
class EngineMetrics:
    error_rate: float = 0.0       # failed / total, 0..1
    avg_latency_ms: float = 0.0
    queue_length: int = 0         # global, not engine-scoped
    total_jobs: int = 0
    failed_jobs: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Optional[dict[str, Any]]) -> EngineMetrics:
        raw = raw or {}
        return cls(
            error_rate=float(raw.get("error_rate", 0.0)),
            avg_latency_ms=float(raw.get("avg_latency_ms", 0.0)),
            queue_length=int(raw.get("queue_length", 0)),
            total_jobs=int(raw.get("total_jobs", 0)),
            failed_jobs=int(raw.get("failed_jobs", 0)),
        )


@dataclass
class CrisisPolicy:
    engine_id: str
    threshold_error_rate: float
    threshold_latency_ms: float
    threshold_queue_length: int
    action_on_yellow: str = "none"   # "degrade" | "none"
    action_on_red: str = "fallback"  # informational only
    fallback_engine_ids: list[str] = field(default_factory=list)
    allow_degraded: bool = False

    @property
    def degrades_on_yellow(self) -> bool:
        return self.allow_degraded and self.action_on_yellow == "degrade"


@dataclass
class EngineState:
    engine_id: str
    status: EngineStatus = EngineStatus.GREEN
    last_updated: Optional[datetime] = None
    last_reason: str = ""
    metrics: EngineMetrics = field(default_factory=EngineMetrics)
    active_fallback_engine_id: Optional[str] = None
    version: int = 0  # 0 means no row persisted yet


@dataclass
class CrisisIncident:
    id: int
    engine_id: str
    status: IncidentStatus
    severity: CrisisSeverity
    reason: str
    meta: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


@dataclass
class CertificationRecord:
    engine_id: str
    certified: bool
    last_test_result: dict[str, Any] = field(default_factory=dict)
    last_health_check: dict[str, Any] = field(default_factory=dict)
    certification_date: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        """Expiry is checked at read time; the stored flag is never swept."""
        if not self.certified or self.expires_at is None:
            return False
        return self.expires_at > now


@dataclass
class EngineTest:
    id: int
    engine_id: str
    test_name: str
    payload: Any = None
    passed: Optional[bool] = None
    output: Optional[str] = None
    last_run: Optional[datetime] = None


@dataclass
class FallbackLog:
    id: int
    original_engine_id: str
    fallback_engine_id: str
    reason: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class EngineEvent:
    engine_id: str
    event_type: EngineEventType
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "engine_id": self.engine_id,
            "event_type": self.event_type.value,
            "job_id": self.job_id,
            "user_id": self.user_id,
            "payload": self.payload,
            "created_at": iso(self.created_at) if self.created_at else None,
        }
