"""Persistence for engine health state, incidents, certification and audit trails."""
from .database import EngineStore, PersistenceError
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
)

__all__ = [
    "EngineStore",
    "PersistenceError",
    "CertificationRecord",
    "CrisisIncident",
    "CrisisPolicy",
    "CrisisSeverity",
    "EngineEvent",
    "EngineEventType",
    "EngineMetrics",
    "EngineState",
    "EngineStatus",
    "EngineTest",
    "FallbackLog",
    "IncidentStatus",
]
