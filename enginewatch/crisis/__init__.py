"""Crisis detection and fallback routing for job execution engines."""
from .detection import CrisisDetector, determine_status, format_reason
from .models import ExecutionMode, PolicyMissing, ResolvedEngine, StatusTransition
from .router import CrisisRouter

__all__ = [
    "CrisisDetector",
    "CrisisRouter",
    "ExecutionMode",
    "PolicyMissing",
    "ResolvedEngine",
    "StatusTransition",
    "determine_status",
    "format_reason",
]
