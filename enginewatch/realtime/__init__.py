"""Realtime engine events."""
from .broadcaster import EngineEventBroadcaster

__all__ = ["EngineEventBroadcaster"]
