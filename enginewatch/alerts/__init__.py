"""Incident alerting for engine status changes."""
from .alert_router import Alert, IncidentAlerter, Severity, alert_for_transition

__all__ = ["Alert", "IncidentAlerter", "Severity", "alert_for_transition"]
