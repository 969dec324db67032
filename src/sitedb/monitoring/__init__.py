"""Maintenance, analytics, and alerting components."""

from .maintenance import MaintenanceScheduler
from .analytics import AnalyticsAggregator
from .alerts import AlertManager
from .health_monitor import HealthMonitor

__all__ = [
    "MaintenanceScheduler",
    "AnalyticsAggregator",
    "AlertManager",
    "HealthMonitor",
]
