"""
sitedb - Resilience and performance middleware for a personal site's embedded database.
"""

from .config import Config
from .models import (
    QueryType,
    ErrorCategory,
    ErrorSeverity,
    HealthStatus,
    QueryResult,
    ClassifiedError,
    MaintenanceResult,
    HealthReport,
    PerformanceAlert,
)
from .infrastructure.client import DatabaseClient

__version__ = "1.0.0"
__all__ = [
    "Config",
    "DatabaseClient",
    "QueryType",
    "ErrorCategory",
    "ErrorSeverity",
    "HealthStatus",
    "QueryResult",
    "ClassifiedError",
    "MaintenanceResult",
    "HealthReport",
    "PerformanceAlert",
]
