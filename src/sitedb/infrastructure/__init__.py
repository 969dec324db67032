"""Infrastructure components for caching, database access, error handling, recovery, and performance tracking."""

from .cache import QueryCache, generate_cache_key
from .database import SiteDatabase
from .error_handling import (
    ClassificationRule,
    ErrorClassifier,
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
)
from .performance import PerformanceRecorder
from .recovery import RecoveryEngine, RecoveryStrategy
from .client import DatabaseClient

__all__ = [
    "QueryCache",
    "generate_cache_key",
    "SiteDatabase",
    "ClassificationRule",
    "ErrorClassifier",
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitState",
    "PerformanceRecorder",
    "RecoveryEngine",
    "RecoveryStrategy",
    "DatabaseClient",
]
