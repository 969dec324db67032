"""Data models for the database middleware."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class QueryType(Enum):
    """Statement kind, derived from the leading verb."""
    SELECT = "SELECT"
    SEARCH = "SEARCH"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BATCH = "BATCH"
    UNKNOWN = "unknown"

    @property
    def is_read(self) -> bool:
        return self in (QueryType.SELECT, QueryType.SEARCH)

    @property
    def is_write(self) -> bool:
        return self in (QueryType.INSERT, QueryType.UPDATE, QueryType.DELETE)


class ErrorCategory(Enum):
    """Database error categories."""
    CONNECTION = "connection"
    SYNTAX = "syntax"
    CONSTRAINT = "constraint"
    TIMEOUT = "timeout"
    PERMISSION = "permission"
    CORRUPTION = "corruption"
    SPACE = "space"
    LOCK = "lock"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Error severity levels, ordered from least to most severe."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [ErrorSeverity.LOW, ErrorSeverity.MEDIUM, ErrorSeverity.HIGH, ErrorSeverity.CRITICAL]


class HealthStatus(Enum):
    """Overall health verdict."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


def utc_now() -> datetime:
    """Current UTC time without tzinfo, matching sqlite's CURRENT_TIMESTAMP."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime the way sqlite stores CURRENT_TIMESTAMP."""
    return moment.strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class CacheEntry:
    """A cached result for one statement and parameter set."""
    key: str
    value: Any
    created_at: float
    ttl: float
    tags: List[str] = field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        """An entry is valid while now - created_at <= ttl."""
        return now - self.created_at > self.ttl


@dataclass
class QueryMetric:
    """Outcome of one executed statement."""
    query_hash: str
    query_type: QueryType
    table_name: str
    duration_ms: float
    rows_returned: int = 0
    rows_affected: int = 0
    cache_hit: bool = False
    success: bool = True
    sample_query: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class StatementResult:
    """Raw result of a single statement."""
    rows: List[Dict[str, Any]]
    rows_affected: int = 0
    last_insert_id: Optional[int] = None


@dataclass
class QueryResult:
    """Result handed back to application code."""
    rows: List[Dict[str, Any]]
    rows_affected: int = 0
    last_insert_id: Optional[int] = None
    from_cache: bool = False


@dataclass
class ClassifiedError:
    """A database failure with its diagnosis and recovery state."""
    id: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    original_error: Optional[BaseException] = None
    context: Dict[str, Any] = field(default_factory=dict)
    recovery_attempts: int = 0
    resolved: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "operation": self.context.get("operation"),
            "table": self.context.get("table"),
            "recovery_attempts": self.recovery_attempts,
            "resolved": self.resolved,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class HandleResult:
    """Outcome of routing one failure through classification and recovery."""
    recovered: bool
    retryable: bool
    classified: ClassifiedError


@dataclass
class MaintenanceResult:
    """Outcome of one maintenance task."""
    task_name: str
    success: bool
    duration_ms: float
    records_affected: int = 0
    size_before: Optional[float] = None
    size_after: Optional[float] = None
    error: Optional[str] = None
    details: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_name": self.task_name,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 2),
            "records_affected": self.records_affected,
            "size_before": self.size_before,
            "size_after": self.size_after,
            "error": self.error,
            "details": self.details,
        }


@dataclass
class HealthReport:
    """Point-in-time health snapshot of the store."""
    timestamp: datetime
    overall_health: HealthStatus
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    maintenance_results: List[MaintenanceResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overall_health": self.overall_health.value,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "metrics": dict(self.metrics),
            "maintenance_results": [r.to_dict() for r in self.maintenance_results],
        }


@dataclass
class PerformanceAlert:
    """A threshold breach found by the analytics aggregator."""
    type: str
    severity: ErrorSeverity
    message: str
    threshold: float
    current_value: float
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "message": self.message,
            "threshold": self.threshold,
            "current_value": round(self.current_value, 2),
            "timestamp": self.timestamp.isoformat(),
        }
