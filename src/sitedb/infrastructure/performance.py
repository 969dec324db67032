"""Per-statement performance telemetry and budgets."""
import hashlib
import re
import time
import psutil
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from collections import defaultdict, deque
from threading import Lock
from loguru import logger
from ..models import QueryMetric, QueryType, format_timestamp, utc_now
from .cache import normalize_statement
from .database import SiteDatabase

UNKNOWN_TABLE = "unknown"

DEFAULT_BUDGETS_MS = {
    "read": 100.0,
    "write": 200.0,
    "search": 300.0,
    "batch": 1000.0,
}

_TABLE_PATTERNS = [
    re.compile(r"^\s*INSERT\s+(?:OR\s+\w+\s+)?INTO\s+[\"`\[]?(\w+)"),
    re.compile(r"^\s*REPLACE\s+INTO\s+[\"`\[]?(\w+)"),
    re.compile(r"^\s*UPDATE\s+(?:OR\s+\w+\s+)?[\"`\[]?(\w+)"),
    re.compile(r"^\s*DELETE\s+FROM\s+[\"`\[]?(\w+)"),
    re.compile(r"\bFROM\s+[\"`\[]?(\w+)"),
]
_REFERENCED_TABLES = re.compile(r"\b(?:FROM|JOIN|INTO|UPDATE)\s+[\"`\[]?(\w+)")
_SEARCH_MARKERS = re.compile(r"\bMATCH\b|_FTS\b")
_CTE_TOKENS = re.compile(r"\(|\)|\w+")
_STATEMENT_VERBS = {"SELECT", "INSERT", "REPLACE", "UPDATE", "DELETE"}

_QUERY_LOG_INSERT = """
    INSERT INTO query_performance_log (
        query_hash, query_type, table_name, execution_time_ms,
        rows_returned, rows_affected, cache_hit, success,
        sample_query, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
_CACHE_LOG_INSERT = """
    INSERT INTO cache_performance_log (
        cache_key, cache_type, hit_miss, execution_time_ms,
        cache_size_bytes, ttl_seconds, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?)
"""


def query_hash(text: str) -> str:
    """Hash of the normalized statement, without parameters."""
    return hashlib.md5(normalize_statement(text).encode()).hexdigest()


def _cte_verb(upper: str) -> str:
    """First statement verb outside the parentheses of a WITH clause."""
    depth = 0
    for match in _CTE_TOKENS.finditer(upper):
        token = match.group(0)
        if token == "(":
            depth += 1
        elif token == ")":
            depth = max(depth - 1, 0)
        elif depth == 0 and token in _STATEMENT_VERBS:
            return token
    return ""


def get_query_type(text: str) -> QueryType:
    """Classify a statement by its first verb; never raises."""
    try:
        upper = normalize_statement(text).upper()
        verb = upper.split(" ", 1)[0] if upper else ""
        if verb == "WITH":
            verb = _cte_verb(upper)
        if verb == "SELECT":
            return QueryType.SEARCH if _SEARCH_MARKERS.search(upper) else QueryType.SELECT
        if verb in ("INSERT", "REPLACE"):
            return QueryType.INSERT
        if verb == "UPDATE":
            return QueryType.UPDATE
        if verb == "DELETE":
            return QueryType.DELETE
    except (AttributeError, TypeError):
        pass
    return QueryType.UNKNOWN


def extract_table_name(text: str) -> str:
    """Target table of a statement, or 'unknown' when it cannot be parsed."""
    try:
        upper = normalize_statement(text).upper()
    except (AttributeError, TypeError):
        return UNKNOWN_TABLE
    for pattern in _TABLE_PATTERNS:
        match = pattern.search(upper)
        if match:
            return match.group(1).lower()
    return UNKNOWN_TABLE


def extract_referenced_tables(text: str) -> List[str]:
    """Every table a statement reads from or writes to."""
    try:
        upper = normalize_statement(text).upper()
    except (AttributeError, TypeError):
        return []
    tables = []
    for name in _REFERENCED_TABLES.findall(upper):
        name = name.lower()
        if name not in tables:
            tables.append(name)
    return tables


@dataclass
class PerformanceMetrics:
    """Running aggregate for one statement kind."""

    total_operations: int = 0
    total_duration: float = 0.0
    min_duration: float = float('inf')
    max_duration: float = 0.0

    successful_operations: int = 0
    failed_operations: int = 0
    over_budget: int = 0

    # Recent durations (for moving average)
    recent_durations: deque = field(default_factory=lambda: deque(maxlen=100))

    def update(self, duration: float, success: bool = True, over_budget: bool = False):
        """Update metrics with new operation."""
        self.total_operations += 1
        self.total_duration += duration
        self.min_duration = min(self.min_duration, duration)
        self.max_duration = max(self.max_duration, duration)
        self.recent_durations.append(duration)

        if success:
            self.successful_operations += 1
        else:
            self.failed_operations += 1
        if over_budget:
            self.over_budget += 1

    @property
    def average_duration(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.total_duration / self.total_operations

    @property
    def recent_average(self) -> float:
        if not self.recent_durations:
            return 0.0
        return sum(self.recent_durations) / len(self.recent_durations)

    @property
    def success_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.successful_operations / self.total_operations


class PerformanceRecorder:
    """Records one metrics row per executed statement and flags slow ones.

    Recording never raises: telemetry failures are logged and dropped so
    the caller's statement outcome is unaffected. Rows are queued in
    memory; with ``auto_flush`` off they reach the log tables only when
    ``flush`` runs, so the caller decides which thread waits on the writer.
    """

    def __init__(
        self,
        database: Optional[SiteDatabase],
        budgets: Optional[Dict[str, float]] = None,
        buffer_size: int = 1000,
        persist: bool = True,
        auto_flush: bool = True,
        max_pending: int = 10000,
    ):
        """
        Initialize performance recorder.

        Args:
            database: Handle whose log tables receive the rows
            budgets: Overrides for the read/write/search/batch budgets (ms)
            buffer_size: Number of recent metrics kept in memory
            persist: Write rows to query_performance_log
            auto_flush: Write each row as soon as it is recorded
            max_pending: Queued rows kept before the oldest are dropped
        """
        self.database = database
        self.budgets = {**DEFAULT_BUDGETS_MS, **(budgets or {})}
        self.persist = persist and database is not None
        self.auto_flush = auto_flush
        self.recent: deque = deque(maxlen=buffer_size)
        self.pending: deque = deque(maxlen=max_pending)
        self.metrics: Dict[QueryType, PerformanceMetrics] = defaultdict(PerformanceMetrics)
        self.lock = Lock()
        self.flush_lock = Lock()
        self.start_time = time.time()
        self.process = psutil.Process()

    def budget_for(self, query_type: QueryType) -> float:
        """Maximum acceptable duration in ms for a statement kind."""
        if query_type.is_write:
            return self.budgets["write"]
        if query_type == QueryType.SEARCH:
            return self.budgets["search"]
        if query_type == QueryType.BATCH:
            return self.budgets["batch"]
        return self.budgets["read"]

    def is_over_budget(self, metric: QueryMetric) -> bool:
        return metric.duration_ms > self.budget_for(metric.query_type)

    def measure(
        self,
        text: str,
        cache_hit: bool = False,
        query_type: Optional[QueryType] = None,
    ) -> "StatementTimer":
        """Context manager timing one statement from dispatch to completion."""
        return StatementTimer(self, text, cache_hit, query_type)

    def record(self, metric: QueryMetric):
        """Store a metric and warn when it exceeds its budget."""
        over_budget = self.is_over_budget(metric)

        with self.lock:
            self.recent.append(metric)
            self.metrics[metric.query_type].update(metric.duration_ms, metric.success, over_budget)

        if over_budget:
            logger.warning(
                f"Slow query detected: {metric.duration_ms:.1f}ms "
                f"(budget: {self.budget_for(metric.query_type):.0f}ms) "
                f"hash={metric.query_hash} table={metric.table_name} "
                f"type={metric.query_type.value}"
            )

        if self.persist:
            self._enqueue("query performance", _QUERY_LOG_INSERT, (
                metric.query_hash,
                metric.query_type.value,
                metric.table_name,
                metric.duration_ms,
                metric.rows_returned,
                metric.rows_affected,
                int(metric.cache_hit),
                int(metric.success),
                metric.sample_query,
                format_timestamp(metric.timestamp),
            ))

    def record_cache_event(
        self,
        cache_key: str,
        hit: bool,
        duration_ms: float,
        size_bytes: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        cache_type: str = "query",
    ):
        """Store one cache hit or miss."""
        if self.persist:
            self._enqueue("cache performance", _CACHE_LOG_INSERT, (
                cache_key,
                cache_type,
                "hit" if hit else "miss",
                duration_ms,
                size_bytes,
                ttl_seconds,
                format_timestamp(utc_now()),
            ))

    def _enqueue(self, kind: str, statement: str, params: tuple):
        with self.lock:
            self.pending.append((kind, statement, params))
        if self.auto_flush:
            self.flush()

    @property
    def pending_count(self) -> int:
        with self.lock:
            return len(self.pending)

    def flush(self) -> int:
        """
        Write queued log rows in the order they were recorded.

        Blocks on the database writer, so async callers run it in an
        executor. Rows that fail to insert are logged and dropped.

        Returns:
            Number of rows written
        """
        written = 0
        with self.flush_lock:
            with self.lock:
                batch = list(self.pending)
                self.pending.clear()

            for kind, statement, params in batch:
                try:
                    self.database.execute_statement(statement, params)
                    written += 1
                except Exception as e:
                    logger.error(f"Failed to log {kind}: {e}")
        return written

    def get_metrics(self) -> Dict[str, Any]:
        """In-memory aggregates per statement kind."""
        with self.lock:
            return {
                query_type.value: {
                    'total_operations': m.total_operations,
                    'average_duration_ms': m.average_duration,
                    'recent_average_ms': m.recent_average,
                    'min_duration_ms': m.min_duration if m.min_duration != float('inf') else 0,
                    'max_duration_ms': m.max_duration,
                    'success_rate': m.success_rate,
                    'over_budget': m.over_budget,
                    'budget_ms': self.budget_for(query_type),
                }
                for query_type, m in self.metrics.items()
            }

    def recent_metrics(self) -> List[QueryMetric]:
        with self.lock:
            return list(self.recent)

    def get_system_metrics(self) -> Dict[str, Any]:
        """Process resource usage."""
        return {
            'memory_mb': self.process.memory_info().rss / 1024 / 1024,
            'memory_percent': self.process.memory_percent(),
            'num_threads': self.process.num_threads(),
            'uptime_seconds': time.time() - self.start_time,
        }

    def log_summary(self):
        """Log in-memory performance summary."""
        logger.info("=" * 60)
        logger.info("Query Performance Summary")
        logger.info("=" * 60)
        for name, metrics in self.get_metrics().items():
            logger.info(
                f"  {name}: "
                f"{metrics['total_operations']} queries, "
                f"avg {metrics['average_duration_ms']:.2f}ms, "
                f"{metrics['over_budget']} over budget"
            )
        logger.info("=" * 60)


class StatementTimer:
    """Context manager that records a QueryMetric when the statement finishes."""

    def __init__(
        self,
        recorder: PerformanceRecorder,
        text: str,
        cache_hit: bool = False,
        query_type: Optional[QueryType] = None,
    ):
        self.recorder = recorder
        self.text = text
        self.cache_hit = cache_hit
        self.start_time = None
        self.rows_returned = 0
        self.rows_affected = 0
        self.query_type = query_type or get_query_type(text)
        self.metric: Optional[QueryMetric] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000
        self.metric = QueryMetric(
            query_hash=query_hash(self.text),
            query_type=self.query_type,
            table_name=extract_table_name(self.text),
            duration_ms=duration_ms,
            rows_returned=self.rows_returned,
            rows_affected=self.rows_affected,
            cache_hit=self.cache_hit,
            success=exc_type is None,
            sample_query=normalize_statement(self.text)[:500],
        )
        self.recorder.record(self.metric)
        return False  # Don't suppress exceptions
