"""Automatic recovery from classified database errors."""
import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import timedelta
from functools import partial
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union
from loguru import logger
from ..models import (
    ClassifiedError,
    ErrorCategory,
    ErrorSeverity,
    HandleResult,
    format_timestamp,
    utc_now,
)
from .database import SiteDatabase
from .error_handling import ErrorClassifier

Sleep = Callable[[float], Awaitable[Any]]
AlertCallback = Callable[[ClassifiedError], Awaitable[Any]]

# Categories whose errors go to the in-memory log only; writing them to the
# store would likely fail the same way.
_UNPERSISTED = (ErrorCategory.CONNECTION, ErrorCategory.CORRUPTION)


class RecoveryStrategy(ABC):
    """A named, bounded remediation for one or more error categories."""

    name: str = "strategy"
    categories: Sequence[ErrorCategory] = ()
    max_attempts: int = 1

    def can_recover(self, error: ClassifiedError) -> bool:
        return error.category in self.categories

    @abstractmethod
    async def attempt(self, error: ClassifiedError, engine: "RecoveryEngine") -> bool:
        """Try once; may suspend the caller for this strategy's backoff."""


class ConnectionRetryStrategy(RecoveryStrategy):
    """Back off, then probe the store with a trivial statement."""

    name = "connection_retry"
    categories = (ErrorCategory.CONNECTION,)
    max_attempts = 3

    def __init__(self, base_delay: float = 1.0):
        self.base_delay = base_delay

    async def attempt(self, error, engine):
        await engine.sleep(self.base_delay * error.recovery_attempts)
        return await engine.probe()


class TimeoutRetryStrategy(RecoveryStrategy):
    """Shorter backoff followed by a liveness probe."""

    name = "timeout_retry"
    categories = (ErrorCategory.TIMEOUT,)
    max_attempts = 2

    def __init__(self, base_delay: float = 0.5):
        self.base_delay = base_delay

    async def attempt(self, error, engine):
        await engine.sleep(self.base_delay * error.recovery_attempts)
        return await engine.probe()


class LockWaitStrategy(RecoveryStrategy):
    """Wait progressively longer and assume the lock has cleared."""

    name = "lock_wait"
    categories = (ErrorCategory.LOCK,)
    max_attempts = 3

    def __init__(self, base_delay: float = 0.2):
        self.base_delay = base_delay

    async def attempt(self, error, engine):
        await engine.sleep(self.base_delay * (2 ** error.recovery_attempts))
        return True


class SpaceCleanupStrategy(RecoveryStrategy):
    """Free space by dropping recent telemetry and compacting the file."""

    name = "space_cleanup"
    categories = (ErrorCategory.SPACE,)
    max_attempts = 1

    def __init__(self, keep_days: int = 1):
        self.keep_days = keep_days

    async def attempt(self, error, engine):
        return await engine.run_blocking(self._cleanup, engine.database)

    def _cleanup(self, database: SiteDatabase) -> bool:
        cutoff = format_timestamp(utc_now() - timedelta(days=self.keep_days))
        database.execute_statement(
            "DELETE FROM query_performance_log WHERE created_at < ?", (cutoff,)
        )
        database.execute_statement(
            "DELETE FROM cache_performance_log WHERE created_at < ?", (cutoff,)
        )
        database.vacuum()
        return True


class CorruptionRecoveryStrategy(RecoveryStrategy):
    """Run an integrity check and rebuild indexes if it reports a problem."""

    name = "corruption_recovery"
    categories = (ErrorCategory.CORRUPTION,)
    max_attempts = 1

    async def attempt(self, error, engine):
        return await engine.run_blocking(self._repair, engine.database)

    @staticmethod
    def _repair(database: SiteDatabase) -> bool:
        result = database.integrity_check()
        if result == "ok":
            return True
        logger.warning(f"Integrity check reported '{result}', rebuilding indexes")
        database.reindex()
        return True


def default_strategies() -> List[RecoveryStrategy]:
    return [
        ConnectionRetryStrategy(),
        TimeoutRetryStrategy(),
        LockWaitStrategy(),
        SpaceCleanupStrategy(),
        CorruptionRecoveryStrategy(),
    ]


# Retry budget per category; None means never retry.
RETRY_LIMITS: Dict[ErrorCategory, Optional[int]] = {
    ErrorCategory.CONNECTION: 3,
    ErrorCategory.TIMEOUT: 3,
    ErrorCategory.LOCK: 3,
    ErrorCategory.SYNTAX: None,
    ErrorCategory.CONSTRAINT: None,
    ErrorCategory.PERMISSION: None,
    ErrorCategory.CORRUPTION: None,
    ErrorCategory.SPACE: None,
    ErrorCategory.UNKNOWN: 1,
}


class RecoveryEngine:
    """Classifies failures, runs recovery strategies and decides on retries.

    Keeps a bounded log of classified errors. ``handle_error`` is safe to
    call repeatedly with the same exception: the logged entry is reused, so
    attempt counts only grow up to the strategy limits.
    """

    def __init__(
        self,
        database: Optional[SiteDatabase] = None,
        classifier: Optional[ErrorClassifier] = None,
        strategies: Optional[Sequence[RecoveryStrategy]] = None,
        sleep: Sleep = asyncio.sleep,
        alert_callback: Optional[AlertCallback] = None,
        log_capacity: int = 1000,
        persist_errors: bool = True,
    ):
        self.database = database
        self.classifier = classifier or ErrorClassifier()
        self.strategies = list(default_strategies() if strategies is None else strategies)
        self.sleep = sleep
        self.alert_callback = alert_callback
        self.persist_errors = persist_errors and database is not None
        self.error_log: deque = deque(maxlen=log_capacity)
        self.recovery_times_ms: deque = deque(maxlen=log_capacity)
        self.lock = Lock()

    # classification

    def classify(self, error: Union[BaseException, str], context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
        """Create, log and return a ClassifiedError for a raw failure."""
        category, severity = self.classifier.classify(error)
        classified = ClassifiedError(
            id=f"db_error_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}",
            category=category,
            severity=severity,
            message=str(error),
            original_error=error if isinstance(error, BaseException) else None,
            context=dict(context or {}),
        )
        with self.lock:
            self.error_log.append(classified)

        logger.error(
            f"Database error {classified.id} [{category.value}/{severity.value}]: "
            f"{classified.message} (operation={classified.context.get('operation')}, "
            f"table={classified.context.get('table')})"
        )
        return classified

    def _find_logged(self, error: BaseException) -> Optional[ClassifiedError]:
        with self.lock:
            for entry in reversed(self.error_log):
                if entry.original_error is error:
                    return entry
        return None

    # recovery

    async def probe(self) -> bool:
        """Liveness check against the store."""
        if self.database is None:
            return False
        try:
            return await self.run_blocking(self.database.ping)
        except Exception as e:
            logger.debug(f"Probe failed: {e}")
            return False

    async def run_blocking(self, func: Callable, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def applicable_strategies(self, error: ClassifiedError) -> List[RecoveryStrategy]:
        return [
            strategy for strategy in self.strategies
            if strategy.can_recover(error) and error.recovery_attempts < strategy.max_attempts
        ]

    async def attempt_recovery(self, error: ClassifiedError) -> bool:
        """Run applicable strategies in order until one succeeds."""
        applicable = self.applicable_strategies(error)
        if not applicable:
            return False

        limit = min(strategy.max_attempts for strategy in applicable)
        started = time.perf_counter()

        for strategy in applicable:
            if error.recovery_attempts >= limit:
                break
            error.recovery_attempts += 1
            logger.info(
                f"Attempting recovery of {error.id} with strategy: {strategy.name} "
                f"(attempt {error.recovery_attempts}/{strategy.max_attempts})"
            )
            try:
                recovered = await strategy.attempt(error, self)
            except Exception as e:
                logger.error(f"Recovery strategy {strategy.name} failed: {e}")
                continue

            if recovered:
                error.resolved = True
                self.recovery_times_ms.append((time.perf_counter() - started) * 1000)
                logger.info(f"Recovery successful with strategy: {strategy.name}")
                return True

        return False

    def is_retryable(self, error: ClassifiedError) -> bool:
        """Whether the failed operation may be run again."""
        limit = RETRY_LIMITS.get(error.category, 1)
        if limit is None:
            return False
        return error.recovery_attempts < limit

    async def handle_error(
        self,
        error: Union[BaseException, ClassifiedError],
        context: Optional[Dict[str, Any]] = None,
    ) -> HandleResult:
        """Classify, attempt recovery and evaluate the retry policy; never raises."""
        if isinstance(error, ClassifiedError):
            classified = error
        else:
            classified = self._find_logged(error)
            if classified is None:
                classified = self.classify(error, context)
                await self._persist(classified)

        recovered = classified.resolved
        try:
            if not recovered:
                recovered = await self.attempt_recovery(classified)
        except Exception as e:
            logger.error(f"Recovery attempt for {classified.id} failed: {e}")
            recovered = False

        retryable = self.is_retryable(classified)

        if classified.severity == ErrorSeverity.CRITICAL:
            await self._alert_critical(classified)

        return HandleResult(recovered=recovered, retryable=retryable, classified=classified)

    async def _persist(self, error: ClassifiedError):
        if not self.persist_errors or error.category in _UNPERSISTED:
            return
        metadata = {
            'error_id': error.id,
            'category': error.category.value,
            'severity': error.severity.value,
            'message': error.message,
            'operation': error.context.get('operation'),
            'table': error.context.get('table'),
            'query_hash': error.context.get('query_hash'),
        }
        try:
            await self.run_blocking(
                self.database.execute_statement,
                "INSERT INTO analytics_events (event_type, entity_type, metadata, created_at) "
                "VALUES (?, ?, ?, ?)",
                ('database_error', 'error_log', json.dumps(metadata), format_timestamp(error.created_at)),
            )
        except Exception as e:
            logger.error(f"Failed to log error to database: {e}")

    async def _alert_critical(self, error: ClassifiedError):
        logger.critical(
            f"CRITICAL DATABASE ERROR {error.id} [{error.category.value}]: {error.message}"
        )
        if self.alert_callback is None:
            return
        try:
            await self.alert_callback(error)
        except Exception as e:
            logger.error(f"Critical error alert failed: {e}")

    # reporting

    def get_error_statistics(self, hours: int = 24) -> Dict[str, Any]:
        """Error counts and recovery rate over the last N hours."""
        cutoff = utc_now() - timedelta(hours=hours)
        with self.lock:
            recent = [e for e in self.error_log if e.created_at > cutoff]

        total = len(recent)
        resolved = sum(1 for e in recent if e.resolved)
        recovery_times = list(self.recovery_times_ms)

        return {
            'total_errors': total,
            'resolved_errors': resolved,
            'errors_by_category': {
                category.value: sum(1 for e in recent if e.category == category)
                for category in ErrorCategory
            },
            'errors_by_severity': {
                severity.value: sum(1 for e in recent if e.severity == severity)
                for severity in ErrorSeverity
            },
            'recovery_rate': round(resolved / total * 100, 2) if total else 100.0,
            'avg_recovery_time_ms': (
                sum(recovery_times) / len(recovery_times) if recovery_times else 0.0
            ),
            'recent_errors': [e.to_dict() for e in recent[-10:]],
        }

    def get_critical_errors(self) -> List[ClassifiedError]:
        """Unresolved critical errors that need attention."""
        with self.lock:
            return [
                e for e in self.error_log
                if e.severity == ErrorSeverity.CRITICAL and not e.resolved
            ]

    def clear_old_errors(self, older_than_hours: int = 72) -> int:
        """Drop resolved errors older than the cutoff; unresolved ones stay."""
        cutoff = utc_now() - timedelta(hours=older_than_hours)
        with self.lock:
            before = len(self.error_log)
            kept = [e for e in self.error_log if e.created_at > cutoff or not e.resolved]
            self.error_log.clear()
            self.error_log.extend(kept)
            return before - len(kept)

    async def test_recovery_mechanisms(
        self, category: ErrorCategory = ErrorCategory.CONNECTION
    ) -> List[Dict[str, Any]]:
        """
        Exercise the strategies that apply to one synthetic error.

        Strategies for other categories are reported as not tested, so the
        cleanup and repair strategies never run against live data unless
        their own category is requested.
        """
        mock_error = ClassifiedError(
            id="test_error",
            category=category,
            severity=ErrorSeverity.MEDIUM,
            message="Test error",
            context={'operation': 'recovery_test'},
        )

        results = []
        for strategy in self.strategies:
            if not strategy.can_recover(mock_error):
                results.append({
                    'strategy': strategy.name,
                    'tested': False,
                    'successful': False,
                    'error': 'Strategy not applicable to test error',
                })
                continue

            try:
                successful = await strategy.attempt(mock_error, self)
                results.append({'strategy': strategy.name, 'tested': True, 'successful': bool(successful)})
            except Exception as e:
                results.append({
                    'strategy': strategy.name,
                    'tested': True,
                    'successful': False,
                    'error': str(e),
                })
        return results
