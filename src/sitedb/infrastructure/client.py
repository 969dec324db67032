"""Resilient query surface over the site database."""
import asyncio
import json
import time
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Union
from loguru import logger
from ..config import Config
from ..models import (
    ClassifiedError,
    HandleResult,
    HealthReport,
    MaintenanceResult,
    QueryMetric,
    QueryResult,
    QueryType,
    StatementResult,
)
from .cache import QueryCache, generate_cache_key, normalize_statement
from .database import SiteDatabase, Statement
from .error_handling import CircuitBreaker, ErrorClassifier
from .performance import (
    PerformanceRecorder,
    extract_referenced_tables,
    extract_table_name,
    get_query_type,
    query_hash,
)
from .recovery import RecoveryEngine


class DatabaseClient:
    """Runs statements through the breaker, cache, recovery and telemetry.

    Every component is handed in explicitly; ``from_config`` builds the
    usual set for one database handle.
    """

    def __init__(
        self,
        database: SiteDatabase,
        cache: Optional[QueryCache] = None,
        recorder: Optional[PerformanceRecorder] = None,
        recovery: Optional[RecoveryEngine] = None,
        breaker: Optional[CircuitBreaker] = None,
        scheduler=None,
        analytics=None,
        alert_manager=None,
        error_retention_hours: int = 72,
    ):
        # imported here to keep infrastructure importable without monitoring
        from ..monitoring.analytics import AnalyticsAggregator
        from ..monitoring.maintenance import MaintenanceScheduler

        self.database = database
        self.cache = cache or QueryCache()
        self.recorder = recorder or PerformanceRecorder(database)
        self.recovery = recovery or RecoveryEngine(database)
        self.breaker = breaker or CircuitBreaker()
        self.scheduler = scheduler or MaintenanceScheduler(database)
        self.analytics = analytics or AnalyticsAggregator(database, recovery=self.recovery)
        self.alert_manager = alert_manager
        self.error_retention_hours = error_retention_hours

        # log rows are written from the executor, never on the event loop
        self.recorder.auto_flush = False
        self._flushes = set()

    @classmethod
    def from_config(cls, config: Optional[Config] = None, alert_manager=None) -> "DatabaseClient":
        """Build a client and all of its components from configuration."""
        from ..monitoring.analytics import AnalyticsAggregator
        from ..monitoring.maintenance import MaintenanceScheduler

        config = config or Config()
        database = SiteDatabase(config.database.path)
        perf = config.performance

        alert_callback = alert_manager.alert_critical_error if alert_manager else None
        recovery = RecoveryEngine(
            database,
            ErrorClassifier(),
            alert_callback=alert_callback,
            log_capacity=config.recovery.error_log_capacity,
        )

        return cls(
            database,
            cache=QueryCache(
                capacity=config.cache.capacity,
                default_ttl=config.cache.default_ttl,
                enabled=config.cache.enabled,
            ),
            recorder=PerformanceRecorder(
                database,
                budgets={
                    "read": perf.read_budget_ms,
                    "write": perf.write_budget_ms,
                    "search": perf.search_budget_ms,
                    "batch": perf.batch_budget_ms,
                },
                buffer_size=perf.buffer_size,
            ),
            recovery=recovery,
            breaker=CircuitBreaker(
                failure_threshold=config.breaker.failure_threshold,
                open_duration=config.breaker.open_duration,
                half_open_probe_delay=config.breaker.half_open_probe_delay,
            ),
            scheduler=MaintenanceScheduler(
                database,
                config=config.maintenance,
                health=config.health,
                slow_query_ms=perf.slow_query_ms,
            ),
            analytics=AnalyticsAggregator(
                database,
                recovery=recovery,
                health=config.health,
                slow_query_ms=perf.slow_query_ms,
            ),
            alert_manager=alert_manager,
            error_retention_hours=config.recovery.error_retention_hours,
        )

    # query surface

    async def run_query(
        self,
        text: str,
        params: Optional[Sequence[Any]] = None,
        use_cache: bool = True,
        cache_ttl: Optional[float] = None,
        skip_logging: bool = False,
    ) -> QueryResult:
        """
        Run one statement.

        Reads may be served from the cache; writes invalidate cached reads
        of every table they touch. Failures go through recovery and, when
        recovery succeeds for a retryable error, are retried once.

        Args:
            text: Parameterized statement
            params: Positional parameters
            use_cache: Allow serving and storing read results
            cache_ttl: TTL in seconds for a stored result
            skip_logging: Do not write performance or cache log rows

        Raises:
            CircuitBreakerError: When the breaker rejects the call
            sqlite3.Error: The statement's own failure, unchanged
        """
        try:
            return await self.breaker.call_async(
                self._execute, text, params, use_cache, cache_ttl, skip_logging
            )
        finally:
            self._schedule_flush()

    async def _execute(
        self,
        text: str,
        params: Optional[Sequence[Any]],
        use_cache: bool,
        cache_ttl: Optional[float],
        skip_logging: bool,
    ) -> QueryResult:
        query_type = get_query_type(text)
        cache_key = None

        if use_cache and query_type.is_read and self.cache.enabled:
            cache_key = generate_cache_key(text, params)
            cached = self._lookup(cache_key, text, skip_logging)
            if cached is not None:
                return cached

        result = await self._run_with_recovery(text, params, query_type, skip_logging)

        if cache_key is not None:
            ttl = self.cache.default_ttl if cache_ttl is None else cache_ttl
            stored = self.cache.set(
                cache_key,
                [dict(row) for row in result.rows],
                ttl=ttl,
                tags=extract_referenced_tables(text),
            )
            if stored:
                logger.debug(f"Cached query result: {cache_key} (TTL: {ttl}s)")

        if query_type.is_write:
            self._invalidate_tables(extract_referenced_tables(text))

        return QueryResult(
            rows=result.rows,
            rows_affected=result.rows_affected,
            last_insert_id=result.last_insert_id,
            from_cache=False,
        )

    def _lookup(self, cache_key: str, text: str, skip_logging: bool) -> Optional[QueryResult]:
        started = time.perf_counter()
        rows = self.cache.get(cache_key)
        duration_ms = (time.perf_counter() - started) * 1000

        if not skip_logging:
            size_bytes = len(json.dumps(rows, default=str)) if rows is not None else None
            self.recorder.record_cache_event(
                cache_key, rows is not None, duration_ms, size_bytes=size_bytes
            )

        if rows is None:
            return None

        if not skip_logging:
            self.recorder.record(QueryMetric(
                query_hash=query_hash(text),
                query_type=get_query_type(text),
                table_name=extract_table_name(text),
                duration_ms=duration_ms,
                rows_returned=len(rows),
                cache_hit=True,
                sample_query=normalize_statement(text)[:500],
            ))
        return QueryResult(rows=[dict(row) for row in rows], from_cache=True)

    async def _run_with_recovery(
        self,
        text: str,
        params: Optional[Sequence[Any]],
        query_type: QueryType,
        skip_logging: bool,
    ) -> StatementResult:
        try:
            return await self._dispatch(text, params, skip_logging)
        except Exception as error:
            context = {
                'operation': query_type.value,
                'table': extract_table_name(text),
                'query_hash': query_hash(text),
            }
            outcome = await self.recovery.handle_error(error, context)
            if not (outcome.recovered and outcome.retryable):
                raise

            logger.info(f"Retrying statement after recovery of {outcome.classified.id}")
            try:
                return await self._dispatch(text, params, skip_logging)
            except Exception as retry_error:
                await self.recovery.handle_error(
                    retry_error, {**context, 'operation': 'retry_after_recovery'}
                )
                raise

    async def _dispatch(
        self,
        text: str,
        params: Optional[Sequence[Any]],
        skip_logging: bool,
    ) -> StatementResult:
        loop = asyncio.get_running_loop()
        execute = partial(self.database.execute_statement, text, params)

        if skip_logging:
            return await loop.run_in_executor(None, execute)

        with self.recorder.measure(text) as timer:
            result = await loop.run_in_executor(None, execute)
            timer.rows_returned = len(result.rows)
            timer.rows_affected = result.rows_affected
        return result

    async def run_transaction(self, statements: Sequence[Statement]) -> List[StatementResult]:
        """
        Run statements all-or-nothing.

        Args:
            statements: (text, params) pairs

        Returns:
            One StatementResult per statement
        """
        statements = [(text, params or ()) for text, params in statements]
        if not statements:
            return []
        try:
            return await self.breaker.call_async(self._execute_transaction, statements)
        finally:
            self._schedule_flush()

    async def _execute_transaction(self, statements: List[Statement]) -> List[StatementResult]:
        try:
            results = await self._dispatch_transaction(statements)
        except Exception as error:
            context = {
                'operation': 'transaction',
                'table': extract_table_name(statements[0][0]),
                'statements': len(statements),
            }
            outcome = await self.recovery.handle_error(error, context)
            if not (outcome.recovered and outcome.retryable):
                raise

            logger.info(f"Retrying transaction after recovery of {outcome.classified.id}")
            try:
                results = await self._dispatch_transaction(statements)
            except Exception as retry_error:
                await self.recovery.handle_error(
                    retry_error, {**context, 'operation': 'retry_after_recovery'}
                )
                raise

        touched = []
        for text, _ in statements:
            if get_query_type(text).is_write:
                touched.extend(extract_referenced_tables(text))
        self._invalidate_tables(touched)
        return results

    async def _dispatch_transaction(self, statements: List[Statement]) -> List[StatementResult]:
        loop = asyncio.get_running_loop()
        summary = "; ".join(text for text, _ in statements)

        with self.recorder.measure(summary, query_type=QueryType.BATCH) as timer:
            results = await loop.run_in_executor(
                None, partial(self.database.transaction, statements)
            )
            timer.rows_returned = sum(len(r.rows) for r in results)
            timer.rows_affected = sum(r.rows_affected for r in results)
        return results

    def _invalidate_tables(self, tables: Sequence[str]):
        for table in dict.fromkeys(tables):
            self.cache.invalidate(table)

    def _schedule_flush(self):
        """Hand queued log rows to the executor without waiting for the writer."""
        if not self.recorder.pending_count:
            return
        future = asyncio.get_running_loop().run_in_executor(None, self.recorder.flush)
        self._flushes.add(future)
        future.add_done_callback(self._flushes.discard)

    async def flush_telemetry(self) -> int:
        """Wait until every recorded log row has been written."""
        if self._flushes:
            await asyncio.gather(*list(self._flushes))
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.recorder.flush)

    # manual control and observability

    async def handle_error(
        self,
        error: Union[BaseException, ClassifiedError],
        context: Optional[Dict[str, Any]] = None,
    ) -> HandleResult:
        """Classify and try to recover from a failure raised elsewhere."""
        return await self.recovery.handle_error(error, context)

    def invalidate(self, pattern: str) -> int:
        return self.cache.invalidate(pattern)

    def get_health_report(self) -> HealthReport:
        self.recorder.flush()
        return self.scheduler.generate_health_report()

    def get_performance_dashboard(self, window_hours: int = 24) -> Dict[str, Any]:
        self.recorder.flush()
        return self.analytics.generate_dashboard(window_hours)

    def get_critical_errors(self) -> List[ClassifiedError]:
        return self.recovery.get_critical_errors()

    def check_alerts(self) -> Dict[str, Any]:
        self.recorder.flush()
        return self.analytics.check_alerts()

    async def dispatch_alerts(self) -> Dict[str, Any]:
        """Check thresholds and forward every alert to the alert manager."""
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.check_alerts)
        if self.alert_manager is not None:
            for alert in result['alerts']:
                try:
                    await self.alert_manager.alert_performance(alert)
                except Exception as e:
                    logger.error(f"Failed to dispatch alert {alert.type}: {e}")
        return result

    def get_status(self) -> Dict[str, Any]:
        """In-memory state of every component."""
        return {
            'breaker': self.breaker.get_state(),
            'cache': self.cache.stats(),
            'queries': self.recorder.get_metrics(),
            'system': self.recorder.get_system_metrics(),
            'errors': self.recovery.get_error_statistics(hours=1),
        }

    # maintenance entry points

    def run_daily(self) -> List[MaintenanceResult]:
        self._before_maintenance()
        results = self.scheduler.run_daily()
        self._after_maintenance()
        return results

    def run_weekly(self) -> List[MaintenanceResult]:
        self._before_maintenance()
        results = self.scheduler.run_weekly()
        self._after_maintenance()
        return results

    def run_monthly(self) -> List[MaintenanceResult]:
        self._before_maintenance()
        results = self.scheduler.run_monthly()
        self._after_maintenance()
        return results

    def _before_maintenance(self):
        self.recorder.flush()

    def _after_maintenance(self):
        cleared = self.recovery.clear_old_errors(self.error_retention_hours)
        if cleared:
            logger.info(f"Cleared {cleared} resolved errors from the error log")

    def close(self):
        """Write queued log rows and close the database handle."""
        self.recorder.flush()
        self.recorder.log_summary()
        self.database.close()
