"""Unit tests for the recovery engine."""
import json
import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock, Mock
import pytest
from sitedb.infrastructure.recovery import (
    LockWaitStrategy,
    RecoveryEngine,
)
from sitedb.models import (
    ClassifiedError,
    ErrorCategory,
    ErrorSeverity,
    format_timestamp,
    utc_now,
)


@pytest.fixture
def engine(database, sleep):
    return RecoveryEngine(database, sleep=sleep)


class TestHandleError:
    """Test classification, recovery and retry policy."""

    @pytest.mark.asyncio
    async def test_syntax_error_is_not_recovered_or_retried(self, engine, sleep):
        error = sqlite3.OperationalError('near "SELEC": syntax error')

        result = await engine.handle_error(error, {"operation": "SELECT"})

        assert result.recovered is False
        assert result.retryable is False
        assert result.classified.category == ErrorCategory.SYNTAX
        assert result.classified.recovery_attempts == 0
        assert result.classified.original_error is error
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_lock_error_recovers_and_is_retryable(self, engine, sleep):
        result = await engine.handle_error(sqlite3.OperationalError("database is locked"))

        assert result.recovered is True
        assert result.retryable is True
        assert result.classified.resolved is True
        assert result.classified.recovery_attempts == 1
        assert sleep.delays == [pytest.approx(0.4)]

    @pytest.mark.asyncio
    async def test_attempts_bounded_across_repeated_calls(self, sleep):
        """Test the same error object never exceeds its strategy's attempt limit."""
        database = Mock()
        database.ping.side_effect = sqlite3.OperationalError("unable to open database connection")
        engine = RecoveryEngine(database, sleep=sleep)
        error = sqlite3.OperationalError("unable to open database connection")

        results = [await engine.handle_error(error) for _ in range(5)]

        classified = results[-1].classified
        assert all(r.classified is classified for r in results)
        assert classified.recovery_attempts == 3
        assert not any(r.recovered for r in results)
        assert sleep.delays == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(3.0)]
        assert results[0].retryable is True
        assert results[-1].retryable is False
        assert len(engine.error_log) == 1

    @pytest.mark.asyncio
    async def test_handle_classified_error_directly(self, engine):
        classified = engine.classify(sqlite3.OperationalError("database is locked"))

        first = await engine.handle_error(classified)
        second = await engine.handle_error(classified)

        assert first.classified is classified
        assert second.recovered is True
        assert classified.recovery_attempts == 1

    @pytest.mark.asyncio
    async def test_attempt_limit_uses_smallest_applicable_strategy(self, engine, sleep):
        engine.strategies = [LockWaitStrategy(), LockWaitStrategy()]
        engine.strategies[0].max_attempts = 1
        engine.strategies[1].max_attempts = 3
        engine.strategies[0].attempt = AsyncMock(return_value=False)
        engine.strategies[1].attempt = AsyncMock(return_value=True)

        result = await engine.handle_error(sqlite3.OperationalError("database is locked"))

        assert result.classified.recovery_attempts == 1
        assert result.recovered is False
        engine.strategies[1].attempt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_strategy_exception_counts_as_failure(self, engine):
        engine.strategies[2].attempt = AsyncMock(side_effect=RuntimeError("strategy broke"))

        result = await engine.handle_error(sqlite3.OperationalError("database is locked"))

        assert result.recovered is False
        assert result.classified.recovery_attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_error_retryable_once(self, engine):
        result = await engine.handle_error(RuntimeError("something odd"))

        assert result.classified.category == ErrorCategory.UNKNOWN
        assert result.recovered is False
        assert result.retryable is True

        result.classified.recovery_attempts = 1
        assert engine.is_retryable(result.classified) is False

    @pytest.mark.asyncio
    async def test_space_error_cleans_logs(self, database, engine):
        """Test space recovery drops old telemetry and never allows a retry."""
        old = format_timestamp(utc_now() - timedelta(days=2))
        database.execute_statement(
            "INSERT INTO query_performance_log (query_hash, query_type, execution_time_ms, created_at) "
            "VALUES ('h', 'SELECT', 1.0, ?)", (old,)
        )

        result = await engine.handle_error(sqlite3.OperationalError("database or disk is full"))

        assert result.recovered is True
        assert result.retryable is False
        count = database.execute_statement("SELECT COUNT(*) AS n FROM query_performance_log").rows[0]["n"]
        assert count == 0


class TestCriticalAlerts:
    """Test the out-of-band alert for critical errors."""

    @pytest.mark.asyncio
    async def test_critical_error_triggers_callback(self, database, sleep):
        callback = AsyncMock()
        engine = RecoveryEngine(database, sleep=sleep, alert_callback=callback)

        result = await engine.handle_error(sqlite3.DatabaseError("database disk image is malformed"))

        assert result.classified.severity == ErrorSeverity.CRITICAL
        assert result.recovered is True
        assert result.retryable is False
        callback.assert_awaited_once_with(result.classified)

    @pytest.mark.asyncio
    async def test_callback_failure_is_contained(self, database, sleep):
        callback = AsyncMock(side_effect=RuntimeError("smtp down"))
        engine = RecoveryEngine(database, sleep=sleep, alert_callback=callback)

        result = await engine.handle_error(sqlite3.OperationalError("database or disk is full"))

        assert result.classified.category == ErrorCategory.SPACE

    @pytest.mark.asyncio
    async def test_non_critical_error_does_not_alert(self, database, sleep):
        callback = AsyncMock()
        engine = RecoveryEngine(database, sleep=sleep, alert_callback=callback)

        await engine.handle_error(sqlite3.OperationalError("database is locked"))

        callback.assert_not_awaited()


class TestErrorLog:
    """Test persistence and reporting of classified errors."""

    @pytest.mark.asyncio
    async def test_error_persisted_as_analytics_event(self, database, engine):
        await engine.handle_error(
            sqlite3.IntegrityError("UNIQUE constraint failed: blog_tags.name"),
            {"operation": "INSERT", "table": "blog_tags"},
        )

        rows = database.execute_statement(
            "SELECT event_type, metadata FROM analytics_events"
        ).rows
        assert len(rows) == 1
        assert rows[0]["event_type"] == "database_error"
        metadata = json.loads(rows[0]["metadata"])
        assert metadata["category"] == "constraint"
        assert metadata["table"] == "blog_tags"

    @pytest.mark.asyncio
    async def test_connection_errors_not_persisted(self, database, engine):
        await engine.handle_error(sqlite3.OperationalError("network unreachable"))

        rows = database.execute_statement("SELECT * FROM analytics_events").rows
        assert rows == []

    def test_error_log_is_bounded(self, database):
        engine = RecoveryEngine(database, log_capacity=3)
        for i in range(5):
            engine.classify(RuntimeError(f"error {i}"))

        assert len(engine.error_log) == 3
        assert engine.error_log[0].message == "error 2"

    def test_clear_old_errors_keeps_unresolved(self, engine):
        old_resolved = engine.classify(RuntimeError("old resolved"))
        old_resolved.resolved = True
        old_resolved.created_at = utc_now() - timedelta(hours=100)

        old_unresolved = engine.classify(RuntimeError("old unresolved"))
        old_unresolved.created_at = utc_now() - timedelta(hours=100)

        recent = engine.classify(RuntimeError("recent"))
        recent.resolved = True

        assert engine.clear_old_errors(72) == 1
        assert [e.message for e in engine.error_log] == ["old unresolved", "recent"]

    def test_statistics_and_critical_errors(self, engine):
        critical = engine.classify(RuntimeError("database disk image is malformed"))
        resolved = engine.classify(RuntimeError("database is locked"))
        resolved.resolved = True

        stats = engine.get_error_statistics(24)

        assert stats["total_errors"] == 2
        assert stats["resolved_errors"] == 1
        assert stats["recovery_rate"] == 50.0
        assert stats["errors_by_category"]["corruption"] == 1
        assert stats["errors_by_severity"]["critical"] == 1
        assert engine.get_critical_errors() == [critical]

    def test_classified_error_to_dict(self):
        error = ClassifiedError(
            id="e1",
            category=ErrorCategory.LOCK,
            severity=ErrorSeverity.MEDIUM,
            message="database is locked",
            context={"operation": "UPDATE", "table": "blog_posts"},
        )
        data = error.to_dict()
        assert data["category"] == "lock"
        assert data["table"] == "blog_posts"
        assert data["resolved"] is False

    @pytest.mark.asyncio
    async def test_recovery_mechanisms_only_run_applicable_strategies(self, engine, database, sleep):
        """Test the self-test leaves old telemetry and indexes alone."""
        database.execute_statement(
            "INSERT INTO query_performance_log (query_hash, query_type, execution_time_ms, created_at) "
            "VALUES ('old', 'SELECT', 1.0, '2020-01-01 00:00:00')"
        )

        results = await engine.test_recovery_mechanisms()

        assert [r["strategy"] for r in results] == [
            "connection_retry",
            "timeout_retry",
            "lock_wait",
            "space_cleanup",
            "corruption_recovery",
        ]
        tested = {r["strategy"]: r for r in results if r["tested"]}
        assert list(tested) == ["connection_retry"]
        assert tested["connection_retry"]["successful"] is True
        assert sleep.delays == [0]

        rows = database.execute_statement("SELECT query_hash FROM query_performance_log").rows
        assert rows == [{"query_hash": "old"}]

    @pytest.mark.asyncio
    async def test_recovery_mechanisms_for_requested_category(self, engine, sleep):
        results = await engine.test_recovery_mechanisms(ErrorCategory.LOCK)

        tested = [r["strategy"] for r in results if r["tested"]]
        assert tested == ["lock_wait"]
        assert sleep.delays == [pytest.approx(0.2)]
