"""Unit tests for statement parsing and the performance recorder."""
from unittest.mock import Mock
import pytest
from loguru import logger
from sitedb.infrastructure.performance import (
    PerformanceRecorder,
    extract_referenced_tables,
    extract_table_name,
    get_query_type,
    query_hash,
)
from sitedb.models import QueryMetric, QueryType


class TestStatementParsing:
    """Test best-effort statement parsing."""

    @pytest.mark.parametrize("text,expected", [
        ("SELECT * FROM blog_posts", QueryType.SELECT),
        ("  select id from blog_posts where id = ?", QueryType.SELECT),
        ("WITH recent AS (SELECT 1) SELECT * FROM recent", QueryType.SELECT),
        ("WITH stale AS (SELECT id FROM blog_tags) DELETE FROM blog_tags WHERE id IN (SELECT id FROM stale)", QueryType.DELETE),
        ("WITH RECURSIVE n(x) AS (SELECT 1 UNION SELECT x + 1 FROM n WHERE x < 3) INSERT INTO blog_tags (name) SELECT x FROM n", QueryType.INSERT),
        ("WITH t AS (SELECT 1) UPDATE blog_posts SET title = ?", QueryType.UPDATE),
        ("SELECT rowid FROM blog_posts_fts WHERE blog_posts_fts MATCH ?", QueryType.SEARCH),
        ("INSERT INTO blog_tags (name) VALUES (?)", QueryType.INSERT),
        ("REPLACE INTO blog_tags (name) VALUES (?)", QueryType.INSERT),
        ("UPDATE blog_posts SET title = ?", QueryType.UPDATE),
        ("DELETE FROM blog_posts WHERE id = ?", QueryType.DELETE),
        ("PRAGMA integrity_check", QueryType.UNKNOWN),
        ("", QueryType.UNKNOWN),
    ])
    def test_get_query_type(self, text, expected):
        assert get_query_type(text) == expected

    def test_get_query_type_never_raises(self):
        assert get_query_type(None) == QueryType.UNKNOWN

    @pytest.mark.parametrize("text,expected", [
        ("SELECT * FROM blog_posts WHERE id = ?", "blog_posts"),
        ("INSERT OR REPLACE INTO blog_tags (name) VALUES (?)", "blog_tags"),
        ("UPDATE users SET name = ?", "users"),
        ("DELETE FROM user_sessions WHERE expires_at < ?", "user_sessions"),
        ("PRAGMA optimize", "unknown"),
    ])
    def test_extract_table_name(self, text, expected):
        assert extract_table_name(text) == expected

    def test_extract_table_name_never_raises(self):
        assert extract_table_name(None) == "unknown"

    def test_extract_referenced_tables(self):
        text = """
            SELECT p.title FROM blog_posts p
            JOIN blog_post_tags pt ON pt.post_id = p.id
            JOIN blog_tags t ON t.id = pt.tag_id
        """
        assert extract_referenced_tables(text) == ["blog_posts", "blog_post_tags", "blog_tags"]

    def test_query_hash_ignores_whitespace(self):
        assert query_hash("SELECT 1\n  FROM t") == query_hash("SELECT 1 FROM t")


class TestPerformanceRecorder:
    """Test budgets and metric recording."""

    def _metric(self, query_type, duration_ms, **kwargs):
        return QueryMetric(
            query_hash="abc",
            query_type=query_type,
            table_name="blog_posts",
            duration_ms=duration_ms,
            **kwargs,
        )

    def test_budgets(self):
        recorder = PerformanceRecorder(None)
        assert recorder.budget_for(QueryType.SELECT) == 100
        assert recorder.budget_for(QueryType.UNKNOWN) == 100
        assert recorder.budget_for(QueryType.INSERT) == 200
        assert recorder.budget_for(QueryType.DELETE) == 200
        assert recorder.budget_for(QueryType.SEARCH) == 300
        assert recorder.budget_for(QueryType.BATCH) == 1000

    def test_budget_overrides(self):
        recorder = PerformanceRecorder(None, budgets={"read": 50})
        assert recorder.budget_for(QueryType.SELECT) == 50
        assert recorder.budget_for(QueryType.INSERT) == 200

    def test_is_over_budget(self):
        recorder = PerformanceRecorder(None)
        assert recorder.is_over_budget(self._metric(QueryType.SELECT, 150)) is True
        assert recorder.is_over_budget(self._metric(QueryType.INSERT, 150)) is False
        assert recorder.is_over_budget(self._metric(QueryType.SELECT, 100)) is False

    def test_record_persists_row(self, database):
        recorder = PerformanceRecorder(database)
        recorder.record(self._metric(QueryType.SELECT, 12.5, rows_returned=3, sample_query="SELECT 1"))

        rows = database.execute_statement("SELECT * FROM query_performance_log").rows
        assert len(rows) == 1
        assert rows[0]["query_type"] == "SELECT"
        assert rows[0]["table_name"] == "blog_posts"
        assert rows[0]["execution_time_ms"] == 12.5
        assert rows[0]["rows_returned"] == 3
        assert rows[0]["success"] == 1

    def test_deferred_rows_written_on_flush(self, database):
        recorder = PerformanceRecorder(database, auto_flush=False)
        recorder.record(self._metric(QueryType.SELECT, 5))
        recorder.record_cache_event("k", True, 0.1)

        assert recorder.pending_count == 2
        assert recorder.get_metrics()["SELECT"]["total_operations"] == 1
        assert database.execute_statement("SELECT COUNT(*) AS n FROM query_performance_log").rows[0]["n"] == 0

        assert recorder.flush() == 2
        assert recorder.pending_count == 0
        assert database.execute_statement("SELECT COUNT(*) AS n FROM query_performance_log").rows[0]["n"] == 1
        assert database.execute_statement("SELECT COUNT(*) AS n FROM cache_performance_log").rows[0]["n"] == 1

    def test_slow_statement_logs_warning(self):
        """Test an over-budget statement warns instead of raising."""
        recorder = PerformanceRecorder(None)
        messages = []
        sink_id = logger.add(messages.append, level="WARNING")
        try:
            recorder.record(self._metric(QueryType.SELECT, 250))
        finally:
            logger.remove(sink_id)

        assert any("Slow query detected" in str(m) for m in messages)
        assert recorder.get_metrics()["SELECT"]["over_budget"] == 1

    def test_record_never_raises(self):
        database = Mock()
        database.execute_statement.side_effect = RuntimeError("disk gone")
        recorder = PerformanceRecorder(database)

        recorder.record(self._metric(QueryType.SELECT, 5))
        recorder.record_cache_event("key", True, 0.1)

        assert len(recorder.recent_metrics()) == 1

    def test_measure_records_failure(self):
        """Test a failed statement is still recorded, and the error propagates."""
        recorder = PerformanceRecorder(None)

        with pytest.raises(ValueError):
            with recorder.measure("SELECT * FROM blog_posts"):
                raise ValueError("boom")

        metric = recorder.recent_metrics()[-1]
        assert metric.success is False
        assert metric.table_name == "blog_posts"
        assert metric.query_type == QueryType.SELECT

    def test_measure_query_type_override(self):
        recorder = PerformanceRecorder(None)
        with recorder.measure("INSERT INTO a VALUES (1); INSERT INTO b VALUES (2)", query_type=QueryType.BATCH) as timer:
            timer.rows_affected = 2

        assert timer.metric.query_type == QueryType.BATCH
        assert timer.metric.rows_affected == 2

    def test_record_cache_event(self, database):
        recorder = PerformanceRecorder(database)
        recorder.record_cache_event("k", False, 0.3, size_bytes=None, ttl_seconds=300)

        rows = database.execute_statement("SELECT * FROM cache_performance_log").rows
        assert rows[0]["hit_miss"] == "miss"
        assert rows[0]["cache_type"] == "query"

    def test_aggregates(self):
        recorder = PerformanceRecorder(None)
        recorder.record(self._metric(QueryType.SELECT, 10))
        recorder.record(self._metric(QueryType.SELECT, 30, success=False))

        metrics = recorder.get_metrics()["SELECT"]
        assert metrics["total_operations"] == 2
        assert metrics["average_duration_ms"] == 20
        assert metrics["min_duration_ms"] == 10
        assert metrics["success_rate"] == 0.5

    def test_system_metrics(self):
        metrics = PerformanceRecorder(None).get_system_metrics()
        assert metrics["memory_mb"] > 0
        assert metrics["uptime_seconds"] >= 0
