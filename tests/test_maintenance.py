"""Tests for tiered maintenance and health reports."""
import sqlite3
from datetime import timedelta
from unittest.mock import Mock
import pytest
from sitedb.models import HealthStatus, format_timestamp, utc_now
from sitedb.monitoring.maintenance import MaintenanceScheduler, OrphanRule


SITE_SCHEMA = [
    "CREATE TABLE user_sessions (id TEXT PRIMARY KEY, user_id INTEGER, expires_at DATETIME NOT NULL)",
    "CREATE TABLE blog_posts (id INTEGER PRIMARY KEY, title TEXT, featured_image_url TEXT)",
    "CREATE TABLE blog_categories (id INTEGER PRIMARY KEY, name TEXT)",
    "CREATE TABLE blog_post_categories (post_id INTEGER, category_id INTEGER)",
    "CREATE TABLE blog_tags (id INTEGER PRIMARY KEY, name TEXT)",
    "CREATE TABLE blog_post_tags (post_id INTEGER, tag_id INTEGER)",
    "CREATE TABLE portfolio_projects (id INTEGER PRIMARY KEY, title TEXT, featured_image_url TEXT)",
    "CREATE TABLE testimonials (id INTEGER PRIMARY KEY, project_id INTEGER, quote TEXT)",
    """CREATE TABLE media_files (
        id INTEGER PRIMARY KEY, file_url TEXT, is_public BOOLEAN DEFAULT 1,
        created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
    )""",
]


def _ago(**kwargs) -> str:
    return format_timestamp(utc_now() - timedelta(**kwargs))


@pytest.fixture
def site_db(database):
    for statement in SITE_SCHEMA:
        database.execute_statement(statement)
    return database


@pytest.fixture
def scheduler(site_db):
    return MaintenanceScheduler(site_db)


def _total(results):
    return sum(r.records_affected for r in results)


def _by_name(results):
    return {r.task_name: r for r in results}


class TestDailyMaintenance:
    """Test daily cleanup tasks."""

    def test_daily_is_idempotent(self, site_db, scheduler):
        """Test a second daily run on a clean database changes nothing."""
        site_db.execute_statement("INSERT INTO blog_posts (id, title) VALUES (1, 'kept')")
        site_db.execute_statement("INSERT INTO user_sessions VALUES ('old', 1, '2000-01-01 00:00:00')")
        site_db.execute_statement("INSERT INTO user_sessions VALUES ('live', 1, '2999-01-01 00:00:00')")
        site_db.execute_statement("INSERT INTO blog_post_tags VALUES (1, 1), (99, 1)")
        site_db.execute_statement("INSERT INTO testimonials (project_id, quote) VALUES (NULL, 'a'), (42, 'b')")

        first = scheduler.run_daily()
        second = scheduler.run_daily()

        assert all(r.success for r in first)
        assert all(r.success for r in second)
        assert _total(first) == 3
        assert _total(second) == 0

        sessions = site_db.execute_statement("SELECT id FROM user_sessions").rows
        assert sessions == [{"id": "live"}]
        testimonials = site_db.execute_statement("SELECT quote FROM testimonials").rows
        assert testimonials == [{"quote": "a"}]

    def test_daily_without_site_tables(self, database):
        """Test tasks skip missing site tables and still succeed."""
        results = MaintenanceScheduler(database).run_daily()

        assert len(results) == 6
        assert all(r.success for r in results)
        assert _total(results) == 0

    def test_log_retention(self, site_db, scheduler):
        site_db.execute_statement(
            "INSERT INTO query_performance_log (query_hash, query_type, execution_time_ms, created_at) "
            "VALUES ('old', 'SELECT', 1.0, ?), ('new', 'SELECT', 1.0, ?)",
            (_ago(days=10), _ago(minutes=1)),
        )
        site_db.execute_statement(
            "INSERT INTO cache_performance_log (cache_key, cache_type, hit_miss, created_at) "
            "VALUES ('k', 'query', 'hit', ?)", (_ago(days=8),)
        )
        site_db.execute_statement(
            "INSERT INTO analytics_events (event_type, created_at) VALUES ('page_view', ?), ('page_view', ?)",
            (_ago(days=91), _ago(days=89)),
        )

        results = _by_name(scheduler.run_daily())

        assert results["cleanup_performance_logs"].records_affected == 2
        assert results["cleanup_analytics_events"].records_affected == 1
        hashes = site_db.execute_statement("SELECT query_hash FROM query_performance_log").rows
        assert hashes == [{"query_hash": "new"}]

    def test_log_trimmed_to_max_entries(self, site_db):
        for i in range(5):
            site_db.execute_statement(
                "INSERT INTO query_performance_log (query_hash, query_type, execution_time_ms) "
                "VALUES (?, 'SELECT', 1.0)", (f"h{i}",)
            )
        scheduler = MaintenanceScheduler(site_db)
        scheduler.config.max_log_entries = 2

        result = scheduler._run_task("cleanup_performance_logs", scheduler.cleanup_performance_logs)

        assert result.records_affected == 3
        hashes = site_db.execute_statement("SELECT query_hash FROM query_performance_log ORDER BY id").rows
        assert [h["query_hash"] for h in hashes] == ["h3", "h4"]

    def test_failing_task_does_not_abort_tier(self, scheduler):
        scheduler.update_statistics = Mock(side_effect=sqlite3.OperationalError("database is locked"))

        results = scheduler.run_daily()

        assert len(results) == 6
        failed = [r for r in results if not r.success]
        assert [r.task_name for r in failed] == ["update_statistics"]
        assert failed[0].error == "database is locked"

    def test_conditional_vacuum_below_threshold(self, scheduler):
        result = scheduler._run_task("conditional_vacuum", scheduler.conditional_vacuum)
        assert result.success
        assert result.size_before == result.size_after

    def test_orphan_rule_statement(self):
        rule = OrphanRule("testimonials", "project_id", "portfolio_projects", nullable=True)
        assert rule.statement() == (
            "DELETE FROM testimonials WHERE project_id IS NOT NULL AND "
            "project_id NOT IN (SELECT id FROM portfolio_projects)"
        )


class TestTiers:
    """Test that tiers are strict supersets."""

    def test_weekly_includes_daily(self, scheduler):
        daily = [r.task_name for r in scheduler.run_daily()]
        weekly = [r.task_name for r in scheduler.run_weekly()]

        assert weekly[:len(daily)] == daily
        assert weekly[len(daily):] == [
            "optimize_fts_indexes",
            "rebuild_indexes",
            "analyze_tables",
            "integrity_check",
        ]

    def test_monthly_includes_weekly(self, scheduler):
        monthly = scheduler.run_monthly()
        names = [r.task_name for r in monthly]

        assert names[:10] == [name for name, _ in scheduler.weekly_tasks()]
        assert names[10:] == ["full_vacuum", "comprehensive_cleanup", "archive_old_data"]
        assert all(r.success for r in monthly)

    def test_fts_rebuild(self, site_db, scheduler):
        try:
            site_db.execute_statement("CREATE VIRTUAL TABLE blog_posts_fts USING fts5(title)")
        except sqlite3.OperationalError:
            pytest.skip("sqlite built without fts5")
        site_db.execute_statement("INSERT INTO blog_posts_fts (title) VALUES ('hello')")

        result = scheduler._run_task("optimize_fts_indexes", scheduler.optimize_fts_indexes)

        assert result.success
        assert result.details == ["blog_posts_fts"]

    def test_integrity_check_reports_foreign_key_violations(self, database):
        database.execute_statement("CREATE TABLE parents (id INTEGER PRIMARY KEY)")
        database.execute_statement(
            "CREATE TABLE children (id INTEGER PRIMARY KEY, parent_id INTEGER REFERENCES parents(id))"
        )
        database.execute_statement("INSERT INTO children (parent_id) VALUES (7)")
        scheduler = MaintenanceScheduler(database)

        result = scheduler._run_task("integrity_check", scheduler.integrity_check)

        assert result.success is False
        assert result.details["foreign_key_violations"] == 1


class TestMonthlyCleanup:
    """Test deep cleanup of unreferenced categories, tags and media."""

    def test_comprehensive_cleanup(self, site_db, scheduler):
        site_db.execute_statement(
            "INSERT INTO blog_posts (id, title, featured_image_url) VALUES (1, 'p', '/media/used.png')"
        )
        for category_id in range(1, 7):
            site_db.execute_statement("INSERT INTO blog_categories (id, name) VALUES (?, 'c')", (category_id,))
        site_db.execute_statement("INSERT INTO blog_post_categories VALUES (1, 5)")
        site_db.execute_statement("INSERT INTO blog_tags (id, name) VALUES (1, 'used'), (2, 'unused')")
        site_db.execute_statement("INSERT INTO blog_post_tags VALUES (1, 1)")
        site_db.execute_statement(
            "INSERT INTO media_files (id, file_url, is_public, created_at) VALUES "
            "(1, '/media/used.png', 1, ?), (2, '/media/stale.png', 1, ?), (3, '/media/new.png', 1, ?)",
            (_ago(days=400), _ago(days=400), _ago(days=1)),
        )

        result = scheduler._run_task("comprehensive_cleanup", scheduler.comprehensive_cleanup)

        assert result.success
        assert result.records_affected == 3
        categories = site_db.execute_statement("SELECT id FROM blog_categories ORDER BY id").rows
        assert [c["id"] for c in categories] == [1, 2, 3, 4, 5]
        tags = site_db.execute_statement("SELECT name FROM blog_tags").rows
        assert tags == [{"name": "used"}]
        media = site_db.execute_statement("SELECT id, is_public FROM media_files ORDER BY id").rows
        assert [(m["id"], m["is_public"]) for m in media] == [(1, 1), (2, 0), (3, 1)]

    def test_full_vacuum_reports_sizes(self, scheduler):
        result = scheduler._run_task("full_vacuum", scheduler.full_vacuum)
        assert result.success
        assert result.size_before is not None
        assert result.size_after is not None


class TestHealthReport:
    """Test health verdicts."""

    def _log_queries(self, database, count, duration_ms):
        for i in range(count):
            database.execute_statement(
                "INSERT INTO query_performance_log (query_hash, query_type, execution_time_ms, created_at) "
                "VALUES (?, 'SELECT', ?, ?)", (f"h{i}", duration_ms, _ago(minutes=5))
            )

    def _log_cache(self, database, hit_miss, count):
        for _ in range(count):
            database.execute_statement(
                "INSERT INTO cache_performance_log (cache_key, cache_type, hit_miss, created_at) "
                "VALUES ('k', 'query', ?, ?)", (hit_miss, _ago(minutes=5))
            )

    def test_healthy_on_fresh_database(self, database):
        report = MaintenanceScheduler(database).generate_health_report()

        assert report.overall_health == HealthStatus.HEALTHY
        assert report.issues == []
        assert report.metrics["table_count"] >= 3
        assert report.metrics["index_count"] >= 3

    def test_warning_with_two_issues(self, database):
        self._log_queries(database, 11, 150.0)

        report = MaintenanceScheduler(database).generate_health_report()

        assert report.overall_health == HealthStatus.WARNING
        assert len(report.issues) == 2
        assert report.metrics["slow_query_count"] == 11

    def test_critical_with_three_issues(self, database):
        self._log_queries(database, 11, 150.0)
        self._log_cache(database, "miss", 3)
        self._log_cache(database, "hit", 1)

        report = MaintenanceScheduler(database).generate_health_report()

        assert report.overall_health == HealthStatus.CRITICAL
        assert report.metrics["cache_hit_rate"] == pytest.approx(25.0)

    def test_critical_when_report_fails(self, database, monkeypatch):
        monkeypatch.setattr(database, "size_mb", Mock(side_effect=sqlite3.DatabaseError("file is not a database")))

        report = MaintenanceScheduler(database).generate_health_report()

        assert report.overall_health == HealthStatus.CRITICAL
        assert "file is not a database" in report.issues[0]

    def test_report_carries_last_maintenance_results(self, scheduler):
        scheduler.run_daily()

        report = scheduler.last_report
        assert len(report.maintenance_results) == 6
        assert report.to_dict()["maintenance_results"][0]["task_name"] == "cleanup_expired_sessions"
