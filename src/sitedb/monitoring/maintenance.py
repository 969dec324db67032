"""Tiered database maintenance and health reporting."""
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from loguru import logger
from ..config import HealthConfig, MaintenanceConfig
from ..infrastructure.database import SiteDatabase
from ..models import (
    HealthReport,
    HealthStatus,
    MaintenanceResult,
    format_timestamp,
    utc_now,
)

TaskOutcome = Optional[Dict[str, Any]]


@dataclass(frozen=True)
class OrphanRule:
    """Join rows whose parent row no longer exists."""
    table: str
    column: str
    parent_table: str
    nullable: bool = False

    def statement(self) -> str:
        condition = f"{self.column} NOT IN (SELECT id FROM {self.parent_table})"
        if self.nullable:
            condition = f"{self.column} IS NOT NULL AND {condition}"
        return f"DELETE FROM {self.table} WHERE {condition}"


ORPHAN_RULES = (
    OrphanRule("blog_post_categories", "post_id", "blog_posts"),
    OrphanRule("blog_post_tags", "post_id", "blog_posts"),
    OrphanRule("project_project_categories", "project_id", "portfolio_projects"),
    OrphanRule("project_project_technologies", "project_id", "portfolio_projects"),
    OrphanRule("project_skills", "project_id", "portfolio_projects"),
    OrphanRule("case_study_sections", "project_id", "portfolio_projects"),
    OrphanRule("testimonials", "project_id", "portfolio_projects", nullable=True),
)

# tables whose featured_image_url keeps a media file in use
MEDIA_REFERENCES = ("blog_posts", "portfolio_projects")


class MaintenanceScheduler:
    """Runs daily, weekly and monthly task sets against one database.

    Each tier runs every task of the lower tiers first. Tasks run one after
    another and never abort the tier: a failing task yields a failed
    MaintenanceResult and the next task still runs. Tables that belong to
    the site schema are skipped when absent.
    """

    def __init__(
        self,
        database: SiteDatabase,
        config: Optional[MaintenanceConfig] = None,
        health: Optional[HealthConfig] = None,
        slow_query_ms: float = 100.0,
        orphan_rules=ORPHAN_RULES,
    ):
        self.database = database
        self.config = config or MaintenanceConfig()
        self.health = health or HealthConfig()
        self.slow_query_ms = slow_query_ms
        self.orphan_rules = tuple(orphan_rules)
        self.last_results: List[MaintenanceResult] = []
        self.last_report: Optional[HealthReport] = None

    # tiers

    def daily_tasks(self) -> List[tuple]:
        return [
            ("cleanup_expired_sessions", self.cleanup_expired_sessions),
            ("cleanup_performance_logs", self.cleanup_performance_logs),
            ("cleanup_analytics_events", self.cleanup_analytics_events),
            ("cleanup_orphaned_records", self.cleanup_orphaned_records),
            ("update_statistics", self.update_statistics),
            ("conditional_vacuum", self.conditional_vacuum),
        ]

    def weekly_tasks(self) -> List[tuple]:
        return self.daily_tasks() + [
            ("optimize_fts_indexes", self.optimize_fts_indexes),
            ("rebuild_indexes", self.rebuild_indexes),
            ("analyze_tables", self.analyze_tables),
            ("integrity_check", self.integrity_check),
        ]

    def monthly_tasks(self) -> List[tuple]:
        return self.weekly_tasks() + [
            ("full_vacuum", self.full_vacuum),
            ("comprehensive_cleanup", self.comprehensive_cleanup),
            ("archive_old_data", self.archive_old_data),
        ]

    def run_daily(self) -> List[MaintenanceResult]:
        return self._run_tier("daily", self.daily_tasks())

    def run_weekly(self) -> List[MaintenanceResult]:
        return self._run_tier("weekly", self.weekly_tasks())

    def run_monthly(self) -> List[MaintenanceResult]:
        return self._run_tier("monthly", self.monthly_tasks())

    def _run_tier(self, tier: str, tasks: List[tuple]) -> List[MaintenanceResult]:
        logger.info(f"Starting {tier} maintenance ({len(tasks)} tasks)")
        results = [self._run_task(name, func) for name, func in tasks]

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            f"{tier.capitalize()} maintenance completed: {succeeded}/{len(results)} tasks succeeded, "
            f"{sum(r.records_affected for r in results)} records affected"
        )

        self.last_results = results
        self.last_report = self.generate_health_report()
        return results

    def _run_task(self, task_name: str, func: Callable[[], TaskOutcome]) -> MaintenanceResult:
        start = time.perf_counter()
        try:
            outcome = func() or {}
        except Exception as e:
            logger.error(f"Maintenance task {task_name} failed: {e}")
            return MaintenanceResult(
                task_name=task_name,
                success=False,
                duration_ms=(time.perf_counter() - start) * 1000,
                error=str(e),
            )

        result = MaintenanceResult(
            task_name=task_name,
            success=outcome.pop('success', True),
            duration_ms=(time.perf_counter() - start) * 1000,
            **outcome,
        )
        if result.success:
            logger.debug(f"Maintenance task {task_name}: {result.records_affected} records")
        else:
            logger.warning(f"Maintenance task {task_name} reported: {result.error}")
        return result

    # daily

    def _cutoff(self, days: int) -> str:
        return format_timestamp(utc_now() - timedelta(days=days))

    def _delete(self, statement: str, params=()) -> int:
        return self.database.execute_statement(statement, params).rows_affected

    def cleanup_expired_sessions(self) -> TaskOutcome:
        if not self.database.table_exists("user_sessions"):
            return {'details': "user_sessions not present"}
        deleted = self._delete(
            "DELETE FROM user_sessions WHERE expires_at < ?", (format_timestamp(utc_now()),)
        )
        return {'records_affected': deleted}

    def cleanup_performance_logs(self) -> TaskOutcome:
        cutoff = self._cutoff(self.config.performance_log_retention_days)
        deleted = self._delete("DELETE FROM query_performance_log WHERE created_at < ?", (cutoff,))
        deleted += self._delete("DELETE FROM cache_performance_log WHERE created_at < ?", (cutoff,))

        # keep only the newest rows
        deleted += self._delete("""
            DELETE FROM query_performance_log WHERE id NOT IN (
                SELECT id FROM query_performance_log ORDER BY id DESC LIMIT ?
            )
        """, (self.config.max_log_entries,))
        return {'records_affected': deleted}

    def cleanup_analytics_events(self) -> TaskOutcome:
        cutoff = self._cutoff(self.config.analytics_retention_days)
        deleted = self._delete("DELETE FROM analytics_events WHERE created_at < ?", (cutoff,))
        return {'records_affected': deleted}

    def cleanup_orphaned_records(self) -> TaskOutcome:
        deleted = 0
        per_table = {}
        for rule in self.orphan_rules:
            if not (self.database.table_exists(rule.table) and self.database.table_exists(rule.parent_table)):
                continue
            removed = self._delete(rule.statement())
            per_table[rule.table] = per_table.get(rule.table, 0) + removed
            deleted += removed
        return {'records_affected': deleted, 'details': per_table}

    def update_statistics(self) -> TaskOutcome:
        self.database.analyze()
        self.database.optimize()
        return {}

    def conditional_vacuum(self) -> TaskOutcome:
        size_before = self.database.size_mb()
        if size_before <= self.config.vacuum_threshold_mb:
            return {
                'size_before': size_before,
                'size_after': size_before,
                'details': f"below {self.config.vacuum_threshold_mb}MB threshold",
            }
        self.database.vacuum()
        return {'size_before': size_before, 'size_after': self.database.size_mb()}

    # weekly

    def optimize_fts_indexes(self) -> TaskOutcome:
        tables = self.database.fts_tables()
        for table in tables:
            self.database.execute_statement(f"INSERT INTO {table}({table}) VALUES('rebuild')")
            self.database.execute_statement(f"INSERT INTO {table}({table}) VALUES('optimize')")
        return {'details': tables}

    def rebuild_indexes(self) -> TaskOutcome:
        self.database.reindex()
        self.database.analyze()
        return {}

    def analyze_tables(self) -> TaskOutcome:
        tables = [t for t in self.database.table_names() if t not in self.database.fts_tables()]
        for table in tables:
            self.database.analyze(table)
        return {'details': {'tables_analyzed': len(tables)}}

    def integrity_check(self) -> TaskOutcome:
        result = self.database.integrity_check()
        violations = self.database.foreign_key_check()
        details = {'integrity': result, 'foreign_key_violations': len(violations)}

        if result != "ok" or violations:
            return {
                'success': False,
                'error': f"Integrity check: {result}, foreign key violations: {len(violations)}",
                'details': details,
            }
        return {'details': details}

    # monthly

    def full_vacuum(self) -> TaskOutcome:
        size_before = self.database.size_mb()
        self.database.vacuum()
        size_after = self.database.size_mb()
        logger.info(f"Vacuum reclaimed {size_before - size_after:.2f}MB")
        return {'size_before': size_before, 'size_after': size_after}

    def comprehensive_cleanup(self) -> TaskOutcome:
        affected = 0
        exists = self.database.table_exists

        if exists("blog_categories") and exists("blog_post_categories"):
            affected += self._delete("""
                DELETE FROM blog_categories
                WHERE id NOT IN (
                    SELECT DISTINCT category_id FROM blog_post_categories
                    WHERE category_id IS NOT NULL
                ) AND id > ?
            """, (self.config.protected_category_max_id,))

        if exists("blog_tags") and exists("blog_post_tags"):
            affected += self._delete("""
                DELETE FROM blog_tags
                WHERE id NOT IN (
                    SELECT DISTINCT tag_id FROM blog_post_tags
                    WHERE tag_id IS NOT NULL
                )
            """)

        if exists("media_files"):
            references = [
                f"SELECT featured_image_url FROM {table} WHERE featured_image_url IS NOT NULL"
                for table in MEDIA_REFERENCES if exists(table)
            ]
            unreferenced = (
                f"AND file_url NOT IN ({' UNION '.join(references)})" if references else ""
            )
            affected += self._delete(f"""
                UPDATE media_files SET is_public = 0
                WHERE is_public = 1 AND created_at < ? {unreferenced}
            """, (self._cutoff(self.config.stale_media_days),))

        return {'records_affected': affected}

    def archive_old_data(self) -> TaskOutcome:
        # no archival target yet; the hook keeps the monthly tier complete
        return {'details': "no archival target configured"}

    # health

    def generate_health_report(self) -> HealthReport:
        """Snapshot of size, schema and recent query health.

        Any failure while building the report yields a critical verdict.
        """
        try:
            metrics = self._collect_health_metrics()
        except Exception as e:
            logger.error(f"Health report generation failed: {e}")
            return HealthReport(
                timestamp=utc_now(),
                overall_health=HealthStatus.CRITICAL,
                issues=[f"Health report generation failed: {e}"],
                recommendations=["Check database connectivity and integrity"],
                maintenance_results=list(self.last_results),
            )

        issues = []
        recommendations = []

        if metrics['database_size_mb'] > self.config.alert_db_size_mb:
            issues.append(f"Database size is large: {metrics['database_size_mb']:.1f}MB")
            recommendations.append("Run monthly maintenance to compact storage and archive old data")

        if metrics['avg_query_time_ms'] > self.health.max_avg_query_ms:
            issues.append(f"Average query time is high: {metrics['avg_query_time_ms']:.1f}ms")
            recommendations.append("Review slow queries and add indexes")

        if metrics['slow_query_count'] > self.health.max_slow_queries:
            issues.append(f"High number of slow queries: {metrics['slow_query_count']}")
            recommendations.append("Optimize the slowest statements in the performance dashboard")

        if metrics['cache_requests'] and metrics['cache_hit_rate'] < self.health.min_cache_hit_rate:
            issues.append(f"Cache hit rate is low: {metrics['cache_hit_rate']:.1f}%")
            recommendations.append("Review cache TTLs and cacheable queries")

        if not issues:
            status = HealthStatus.HEALTHY
        elif len(issues) <= 2:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.CRITICAL

        return HealthReport(
            timestamp=utc_now(),
            overall_health=status,
            issues=issues,
            recommendations=recommendations,
            metrics=metrics,
            maintenance_results=list(self.last_results),
        )

    def _collect_health_metrics(self) -> Dict[str, Any]:
        since = format_timestamp(utc_now() - timedelta(hours=1))

        queries = self.database.execute_statement("""
            SELECT
                AVG(execution_time_ms) as avg_time,
                SUM(CASE WHEN execution_time_ms > ? THEN 1 ELSE 0 END) as slow_count
            FROM query_performance_log
            WHERE created_at >= ?
        """, (self.slow_query_ms, since)).rows[0]

        cache = self.database.execute_statement("""
            SELECT
                COUNT(*) as requests,
                SUM(CASE WHEN hit_miss = 'hit' THEN 1 ELSE 0 END) as hits
            FROM cache_performance_log
            WHERE created_at >= ?
        """, (since,)).rows[0]

        requests = cache['requests'] or 0
        return {
            'database_size_mb': round(self.database.size_mb(), 3),
            'table_count': self.database.count_objects("table"),
            'index_count': self.database.count_objects("index"),
            'avg_query_time_ms': queries['avg_time'] or 0.0,
            'slow_query_count': queries['slow_count'] or 0,
            'cache_requests': requests,
            'cache_hit_rate': (cache['hits'] or 0) / requests * 100 if requests else 0.0,
        }
