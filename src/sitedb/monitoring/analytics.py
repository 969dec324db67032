"""Analytics and reporting over the middleware's log tables."""
import csv
import io
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from loguru import logger
from ..config import HealthConfig
from ..infrastructure.database import SiteDatabase
from ..models import ErrorSeverity, PerformanceAlert, format_timestamp, utc_now
from ..infrastructure.performance import UNKNOWN_TABLE


class AnalyticsAggregator:
    """Read-only dashboards, trends and alerts built from logged telemetry."""

    def __init__(
        self,
        database: SiteDatabase,
        recovery=None,
        health: Optional[HealthConfig] = None,
        slow_query_ms: float = 100.0,
    ):
        """Initialise analytics."""
        self.database = database
        self.recovery = recovery
        self.health = health or HealthConfig()
        self.slow_query_ms = slow_query_ms

    def _since(self, hours: float) -> str:
        return format_timestamp(utc_now() - timedelta(hours=hours))

    def _rows(self, statement: str, params=()) -> List[Dict[str, Any]]:
        return self.database.execute_statement(statement, params).rows

    def get_overview(self, hours: int = 24) -> Dict[str, Any]:
        """Headline numbers for the window."""
        since = self._since(hours)

        queries = self._rows("""
            SELECT
                COUNT(*) as total_queries,
                AVG(execution_time_ms) as avg_time,
                SUM(CASE WHEN execution_time_ms > ? THEN 1 ELSE 0 END) as slow_queries,
                SUM(CASE WHEN success THEN 0 ELSE 1 END) as failed_queries
            FROM query_performance_log
            WHERE created_at >= ?
        """, (self.slow_query_ms, since))[0]

        cache = self._rows("""
            SELECT
                COUNT(*) as requests,
                SUM(CASE WHEN hit_miss = 'hit' THEN 1 ELSE 0 END) as hits
            FROM cache_performance_log
            WHERE created_at >= ?
        """, (since,))[0]

        errors = self._rows("""
            SELECT COUNT(*) as count FROM analytics_events
            WHERE event_type = 'database_error' AND created_at >= ?
        """, (since,))[0]['count']

        total = queries['total_queries'] or 0
        requests = cache['requests'] or 0

        return {
            'total_queries': total,
            'avg_query_time_ms': queries['avg_time'] or 0.0,
            'slow_queries': queries['slow_queries'] or 0,
            'failed_queries': queries['failed_queries'] or 0,
            'cache_requests': requests,
            'cache_hit_rate': (cache['hits'] or 0) / requests * 100 if requests else 0.0,
            'error_count': errors,
            'error_rate': errors / total * 100 if total else 0.0,
        }

    def get_top_slow_queries(self, hours: int = 24, limit: int = 10) -> List[Dict]:
        """Slowest statements grouped by normalized text."""
        return self._rows("""
            SELECT
                query_hash,
                query_type,
                table_name,
                COUNT(*) as executions,
                AVG(execution_time_ms) as avg_time_ms,
                MAX(execution_time_ms) as max_time_ms,
                MAX(sample_query) as sample_query
            FROM query_performance_log
            WHERE created_at >= ? AND cache_hit = 0
            GROUP BY query_hash
            ORDER BY avg_time_ms DESC
            LIMIT ?
        """, (self._since(hours), limit))

    def get_query_type_breakdown(self, hours: int = 24) -> List[Dict]:
        return self._rows("""
            SELECT
                query_type,
                COUNT(*) as count,
                AVG(execution_time_ms) as avg_time_ms,
                SUM(CASE WHEN cache_hit THEN 1 ELSE 0 END) as cache_hits
            FROM query_performance_log
            WHERE created_at >= ?
            GROUP BY query_type
            ORDER BY count DESC
        """, (self._since(hours),))

    def get_hourly_trends(self, hours: int = 24) -> List[Dict]:
        """Query volume and latency per hour."""
        return self._rows("""
            SELECT
                strftime('%Y-%m-%d %H:00', created_at) as hour,
                COUNT(*) as queries,
                AVG(execution_time_ms) as avg_time_ms,
                SUM(CASE WHEN execution_time_ms > ? THEN 1 ELSE 0 END) as slow_queries
            FROM query_performance_log
            WHERE created_at >= ?
            GROUP BY hour
            ORDER BY hour
        """, (self.slow_query_ms, self._since(hours)))

    def get_cache_breakdown(self, hours: int = 24) -> List[Dict]:
        """Hit/miss counts per cache category."""
        rows = self._rows("""
            SELECT
                cache_type,
                SUM(CASE WHEN hit_miss = 'hit' THEN 1 ELSE 0 END) as hits,
                SUM(CASE WHEN hit_miss = 'miss' THEN 1 ELSE 0 END) as misses,
                AVG(execution_time_ms) as avg_time_ms
            FROM cache_performance_log
            WHERE created_at >= ?
            GROUP BY cache_type
            ORDER BY cache_type
        """, (self._since(hours),))

        for row in rows:
            total = row['hits'] + row['misses']
            row['hit_rate'] = row['hits'] / total * 100 if total else 0.0
        return rows

    def get_top_cached_keys(self, hours: int = 24, limit: int = 10) -> List[Dict]:
        return self._rows("""
            SELECT
                cache_key,
                COUNT(*) as requests,
                SUM(CASE WHEN hit_miss = 'hit' THEN 1 ELSE 0 END) as hits
            FROM cache_performance_log
            WHERE created_at >= ?
            GROUP BY cache_key
            ORDER BY requests DESC
            LIMIT ?
        """, (self._since(hours), limit))

    def get_table_breakdown(self, hours: int = 24) -> List[Dict]:
        """Query volume per table."""
        return self._rows("""
            SELECT
                table_name,
                COUNT(*) as queries,
                AVG(execution_time_ms) as avg_time_ms,
                SUM(CASE WHEN query_type IN ('INSERT', 'UPDATE', 'DELETE') THEN 1 ELSE 0 END) as writes
            FROM query_performance_log
            WHERE created_at >= ? AND table_name != ?
            GROUP BY table_name
            ORDER BY queries DESC
        """, (self._since(hours), UNKNOWN_TABLE))

    def get_error_breakdown(self, hours: int = 24) -> Dict[str, Any]:
        """Persisted errors by category, plus in-memory recovery statistics."""
        by_category = self._rows("""
            SELECT
                json_extract(metadata, '$.category') as category,
                COUNT(*) as count
            FROM analytics_events
            WHERE event_type = 'database_error' AND created_at >= ?
            GROUP BY category
            ORDER BY count DESC
        """, (self._since(hours),))

        breakdown = {'by_category': by_category}
        if self.recovery is not None:
            stats = self.recovery.get_error_statistics(hours)
            breakdown['recovery'] = {
                'total_errors': stats['total_errors'],
                'resolved_errors': stats['resolved_errors'],
                'recovery_rate': stats['recovery_rate'],
                'avg_recovery_time_ms': stats['avg_recovery_time_ms'],
            }
        return breakdown

    def get_real_time_metrics(self) -> Dict[str, Any]:
        """Activity over the last minute."""
        row = self._rows("""
            SELECT
                COUNT(*) as queries,
                AVG(execution_time_ms) as avg_time,
                SUM(CASE WHEN cache_hit THEN 1 ELSE 0 END) as cache_hits
            FROM query_performance_log
            WHERE created_at >= ?
        """, (format_timestamp(utc_now() - timedelta(minutes=1)),))[0]

        queries = row['queries'] or 0
        return {
            'queries_last_minute': queries,
            'queries_per_second': queries / 60,
            'avg_query_time_ms': row['avg_time'] or 0.0,
            'cache_hits_last_minute': row['cache_hits'] or 0,
        }

    def check_alerts(self, hours: int = 1) -> Dict[str, Any]:
        """
        Compare recent metrics with alert thresholds.

        Returns:
            Dict with the alerts and the highest severity among them
            ('low' when there are none)
        """
        overview = self.get_overview(hours)
        alerts = []

        avg_time = overview['avg_query_time_ms']
        if avg_time > self.health.alert_avg_query_ms:
            severity = (
                ErrorSeverity.CRITICAL if avg_time > self.health.critical_avg_query_ms
                else ErrorSeverity.HIGH
            )
            alerts.append(PerformanceAlert(
                type="slow_queries",
                severity=severity,
                message=f"Average query time is {avg_time:.1f}ms",
                threshold=self.health.alert_avg_query_ms,
                current_value=avg_time,
            ))

        hit_rate = overview['cache_hit_rate']
        if overview['cache_requests'] and hit_rate < self.health.min_cache_hit_rate:
            alerts.append(PerformanceAlert(
                type="low_cache_hit_rate",
                severity=ErrorSeverity.HIGH if hit_rate < 50 else ErrorSeverity.MEDIUM,
                message=f"Cache hit rate is {hit_rate:.1f}%",
                threshold=self.health.min_cache_hit_rate,
                current_value=hit_rate,
            ))

        if self.recovery is not None:
            critical = self.recovery.get_critical_errors()
            if critical:
                alerts.append(PerformanceAlert(
                    type="critical_errors",
                    severity=ErrorSeverity.CRITICAL,
                    message=f"{len(critical)} unresolved critical database errors",
                    threshold=0,
                    current_value=len(critical),
                ))

        severity = max((a.severity for a in alerts), key=lambda s: s.rank, default=ErrorSeverity.LOW)
        if alerts:
            logger.warning(f"{len(alerts)} performance alerts, overall severity {severity.value}")

        return {'alerts': alerts, 'severity': severity.value}

    def generate_dashboard(self, hours: int = 24) -> Dict[str, Any]:
        """Everything the dashboard shows for a window."""
        alerts = self.check_alerts()
        return {
            'window_hours': hours,
            'generated_at': utc_now().isoformat(),
            'overview': self.get_overview(hours),
            'top_slow_queries': self.get_top_slow_queries(hours),
            'query_types': self.get_query_type_breakdown(hours),
            'hourly_trends': self.get_hourly_trends(hours),
            'cache': self.get_cache_breakdown(hours),
            'top_cached_keys': self.get_top_cached_keys(hours),
            'tables': self.get_table_breakdown(hours),
            'errors': self.get_error_breakdown(hours),
            'alerts': [a.to_dict() for a in alerts['alerts']],
            'alert_severity': alerts['severity'],
        }

    def generate_performance_report(
        self,
        start: datetime,
        end: datetime,
        fmt: str = "json",
    ) -> str:
        """
        Per-statement summary for a date range.

        Args:
            start: Range start (UTC)
            end: Range end (UTC)
            fmt: 'json' or 'csv'
        """
        if fmt not in ("json", "csv"):
            raise ValueError(f"Unsupported report format: {fmt}")

        rows = self._rows("""
            SELECT
                query_hash,
                query_type,
                table_name,
                COUNT(*) as executions,
                AVG(execution_time_ms) as avg_time_ms,
                MAX(execution_time_ms) as max_time_ms,
                SUM(CASE WHEN cache_hit THEN 1 ELSE 0 END) as cache_hits,
                SUM(CASE WHEN success THEN 0 ELSE 1 END) as failures,
                MAX(sample_query) as sample_query
            FROM query_performance_log
            WHERE created_at >= ? AND created_at <= ?
            GROUP BY query_hash
            ORDER BY executions DESC
        """, (format_timestamp(start), format_timestamp(end)))

        if fmt == "json":
            return json.dumps({
                'start': start.isoformat(),
                'end': end.isoformat(),
                'statements': rows,
            }, indent=2, default=str)

        output = io.StringIO()
        fieldnames = [
            'query_hash', 'query_type', 'table_name', 'executions', 'avg_time_ms',
            'max_time_ms', 'cache_hits', 'failures', 'sample_query',
        ]
        writer = csv.DictWriter(output, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
        return output.getvalue()
