"""Embedded database handle for the site."""
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Sequence, Tuple
from loguru import logger
from ..models import StatementResult

Statement = Tuple[str, Sequence[Any]]


class SiteDatabase:
    """Single-writer sqlite handle shared by every middleware component."""

    def __init__(self, db_path: str = "data/site.db"):
        """Initialise database connection."""
        self.db_path = Path(db_path)
        if db_path != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn: Optional[sqlite3.Connection] = None
        self.lock = RLock()
        self._initialize_database()

    def _initialize_database(self):
        """Open the connection and create the telemetry tables."""
        # autocommit; transactions are opened explicitly
        self.conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row

        cursor = self.conn.cursor()

        # one row per executed statement
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS query_performance_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                query_hash TEXT NOT NULL,
                query_type TEXT NOT NULL,
                table_name TEXT,
                execution_time_ms REAL NOT NULL,
                rows_returned INTEGER,
                rows_affected INTEGER,
                cache_hit BOOLEAN DEFAULT 0,
                success BOOLEAN DEFAULT 1,
                sample_query TEXT,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_query_performance_log_hash_time
            ON query_performance_log(query_hash, created_at DESC)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_query_performance_log_table_time
            ON query_performance_log(table_name, created_at DESC)
        """)

        # cache hit/miss events
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS cache_performance_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cache_key TEXT NOT NULL,
                cache_type TEXT NOT NULL,
                hit_miss TEXT NOT NULL CHECK (hit_miss IN ('hit', 'miss')),
                execution_time_ms REAL,
                cache_size_bytes INTEGER,
                ttl_seconds REAL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_cache_performance_log_type_time
            ON cache_performance_log(cache_type, hit_miss, created_at DESC)
        """)

        # general events, including persisted database errors
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS analytics_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                entity_type TEXT,
                metadata TEXT,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_analytics_events_type_time
            ON analytics_events(event_type, created_at DESC)
        """)

        logger.info(f"Database initialized at {self.db_path}")

    def execute_statement(self, text: str, params: Optional[Sequence[Any]] = None) -> StatementResult:
        """Run one parameterized statement; sqlite errors propagate unchanged."""
        with self.lock:
            cursor = self.conn.execute(text, tuple(params or ()))
            rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
            return StatementResult(
                rows=rows,
                rows_affected=max(cursor.rowcount, 0),
                last_insert_id=cursor.lastrowid or None,
            )

    def transaction(self, statements: Sequence[Statement]) -> List[StatementResult]:
        """Run statements all-or-nothing on the single writer."""
        results = []
        with self.lock:
            self.conn.execute("BEGIN")
            try:
                for text, params in statements:
                    results.append(self.execute_statement(text, params))
                self.conn.execute("COMMIT")
            except Exception:
                try:
                    self.conn.execute("ROLLBACK")
                except sqlite3.Error as e:
                    logger.error(f"Rollback failed: {e}")
                raise
        return results

    # administrative statements used by maintenance and recovery

    def ping(self) -> bool:
        """Run a trivial statement; raises if the store is unreachable."""
        self.execute_statement("SELECT 1")
        return True

    def integrity_check(self) -> str:
        rows = self.execute_statement("PRAGMA integrity_check").rows
        return str(next(iter(rows[0].values()))) if rows else "unknown"

    def foreign_key_check(self) -> List[Dict[str, Any]]:
        return self.execute_statement("PRAGMA foreign_key_check").rows

    def reindex(self):
        self.execute_statement("REINDEX")

    def analyze(self, table: Optional[str] = None):
        if table:
            self.execute_statement(f'ANALYZE "{table}"')
        else:
            self.execute_statement("ANALYZE")

    def optimize(self):
        self.execute_statement("PRAGMA optimize")

    def vacuum(self):
        self.execute_statement("VACUUM")

    def size_mb(self) -> float:
        """Current database size in megabytes."""
        page_count = self.execute_statement("PRAGMA page_count").rows[0]["page_count"]
        page_size = self.execute_statement("PRAGMA page_size").rows[0]["page_size"]
        return (page_count * page_size) / (1024 * 1024)

    def table_exists(self, name: str) -> bool:
        rows = self.execute_statement(
            "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
            (name,),
        ).rows
        return bool(rows)

    def table_names(self) -> List[str]:
        rows = self.execute_statement("""
            SELECT name FROM sqlite_master
            WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
            ORDER BY name
        """).rows
        return [row["name"] for row in rows]

    def fts_tables(self) -> List[str]:
        """Full-text virtual tables."""
        rows = self.execute_statement("""
            SELECT name FROM sqlite_master
            WHERE type = 'table' AND sql LIKE '%USING fts5%'
            ORDER BY name
        """).rows
        return [row["name"] for row in rows]

    def count_objects(self, object_type: str) -> int:
        rows = self.execute_statement(
            "SELECT COUNT(*) AS count FROM sqlite_master WHERE type = ?",
            (object_type,),
        ).rows
        return rows[0]["count"]

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
