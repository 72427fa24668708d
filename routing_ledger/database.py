"""
Database module for cl-routing-ledger

Handles SQLite persistence for:
- Recorded node events (deduplicated on dedup_key)
- Daily routing reports (one row per local calendar date)
- Stream cursors (resume points for each event category)
- Runtime config overrides
"""

import sqlite3
import os
import time
import json
import threading
from typing import Dict, List, Optional, Tuple, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from .events import RecordedEvent


# Columns written by the report aggregator, in upsert order
DAILY_REPORT_COLUMNS = (
    'forward_fee_revenue_msat',
    'rebalance_fee_cost_msat',
    'net_routing_profit_msat',
    'forward_count',
    'rebalance_count',
    'routed_volume_msat',
    'onchain_balance_msat',
    'lightning_balance_msat',
    'total_balance_msat',
)


class Database:
    """
    SQLite database manager for the routing ledger plugin.

    Every thread gets its own connection (producer/consumer threads, the
    scheduler and RPC handlers all touch the store). Connections run in
    autocommit mode so each write is a single atomic statement.
    Connections left behind by threads that have exited are closed the next
    time any thread opens one.
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._local = threading.local()
        # (owning thread, connection) for every connection still open
        self._connections: List[Tuple[threading.Thread, sqlite3.Connection]] = []
        self._connections_lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the calling thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
                timeout=30.0
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=30000")
            self._local.conn = conn
            with self._connections_lock:
                stale = [c for t, c in self._connections if not t.is_alive()]
                self._connections = [(t, c) for t, c in self._connections if t.is_alive()]
                self._connections.append((threading.current_thread(), conn))
            self._close_quietly(stale)
        return conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Immutable event log, one row per logical daemon event
        conn.execute("""
            CREATE TABLE IF NOT EXISTS recorded_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dedup_key TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                occurred_at INTEGER NOT NULL,
                amount_msat INTEGER NOT NULL DEFAULT 0,
                fee_msat INTEGER NOT NULL DEFAULT 0,
                raw_metadata TEXT NOT NULL DEFAULT '{}',
                recorded_at INTEGER NOT NULL
            )
        """)

        # One row per local calendar date; recomputation overwrites in place
        conn.execute("""
            CREATE TABLE IF NOT EXISTS daily_reports (
                report_date TEXT PRIMARY KEY,  -- YYYY-MM-DD, local calendar day
                forward_fee_revenue_msat INTEGER NOT NULL DEFAULT 0,
                rebalance_fee_cost_msat INTEGER NOT NULL DEFAULT 0,
                net_routing_profit_msat INTEGER NOT NULL DEFAULT 0,
                forward_count INTEGER NOT NULL DEFAULT 0,
                rebalance_count INTEGER NOT NULL DEFAULT 0,
                routed_volume_msat INTEGER NOT NULL DEFAULT 0,
                onchain_balance_msat INTEGER,
                lightning_balance_msat INTEGER,
                total_balance_msat INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Highest daemon index already persisted, per stream category
        conn.execute("""
            CREATE TABLE IF NOT EXISTS stream_cursors (
                category TEXT PRIMARY KEY,
                value INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Runtime configuration overrides (ledger-config set)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_overrides (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_kind_time ON recorded_events(kind, occurred_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_time ON recorded_events(occurred_at)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Recorded Event Methods
    # =========================================================================

    def insert_event(self, event: 'RecordedEvent') -> bool:
        """
        Insert an event unless its dedup_key is already present.

        Returns:
            True if a new row was written, False on a dedup conflict
        """
        conn = self._get_connection()
        cursor = conn.execute("""
            INSERT INTO recorded_events
            (dedup_key, kind, occurred_at, amount_msat, fee_msat, raw_metadata, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(dedup_key) DO NOTHING
        """, (
            event.dedup_key,
            event.kind.value,
            int(event.occurred_at),
            int(event.amount_msat),
            int(event.fee_msat),
            json.dumps(event.raw_metadata, sort_keys=True, default=str),
            int(time.time()),
        ))
        return cursor.rowcount == 1

    def get_event(self, dedup_key: str) -> Optional[Dict[str, Any]]:
        """Get a single recorded event by dedup key."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM recorded_events WHERE dedup_key = ?",
            (dedup_key,)
        ).fetchone()
        return self._event_row(row) if row else None

    def delete_event(self, dedup_key: str) -> bool:
        """
        Remove a recorded event.

        Only used to drop the invoice side of a circular rebalance, which
        is already accounted for by its rebalance row.
        """
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM recorded_events WHERE dedup_key = ?",
            (dedup_key,)
        )
        return cursor.rowcount > 0

    def has_rebalance(self, payment_hash: str) -> bool:
        """Check whether any part of a rebalance with this hash is recorded."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM recorded_events WHERE kind = 'rebalance' AND dedup_key LIKE ? LIMIT 1",
            (f"payment:{payment_hash}:%",)
        ).fetchone()
        return row is not None

    def get_event_totals(self, start_ts: int, end_ts: int,
                         kinds: Optional[List[str]] = None) -> Dict[str, Dict[str, int]]:
        """
        Sum fees/amounts and count rows per kind over [start_ts, end_ts).

        Returns:
            {kind: {"count": n, "fee_msat": x, "amount_msat": y}}
        """
        conn = self._get_connection()
        query = """
            SELECT kind,
                   COUNT(*) as cnt,
                   COALESCE(SUM(fee_msat), 0) as fee_msat,
                   COALESCE(SUM(amount_msat), 0) as amount_msat
            FROM recorded_events
            WHERE occurred_at >= ? AND occurred_at < ?
        """
        params: List[Any] = [int(start_ts), int(end_ts)]
        if kinds:
            placeholders = ",".join("?" * len(kinds))
            query += f" AND kind IN ({placeholders})"
            params.extend(kinds)
        query += " GROUP BY kind"

        totals = {}
        for row in conn.execute(query, params).fetchall():
            totals[row['kind']] = {
                'count': row['cnt'],
                'fee_msat': row['fee_msat'],
                'amount_msat': row['amount_msat'],
            }
        return totals

    def get_event_counts(self) -> Dict[str, int]:
        """Count all recorded events per kind."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT kind, COUNT(*) as cnt FROM recorded_events GROUP BY kind"
        ).fetchall()
        return {row['kind']: row['cnt'] for row in rows}

    def get_recent_events(self, limit: int = 20, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get the most recent events, optionally filtered by kind."""
        conn = self._get_connection()
        if kind:
            rows = conn.execute("""
                SELECT * FROM recorded_events WHERE kind = ?
                ORDER BY occurred_at DESC, id DESC LIMIT ?
            """, (kind, limit)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM recorded_events
                ORDER BY occurred_at DESC, id DESC LIMIT ?
            """, (limit,)).fetchall()
        return [self._event_row(row) for row in rows]

    @staticmethod
    def _event_row(row: sqlite3.Row) -> Dict[str, Any]:
        result = dict(row)
        try:
            result['raw_metadata'] = json.loads(result.get('raw_metadata') or '{}')
        except ValueError:
            pass
        return result

    # =========================================================================
    # Daily Report Methods
    # =========================================================================

    def upsert_daily_report(self, report_date: str, values: Dict[str, Any]) -> None:
        """
        Write the report for report_date, replacing any previous row.

        A single INSERT .. ON CONFLICT statement, so readers see either the
        old row or the new one. created_at survives recomputation.
        """
        conn = self._get_connection()
        now = int(time.time())
        columns = ", ".join(DAILY_REPORT_COLUMNS)
        placeholders = ", ".join("?" * len(DAILY_REPORT_COLUMNS))
        updates = ", ".join(f"{col} = excluded.{col}" for col in DAILY_REPORT_COLUMNS)

        conn.execute(f"""
            INSERT INTO daily_reports
            (report_date, {columns}, created_at, updated_at)
            VALUES (?, {placeholders}, ?, ?)
            ON CONFLICT(report_date) DO UPDATE SET
                {updates},
                updated_at = excluded.updated_at
        """, (report_date, *[values.get(col) for col in DAILY_REPORT_COLUMNS], now, now))

    def get_daily_report(self, report_date: str) -> Optional[Dict[str, Any]]:
        """Get the stored report for one date."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM daily_reports WHERE report_date = ?",
            (report_date,)
        ).fetchone()
        return dict(row) if row else None

    def get_daily_reports(self, start_date: Optional[str] = None,
                          end_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get stored reports in ascending date order.

        Both bounds are inclusive ISO dates; None leaves that side open.
        """
        conn = self._get_connection()
        query = "SELECT * FROM daily_reports WHERE 1=1"
        params: List[Any] = []
        if start_date:
            query += " AND report_date >= ?"
            params.append(start_date)
        if end_date:
            query += " AND report_date <= ?"
            params.append(end_date)
        query += " ORDER BY report_date ASC"
        return [dict(row) for row in conn.execute(query, params).fetchall()]

    def get_latest_daily_report(self) -> Optional[Dict[str, Any]]:
        """Get the most recent stored report."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM daily_reports ORDER BY report_date DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None

    # =========================================================================
    # Stream Cursor Methods
    # =========================================================================

    def get_cursor(self, category: str) -> Optional[int]:
        """Get the persisted cursor for a stream category."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM stream_cursors WHERE category = ?",
            (category,)
        ).fetchone()
        return row['value'] if row else None

    def set_cursor(self, category: str, value: int) -> None:
        """Advance the cursor for a stream category (never moves backwards)."""
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO stream_cursors (category, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(category) DO UPDATE SET
                value = MAX(stream_cursors.value, excluded.value),
                updated_at = excluded.updated_at
        """, (category, int(value), int(time.time())))

    def get_all_cursors(self) -> Dict[str, Dict[str, int]]:
        """Get all stream cursors with their last update time."""
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM stream_cursors ORDER BY category").fetchall()
        return {row['category']: {'value': row['value'], 'updated_at': row['updated_at']} for row in rows}

    # =========================================================================
    # Config Override Methods
    # =========================================================================

    def get_config_version(self) -> int:
        """Get the current config override version (0 = no overrides ever set)."""
        conn = self._get_connection()
        row = conn.execute("SELECT COALESCE(MAX(version), 0) as v FROM config_overrides").fetchone()
        return row['v'] if row else 0

    def set_config_override(self, key: str, value: str) -> int:
        """Persist an override and return the new config version."""
        conn = self._get_connection()
        new_version = self.get_config_version() + 1
        conn.execute("""
            INSERT INTO config_overrides (key, value, version, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                version = excluded.version,
                updated_at = excluded.updated_at
        """, (key, value, new_version, int(time.time())))
        return new_version

    def get_config_override(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM config_overrides WHERE key = ?", (key,)
        ).fetchone()
        return row['value'] if row else None

    def get_all_config_overrides(self) -> Dict[str, str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT key, value FROM config_overrides").fetchall()
        return {row['key']: row['value'] for row in rows}

    def delete_config_override(self, key: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM config_overrides WHERE key = ?", (key,))
        return cursor.rowcount > 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self):
        """Close the calling thread's connection."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            with self._connections_lock:
                self._connections = [(t, c) for t, c in self._connections if c is not conn]
            conn.close()
            self._local.conn = None

    def close_all_connections(self):
        """Close every connection opened by any thread (shutdown only)."""
        with self._connections_lock:
            connections = [c for _, c in self._connections]
            self._connections.clear()
        self._close_quietly(connections)
        self._local = threading.local()

    def _close_quietly(self, connections: List[sqlite3.Connection]):
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                self.plugin.log(f"Error closing database connection: {e}", level='warn')
