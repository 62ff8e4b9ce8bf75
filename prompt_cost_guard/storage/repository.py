"""
Repository pattern for data access.

Handles the append-only usage ledger that backs quota history across
restarts.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageEvent

_COLUMNS = (
    "timestamp, user_id, category, template_id, tokens, "
    "estimated_cost, model, request_id, batch_id, deduplicated"
)


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        timestamp=datetime.fromisoformat(row[0]),
        user_id=row[1],
        category=row[2],
        template_id=row[3],
        tokens=row[4],
        estimated_cost=row[5],
        model=row[6],
        request_id=row[7],
        batch_id=row[8],
        deduplicated=bool(row[9]),
    )


def _event_params(event: UsageEvent) -> tuple:
    return (
        event.timestamp.isoformat(),
        event.user_id,
        event.category,
        event.template_id,
        event.tokens,
        event.estimated_cost,
        event.model,
        event.request_id,
        event.batch_id,
        int(event.deduplicated),
    )


class UsageRepository:
    """Repository for reading and appending prompt usage events.

    The quota tracker writes through it on every tracked request and
    reads from it once at startup to warm its in-memory history.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def record(self, event: UsageEvent) -> None:
        """Append one event to the ledger."""
        insert_usage_event(event, self.db_path)

    def get_recent_events(
        self,
        user_id: Optional[str] = None,
        category: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 1000
    ) -> List[UsageEvent]:
        """Get recent usage events with optional filtering.

        Args:
            user_id: Optional filter for a specific user
            category: Optional filter for a specific prompt category
            days: Optional number of days to look back
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_COLUMNS} FROM prompt_usage_event"
            params = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if category:
                conditions.append("category = ?")
                params.append(category)
            if days is not None:
                cutoff = (datetime.now() - timedelta(days=days)).isoformat()
                conditions.append("timestamp >= ?")
                params.append(cutoff)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [_row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_user_ids(self) -> List[str]:
        """Distinct users present in the ledger."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT DISTINCT user_id FROM prompt_usage_event ORDER BY user_id")
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_usage_stats(
        self,
        user_id: Optional[str] = None,
        days: int = 30
    ) -> Dict[str, float]:
        """Get usage statistics for the specified time period.

        Args:
            user_id: Optional filter for a specific user
            days: Number of days to include in the statistics

        Returns:
            Dictionary containing usage statistics
        """
        conn = get_connection(self.db_path)
        try:
            cutoff = (datetime.now() - timedelta(days=days)).isoformat()

            query = """
                SELECT
                    COUNT(*) as total_requests,
                    SUM(estimated_cost) as total_cost,
                    AVG(estimated_cost) as avg_cost,
                    SUM(tokens) as total_tokens
                FROM prompt_usage_event
                WHERE timestamp >= ?
            """
            params = [cutoff]

            if user_id:
                query += " AND user_id = ?"
                params.append(user_id)

            cursor = conn.execute(query, params)
            row = cursor.fetchone()

            return {
                "total_requests": row[0] or 0,
                "total_cost": float(row[1] or 0),
                "avg_cost": float(row[2] or 0),
                "total_tokens": row[3] or 0
            }
        finally:
            conn.close()

    def get_optimization_counts(self, days: int = 30) -> Dict[str, int]:
        """Count batched and deduplicated requests for the specified time period.

        A downstream request is one (batch, category, template) group of
        batch members; folded duplicates ride along without one of their own.

        Args:
            days: Number of days to include

        Returns:
            Dictionary with total_requests, deduplicated, batched_original
            and batched_combined counts
        """
        conn = get_connection(self.db_path)
        try:
            cutoff = (datetime.now() - timedelta(days=days)).isoformat()
            row = conn.execute("""
                SELECT
                    COUNT(*),
                    SUM(deduplicated),
                    SUM(CASE WHEN batch_id IS NOT NULL AND deduplicated = 0 THEN 1 ELSE 0 END)
                FROM prompt_usage_event
                WHERE timestamp >= ?
            """, [cutoff]).fetchone()
            combined = conn.execute("""
                SELECT COUNT(*) FROM (
                    SELECT DISTINCT batch_id, category, template_id
                    FROM prompt_usage_event
                    WHERE timestamp >= ? AND batch_id IS NOT NULL AND deduplicated = 0
                )
            """, [cutoff]).fetchone()

            return {
                "total_requests": row[0] or 0,
                "deduplicated": row[1] or 0,
                "batched_original": row[2] or 0,
                "batched_combined": combined[0] or 0,
            }
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the prompt_usage_event table if it doesn't exist.

    This creates an append-only ledger for immutable usage events.
    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS prompt_usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL,
                category TEXT NOT NULL,
                template_id TEXT NOT NULL,
                tokens INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                model TEXT NOT NULL,
                request_id TEXT,
                batch_id TEXT,
                deduplicated INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_prompt_usage_user_ts
            ON prompt_usage_event (user_id, timestamp)
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_event(event: UsageEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage event into the append-only ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO prompt_usage_event ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _event_params(event),
        )
        conn.commit()
    finally:
        conn.close()


def insert_usage_events(events: List[UsageEvent], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple usage events atomically into the append-only ledger.

    All events are inserted in a single transaction to ensure consistency.

    Args:
        events: List of usage events to record
        db_path: Path to SQLite database file
    """
    if not events:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for event in events:
            conn.execute(
                f"INSERT INTO prompt_usage_event ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _event_params(event),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_recent_usage_events(
    user_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageEvent]:
    """Fetch recent usage events, optionally for one user, newest first.

    Args:
        user_id: Optional filter for a specific user
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        List of usage events ordered by timestamp (newest first)
    """
    return UsageRepository(db_path).get_recent_events(user_id=user_id, limit=limit)
