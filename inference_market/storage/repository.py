"""
Repository pattern for stream history.

Append-only persistence of closed streams and read-side rollups over them.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from inference_market.core.streams import StreamSummary

from .db import DEFAULT_DB_PATH, get_connection
from .models import StreamRecord

_COLUMNS = (
    "stream_id, provider_id, model, quality_tier, status, tokens_processed, "
    "earnings, duration_ms, observed_latency_ms, started_at, ended_at, failure_reason"
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the stream_history table if it doesn't exist.

    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS stream_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                stream_id TEXT NOT NULL UNIQUE,
                provider_id TEXT NOT NULL,
                model TEXT NOT NULL,
                quality_tier TEXT NOT NULL,
                status TEXT NOT NULL,
                tokens_processed INTEGER NOT NULL,
                earnings TEXT NOT NULL,
                duration_ms REAL NOT NULL,
                observed_latency_ms REAL NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT NOT NULL,
                failure_reason TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_stream_record(record: StreamRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single closed stream to the history.

    Args:
        record: The record to store
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO stream_history ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _to_row(record),
        )
        conn.commit()
    finally:
        conn.close()


def insert_stream_records(records: List[StreamRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append several records in one transaction.

    Args:
        records: Records to store
        db_path: Path to SQLite database file
    """
    if not records:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for record in records:
            conn.execute(
                f"INSERT INTO stream_history ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _to_row(record),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_recent_stream_records(
    provider_id: Optional[str] = None,
    model: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[StreamRecord]:
    """Fetch recently closed streams, newest first.

    Args:
        provider_id: Optional filter for one provider
        model: Optional filter for one model
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        Records ordered by ended_at (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_COLUMNS} FROM stream_history"
        params: List[Any] = []
        conditions = []

        if provider_id:
            conditions.append("provider_id = ?")
            params.append(provider_id)
        if model:
            conditions.append("model = ?")
            params.append(model)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY ended_at DESC, id DESC LIMIT ?"
        params.append(limit)

        return [_from_row(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


class StreamHistoryRepository:
    """Repository for persisting and summarising closed streams."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def record_summary(self, summary: StreamSummary) -> None:
        """Persist a stream summary; usable as a coordinator close listener."""
        insert_stream_record(StreamRecord.from_summary(summary), self.db_path)

    def get_recent_records(
        self,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        limit: int = 100,
    ) -> List[StreamRecord]:
        return fetch_recent_stream_records(provider_id, model, limit, self.db_path)

    def get_history_stats(self, days: Optional[int] = None) -> Dict[str, Any]:
        """Aggregate counts, tokens and payouts over the stored history.

        Args:
            days: Optional number of days to look back (by ended_at)

        Returns:
            Dictionary with stream counts, token total, earnings total
            (Decimal) and average latency
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT status, tokens_processed, earnings, observed_latency_ms FROM stream_history"
            params: List[Any] = []
            if days is not None:
                query += " WHERE ended_at >= ?"
                params.append((datetime.now() - timedelta(days=days)).isoformat())
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        latencies = [row[3] for row in rows]
        return {
            "total_streams": len(rows),
            "completed_streams": sum(1 for row in rows if row[0] == "completed"),
            "failed_streams": sum(1 for row in rows if row[0] == "failed"),
            "total_tokens": sum(row[1] for row in rows),
            "total_earnings": sum((Decimal(row[2]) for row in rows), Decimal(0)),
            "avg_latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
        }


def _to_row(record: StreamRecord) -> tuple:
    return (
        record.stream_id,
        record.provider_id,
        record.model,
        record.quality_tier,
        record.status,
        record.tokens_processed,
        record.earnings,
        record.duration_ms,
        record.observed_latency_ms,
        record.started_at.isoformat(),
        record.ended_at.isoformat(),
        record.failure_reason,
    )


def _from_row(row) -> StreamRecord:
    return StreamRecord(
        stream_id=row[0],
        provider_id=row[1],
        model=row[2],
        quality_tier=row[3],
        status=row[4],
        tokens_processed=row[5],
        earnings=row[6],
        duration_ms=row[7],
        observed_latency_ms=row[8],
        started_at=datetime.fromisoformat(row[9]),
        ended_at=datetime.fromisoformat(row[10]),
        failure_reason=row[11],
    )
