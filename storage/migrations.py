"""Ad-hoc database migrations for the local sync queue."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_retry_columns(conn) -> None:
    columns = {
        "retry_count": "INTEGER NOT NULL DEFAULT 0",
        "last_error": "TEXT",
        "next_retry_at": "FLOAT",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "sync_queue", name):
            conn.execute(text(f"ALTER TABLE sync_queue ADD COLUMN {name} {ddl_type}"))


def ensure_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_queue_user_timestamp
            ON sync_queue (user_id, timestamp)
            """
        )
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        # queues written by releases that predate per-operation backoff
        ensure_retry_columns(conn)
        ensure_queue_indexes(conn)


__all__ = ["run_all"]
