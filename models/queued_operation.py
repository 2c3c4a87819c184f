"""SQLModel table for mutations waiting to be replayed against the server."""

from __future__ import annotations

from typing import Optional

from sqlmodel import Field, SQLModel


class QueuedOperationRecord(SQLModel, table=True):
    __tablename__ = "sync_queue"

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    table_name: str
    action: str
    payload: str
    timestamp: float = Field(index=True)
    idempotency_key: str = Field(unique=True)
    retry_count: int = Field(default=0)
    last_error: Optional[str] = None
    next_retry_at: Optional[float] = None


__all__ = ["QueuedOperationRecord"]
