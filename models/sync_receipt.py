"""Server-side ledger of idempotency keys and their processing state."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class SyncReceipt(SQLModel, table=True):
    """One row per ``(user_id, idempotency_key)`` ever seen by the executor."""

    __tablename__ = "sync_operation_receipts"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="ux_sync_receipt_user_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    idempotency_key: str
    table_name: str
    action: str
    payload_hash: str
    applied: bool = Field(default=False)
    applied_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


__all__ = ["SyncReceipt"]
