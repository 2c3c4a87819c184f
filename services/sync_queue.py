from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from core.errors import InvalidRequest, StorageFailure
from core.settings import SYNC
from core.sync_targets import is_supported_action, is_supported_table
from datetime_utils import to_epoch_ms
from models.queued_operation import QueuedOperationRecord
from storage.db import get_session, init_db


def new_idempotency_key() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class QueuedOperation:
    id: str
    user_id: str
    table: str
    action: str
    payload_json: str
    timestamp: float
    idempotency_key: str
    retry_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[float] = None

    @property
    def payload(self) -> Dict[str, Any]:
        """Decoded payload; raises ``json.JSONDecodeError`` on a corrupt row."""
        data = json.loads(self.payload_json)
        if not isinstance(data, dict):
            raise InvalidRequest("invalid payload: queued payload is not an object")
        return data

    @classmethod
    def from_record(cls, record: QueuedOperationRecord) -> "QueuedOperation":
        return cls(
            id=record.id,
            user_id=record.user_id,
            table=record.table_name,
            action=record.action,
            payload_json=record.payload,
            timestamp=record.timestamp,
            idempotency_key=record.idempotency_key,
            retry_count=record.retry_count,
            last_error=record.last_error,
            next_retry_at=record.next_retry_at,
        )


class SyncQueue:
    """Durable per-user FIFO of mutations that still have to reach the server."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        *,
        clock: Callable[[], float] = to_epoch_ms,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        if session_factory is get_session:
            init_db()

    def enqueue(
        self,
        user_id: str,
        table: str,
        action: str,
        payload: Dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> QueuedOperation:
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        if not is_supported_table(table):
            raise ValueError(f"Unsupported table: {table}")
        if not is_supported_action(action):
            raise ValueError(f"Unsupported action: {action}")

        try:
            body = json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"payload is not JSON serializable: {exc}") from exc

        try:
            with self._session_factory() as session:
                record = QueuedOperationRecord(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    table_name=table,
                    action=action,
                    payload=body,
                    timestamp=self._next_timestamp(session, user_id),
                    idempotency_key=idempotency_key or new_idempotency_key(),
                )
                session.add(record)
                session.commit()
                session.refresh(record)
                return QueuedOperation.from_record(record)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to persist queued {action} on {table}: {exc}") from exc
        except OSError as exc:
            raise StorageFailure(f"Failed to persist queued {action} on {table}: {exc}") from exc

    def list(self, user_id: str) -> List[QueuedOperation]:
        with self._session_factory() as session:
            stmt = (
                select(QueuedOperationRecord)
                .where(QueuedOperationRecord.user_id == user_id)
                .order_by(QueuedOperationRecord.timestamp.asc())
            )
            return [QueuedOperation.from_record(row) for row in session.exec(stmt)]

    def get(self, operation_id: str) -> Optional[QueuedOperation]:
        with self._session_factory() as session:
            record = session.get(QueuedOperationRecord, operation_id)
            return QueuedOperation.from_record(record) if record else None

    def remove(self, operation_id: str) -> None:
        with self._session_factory() as session:
            record = session.get(QueuedOperationRecord, operation_id)
            if record:
                session.delete(record)
                session.commit()

    def record_retry(self, operation_id: str, error: str, next_retry_at: float) -> None:
        with self._session_factory() as session:
            record = session.get(QueuedOperationRecord, operation_id)
            if not record:
                return
            record.retry_count += 1
            record.last_error = (error or "")[: SYNC.max_error_length]
            record.next_retry_at = next_retry_at
            session.add(record)
            session.commit()

    def record_error(self, operation_id: str, error: str) -> None:
        with self._session_factory() as session:
            record = session.get(QueuedOperationRecord, operation_id)
            if not record:
                return
            record.last_error = (error or "")[: SYNC.max_error_length]
            session.add(record)
            session.commit()

    def count(self, user_id: Optional[str] = None) -> int:
        with self._session_factory() as session:
            stmt = select(func.count()).select_from(QueuedOperationRecord)
            if user_id is not None:
                stmt = stmt.where(QueuedOperationRecord.user_id == user_id)
            return int(session.exec(stmt).one())

    def _next_timestamp(self, session: Session, user_id: str) -> float:
        # timestamps are the FIFO key, so they must be strictly increasing per user
        now = self._clock()
        stmt = select(func.max(QueuedOperationRecord.timestamp)).where(
            QueuedOperationRecord.user_id == user_id
        )
        latest = session.exec(stmt).one()
        if latest is not None and now <= latest:
            return latest + 1
        return now


__all__ = ["QueuedOperation", "SyncQueue", "new_idempotency_key"]
