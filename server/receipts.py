"""Persistence helpers for idempotency receipts."""
from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from core.errors import TransientInfra
from datetime_utils import utc_now
from models.sync_receipt import SyncReceipt


_MAX_ERROR_LENGTH = 2000


class ReceiptStore:
    """Wrapper around SQLModel sessions for the ``sync_operation_receipts`` table.

    The unique constraint on ``(user_id, idempotency_key)`` is what resolves
    concurrent executions of the same operation: whoever inserts first owns
    the pending receipt, everybody else gets ``False`` from
    :meth:`insert_pending` and re-reads the row.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        logger: Optional[logging.Logger] = None,
        max_error_length: int = _MAX_ERROR_LENGTH,
    ) -> None:
        self._session_factory = session_factory
        self.logger = logger or logging.getLogger("ironlog.server")
        self.max_error_length = max_error_length

    def fetch(self, user_id: str, idempotency_key: str) -> Optional[SyncReceipt]:
        try:
            with self._session_factory() as session:
                stmt = select(SyncReceipt).where(
                    SyncReceipt.user_id == user_id,
                    SyncReceipt.idempotency_key == idempotency_key,
                )
                return session.exec(stmt).first()
        except SQLAlchemyError as exc:
            raise TransientInfra(f"Failed to read sync receipt: {exc}") from exc

    def insert_pending(
        self,
        user_id: str,
        idempotency_key: str,
        table: str,
        action: str,
        payload_hash: str,
    ) -> bool:
        receipt = SyncReceipt(
            user_id=user_id,
            idempotency_key=idempotency_key,
            table_name=table,
            action=action,
            payload_hash=payload_hash,
            applied=False,
            last_error=None,
        )
        with self._session_factory() as session:
            try:
                session.add(receipt)
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            except SQLAlchemyError as exc:
                session.rollback()
                raise TransientInfra(f"Failed to insert sync receipt: {exc}") from exc
        return True

    def mark_applied(
        self,
        user_id: str,
        idempotency_key: str,
        *,
        session: Optional[Session] = None,
    ) -> bool:
        """Flip ``applied`` to true; return ``False`` if it already was.

        With ``session`` the update joins the caller's transaction and is not
        committed here.
        """

        stmt = (
            update(SyncReceipt)
            .where(
                SyncReceipt.user_id == user_id,
                SyncReceipt.idempotency_key == idempotency_key,
                SyncReceipt.applied == False,  # noqa: E712
            )
            .values(applied=True, applied_at=utc_now(), last_error=None)
        )
        if session is not None:
            result = session.connection().execute(stmt)
            return result.rowcount == 1

        with self._session_factory() as own_session:
            try:
                result = own_session.connection().execute(stmt)
                own_session.commit()
            except SQLAlchemyError as exc:
                own_session.rollback()
                raise TransientInfra(f"Failed to mark sync receipt as applied: {exc}") from exc
            return result.rowcount == 1

    def mark_failed(self, user_id: str, idempotency_key: str, message: str) -> None:
        stmt = (
            update(SyncReceipt)
            .where(
                SyncReceipt.user_id == user_id,
                SyncReceipt.idempotency_key == idempotency_key,
            )
            .values(last_error=(message or "")[: self.max_error_length])
        )
        with self._session_factory() as session:
            try:
                session.connection().execute(stmt)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                self.logger.error("failed to mark receipt error: %s", exc)


__all__ = ["ReceiptStore"]
