"""Idempotent application of one queued client mutation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session

from core.canonical import payload_hash
from core.errors import InvalidRequest, KeyConflict, SyncError, TransientInfra
from core.sync_targets import SyncResult, is_supported_action, is_supported_table, read_string
from server.auth import IdentityVerifier
from server.receipts import ReceiptStore
from server.tables import TableWriter


@dataclass(frozen=True)
class SyncRequest:
    idempotency_key: str
    table: str
    action: str
    payload: Dict[str, Any]


def parse_request(raw: Any) -> SyncRequest:
    if not isinstance(raw, dict):
        raise InvalidRequest("Invalid request payload")

    idempotency_key = read_string(raw.get("idempotencyKey"))
    if not idempotency_key:
        raise InvalidRequest("idempotencyKey is required")

    table = raw.get("table")
    if not is_supported_table(table):
        raise InvalidRequest("Unsupported table")

    action = raw.get("action")
    if not is_supported_action(action):
        raise InvalidRequest("Unsupported action")

    payload = raw.get("payload")
    if not isinstance(payload, dict):
        raise InvalidRequest("payload must be an object")

    return SyncRequest(
        idempotency_key=idempotency_key,
        table=table,
        action=action,
        payload=payload,
    )


class SyncOperationExecutor:
    """Server half of the offline queue.

    Never retries on its own: every failure is reported to the caller, whose
    classifier decides between retry, drop and halt.
    """

    def __init__(
        self,
        verifier: IdentityVerifier,
        session_factory: Callable[[], Session],
        *,
        receipts: Optional[ReceiptStore] = None,
        writer: Optional[TableWriter] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.verifier = verifier
        self._session_factory = session_factory
        self.logger = logger or logging.getLogger("ironlog.server")
        self.receipts = receipts or ReceiptStore(session_factory, logger=self.logger)
        self.writer = writer or TableWriter()

    def execute(self, auth_token: Optional[str], raw_request: Any) -> SyncResult:
        user_id = self.verifier.verify(auth_token)
        request = parse_request(raw_request)
        digest = payload_hash(request.payload)

        try:
            if not self._claim(user_id, request, digest):
                return self._result(request, applied=False, deduped=True)
            if not self._apply(user_id, request):
                return self._result(request, applied=False, deduped=True)
        except SyncError as exc:
            self.receipts.mark_failed(user_id, request.idempotency_key, exc.message)
            raise

        self.logger.info(
            "Applied %s %s for user %s (key=%s)",
            request.action,
            request.table,
            user_id,
            request.idempotency_key,
        )
        return self._result(request, applied=True, deduped=False)

    # ------------------------------------------------------------------
    def _claim(self, user_id: str, request: SyncRequest, digest: str) -> bool:
        """Return ``True`` when the operation still has to be applied."""

        existing = self.receipts.fetch(user_id, request.idempotency_key)
        if existing is None:
            inserted = self.receipts.insert_pending(
                user_id,
                request.idempotency_key,
                request.table,
                request.action,
                digest,
            )
            if inserted:
                return True
            existing = self.receipts.fetch(user_id, request.idempotency_key)
            if existing is None:
                raise TransientInfra("Sync receipt vanished after a concurrent insert")

        if existing.payload_hash != digest:
            self.logger.error(
                "Client defect: idempotency key %s reused with a different payload (user %s, %s %s)",
                request.idempotency_key,
                user_id,
                request.action,
                request.table,
            )
            raise KeyConflict("idempotencyKey already used with a different payload")
        if existing.applied:
            self.logger.debug("Deduped key %s for user %s", request.idempotency_key, user_id)
            return False
        return True

    def _apply(self, user_id: str, request: SyncRequest) -> bool:
        with self._session_factory() as session:
            try:
                if not self.receipts.mark_applied(user_id, request.idempotency_key, session=session):
                    session.rollback()
                    return False
                self.writer.apply(session, user_id, request.table, request.action, request.payload)
                session.commit()
            except InvalidRequest:
                session.rollback()
                raise
            except Exception as exc:
                session.rollback()
                self.logger.error("sync-operation apply failed: %s", exc)
                raise TransientInfra(str(exc)) from exc
        return True

    @staticmethod
    def _result(request: SyncRequest, *, applied: bool, deduped: bool) -> SyncResult:
        return SyncResult(
            applied=applied,
            deduped=deduped,
            idempotency_key=request.idempotency_key,
            table=request.table,
            action=request.action,
        )


__all__ = ["SyncOperationExecutor", "SyncRequest", "SyncResult", "parse_request"]
