from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.errors import StorageFailure
from core.logs import sync_logger
from core.settings import SYNC, SyncSettings
from core.sync_targets import SyncResult, is_supported_action, is_supported_table
from services.retry import retry_with_backoff
from services.sync_errors import Disposition, describe, disposition
from services.sync_queue import QueuedOperation, SyncQueue, new_idempotency_key
from services.sync_service import Executor


class MutationOutcome(str, Enum):
    APPLIED = "applied"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass(frozen=True)
class MutationResult:
    outcome: MutationOutcome
    idempotency_key: str
    result: Optional[SyncResult] = None
    operation: Optional[QueuedOperation] = None
    error: Optional[BaseException] = None


class SyncedMutation:
    """Writes straight to the server and falls back to the durable queue.

    The optimistic local change stays in place when the server accepts the
    write or when it is queued for a later flush; it is rolled back only when
    the write can neither reach the server nor be persisted locally.
    """

    def __init__(
        self,
        executor: Executor,
        queue: SyncQueue,
        *,
        settings: SyncSettings = SYNC,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.executor = executor
        self.queue = queue
        self.settings = settings
        self._sleep = sleep
        self.logger = logger or sync_logger()

    def write(
        self,
        user_id: str,
        token: str,
        table: str,
        action: str,
        payload: Dict[str, Any],
        *,
        optimistic_update: Optional[Callable[[], None]] = None,
        rollback: Optional[Callable[[], None]] = None,
        on_queued: Optional[Callable[[QueuedOperation], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> MutationResult:
        if not is_supported_table(table):
            raise ValueError(f"Unsupported table: {table}")
        if not is_supported_action(action):
            raise ValueError(f"Unsupported action: {action}")

        if optimistic_update:
            optimistic_update()

        key = new_idempotency_key()
        request = {
            "idempotencyKey": key,
            "table": table,
            "action": action,
            "payload": payload,
        }

        try:
            pending = self.queue.count(user_id)
        except SQLAlchemyError as exc:
            return self._fail(key, StorageFailure(f"Failed to read sync queue: {exc}"), rollback, on_error)
        if pending:
            # the server must see this write after the ones already waiting
            self.logger.info("Queueing %s on %s behind %d pending operation(s)", action, table, pending)
            return self._fall_back(user_id, table, action, payload, key, None, rollback, on_queued, on_error)

        try:
            result = retry_with_backoff(
                lambda: self.executor(token, request),
                attempts=self.settings.direct_write_attempts,
                initial_delay=self.settings.direct_write_initial_delay_sec,
                should_retry=lambda exc: disposition(exc) is Disposition.RETRY,
                sleep=self._sleep,
            )
        except Exception as exc:
            verdict = disposition(exc)
            if verdict is not Disposition.RETRY:
                self.logger.error(
                    "Direct %s on %s rejected (%s): %s",
                    action,
                    table,
                    verdict.value,
                    describe(exc),
                )
                return self._fail(key, exc, rollback, on_error)
            return self._fall_back(user_id, table, action, payload, key, exc, rollback, on_queued, on_error)

        self.logger.debug("Direct %s on %s applied (key=%s, deduped=%s)", action, table, key, result.deduped)
        return MutationResult(MutationOutcome.APPLIED, key, result=result)

    def _fall_back(
        self,
        user_id: str,
        table: str,
        action: str,
        payload: Dict[str, Any],
        key: str,
        cause: Optional[BaseException],
        rollback: Optional[Callable[[], None]],
        on_queued: Optional[Callable[[QueuedOperation], None]],
        on_error: Optional[Callable[[BaseException], None]],
    ) -> MutationResult:
        try:
            operation = self.queue.enqueue(user_id, table, action, payload, idempotency_key=key)
        except StorageFailure as exc:
            self.logger.error("Could not queue %s on %s: %s", action, table, exc)
            return self._fail(key, exc, rollback, on_error)

        if cause is not None:
            self.logger.warning(
                "Direct %s on %s failed, queued for later (key=%s): %s",
                action,
                table,
                key,
                describe(cause),
            )
        if on_queued:
            on_queued(operation)
        return MutationResult(MutationOutcome.QUEUED, key, operation=operation, error=cause)

    @staticmethod
    def _fail(
        key: str,
        error: BaseException,
        rollback: Optional[Callable[[], None]],
        on_error: Optional[Callable[[BaseException], None]],
    ) -> MutationResult:
        if rollback:
            rollback()
        if on_error:
            on_error(error)
        return MutationResult(MutationOutcome.FAILED, key, error=error)


__all__ = ["MutationOutcome", "MutationResult", "SyncedMutation"]
