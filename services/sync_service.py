from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from core.logs import sync_logger
from core.settings import SYNC, SyncSettings
from core.sync_targets import SyncResult
from services.network_monitor import NetworkMonitor
from services.retry import backoff_delay, retry_with_backoff
from services.sync_api import build_request
from services.sync_errors import Disposition, describe, disposition
from services.sync_queue import QueuedOperation, SyncQueue


Executor = Callable[[str, Dict[str, Any]], SyncResult]


@dataclass(frozen=True)
class AuthSession:
    user_id: str
    access_token: str
    expires_at: Optional[float] = None  # epoch seconds

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class FlushState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    COMPLETED = "completed"
    HALTED = "halted"


@dataclass(frozen=True)
class DroppedOperation:
    """What is left of a mutation the server will never accept."""

    operation_id: str
    user_id: str
    table: str
    action: str
    timestamp: float
    idempotency_key: str
    error: str


@dataclass
class FlushReport:
    user_id: str
    state: FlushState = FlushState.IDLE
    processed: int = 0
    dropped: List[DroppedOperation] = field(default_factory=list)
    remaining: Optional[int] = None
    stopped_on: Optional[str] = None
    reason: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "processed": self.processed,
            "dropped": len(self.dropped),
            "remaining": self.remaining,
            "stoppedOn": self.stopped_on,
            "reason": self.reason,
            "skipped": self.skipped,
        }


class SyncService:
    """Drains the durable queue against the sync endpoint, one user at a time.

    A pass processes operations strictly in timestamp order and stops at the
    first one that cannot be resolved yet, so a later mutation never reaches
    the server before an earlier one.
    """

    def __init__(
        self,
        executor: Executor,
        queue: Optional[SyncQueue] = None,
        *,
        settings: SyncSettings = SYNC,
        on_drop: Optional[Callable[[DroppedOperation], None]] = None,
        on_halt: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.executor = executor
        self.queue = queue or SyncQueue()
        self.settings = settings
        self.on_drop = on_drop
        self.on_halt = on_halt
        self._clock = clock
        self._sleep = sleep
        self.logger = logger or sync_logger()

        self._lock = threading.Lock()
        self._sessions: Dict[str, AuthSession] = {}
        self._current_user: Optional[str] = None
        self._draining: Set[str] = set()
        self._needs_reauth: Set[str] = set()
        self._generation: Dict[str, int] = {}
        self._last_reports: Dict[str, FlushReport] = {}

    # ------------------------------------------------------------------
    # Triggers
    def on_login(self, session: AuthSession) -> FlushReport:
        """Successful sign-in or session restore: store the credential and drain."""

        with self._lock:
            self._sessions[session.user_id] = session
            self._current_user = session.user_id
            self._needs_reauth.discard(session.user_id)
        self.logger.info("Session ready for user %s; flushing queue", session.user_id)
        return self.flush(session.user_id)

    def request_flush(self) -> Optional[FlushReport]:
        """Explicit user request; the only trigger that skips backoff windows."""

        user_id = self._current_user
        if not user_id:
            return None
        return self.flush(user_id, force=True)

    def on_network_reconnected(self) -> Optional[FlushReport]:
        user_id = self._current_user
        if not user_id:
            return None
        self.logger.debug("Reconnect trigger for user %s", user_id)
        return self.flush(user_id)

    def attach(self, monitor: NetworkMonitor) -> Callable[[], None]:
        return monitor.subscribe(self.on_network_reconnected)

    def logout(self) -> None:
        """Forget the credential and abandon any pass still running for the user."""

        with self._lock:
            user_id = self._current_user
            self._current_user = None
            if not user_id:
                return
            self._sessions.pop(user_id, None)
            self._needs_reauth.discard(user_id)
            self._generation[user_id] = self._generation.get(user_id, 0) + 1
        self.logger.info("User %s logged out; in-flight sync abandoned", user_id)

    # ------------------------------------------------------------------
    # Public API
    def flush(self, user_id: str, *, force: bool = False) -> FlushReport:
        if not self.settings.enabled:
            return self._skipped(user_id, "sync disabled")

        with self._lock:
            if user_id in self._draining:
                return self._skipped(user_id, "flush already running")
            if user_id in self._needs_reauth:
                return self._skipped(user_id, "awaiting re-authentication")
            session = self._sessions.get(user_id)
            if session is None:
                return self._skipped(user_id, "no credential")
            self._draining.add(user_id)
            generation = self._generation.get(user_id, 0)

        report = FlushReport(user_id=user_id, state=FlushState.DRAINING)
        try:
            self._drain(session, generation, report, force=force)
        finally:
            with self._lock:
                self._draining.discard(user_id)
                self._last_reports[user_id] = report
                # a login that arrived while this pass was being abandoned was skipped
                resume = self._generation.get(user_id, 0) != generation and user_id in self._sessions
        if resume:
            self.logger.info("User %s signed in again during an abandoned pass; resuming", user_id)
            self.flush(user_id)
        return report

    def is_draining(self, user_id: str) -> bool:
        return user_id in self._draining

    def status(self, user_id: Optional[str] = None) -> dict:
        target = user_id or self._current_user
        if not target:
            return {"userId": None, "state": FlushState.IDLE.value, "queueSize": 0}
        session = self._sessions.get(target)
        last = self._last_reports.get(target)
        return {
            "userId": target,
            "state": (FlushState.DRAINING if target in self._draining else FlushState.IDLE).value,
            "queueSize": self.queue.count(target),
            "needsReauth": target in self._needs_reauth,
            "credentialExpiresAt": session.expires_at if session else None,
            "lastPass": last.to_dict() if last else None,
        }

    # ------------------------------------------------------------------
    # Pass internals
    def _drain(self, session: AuthSession, generation: int, report: FlushReport, *, force: bool) -> None:
        user_id = session.user_id
        try:
            operations = self.queue.list(user_id)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to read sync queue for %s: %s", user_id, exc)
            report.state = FlushState.COMPLETED
            report.reason = "queue unavailable"
            return

        if not operations:
            report.state = FlushState.COMPLETED
            report.remaining = 0
            return
        if session.expired(self._clock()):
            self._halt(report, None, "credential expired")
            return

        for operation in operations:
            if not force and self._in_backoff(operation):
                report.stopped_on = operation.id
                report.reason = "backoff"
                break

            try:
                result = self._send(session, operation)
            except Exception as exc:
                if self._abandoned(user_id, generation, report):
                    return
                verdict = disposition(exc)
                if verdict is Disposition.DROP:
                    self._drop(report, operation, exc)
                    continue
                if verdict is Disposition.HALT:
                    self._halt(report, operation, describe(exc))
                    return
                self._schedule_retry(report, operation, describe(exc))
                break

            if self._abandoned(user_id, generation, report):
                return
            if not result.resolved:
                self._schedule_retry(report, operation, "server reported the operation as not applied")
                break
            self.queue.remove(operation.id)
            report.processed += 1
            self.logger.debug(
                "Synced %s %s (key=%s, deduped=%s)",
                operation.action,
                operation.table,
                operation.idempotency_key,
                result.deduped,
            )

        report.state = FlushState.COMPLETED
        report.remaining = self.queue.count(user_id)
        if report.processed:
            self.logger.info(
                "Flush for %s applied %d operation(s); %d remaining",
                user_id,
                report.processed,
                report.remaining,
            )

    def _send(self, session: AuthSession, operation: QueuedOperation) -> SyncResult:
        def call() -> SyncResult:
            return self.executor(session.access_token, build_request(operation))

        return retry_with_backoff(
            call,
            attempts=self.settings.flush_call_attempts,
            initial_delay=self.settings.flush_call_initial_delay_sec,
            should_retry=lambda exc: disposition(exc) is Disposition.RETRY,
            sleep=self._sleep,
        )

    def _in_backoff(self, operation: QueuedOperation) -> bool:
        if operation.next_retry_at is None:
            return False
        return operation.next_retry_at > self._clock() * 1000

    def _abandoned(self, user_id: str, generation: int, report: FlushReport) -> bool:
        if self._generation.get(user_id, 0) == generation:
            return False
        report.state = FlushState.HALTED
        report.reason = "logged out"
        return True

    def _schedule_retry(self, report: FlushReport, operation: QueuedOperation, error: str) -> None:
        delay = backoff_delay(
            operation.retry_count + 1,
            base=self.settings.retry_base_delay_sec,
            max_exponent=self.settings.retry_max_exponent,
        )
        self.queue.record_retry(operation.id, error, self._clock() * 1000 + delay * 1000)
        report.stopped_on = operation.id
        report.reason = "retry"
        self.logger.warning(
            "Queue item retry scheduled. table=%s action=%s retry=%d delay=%.1fs error=%s",
            operation.table,
            operation.action,
            operation.retry_count + 1,
            delay,
            error,
        )

    def _drop(self, report: FlushReport, operation: QueuedOperation, exc: BaseException) -> None:
        error = describe(exc)
        self.queue.remove(operation.id)
        dropped = DroppedOperation(
            operation_id=operation.id,
            user_id=operation.user_id,
            table=operation.table,
            action=operation.action,
            timestamp=operation.timestamp,
            idempotency_key=operation.idempotency_key,
            error=error,
        )
        report.dropped.append(dropped)
        self.logger.error(
            "Dropping non-retryable queue item. table=%s action=%s timestamp=%s key=%s error=%s",
            operation.table,
            operation.action,
            operation.timestamp,
            operation.idempotency_key,
            error,
        )
        if self.on_drop:
            try:
                self.on_drop(dropped)
            except Exception:
                self.logger.exception("on_drop callback failed")

    def _halt(self, report: FlushReport, operation: Optional[QueuedOperation], error: str) -> None:
        user_id = report.user_id
        with self._lock:
            self._needs_reauth.add(user_id)
        if operation is not None:
            self.queue.record_error(operation.id, error)
            report.stopped_on = operation.id
        report.state = FlushState.HALTED
        report.reason = error
        self.logger.error("Halting queue flush for %s: %s", user_id, error)
        if self.on_halt:
            try:
                self.on_halt(user_id, error)
            except Exception:
                self.logger.exception("on_halt callback failed")

    def _skipped(self, user_id: str, reason: str) -> FlushReport:
        self.logger.debug("Flush for %s skipped: %s", user_id, reason)
        return FlushReport(user_id=user_id, state=FlushState.IDLE, reason=reason, skipped=True)


__all__ = [
    "AuthSession",
    "DroppedOperation",
    "Executor",
    "FlushReport",
    "FlushState",
    "SyncService",
]
