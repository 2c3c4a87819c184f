from dataclasses import replace

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import select

from core.errors import InvalidRequest, KeyConflict, TransientInfra, Unauthorized
from core.settings import SYNC, ServerSettings
from core.sync_targets import SyncResult
from models import QueuedOperationRecord, SyncReceipt, WorkoutRow
from server.app import create_app
from services.network_monitor import NetworkMonitor
from services.sync_api import SyncApiClient
from services.sync_queue import SyncQueue
from services.sync_service import AuthSession, FlushState, SyncService


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeExecutor:
    """Replays scripted outcomes; anything that is not an exception means success."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, token, request):
        self.calls.append((token, request))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(token, request)
        return SyncResult(
            applied=outcome == "ok",
            deduped=outcome == "deduped",
            idempotency_key=request["idempotencyKey"],
            table=request["table"],
            action=request["action"],
        )


def _status_error(code):
    request = httpx.Request("POST", "http://sync.test/functions/v1/sync-operation")
    response = httpx.Response(code, json={"error": f"status {code}"}, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def queue(session_factory):
    return SyncQueue(session_factory)


def _service(executor, queue, clock, **kwargs):
    return SyncService(executor, queue, clock=clock, sleep=lambda _: None, **kwargs)


def _session(user_id="user-1", token="token-1", expires_at=None):
    return AuthSession(user_id=user_id, access_token=token, expires_at=expires_at)


def _fill(queue, count=3, user_id="user-1"):
    return [queue.enqueue(user_id, "workouts", "upsert", {"id": f"w{i}"}) for i in range(count)]


def test_login_drains_queue_in_order(queue, clock):
    ops = _fill(queue)
    executor = FakeExecutor()
    service = _service(executor, queue, clock)

    report = service.on_login(_session())

    assert report.state is FlushState.COMPLETED
    assert report.processed == 3
    assert report.remaining == 0
    assert [request["idempotencyKey"] for _, request in executor.calls] == [op.idempotency_key for op in ops]
    assert all(token == "token-1" for token, _ in executor.calls)
    assert queue.count("user-1") == 0


def test_deduped_response_also_resolves(queue, clock):
    _fill(queue, 1)
    service = _service(FakeExecutor("deduped"), queue, clock)

    report = service.on_login(_session())

    assert report.processed == 1
    assert queue.count() == 0


def test_retry_stops_the_pass_and_schedules_backoff(queue, clock):
    ops = _fill(queue)
    executor = FakeExecutor("ok", _status_error(503))
    service = _service(executor, queue, clock)

    report = service.on_login(_session())

    assert report.state is FlushState.COMPLETED
    assert report.processed == 1
    assert report.stopped_on == ops[1].id
    assert report.remaining == 2
    assert len(executor.calls) == 2
    pending = queue.get(ops[1].id)
    assert pending.retry_count == 1
    assert pending.last_error == "HTTP 503: status 503"
    assert pending.next_retry_at == clock.now * 1000 + 1000
    # the later operation was never sent ahead of the failed one
    assert queue.get(ops[2].id).retry_count == 0


def test_backoff_window_is_respected_unless_forced(queue, clock):
    ops = _fill(queue, 2)
    executor = FakeExecutor(TransientInfra("db down", status_code=503))
    service = _service(executor, queue, clock)
    service.on_login(_session())
    assert len(executor.calls) == 1

    waiting = service.flush("user-1")
    assert waiting.reason == "backoff"
    assert waiting.stopped_on == ops[0].id
    assert len(executor.calls) == 1

    clock.now += 2
    drained = service.flush("user-1")
    assert drained.processed == 2
    assert queue.count() == 0


def test_explicit_flush_forces_past_backoff(queue, clock):
    _fill(queue, 1)
    executor = FakeExecutor(httpx.ConnectError("offline"))
    service = _service(executor, queue, clock)
    service.on_login(_session())

    report = service.request_flush()

    assert report.processed == 1
    assert len(executor.calls) == 2


def test_drop_removes_and_continues(queue, clock):
    ops = _fill(queue, 3)
    dropped = []
    executor = FakeExecutor(InvalidRequest("payload must be an object"), "ok", KeyConflict("reused"))
    service = _service(executor, queue, clock, on_drop=dropped.append)

    report = service.on_login(_session())

    assert report.state is FlushState.COMPLETED
    assert report.processed == 1
    assert queue.count() == 0
    assert [item.operation_id for item in dropped] == [ops[0].id, ops[2].id]
    first = dropped[0]
    assert first.table == "workouts"
    assert first.action == "upsert"
    assert first.timestamp == ops[0].timestamp
    assert first.idempotency_key == ops[0].idempotency_key
    assert "payload must be an object" in first.error
    assert report.dropped == dropped


def test_corrupt_stored_payload_is_dropped(session_factory, queue, clock):
    with session_factory() as session:
        session.add(
            QueuedOperationRecord(
                id="broken",
                user_id="user-1",
                table_name="workouts",
                action="upsert",
                payload="{oops",
                timestamp=1.0,
                idempotency_key="k-broken",
            )
        )
        session.commit()
    good = queue.enqueue("user-1", "workouts", "upsert", {"id": "w1"})
    executor = FakeExecutor()
    service = _service(executor, queue, clock)

    report = service.on_login(_session())

    assert [item.operation_id for item in report.dropped] == ["broken"]
    assert [request["idempotencyKey"] for _, request in executor.calls] == [good.idempotency_key]
    assert queue.count() == 0


def test_failing_drop_callback_does_not_stop_the_pass(queue, clock):
    _fill(queue, 2)

    def explode(_):
        raise RuntimeError("ui gone")

    service = _service(FakeExecutor(InvalidRequest("bad")), queue, clock, on_drop=explode)

    report = service.on_login(_session())

    assert report.processed == 1
    assert queue.count() == 0


def test_halt_keeps_queue_and_waits_for_login(queue, clock):
    ops = _fill(queue, 2)
    halts = []
    executor = FakeExecutor(Unauthorized("Auth token expired"))
    service = _service(executor, queue, clock, on_halt=lambda user, error: halts.append((user, error)))

    report = service.on_login(_session())

    assert report.state is FlushState.HALTED
    assert report.stopped_on == ops[0].id
    assert halts == [("user-1", "Unauthorized: Auth token expired")]
    assert queue.count() == 2
    assert queue.get(ops[0].id).last_error == "Unauthorized: Auth token expired"
    assert queue.get(ops[0].id).retry_count == 0
    assert service.status()["needsReauth"] is True

    skipped = service.request_flush()
    assert skipped.skipped is True
    assert len(executor.calls) == 1

    resumed = service.on_login(_session(token="token-2"))
    assert resumed.processed == 2
    assert executor.calls[-1][0] == "token-2"
    assert service.status()["needsReauth"] is False


def test_http_403_halts_too(queue, clock):
    _fill(queue, 1)
    service = _service(FakeExecutor(_status_error(403)), queue, clock)

    assert service.on_login(_session()).state is FlushState.HALTED


def test_expired_credential_halts_without_calling_server(queue, clock):
    _fill(queue, 1)
    executor = FakeExecutor()
    halts = []
    service = _service(executor, queue, clock, on_halt=lambda user, error: halts.append(error))

    report = service.on_login(_session(expires_at=clock.now - 1))

    assert report.state is FlushState.HALTED
    assert report.reason == "credential expired"
    assert executor.calls == []
    assert halts == ["credential expired"]
    assert queue.count() == 1


def test_expired_credential_with_nothing_queued_does_not_halt(queue, clock):
    halts = []
    service = _service(FakeExecutor(), queue, clock, on_halt=lambda user, error: halts.append(error))

    report = service.on_login(_session(expires_at=clock.now - 1))

    assert report.state is FlushState.COMPLETED
    assert report.remaining == 0
    assert halts == []
    assert service.status()["needsReauth"] is False


def test_flush_is_noop_while_already_draining(queue, clock):
    _fill(queue, 2)
    nested = []

    def reenter(token, request):
        nested.append(service.flush("user-1", force=True))
        return SyncResult(True, False, request["idempotencyKey"], request["table"], request["action"])

    service = _service(FakeExecutor(reenter), queue, clock)

    report = service.on_login(_session())

    assert report.processed == 2
    assert nested[0].skipped is True
    assert nested[0].reason == "flush already running"


def test_logout_abandons_in_flight_pass(queue, clock):
    ops = _fill(queue, 2)

    def logout_mid_call(token, request):
        service.logout()
        return SyncResult(True, False, request["idempotencyKey"], request["table"], request["action"])

    executor = FakeExecutor(logout_mid_call)
    service = _service(executor, queue, clock)

    report = service.on_login(_session())

    assert report.state is FlushState.HALTED
    assert report.reason == "logged out"
    assert len(executor.calls) == 1
    # the late resolution is ignored; replaying the key later is deduped by the server
    assert [op.id for op in queue.list("user-1")] == [op.id for op in ops]
    assert service.request_flush() is None
    assert service.flush("user-1").reason == "no credential"


def test_relogin_while_abandoned_call_is_in_flight_resumes_draining(queue, clock):
    _fill(queue, 2)
    relogins = []

    def logout_and_sign_back_in(token, request):
        service.logout()
        relogins.append(service.on_login(_session(token="token-2")))
        return SyncResult(True, False, request["idempotencyKey"], request["table"], request["action"])

    executor = FakeExecutor(logout_and_sign_back_in)
    service = _service(executor, queue, clock)

    first = service.on_login(_session())

    assert first.reason == "logged out"
    assert relogins[0].skipped is True
    assert queue.count("user-1") == 0
    assert [token for token, _ in executor.calls] == ["token-1", "token-2", "token-2"]
    assert service.status()["lastPass"]["processed"] == 2


def test_disabled_sync_never_calls_server(queue, clock):
    _fill(queue, 1)
    executor = FakeExecutor()
    service = _service(executor, queue, clock, settings=replace(SYNC, enabled=False))

    report = service.on_login(_session())

    assert report.skipped is True
    assert executor.calls == []


def test_reconnect_event_triggers_flush(queue, clock):
    _fill(queue, 1)
    executor = FakeExecutor(httpx.ConnectError("offline"))
    service = _service(executor, queue, clock)
    monitor = NetworkMonitor(connected=False)
    service.attach(monitor)
    service.on_login(_session())
    assert queue.count() == 1

    clock.now += 2
    monitor.set_connected(True)

    assert queue.count() == 0
    assert len(executor.calls) == 2


def test_triggers_inside_backoff_window_do_not_resend(queue, clock):
    op = _fill(queue, 1)[0]
    executor = FakeExecutor(*[_status_error(503)] * 20)
    service = _service(executor, queue, clock)
    monitor = NetworkMonitor(connected=True)
    service.attach(monitor)

    service.on_login(_session())
    for _ in range(5):
        monitor.set_connected(False)
        monitor.set_connected(True)
        assert service.on_network_reconnected().reason == "backoff"
    relogin = service.on_login(_session(token="token-2"))

    assert relogin.reason == "backoff"
    assert relogin.stopped_on == op.id
    assert len(executor.calls) == 1
    assert queue.get(op.id).retry_count == 1

    # only an explicit request goes past the window
    service.request_flush()
    assert len(executor.calls) == 2
    assert queue.get(op.id).retry_count == 2


def test_status_reports_queue_and_last_pass(queue, clock):
    _fill(queue, 2)
    service = _service(FakeExecutor("ok", TransientInfra("db down")), queue, clock)
    assert service.status() == {"userId": None, "state": "idle", "queueSize": 0}

    service.on_login(_session(expires_at=clock.now + 3600))
    status = service.status()

    assert status["userId"] == "user-1"
    assert status["state"] == "idle"
    assert status["queueSize"] == 1
    assert status["needsReauth"] is False
    assert status["credentialExpiresAt"] == clock.now + 3600
    assert status["lastPass"]["processed"] == 1
    assert status["lastPass"]["reason"] == "retry"


def test_queues_are_partitioned_by_user(queue, clock):
    _fill(queue, 1, user_id="user-1")
    _fill(queue, 1, user_id="user-2")
    service = _service(FakeExecutor(), queue, clock)

    service.on_login(_session())

    assert queue.count("user-1") == 0
    assert queue.count("user-2") == 1


# ----------------------------------------------------------------------
# Against the real endpoint


class FlakyEndpoint:
    """Wraps the real executor and answers 503 for the first ``failures`` calls."""

    def __init__(self, executor, failures=1):
        self.executor = executor
        self.verifier = executor.verifier
        self.failures = failures

    def execute(self, auth_token, raw_request):
        if self.failures:
            self.failures -= 1
            raise TransientInfra("Service unavailable", status_code=503)
        return self.executor.execute(auth_token, raw_request)


def _api(executor):
    app = create_app(executor=executor, settings=ServerSettings(database_url="sqlite://", jwt_secret="unused"))
    return SyncApiClient("http://testserver", http_client=TestClient(app))


def _receipts(session_factory):
    with session_factory() as session:
        return session.exec(select(SyncReceipt)).all()


def test_503_then_success_applies_once(executor, token, session_factory, queue, clock):
    op = queue.enqueue("user-1", "workouts", "upsert", {"id": "w1", "name": "Leg day"})
    api = _api(FlakyEndpoint(executor))
    service = _service(api.execute, queue, clock)

    first = service.on_login(_session(token=token))
    assert first.stopped_on == op.id
    assert queue.get(op.id).retry_count == 1
    assert "503" in queue.get(op.id).last_error

    clock.now += 1
    second = service.flush("user-1")

    assert second.processed == 1
    assert queue.count() == 0
    receipts = _receipts(session_factory)
    assert len(receipts) == 1
    assert receipts[0].idempotency_key == op.idempotency_key
    assert receipts[0].applied is True
    with session_factory() as session:
        assert session.get(WorkoutRow, "w1").version == 1


def test_lost_response_is_deduped_on_replay(executor, token, session_factory, queue, clock):
    queue.enqueue("user-1", "workouts", "upsert", {"id": "w1"})
    api = _api(executor)
    attempts = []

    def lose_first_response(auth_token, request):
        result = api.execute(auth_token, request)
        attempts.append(result)
        if len(attempts) == 1:
            raise httpx.ReadTimeout("response lost")
        return result

    service = _service(lose_first_response, queue, clock)

    service.on_login(_session(token=token))
    assert queue.count() == 1
    service.request_flush()

    assert queue.count() == 0
    assert attempts[0].applied is True
    assert attempts[1].deduped is True
    with session_factory() as session:
        assert session.get(WorkoutRow, "w1").version == 1


def test_server_rejection_over_http_is_dropped(executor, token, queue, clock):
    queue.enqueue("user-1", "workouts", "upsert", {"name": "missing id"})
    dropped = []
    service = _service(_api(executor).execute, queue, clock, on_drop=dropped.append)

    service.on_login(_session(token=token))

    assert queue.count() == 0
    assert dropped[0].error == "HTTP 400: id is required for upsert"


def test_bad_token_over_http_halts(executor, queue, clock):
    queue.enqueue("user-1", "workouts", "upsert", {"id": "w1"})
    service = _service(_api(executor).execute, queue, clock)

    report = service.on_login(_session(token="garbage"))

    assert report.state is FlushState.HALTED
    assert queue.count() == 1
