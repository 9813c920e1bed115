import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeChannel, FakeExecutor, make_raw
from venice.api.cancellation import CancellationToken
from venice.api.executor import APIRequest
from venice.api.pipeline import AsyncRequestPipeline, RequestPipeline, parse_error_body
from venice.api.rate_limiting import RateLimitTracker
from venice.api.retry import JitterMode, RetryPolicy, RetryPolicyConfig
from venice.exceptions import (
    AuthenticationError, CancelledError, DecodeError, HttpStatusError,
    RateLimitExceeded, TransportError
)

REQUEST = APIRequest("GET", "models")


def build_pipeline(executor, **retry_kwargs):
    retry_kwargs.setdefault("jitter", JitterMode.NONE)
    return RequestPipeline(
        executor,
        retry_policy=RetryPolicy(RetryPolicyConfig(**retry_kwargs)),
        tracker=RateLimitTracker()
    )


@pytest.fixture
def mock_sleep(mocker):
    return mocker.patch("venice.api.pipeline.sleep")


def test_successful_call(fake_executor):
    fake_executor.default = make_raw(200, json_body={"data": [{"id": "m1"}]},
                                     headers={"x-ratelimit-remaining-requests": "99"})
    pipeline = build_pipeline(fake_executor)

    response = pipeline.execute(REQUEST)

    assert response.status == 200
    assert response.data == {"data": [{"id": "m1"}]}
    assert response.json() == response.data
    assert response.attempts == 1
    assert response.rate_limit.remaining_requests == 99
    assert fake_executor.calls == 1


def test_non_json_body_is_returned_as_bytes(fake_executor):
    fake_executor.default = make_raw(200, body=b"\x89PNG", headers={"Content-Type": "image/png"})

    assert build_pipeline(fake_executor).execute(REQUEST).data == b"\x89PNG"


def test_server_error_then_success(fake_executor, mock_sleep):
    fake_executor.script = [make_raw(503), make_raw(200, json_body={"ok": True})]

    response = build_pipeline(fake_executor).execute(REQUEST)

    assert response.data == {"ok": True}
    assert response.attempts == 2
    assert mock_sleep.call_count == 1
    assert mock_sleep.call_args[0][0] == 0.5


def test_client_error_is_not_retried(fake_executor, mock_sleep):
    fake_executor.default = make_raw(
        404, json_body={"error": {"code": "MODEL_NOT_FOUND", "message": "No such model"}}
    )

    with pytest.raises(HttpStatusError) as exc_info:
        build_pipeline(fake_executor).execute(REQUEST)

    error = exc_info.value
    assert error.status == 404
    assert error.error_code == "MODEL_NOT_FOUND"
    assert error.server_message == "No such model"
    assert error.attempts == 1
    assert fake_executor.calls == 1
    mock_sleep.assert_not_called()


@pytest.mark.parametrize("status", [401, 403])
def test_authentication_failure(fake_executor, status):
    fake_executor.default = make_raw(status, json_body={"error": "Invalid API key"})

    with pytest.raises(AuthenticationError) as exc_info:
        build_pipeline(fake_executor).execute(REQUEST)

    assert exc_info.value.server_message == "Invalid API key"
    assert fake_executor.calls == 1


@pytest.mark.parametrize("body, status, expected", [
    (b'{"error": {"code": "E1", "message": "broken"}}', 400, ("broken", "E1")),
    (b'{"error": "plain string"}', 400, ("plain string", None)),
    (b'{"message": "top level", "code": 7}', 422, ("top level", "7")),
    (b"upstream exploded", 502, ("upstream exploded", None)),
    (b"", 503, ("Service Unavailable", None)),
])
def test_parse_error_body(body, status, expected):
    assert parse_error_body(body, status) == expected


def test_rate_limited_retry_waits_for_reset_hint(fake_executor, mock_sleep):
    fake_executor.script = [
        make_raw(429, headers={"Retry-After": "3"}),
        make_raw(200, json_body={"ok": True}),
    ]

    response = build_pipeline(fake_executor).execute(REQUEST)

    assert response.attempts == 2
    assert mock_sleep.call_args[0][0] >= 3


def test_rate_limited_without_retry_after_uses_snapshot_reset(fake_executor, mock_sleep):
    fake_executor.script = [
        make_raw(429, headers={"x-ratelimit-remaining-requests": "0",
                               "x-ratelimit-reset-requests": "20"}),
        make_raw(200, json_body={}),
    ]

    build_pipeline(fake_executor).execute(REQUEST)

    assert 19 <= mock_sleep.call_args[0][0] <= 20


def test_persistent_server_error_exhausts_budget(fake_executor, mock_sleep):
    fake_executor.default = make_raw(500, body=b"boom")

    with pytest.raises(HttpStatusError) as exc_info:
        build_pipeline(fake_executor).execute(REQUEST)

    assert exc_info.value.status == 500
    assert exc_info.value.attempts == 4
    assert fake_executor.calls == 4
    assert [c[0][0] for c in mock_sleep.call_args_list] == [0.5, 1.0, 2.0]


def test_persistent_rate_limit_raises_rate_limit_exceeded(fake_executor, mock_sleep):
    fake_executor.default = make_raw(429, headers={"Retry-After": "1"})

    with pytest.raises(RateLimitExceeded) as exc_info:
        build_pipeline(fake_executor).execute(REQUEST)

    error = exc_info.value
    assert error.attempts == 4
    assert error.retry_after == 1.0
    assert error.last_error.status == 429
    assert fake_executor.calls == 4


def test_reset_hint_beyond_max_wait_stops_immediately(fake_executor, mock_sleep):
    fake_executor.default = make_raw(429, headers={"Retry-After": "120"})

    with pytest.raises(RateLimitExceeded) as exc_info:
        build_pipeline(fake_executor, max_rate_limit_wait=60).execute(REQUEST)

    assert exc_info.value.attempts == 1
    assert exc_info.value.retry_after == 120
    mock_sleep.assert_not_called()


def test_tracker_updated_from_failed_response(fake_executor):
    fake_executor.default = make_raw(404, headers={"x-ratelimit-remaining-requests": "5"})
    pipeline = build_pipeline(fake_executor)

    with pytest.raises(HttpStatusError):
        pipeline.execute(REQUEST)

    assert pipeline.tracker.snapshot().remaining_requests == 5


def test_transport_error_is_retried(fake_executor, mock_sleep):
    fake_executor.script = [TransportError("connection reset"), make_raw(200, json_body=[1, 2])]

    response = build_pipeline(fake_executor).execute(REQUEST)

    assert response.data == [1, 2]
    assert response.attempts == 2


def test_transport_error_exhausted(fake_executor, mock_sleep):
    fake_executor.default = lambda: TransportError("unreachable")

    with pytest.raises(TransportError) as exc_info:
        build_pipeline(fake_executor, max_retries=1).execute(REQUEST)

    assert exc_info.value.attempts == 2


def test_invalid_json_success_is_not_retried(fake_executor, mock_sleep):
    fake_executor.default = make_raw(200, body=b'{"truncated"',
                                     headers={"Content-Type": "application/json"})

    with pytest.raises(DecodeError):
        build_pipeline(fake_executor).execute(REQUEST)

    assert fake_executor.calls == 1


def test_retry_logs_carry_attempt(fake_executor, mock_sleep, caplog):
    fake_executor.script = [make_raw(503), make_raw(200, json_body={})]

    with caplog.at_level(logging.WARNING, logger="venice"):
        build_pipeline(fake_executor).execute(REQUEST)

    records = [r for r in caplog.records if r.name == "venice.api.pipeline"]
    assert len(records) == 1
    assert records[0].attempt == 1
    assert records[0].status == 503
    assert len(records[0].request_id) == 8


def test_deadline_interrupts_backoff(fake_executor):
    fake_executor.default = make_raw(503)
    pipeline = build_pipeline(fake_executor, initial_backoff=5.0)

    started = time.monotonic()
    with pytest.raises(CancelledError) as exc_info:
        pipeline.execute(REQUEST, timeout=0.3)

    assert time.monotonic() - started < 2
    assert exc_info.value.reason == "deadline"
    assert exc_info.value.attempts == 1


def test_cancel_from_another_thread(fake_executor):
    fake_executor.default = make_raw(503)
    pipeline = build_pipeline(fake_executor, initial_backoff=5.0)
    token = CancellationToken()
    threading.Timer(0.1, token.cancel).start()

    started = time.monotonic()
    with pytest.raises(CancelledError) as exc_info:
        pipeline.execute(REQUEST, cancel=token)

    assert time.monotonic() - started < 2
    assert exc_info.value.reason == "cancelled"


def test_pre_cancelled_token_sends_nothing(fake_executor):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancelledError):
        build_pipeline(fake_executor).execute(REQUEST, cancel=token)

    assert fake_executor.calls == 0


def test_call_timeout_does_not_cancel_callers_token(fake_executor):
    fake_executor.default = make_raw(200, json_body={})
    token = CancellationToken()

    build_pipeline(fake_executor).execute(REQUEST, cancel=token, timeout=5)

    assert not token.cancelled


def test_auto_throttle_waits_before_sending(fake_executor, mocker):
    throttle_sleep = mocker.patch("venice.api.rate_limiting.sleep")
    fake_executor.default = make_raw(200, json_body={})
    pipeline = build_pipeline(fake_executor)
    pipeline.auto_throttle = True
    pipeline.tracker.update({"x-ratelimit-remaining-requests": "0",
                             "x-ratelimit-reset-requests": "30"})

    pipeline.execute(REQUEST)

    assert throttle_sleep.call_count == 1
    assert 29 <= throttle_sleep.call_args[0][0] <= 30


def test_concurrent_rate_limited_calls_are_independent(mocker):
    lock = threading.Lock()
    local = threading.local()
    sent = []
    waits = []

    def rate_limited():
        with lock:
            reset_window = 1 + len(sent) // 10
            sent.append(reset_window)
        local.reset_window = reset_window
        return make_raw(429, headers={"Retry-After": str(reset_window)})

    def record_wait(delay, token=None, attempts=None):
        waits.append((delay, local.reset_window))

    mocker.patch("venice.api.pipeline.sleep", side_effect=record_wait)
    executor = FakeExecutor(default=rate_limited)
    pipeline = build_pipeline(executor, max_retries=2, initial_backoff=0.01, max_backoff=0.05)

    def call(_):
        try:
            pipeline.execute(REQUEST)
        except RateLimitExceeded as e:
            return e.attempts
        return None

    started = time.monotonic()
    with ThreadPoolExecutor(max_workers=50) as pool:
        attempts = list(pool.map(call, range(50)))

    assert time.monotonic() - started < 10
    assert attempts == [3] * 50
    assert executor.calls == 150
    assert max(sent) > min(sent)
    assert len(waits) == 100
    assert all(delay >= reset_window for delay, reset_window in waits)


def test_stream_retries_opening_request(fake_executor, mock_sleep):
    channel = FakeChannel([b'data: {"n": 1}\n\n', b"data: [DONE]\n\n"])
    fake_executor.script = [
        make_raw(503),
        make_raw(200, headers={"Content-Type": "text/event-stream"}, channel=channel),
    ]

    stream = build_pipeline(fake_executor).stream(APIRequest("POST", "chat/completions", json={}))

    assert stream.attempts == 2
    assert stream.status == 200
    assert list(stream) == [{"n": 1}]
    assert stream.done

    sent = fake_executor.requests[-1]
    assert sent.stream is True
    assert sent.headers["Accept"] == "text/event-stream"


def test_stream_opening_failure_raises(fake_executor):
    fake_executor.default = make_raw(400, json_body={"error": "bad payload"})

    with pytest.raises(HttpStatusError):
        build_pipeline(fake_executor).stream(APIRequest("POST", "chat/completions", json={}))


def test_async_execute(fake_executor):
    fake_executor.default = make_raw(200, json_body={"ok": True})
    async_pipeline = AsyncRequestPipeline(build_pipeline(fake_executor))

    response = asyncio.run(async_pipeline.execute(REQUEST))

    assert response.data == {"ok": True}


def test_async_calls_use_running_loop_off_main_thread(fake_executor, mocker):
    fake_executor.default = make_raw(200, json_body={"ok": True})
    async_pipeline = AsyncRequestPipeline(build_pipeline(fake_executor))
    results = []

    async def run():
        spy = mocker.spy(asyncio.get_running_loop(), "run_in_executor")
        response = await async_pipeline.execute(REQUEST)
        results.append((response.data, spy.call_count))

    def worker():
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(run())
        finally:
            loop.close()

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join(5)

    assert results == [({"ok": True}, 1)]


def test_async_stream(fake_executor):
    channel = FakeChannel([b'data: {"n": 1}\n\ndata: {"n": 2}\n\ndata: [DONE]\n\n'])
    fake_executor.default = make_raw(200, channel=channel)
    async_pipeline = AsyncRequestPipeline(build_pipeline(fake_executor))

    async def consume():
        stream = await async_pipeline.stream(APIRequest("POST", "chat/completions", json={}))
        async with stream:
            items = [item async for item in stream]
        return items, stream.done

    items, done = asyncio.run(consume())

    assert items == [{"n": 1}, {"n": 2}]
    assert done


def test_async_task_cancellation_cancels_call(fake_executor):
    fake_executor.default = make_raw(503)
    async_pipeline = AsyncRequestPipeline(build_pipeline(fake_executor, initial_backoff=5.0))
    token = CancellationToken()

    async def run():
        task = asyncio.ensure_future(async_pipeline.execute(REQUEST, cancel=token))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    assert token.cancelled
