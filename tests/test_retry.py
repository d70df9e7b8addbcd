# tests/test_retry.py
import asyncio

import pytest

from utils.exceptions import RemoteCallError, RemoteErrorKind
from utils.retry import RetryPolicy, is_retryable_error, with_retry


class FlakyOperation:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def test_retries_503_then_succeeds_with_growing_delays():
    operation = FlakyOperation([RemoteCallError("busy", status_code=503), RemoteCallError("busy", status_code=503)])
    seen = []
    policy = RetryPolicy(
        max_attempts=3,
        initial_delay=0.001,
        max_delay=1.0,
        backoff_factor=2.0,
        on_retry=lambda attempt, delay, error: seen.append((attempt, delay, error.status_code)),
    )

    result = asyncio.run(with_retry(operation, policy))

    assert result == "ok"
    assert operation.calls == 3
    assert [entry[0] for entry in seen] == [1, 2]
    assert seen[0][1] < seen[1][1]
    assert seen[1][1] == pytest.approx(seen[0][1] * 2.0)


def test_client_error_is_not_retried():
    error = RemoteCallError("bad request", status_code=400)
    operation = FlakyOperation([error])
    hooks = []

    with pytest.raises(RemoteCallError) as excinfo:
        asyncio.run(with_retry(operation, RetryPolicy(initial_delay=0, on_retry=lambda *args: hooks.append(args))))

    assert excinfo.value is error
    assert operation.calls == 1
    assert hooks == []


def test_exhausted_attempts_reraise_last_error_unchanged():
    errors = [RemoteCallError(f"down {i}", kind=RemoteErrorKind.NETWORK) for i in range(3)]
    operation = FlakyOperation(list(errors))

    with pytest.raises(RemoteCallError) as excinfo:
        asyncio.run(with_retry(operation, RetryPolicy(max_attempts=3, initial_delay=0)))

    assert excinfo.value is errors[-1]
    assert excinfo.value.kind == RemoteErrorKind.NETWORK
    assert operation.calls == 3


def test_delay_is_capped():
    delays = []
    operation = FlakyOperation([RemoteCallError("busy", status_code=502)] * 4)
    policy = RetryPolicy(
        max_attempts=5,
        initial_delay=0.001,
        max_delay=0.002,
        backoff_factor=10.0,
        on_retry=lambda attempt, delay, error: delays.append(delay),
    )

    asyncio.run(with_retry(operation, policy))

    assert delays == [0.001, 0.002, 0.002, 0.002]


def test_async_on_retry_hook_is_awaited():
    calls = []

    async def hook(attempt, delay, error):
        calls.append(attempt)

    operation = FlakyOperation([RemoteCallError("busy", status_code=429)])

    asyncio.run(with_retry(operation, RetryPolicy(initial_delay=0, on_retry=hook)))

    assert calls == [1]


def test_custom_predicate_overrides_default():
    operation = FlakyOperation([RemoteCallError("bad", status_code=400)])
    policy = RetryPolicy(initial_delay=0).with_hooks(should_retry=lambda error, attempt: True)

    assert asyncio.run(with_retry(operation, policy)) == "ok"
    assert operation.calls == 2


@pytest.mark.parametrize(
    "error, expected",
    [
        (RemoteCallError("net", kind=RemoteErrorKind.NETWORK), True),
        (RemoteCallError("timeout", kind=RemoteErrorKind.TIMEOUT), True),
        (RemoteCallError("limited", status_code=429), True),
        (RemoteCallError("server", status_code=500), True),
        (RemoteCallError("not found", status_code=404), False),
        (RemoteCallError("garbage", kind=RemoteErrorKind.INVALID_RESPONSE), False),
        (ConnectionError("reset"), True),
        (asyncio.TimeoutError(), True),
        (ValueError("bug"), False),
    ],
)
def test_default_predicate(error, expected):
    assert is_retryable_error(error, 1) is expected


def test_cancellation_aborts_backoff_sleep():
    operation = FlakyOperation([RemoteCallError("busy", status_code=503)] * 3)

    async def scenario():
        task = asyncio.create_task(with_retry(operation, RetryPolicy(initial_delay=30, max_delay=30)))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert operation.calls == 1
