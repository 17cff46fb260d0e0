import httpx
import pytest

from carebot.exceptions import NotFoundError, RejectedError, RetryExhaustedError, TransientError
from carebot.services.retry import RetryPolicy, call_with_retry, execute_with_retry, is_transient


class Flaky:
    """Fails with the queued errors, then returns ``value``."""

    def __init__(self, *errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


POLICY = RetryPolicy(max_attempts=3, initial_delay=0.5, multiplier=2.0, jitter=0.0)


@pytest.mark.asyncio
async def test_two_transient_failures_then_success():
    operation = Flaky(TransientError("timeout"), TransientError("timeout"), value=42)
    sleep = RecordingSleep()

    outcome = await execute_with_retry(operation, POLICY, label="lookup", sleep=sleep)

    assert outcome.ok
    assert outcome.value == 42
    assert outcome.attempts == 3
    assert outcome.retried
    assert [r.outcome for r in outcome.records] == ["transient", "transient", "success"]
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried():
    operation = Flaky(RejectedError("bad request"))
    sleep = RecordingSleep()

    outcome = await execute_with_retry(operation, POLICY, label="lookup", sleep=sleep)

    assert not outcome.ok
    assert operation.calls == 1
    assert outcome.attempts == 1
    assert isinstance(outcome.error, RejectedError)
    assert outcome.error.attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_not_found_is_terminal():
    operation = Flaky(NotFoundError("missing"))
    outcome = await execute_with_retry(operation, POLICY, sleep=RecordingSleep())
    assert operation.calls == 1
    assert isinstance(outcome.error, NotFoundError)


@pytest.mark.asyncio
async def test_exhaustion_reports_last_error():
    last = TransientError("still down")
    operation = Flaky(TransientError("down"), TransientError("down"), last)

    outcome = await execute_with_retry(operation, POLICY, label="lookup", sleep=RecordingSleep())

    assert operation.calls == 3
    assert isinstance(outcome.error, RetryExhaustedError)
    assert outcome.error.attempts == 3
    assert outcome.error.last_error is last
    with pytest.raises(RetryExhaustedError):
        outcome.unwrap()


@pytest.mark.asyncio
async def test_jitter_stays_within_bounds():
    policy = RetryPolicy(max_attempts=2, initial_delay=1.0, multiplier=2.0, jitter=0.1)
    sleep = RecordingSleep()
    await execute_with_retry(Flaky(TransientError("x")), policy, sleep=sleep)
    assert len(sleep.delays) == 1
    assert 1.0 <= sleep.delays[0] <= 1.1


@pytest.mark.asyncio
async def test_on_attempt_callback_sees_every_attempt():
    seen = []
    await execute_with_retry(
        Flaky(TransientError("x")), POLICY, sleep=RecordingSleep(), on_attempt=seen.append
    )
    assert [r.attempt for r in seen] == [1, 2]


@pytest.mark.asyncio
async def test_call_with_retry_unwraps():
    assert await call_with_retry(Flaky(TransientError("x"), value="done"), POLICY) == "done"
    with pytest.raises(RejectedError):
        await call_with_retry(Flaky(RejectedError("no")), POLICY)


def test_is_transient_classification():
    request = httpx.Request("GET", "http://domain.test")
    assert is_transient(TransientError("x"))
    assert is_transient(httpx.ConnectTimeout("slow", request=request))
    assert is_transient(httpx.ConnectError("refused", request=request))
    assert is_transient(httpx.HTTPStatusError("busy", request=request, response=httpx.Response(503, request=request)))
    assert is_transient(httpx.HTTPStatusError("slow down", request=request, response=httpx.Response(429, request=request)))
    assert not is_transient(httpx.HTTPStatusError("gone", request=request, response=httpx.Response(404, request=request)))
    assert not is_transient(RejectedError("x"))
    assert not is_transient(ValueError("x"))


def test_backoff_grows_geometrically():
    policy = RetryPolicy(max_attempts=4, initial_delay=0.5, multiplier=2.0, jitter=0.0)
    assert [policy.base_delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
