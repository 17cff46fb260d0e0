import pytest

from carebot.exceptions import (
    CodeRejected,
    CodeRejection,
    ConflictError,
    NotFoundError,
    RejectedError,
    RetryExhaustedError,
    TransientError,
)
from carebot.services import messages
from carebot.services.retry import RetryPolicy, call_with_retry


async def unavailable():
    raise TransientError("503 from the catalog")


@pytest.mark.asyncio
async def test_single_failed_attempt_asks_the_user_to_wait():
    with pytest.raises(TransientError) as exc_info:
        await call_with_retry(unavailable, RetryPolicy(max_attempts=1, initial_delay=0), label="list_products")

    assert exc_info.value.attempts == 1
    assert messages.for_error(exc_info.value) == messages.PLEASE_WAIT


@pytest.mark.asyncio
async def test_exhausted_retries_ask_the_user_to_try_later():
    with pytest.raises(RetryExhaustedError) as exc_info:
        await call_with_retry(unavailable, RetryPolicy(max_attempts=3, initial_delay=0), label="list_products")

    assert exc_info.value.attempts == 3
    assert messages.for_error(exc_info.value) == messages.TRY_LATER


def test_other_failures_map_to_one_message_each():
    assert messages.for_error(ConflictError("stale")) == messages.RESEND_LAST
    assert messages.for_error(NotFoundError("order 9")) == messages.NOT_FOUND
    assert messages.for_error(RejectedError("Invalid email or password"), logged_in=False) == "Invalid email or password"
    assert messages.for_error(KeyError("items")) == messages.GENERIC_APOLOGY
    assert "expired" in messages.for_error(CodeRejected(CodeRejection.EXPIRED))
