"""
Bounded exponential backoff with jitter for calls to unreliable collaborators.

Transient failures (timeouts, transport errors, 5xx/429) are retried after
``initial_delay * multiplier ** (attempt - 1)`` plus random jitter. Anything
else is terminal and propagates after the first attempt.

The executor never raises for the operation's own failures: it returns a
``RetryOutcome`` carrying either the value or the last error, plus the number
of attempts. ``unwrap()`` turns that back into a value-or-raise.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import httpx

from carebot.config import get_settings
from carebot.exceptions import CarebotError, RetryExhaustedError, TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.5
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings=None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=max(1, settings.RETRY_MAX_ATTEMPTS),
            initial_delay=settings.RETRY_INITIAL_DELAY,
            multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            jitter=settings.RETRY_JITTER,
        )

    def base_delay(self, attempt: int) -> float:
        return self.initial_delay * (self.multiplier ** (attempt - 1))

    def delay_for(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        return base + random.uniform(0, base * self.jitter)


@dataclass
class AttemptRecord:
    attempt: int
    outcome: str  # "success" | "transient" | "terminal"
    delay: float = 0.0
    error: Optional[str] = None


@dataclass
class RetryOutcome:
    label: str
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    records: List[AttemptRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retried(self) -> bool:
        return self.attempts > 1

    def unwrap(self):
        if self.error is None:
            return self.value
        if isinstance(self.error, CarebotError):
            self.error.attempts = self.attempts
        raise self.error


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return False


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    *,
    label: str = "operation",
    classify: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_attempt: Optional[Callable[[AttemptRecord], None]] = None,
) -> RetryOutcome:
    policy = policy or RetryPolicy.from_settings()
    outcome = RetryOutcome(label=label)

    for attempt in range(1, policy.max_attempts + 1):
        outcome.attempts = attempt
        try:
            outcome.value = await operation()
        except Exception as e:
            transient = classify(e)
            last_attempt = attempt >= policy.max_attempts
            delay = policy.delay_for(attempt) if transient and not last_attempt else 0.0
            record = AttemptRecord(
                attempt=attempt,
                outcome="transient" if transient else "terminal",
                delay=delay,
                error=str(e) or e.__class__.__name__,
            )
            outcome.records.append(record)
            if on_attempt:
                on_attempt(record)

            if not transient:
                logger.info(f"{label}: attempt {attempt} failed terminally: {record.error}")
                if isinstance(e, CarebotError):
                    e.attempts = attempt
                outcome.error = e
                return outcome

            if last_attempt:
                logger.warning(f"{label}: giving up after {attempt} attempts: {record.error}")
                outcome.error = RetryExhaustedError(
                    f"{label} failed after {attempt} attempts", attempts=attempt, last_error=e
                )
                return outcome

            logger.warning(
                f"{label}: attempt {attempt}/{policy.max_attempts} failed ({record.error}), "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)
        else:
            record = AttemptRecord(attempt=attempt, outcome="success")
            outcome.records.append(record)
            if on_attempt:
                on_attempt(record)
            logger.debug(f"{label}: succeeded on attempt {attempt}")
            outcome.error = None
            return outcome

    return outcome


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    *,
    label: str = "operation",
) -> Any:
    """Value-or-raise form of ``execute_with_retry`` for handlers that need no compensation."""
    outcome = await execute_with_retry(operation, policy, label=label)
    return outcome.unwrap()
