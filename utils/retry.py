# app/utils/retry.py
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from utils.exceptions import RemoteCallError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ShouldRetry = Callable[[BaseException, int], bool]
OnRetry = Callable[[int, float, BaseException], Any]

_TRANSPORT_ERRORS = (RemoteCallError, ConnectionError, TimeoutError, asyncio.TimeoutError)


def is_retryable_error(error: BaseException, attempt: int = 1) -> bool:
    """
    Default retry predicate.

    Errors without a status code are retried when they are transport failures
    (network, timeout). Status codes 429 and 5xx are retried, other 4xx are not.
    """
    if isinstance(error, RemoteCallError):
        return error.retryable
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        return isinstance(error, _TRANSPORT_ERRORS)
    return status_code == 429 or status_code >= 500


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 4.0
    backoff_factor: float = 2.0
    should_retry: ShouldRetry = is_retryable_error
    on_retry: Optional[OnRetry] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings, **overrides) -> "RetryPolicy":
        values = {
            "max_attempts": settings.RETRY_MAX_ATTEMPTS,
            "initial_delay": settings.RETRY_INITIAL_DELAY,
            "max_delay": settings.RETRY_MAX_DELAY,
            "backoff_factor": settings.RETRY_BACKOFF_FACTOR,
        }
        values.update(overrides)
        return cls(**values)

    def with_hooks(
        self,
        on_retry: Optional[OnRetry] = None,
        should_retry: Optional[ShouldRetry] = None,
    ) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
            should_retry=should_retry or self.should_retry,
            on_retry=on_retry if on_retry is not None else self.on_retry,
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
) -> T:
    """
    Run `operation` until it succeeds, the predicate refuses a retry, or
    `max_attempts` is reached. The last error is re-raised unchanged.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    delay = policy.initial_delay

    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as error:
            if attempt >= policy.max_attempts or not policy.should_retry(error, attempt):
                raise

            if policy.on_retry is not None:
                hook_result = policy.on_retry(attempt, delay, error)
                if inspect.isawaitable(hook_result):
                    await hook_result

            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed ({error!r}), "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            delay = min(delay * policy.backoff_factor, policy.max_delay)
