"""
Retry with bounded exponential backoff, plus per-call timeouts.

Windows, partitions and rule evaluations are the units of retry. Each is
wrapped in ``retry_with_backoff``; exhaustion raises ``MaxRetriesExceeded``
which callers translate into their domain error (``ExtractionFailed``,
``WriteFailed`` or a blocking validation result).
"""

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when max retry attempts are exceeded."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour for one unit of work.

    max_attempts is the TOTAL number of tries, not the number of retries.
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    timeout: float | None = None  # seconds, per attempt

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")


def call_with_timeout(operation: Callable[[], T], timeout: float | None) -> T:
    """
    Run operation, raising TimeoutError if it does not finish in time.

    The worker thread cannot be killed; a timed-out call is abandoned and
    its result discarded.
    """
    if timeout is None:
        return operation()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="timeout")
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        future.cancel()
        raise TimeoutError(f"Operation exceeded timeout of {timeout}s") from e
    finally:
        executor.shutdown(wait=False)


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute operation with bounded exponential backoff.

    Args:
        operation: Zero-argument callable to execute
        policy: Attempts, delays and per-attempt timeout
        retry_on: Exception types that are retried; anything else propagates
        on_retry: Optional callback (attempt, error) before each retry
        sleep: Sleep function (tests pass a no-op)

    Returns:
        Result of operation

    Raises:
        MaxRetriesExceeded: If every attempt failed with a retryable error
        Exception: If a non-retryable error occurs
    """
    attempt = 0
    last_error: BaseException | None = None

    try:
        for attempt_state in Retrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
            retry=retry_if_exception_type(retry_on),
            sleep=sleep,
            reraise=False,
        ):
            with attempt_state:
                attempt = attempt_state.retry_state.attempt_number
                try:
                    return call_with_timeout(operation, policy.timeout)
                except retry_on as e:
                    last_error = e
                    if on_retry and attempt < policy.max_attempts:
                        on_retry(attempt, e)
                    raise

    except RetryError as e:
        final_error = last_error or e.last_attempt.exception()
        assert final_error is not None, "RetryError without exception is impossible"
        raise MaxRetriesExceeded(attempt, final_error) from e

    raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
