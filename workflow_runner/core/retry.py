"""Exponential backoff retry for transport calls."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from .exceptions import (
    ErrorType, WorkflowEngineError, get_retry_after, get_status_code, is_network_failure
)
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0

_RETRIABLE_TEXT = ("rate_limit_exceeded", "rate limit", "timeout")


def _retry_everything(error: BaseException) -> bool:
    return True


class RetryPolicy:
    """Configuration for retry behavior.

    Delays are in seconds. Total attempts are ``max_retries + 1``.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        should_retry: Optional[Callable[[BaseException], bool]] = None
    ):
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if initial_delay < 0 or max_delay < 0:
            raise ValueError("Retry delays cannot be negative")
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.should_retry = should_retry or _retry_everything
        self.has_custom_predicate = should_retry is not None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def with_predicate(self, should_retry: Callable[[BaseException], bool]) -> "RetryPolicy":
        """Return a copy of this policy using a different retry predicate."""
        return RetryPolicy(self.max_retries, self.initial_delay, self.max_delay, should_retry)

    def with_default_predicate(self, should_retry: Callable[[BaseException], bool]) -> "RetryPolicy":
        """Use ``should_retry`` unless this policy was given its own predicate."""
        if self.has_custom_predicate:
            return self
        return self.with_predicate(should_retry)


def next_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Delay to wait after the given failed attempt (1-based).

    Doubles on each attempt and never exceeds ``max_delay``.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(initial_delay * (2 ** (attempt - 1)), max_delay)


def is_retriable_error(error: BaseException) -> bool:
    """Check if an error is transient (rate limit, server error, network failure).

    Client errors other than 429 and validation errors fail fast.
    """
    if isinstance(error, WorkflowEngineError) and error.error_type in (ErrorType.RATE_LIMIT, ErrorType.NETWORK):
        return True

    status = get_status_code(error)
    if status is not None:
        if status == 429 or status >= 500:
            return True
        if 400 <= status < 500:
            return False

    if is_network_failure(error):
        return True

    message = str(error).lower()
    return any(text in message for text in _RETRIABLE_TEXT)


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy] = None,
    operation: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> Any:
    """
    Call ``func`` until it succeeds, the policy declines a retry, or attempts run out.

    Args:
        func: Zero-argument coroutine function to call
        policy: Retry policy; defaults to 2 retries, 1s initial delay, 10s cap
        operation: Name used in recovery logs
        sleep: Awaitable sleep function, replaceable in tests

    Returns:
        The result of the first successful call

    Raises:
        The last error raised by ``func``, unchanged
    """
    policy = policy or RetryPolicy()
    operation = operation or getattr(func, "__name__", "operation")
    recovery_logger = ErrorRecoveryLogger("retry")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await func()
        except Exception as e:
            if attempt == policy.max_attempts or not policy.should_retry(e):
                recovery_logger.log_recovery_failure(operation, e, attempt)
                raise

            delay = next_delay(attempt, policy.initial_delay, policy.max_delay)
            retry_after = get_retry_after(e)
            if retry_after is not None:
                delay = min(max(delay, float(retry_after)), policy.max_delay)

            recovery_logger.log_recovery_attempt(operation, e, attempt, policy.max_attempts, delay)
            await sleep(delay)
            continue

        if attempt > 1:
            recovery_logger.log_recovery_success(operation, attempt)
        return result
