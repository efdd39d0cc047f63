"""Retry mechanism with exponential backoff for upstream data sources.

This module provides a configurable retry policy that classifies failures
into retryable (throttling, outages, transient network trouble) and fatal
ones, and an explicit attempt/delay loop that applies it.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, FrozenSet, Optional, Tuple, Type, TypeVar

import httpx

from asogate.app.core.logging import get_logger
from asogate.app.exceptions import UpstreamError

logger = get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class ClassifiedError:
    """A failure tagged with whether another attempt may succeed."""

    error: BaseException
    retryable: bool
    reason: str


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Additional attempts after the first one (default: 3)
        base_delay: Delay before the first retry in seconds (default: 1.0)
        max_delay: Upper bound for a single delay in seconds (default: 30.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        retryable_status_codes: Upstream HTTP statuses worth retrying
        transient_exceptions: Transport errors worth retrying

    Example:
        >>> policy = RetryPolicy()
        >>> [policy.calculate_delay(a) for a in range(3)]
        [1.0, 2.0, 4.0]
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    retryable_status_codes: FrozenSet[int] = frozenset({429, 503})
    transient_exceptions: Tuple[Type[BaseException], ...] = (
        httpx.TimeoutException,
        httpx.NetworkError,
        httpx.RemoteProtocolError,
        ConnectionError,
        TimeoutError,
    )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Uses exponential backoff: delay = min(base_delay * (exponential_base ^ attempt), max_delay)

        Args:
            attempt: The current retry attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    def classify(self, exception: BaseException) -> ClassifiedError:
        """Decide whether a failure is transient."""
        status: Optional[int] = None
        if isinstance(exception, UpstreamError):
            status = exception.upstream_status
        elif isinstance(exception, httpx.HTTPStatusError):
            status = exception.response.status_code

        if status is not None:
            return ClassifiedError(
                error=exception,
                retryable=status in self.retryable_status_codes,
                reason=f"HTTP {status}",
            )

        if isinstance(exception, self.transient_exceptions):
            return ClassifiedError(
                error=exception, retryable=True, reason=type(exception).__name__
            )

        return ClassifiedError(
            error=exception, retryable=False, reason=type(exception).__name__
        )

    def is_retryable(self, exception: BaseException) -> bool:
        return self.classify(exception).retryable

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        sleep: SleepFunc = asyncio.sleep,
        description: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds or a fatal failure occurs.

        Args:
            operation: Zero-argument coroutine factory, invoked once per attempt.
            sleep: Awaitable used for backoff delays (injectable for tests).
            description: Label used in log messages.

        Raises:
            The first non-retryable error, or the last error once retries
            are exhausted.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                classified = self.classify(e)

                if not classified.retryable:
                    logger.debug(
                        f"Non-retryable failure in {description}: {type(e).__name__}: {e}"
                    )
                    raise

                if attempt >= self.max_retries:
                    logger.warning(
                        f"Max retries ({self.max_retries}) exceeded for {description}: "
                        f"{classified.reason}: {e}"
                    )
                    raise

                delay = self.calculate_delay(attempt)
                attempt += 1
                logger.warning(
                    f"Retry {attempt}/{self.max_retries} for {description} "
                    f"after {classified.reason}. Waiting {delay:.2f}s...",
                    extra={"attempt": attempt},
                )
                await sleep(delay)


def get_default_policy() -> RetryPolicy:
    """Build the retry policy described by settings."""
    from asogate.app.core.config import settings

    return RetryPolicy(
        max_retries=settings.retry_max_retries,
        base_delay=settings.retry_base_delay,
    )
