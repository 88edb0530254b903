"""Retry policy with exponential backoff and jitter.

Retries are for establishing a request. ``execute_generator`` restarts
the whole producer after a failure and does not take back values it
already yielded, so it is not a mid-stream resume.
"""

from __future__ import annotations

import logging
import random
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from infill.config import RetryConfig
from infill.exceptions import (
    BackendConnectionError,
    BackendHTTPError,
    OperationCancelledError,
    RetryExhaustedError,
)
from infill.utils.cancellation import CancellationToken, sleep_cancellable

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRY_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "connection refused",
    "econnrefused",
    "enotfound",
    "unable to connect",
)


def is_network_retryable(error: BaseException) -> bool:
    """Connection failures, timeouts and 5xx responses are transient; 4xx is not."""
    if isinstance(error, OperationCancelledError):
        return False
    if isinstance(error, BackendHTTPError):
        return error.is_server_error
    if isinstance(error, (BackendConnectionError, ConnectionError, TimeoutError)):
        return True

    text = str(error or "").strip().lower()
    if not text:
        return False
    if any(marker in text for marker in _RETRY_MARKERS):
        return True
    return any(code in text for code in ("http 5", "500", "502", "503", "504"))


def _retry_all_failures(error: BaseException) -> bool:
    return not isinstance(error, OperationCancelledError)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(initial * multiplier**(attempt-1), max)``."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    enable_jitter: bool = True
    is_retryable: Callable[[BaseException], bool] = field(
        default=is_network_retryable, compare=False,
    )

    @classmethod
    def for_network_operations(cls) -> RetryPolicy:
        return cls(
            max_attempts=3,
            initial_delay_seconds=1.0,
            max_delay_seconds=10.0,
            backoff_multiplier=2.0,
            enable_jitter=True,
            is_retryable=is_network_retryable,
        )

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(1, config.max_attempts),
            initial_delay_seconds=max(0.0, config.initial_delay_seconds),
            max_delay_seconds=max(0.0, config.max_delay_seconds),
            backoff_multiplier=max(1.0, config.backoff_multiplier),
            enable_jitter=config.enable_jitter,
        )

    @classmethod
    def retry_all(cls, **kwargs) -> RetryPolicy:
        """Policy that retries every failure except cancellation."""
        return cls(is_retryable=_retry_all_failures, **kwargs)

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds after failed ``attempt`` (1-indexed)."""
        delay = min(
            self.initial_delay_seconds * self.backoff_multiplier ** (attempt - 1),
            self.max_delay_seconds,
        )
        if self.enable_jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel: CancellationToken | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds, fails terminally, or attempts run out."""
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                result = await operation()
            except OperationCancelledError:
                raise
            except Exception as error:
                last_error = error
                await self._after_failure(attempt, error, cancel)
                continue
            if attempt > 1:
                logger.info("Operation succeeded on attempt %d", attempt)
            return result

        raise RetryExhaustedError(self.max_attempts, last_error) from last_error

    async def execute_generator(
        self,
        operation_factory: Callable[[], AsyncIterator[T]],
        cancel: CancellationToken | None = None,
    ) -> AsyncGenerator[T, None]:
        """Yield from a fresh producer per attempt until one completes."""
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            stream = operation_factory()
            try:
                async for value in stream:
                    yield value
            except OperationCancelledError:
                raise
            except Exception as error:
                last_error = error
                await self._after_failure(attempt, error, cancel)
                continue
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            if attempt > 1:
                logger.info("Generator succeeded on attempt %d", attempt)
            return

        raise RetryExhaustedError(self.max_attempts, last_error) from last_error

    async def _after_failure(
        self,
        attempt: int,
        error: Exception,
        cancel: CancellationToken | None,
    ) -> None:
        """Re-raise terminal errors, otherwise wait out the backoff."""
        logger.info("Attempt %d/%d failed: %s", attempt, self.max_attempts, error)
        if not self.is_retryable(error):
            logger.info("Error is not retryable: %s", error)
            raise error
        if attempt >= self.max_attempts:
            logger.warning("Max attempts reached (%d), giving up", self.max_attempts)
            return
        delay = self.compute_delay(attempt)
        logger.debug("Waiting %.3fs before retry", delay)
        await sleep_cancellable(delay, cancel)
