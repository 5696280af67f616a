"""
Retry Policy

Bounded exponential backoff with jitter for network-bound operations.

Every failure is passed through a classifier that decides whether it is
retryable. Fatal failures propagate on first occurrence; exhausting the
attempt budget raises ``RetryExhaustedError`` carrying the attempt count and
the last failure. Cancellation is never retried.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional, TypeVar

import httpx

from ..core.errors import RetryExhaustedError, TransientError

logger = logging.getLogger("ragstream.retry")

T = TypeVar("T")

Classifier = Callable[[BaseException], bool]


def default_classifier(exc: BaseException) -> bool:
    """Transient errors, transport failures and timeouts are retryable."""
    return isinstance(
        exc,
        (TransientError, httpx.TransportError, asyncio.TimeoutError),
    )


class RetryPolicy:
    """
    Exponential backoff retry wrapper.

    The delay before attempt ``n`` (n >= 2) is
    ``base_delay * multiplier ** (n - 2)``, jittered by ``±jitter`` and
    capped at ``max_delay``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        multiplier: float = 2.0,
        max_delay: float = 10.0,
        jitter: float = 0.2,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0.0 <= jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep or asyncio.sleep
        self._random = random.Random()

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        classifier: Optional[Classifier] = None,
        operation_name: str = "operation",
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails fatally, or the attempt
        budget is exhausted.

        Parameters
        ----------
        operation : Callable[[], Awaitable[T]]
            Zero-argument coroutine factory; called once per attempt.

        classifier : Optional[Classifier]
            Maps a failure to ``True`` (retryable) or ``False`` (fatal).
            Defaults to ``default_classifier``.

        operation_name : str
            Used in log lines and in the exhaustion error.

        Raises
        ------
        RetryExhaustedError
            After ``max_attempts`` retryable failures.
        asyncio.CancelledError
            Propagated immediately, never retried.
        """
        is_retryable = classifier or default_classifier
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                delay = self.compute_delay(attempt)
                logger.debug(
                    "Retry attempt %d/%d for %s after %.3fs",
                    attempt,
                    self.max_attempts,
                    operation_name,
                    delay,
                )
                await self._sleep(delay)

            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not is_retryable(exc):
                    raise

                last_error = exc
                logger.warning(
                    "Attempt %d/%d failed for %s: %s: %s",
                    attempt,
                    self.max_attempts,
                    operation_name,
                    type(exc).__name__,
                    exc,
                )

        raise RetryExhaustedError(
            operation_name, self.max_attempts, last_error
        ) from last_error

    def compute_delay(self, attempt: int) -> float:
        """Jittered delay (seconds) before the given 1-based attempt."""
        if attempt <= 1:
            return 0.0
        base = self.base_delay * (self.multiplier ** (attempt - 2))
        spread = (self._random.random() * 2 - 1) * self.jitter
        return min(base * (1.0 + spread), self.max_delay)

    def expected_delays(self) -> List[float]:
        """Un-jittered delays before attempts 2..max_attempts."""
        return [
            min(self.base_delay * (self.multiplier ** (n - 2)), self.max_delay)
            for n in range(2, self.max_attempts + 1)
        ]
