"""
Retry policy shared by every external call.

Model calls, embedding calls and vector searches all go through
``RetryPolicy.run``: each attempt is bounded by its own timeout and
transport failures are retried with jittered exponential backoff.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx

from formfill.config import Settings
from formfill.errors import ProviderTransportError
from formfill.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# HTTP statuses worth another attempt; any other 4xx fails the call at once.
RETRYABLE_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


@dataclass
class RetryPolicy:
    """
    Bounded retries with per-attempt timeout.

    Delay before retry ``n`` (0-based) is ``base * 2**n * uniform(0.5, 1.5)``.
    """

    timeout_seconds: float = 20.0
    max_retries: int = 2
    base_delay_seconds: float = 0.5
    rng: random.Random = field(default_factory=random.Random, repr=False)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings, timeout_seconds: float | None = None) -> RetryPolicy:
        return cls(
            timeout_seconds=timeout_seconds or settings.llm_timeout_seconds,
            max_retries=settings.max_retries,
            base_delay_seconds=settings.retry_base_delay_seconds,
        )

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay_seconds * (2 ** attempt) * self.rng.uniform(0.5, 1.5)

    async def run(self, fn: Callable[[], Awaitable[T]], label: str = "operation") -> T:
        """
        Run ``fn`` until it succeeds or the retry budget is spent.

        Raises:
            ProviderTransportError: after the last failed attempt, or at once
                for a non-retryable HTTP status.
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(fn(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                error = ProviderTransportError(f"{label} timed out after {self.timeout_seconds}s")
                error.__cause__ = e
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                error = ProviderTransportError(f"{label} returned HTTP {status}", status_code=status)
                error.__cause__ = e
                if status not in RETRYABLE_STATUSES:
                    logger.warning("call_failed_not_retryable", label=label, status=status)
                    raise error
            except httpx.HTTPError as e:
                error = ProviderTransportError(f"{label} failed: {e}")
                error.__cause__ = e
            except ProviderTransportError as e:
                error = e
                if e.status_code is not None and e.status_code not in RETRYABLE_STATUSES:
                    raise

            if attempt >= self.max_retries:
                logger.warning(
                    "retries_exhausted",
                    label=label,
                    attempts=attempt + 1,
                    error=str(error),
                )
                raise error

            delay = self.backoff_delay(attempt)
            logger.info(
                "call_retry_scheduled",
                label=label,
                retry=attempt + 1,
                delay_seconds=round(delay, 3),
                error=str(error),
            )
            attempt += 1
            await self.sleep(delay)
