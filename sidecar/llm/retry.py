"""Bounded retry with a per-attempt timeout for LLM calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class LLMRetryError(Exception):
    """All attempts failed or timed out. The last error is chained."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    max_attempts: int = 2,
    timeout_seconds: float = 60,
    backoff_seconds: float = 1.0,
    **kwargs: Any,
) -> Any:
    """Await ``fn(*args, **kwargs)`` up to ``max_attempts`` times.

    Each attempt is bounded by ``timeout_seconds``. Backoff doubles between
    attempts. Raises LLMRetryError once every attempt has failed.
    """
    last_exc: BaseException | None = None
    delay = backoff_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            last_exc = exc
            logger.warning(
                "LLM call timed out after %ss (attempt %d/%d)",
                timeout_seconds, attempt, max_attempts,
            )
        except Exception as exc:
            last_exc = exc
            logger.warning(
                "LLM call failed (attempt %d/%d): %s",
                attempt, max_attempts, type(exc).__name__,
            )
        if attempt < max_attempts:
            await asyncio.sleep(delay)
            delay *= 2

    raise LLMRetryError(
        f"LLM call failed after {max_attempts} attempt(s)", attempts=max_attempts,
    ) from last_exc
