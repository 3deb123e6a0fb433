"""HTTP helpers with retry/backoff for outbound delivery (email API, webhooks)."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff with up to 50% jitter."""
    delay = min(max_delay, base_delay * (2**attempt))
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries.

    Transport errors are retried and re-raised after the last attempt.
    Retryable statuses are retried; the last response is returned as-is.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES
    response: httpx.Response | None = None

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= max_attempts - 1:
                raise
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            delay = backoff_delay(attempt, base_delay, max_delay)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            delay = backoff_delay(attempt, base_delay, max_delay)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    assert response is not None
    return response
