"""Bounded retry for outbound HTTP calls.

Both collaborators (task manager, calendar) share one policy: retry on 429,
any 5xx, and transport failures, with exponential backoff starting at one
second, for at most three attempts in total. For 429 responses a numeric
``Retry-After`` header replaces the computed backoff.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BASE_BACKOFF_SECONDS = 1.0
BACKOFF_FACTOR = 2


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def _backoff_seconds(attempt: int, response: httpx.Response | None) -> float:
    backoff = BASE_BACKOFF_SECONDS * (BACKOFF_FACTOR**attempt)
    if response is not None and response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                backoff = float(retry_after)
            except ValueError:
                pass
    return backoff


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    service: str,
) -> httpx.Response:
    """Invoke *send* until it returns a non-retryable response or attempts run out.

    The last response is returned even when its status is still retryable, so
    callers decide how to report it. A transport error on the final attempt
    propagates as ``httpx.TransportError``.
    """
    attempt = 0
    while True:
        response: httpx.Response | None = None
        try:
            response = await send()
        except httpx.TransportError as exc:
            if attempt + 1 >= MAX_ATTEMPTS:
                raise
            reason = f"transport error: {exc}"
        else:
            if not is_retryable_status(response.status_code) or attempt + 1 >= MAX_ATTEMPTS:
                return response
            reason = f"status={response.status_code}"

        backoff = _backoff_seconds(attempt, response)
        logger.warning(
            "%s request failed (%s), retrying in %.1fs (attempt %d/%d)",
            service,
            reason,
            backoff,
            attempt + 1,
            MAX_ATTEMPTS,
        )
        await asyncio.sleep(backoff)
        attempt += 1
