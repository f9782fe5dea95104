"""
Shared HTTP client with timeouts and bounded retries for provider APIs.
Used by the Shiprocket, Delhivery and Razorpay clients so a slow provider cannot hang a request.
Only transient failures are retried: connection errors, timeouts, 429 and 5xx gateway errors.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = settings.PROVIDER_TIMEOUT_SEC
DEFAULT_RETRIES = settings.PROVIDER_MAX_RETRIES
RETRY_BACKOFF_BASE = 1.0  # seconds
TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 504)


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES


async def _sleep_backoff(attempt: int) -> None:
    if attempt <= 0:
        return
    delay = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
    await asyncio.sleep(min(delay, 10.0))


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple[int, ...] = TRANSIENT_STATUS_CODES,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform HTTP request with timeout and retries for transient server/network errors.
    Non-transient responses (4xx other than 429) are returned on the first attempt.
    """
    last_exc: Optional[Exception] = None
    resp: Optional[httpx.Response] = None
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.request(method, url, **kwargs)
            if attempt < max_retries and resp.status_code in retry_on:
                logger.warning("HTTP %s %s returned %s, retrying (attempt %s)", method, url, resp.status_code, attempt + 1)
                await _sleep_backoff(attempt + 1)
                continue
            return resp
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout) as e:
            last_exc = e
            if attempt < max_retries:
                logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
                await _sleep_backoff(attempt + 1)
            else:
                raise
    if last_exc:
        raise last_exc
    return resp  # type: ignore


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
) -> httpx.Response:
    """GET with retries on transient status codes and connection errors."""
    return await request_with_retry(
        "GET", url, params=params, headers=headers, timeout=timeout, max_retries=max_retries
    )
