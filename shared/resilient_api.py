"""
Resilient API helpers for calls that leave the process.

Every call to the calendar of record or to the notification channel goes
through these helpers so that no scheduling operation blocks indefinitely:

- with_timeout(): bounds a coroutine and converts asyncio timeouts into
  ExternalServiceTimeout
- is_retryable_error(): classifies transient failures for tenacity retry
  predicates
"""

import asyncio
import logging
from typing import Awaitable, TypeVar

import httpx
from googleapiclient.errors import HttpError

from scheduling.errors import ExternalServiceTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_HTTP_STATUSES = (429, 500, 502, 503, 504)


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str,
) -> T:
    """
    Await an external call, giving up after `timeout` seconds.

    Args:
        awaitable: Coroutine performing the external call
        timeout: Seconds to wait before abandoning the call
        operation: Human-readable operation name for logs and the error

    Returns:
        Whatever the awaitable returns

    Raises:
        ExternalServiceTimeout: If the call did not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"{operation} timed out after {timeout:.1f}s")
        raise ExternalServiceTimeout(operation, timeout) from e


def is_retryable_error(error: BaseException) -> bool:
    """
    Determine if an error is retryable.

    Args:
        error: Exception to check

    Returns:
        bool: True if error is retryable, False otherwise

    Retryable errors:
    - Google Calendar API: 429 (rate limit), 500, 502, 503, 504
    - httpx transport errors and 429/5xx responses
    - Network errors, timeouts
    """
    if isinstance(error, HttpError):
        return error.resp.status in RETRYABLE_HTTP_STATUSES

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_HTTP_STATUSES

    if isinstance(error, httpx.TransportError):
        return True

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    return False
