"""
Parley - Utility functions.

Created by orpheus497

Backoff, timeout and retry helpers shared by the synchronizer, the stream
router and the group state machine, plus small validation helpers.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .constants import NETWORK_MAX_RETRY_DELAY, NETWORK_RETRY_ATTEMPTS, NETWORK_RETRY_DELAY
from .errors import ErrorCode, TransportUnavailable, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float, ceiling: float) -> float:
    """
    Exponential backoff delay for a 1-based attempt number.

    Args:
        attempt: Number of consecutive failures so far (1 for the first)
        base: Delay after the first failure (seconds)
        ceiling: Upper bound on the delay (seconds)

    Returns:
        ``base * 2 ** (attempt - 1)`` capped at ``ceiling``
    """
    if attempt < 1:
        return 0.0
    # Cap the exponent so very long outages cannot overflow the float
    return min(ceiling, base * (2 ** min(attempt - 1, 32)))


async def call_transport(
    operation: str,
    call: Callable[[], Awaitable[T]],
    timeout: Optional[float],
    conversation_id: Optional[str] = None,
) -> T:
    """
    Run one network-bound transport call under a timeout.

    A timeout is reported as a retryable TransportUnavailable, never as
    success. Any other exception propagates unchanged.

    Args:
        operation: Operation name, recorded in error details
        call: Zero-argument coroutine factory performing the call
        timeout: Timeout in seconds (None disables it)
        conversation_id: Conversation the call targets, if any

    Returns:
        Result of the call
    """
    try:
        if timeout is None:
            return await call()
        return await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransportUnavailable(
            ErrorCode.E202_OPERATION_TIMEOUT,
            f"{operation} timed out after {timeout}s",
            {"conversation_id": conversation_id, "operation": operation, "cause": "timeout"},
        ) from e


async def retry_transient(
    operation: str,
    call: Callable[[], Awaitable[T]],
    attempts: int = NETWORK_RETRY_ATTEMPTS,
    base_delay: float = NETWORK_RETRY_DELAY,
    max_delay: float = NETWORK_MAX_RETRY_DELAY,
    timeout: Optional[float] = None,
    conversation_id: Optional[str] = None,
) -> T:
    """
    Call a transport operation, retrying retryable failures with backoff.

    Only TransportUnavailable is retried; validation and authentication
    errors propagate on the first failure.

    Raises:
        TransportUnavailable: If every attempt failed
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call_transport(operation, call, timeout, conversation_id)
        except Exception as e:
            if not is_retryable(e) or attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{operation} failed (attempt {attempt}/{attempts}), retrying in {delay:.1f}s: {e}"
            )
            await asyncio.sleep(delay)


_URL_PATTERN = re.compile(r"^(https?|mxc)://[^\s/$.?#][^\s]*$", re.IGNORECASE)


def validate_image_url(url: str) -> bool:
    """Accept empty (clears the image) or an http(s)/mxc URL."""
    return url == "" or bool(_URL_PATTERN.match(url))


def describe_error(error: Any) -> str:
    """Readable description of an error value that may not be an exception."""
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)
