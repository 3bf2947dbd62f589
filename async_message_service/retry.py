"""Retry policy: error classification and exponential backoff."""

from __future__ import annotations

import asyncio
import random
from typing import Callable, Optional, Tuple

import aiohttp

from .errors import PermanentRecipientError, TransientChannelError
from .logger import get_logger

logger = get_logger("AsyncMessageService.retry")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_MS = 2000
DEFAULT_MAX_DELAY_MS = 300000
MIN_RETRY_DELAY_MS = 1000
JITTER_RATIO = 0.25

# Checked first: a match here fails the job regardless of remaining attempts.
PERMANENT_ERROR_PATTERNS = (
    "not registered",
    "invalid number",
    "blocked",
    "rate limited permanently",
    "invalid wid",
    "not a valid wid",
)

TRANSIENT_ERROR_PATTERNS = (
    "session closed",
    "protocol error",
    "target closed",
    "navigation timeout",
    "net::err_",
    "client not ready",
    "connection failed",
    "timeout",
    "network error",
    "disconnected",
    "etimedout",
    "econnreset",
    "evaluation failed",
)

# Recipient lookups failing with one of these mean the address itself is bad.
INVALID_RECIPIENT_PATTERNS = (
    "not registered",
    "invalid",
    "not a valid wid",
)


def _match(message: str, patterns: Tuple[str, ...]) -> Optional[str]:
    lowered = message.lower()
    for pattern in patterns:
        if pattern in lowered:
            return pattern
    return None


def is_transient_signature(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` looks like a known transient channel failure."""
    if isinstance(exc, (TransientChannelError, asyncio.TimeoutError, TimeoutError, ConnectionError, aiohttp.ClientError)):
        return True
    return _match(str(exc), TRANSIENT_ERROR_PATTERNS) is not None


def is_invalid_recipient_error(exc: BaseException) -> bool:
    """Return ``True`` when a recipient validation error denotes a bad address."""
    if isinstance(exc, PermanentRecipientError):
        return True
    return _match(str(exc), INVALID_RECIPIENT_PATTERNS) is not None


def classify_error(exc: BaseException) -> Tuple[bool, Optional[str]]:
    """
    Classify a delivery error as retryable or permanent.

    Returns:
        tuple: (is_retryable, signature)
            - is_retryable: True if the job should go through backoff again
            - signature: the pattern (or type name) that decided, None for the default
    """
    if isinstance(exc, PermanentRecipientError):
        return False, type(exc).__name__

    message = str(exc)
    permanent = _match(message, PERMANENT_ERROR_PATTERNS)
    if permanent:
        return False, permanent

    if isinstance(exc, (TransientChannelError, asyncio.TimeoutError, TimeoutError, ConnectionError, aiohttp.ClientError)):
        return True, type(exc).__name__

    transient = _match(message, TRANSIENT_ERROR_PATTERNS)
    if transient:
        return True, transient

    logger.info("Unknown error type: %s - defaulting to retryable", message or type(exc).__name__)
    return True, None


def calculate_retry_delay(
    attempts: int,
    *,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    jitter: Callable[[], float] = random.random,
) -> int:
    """
    Return the delay in milliseconds before a job becomes eligible again.

    Args:
        attempts: Number of attempts already made (1 for the first retry)
        base_delay_ms: Delay applied after the first failed attempt
        max_delay_ms: Upper bound for the exponential part and the final delay
        jitter: Source of uniform values in [0, 1), replaced in tests

    Returns:
        ``min(base * 2**(attempts-1), max)`` with +/-25% jitter, floored at one second
    """
    exponent = max(0, int(attempts) - 1)
    delay = min(base_delay_ms * (2 ** exponent), max_delay_ms)
    spread = delay * JITTER_RATIO * (jitter() * 2 - 1)
    final = max(MIN_RETRY_DELAY_MS, delay + spread)
    return int(min(final, max(max_delay_ms, MIN_RETRY_DELAY_MS)))
