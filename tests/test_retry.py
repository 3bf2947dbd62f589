import asyncio

import aiohttp
import pytest

from async_message_service.errors import ChannelNotReadyError, PermanentRecipientError
from async_message_service.retry import (
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_MAX_DELAY_MS,
    MIN_RETRY_DELAY_MS,
    calculate_retry_delay,
    classify_error,
    is_invalid_recipient_error,
    is_transient_signature,
)


@pytest.mark.parametrize("attempts", range(1, 12))
@pytest.mark.parametrize("jitter", [0.0, 0.5, 0.999])
def test_retry_delay_bounds(attempts, jitter):
    nominal = min(DEFAULT_BASE_DELAY_MS * 2 ** (attempts - 1), DEFAULT_MAX_DELAY_MS)
    delay = calculate_retry_delay(attempts, jitter=lambda: jitter)
    assert MIN_RETRY_DELAY_MS <= delay <= DEFAULT_MAX_DELAY_MS
    assert nominal * 0.75 - 1 <= delay <= nominal * 1.25 + 1


def test_retry_delay_without_jitter_is_exponential():
    no_jitter = lambda: 0.5  # noqa: E731
    assert calculate_retry_delay(1, jitter=no_jitter) == 2000
    assert calculate_retry_delay(2, jitter=no_jitter) == 4000
    assert calculate_retry_delay(3, jitter=no_jitter) == 8000
    assert calculate_retry_delay(20, jitter=no_jitter) == DEFAULT_MAX_DELAY_MS


def test_retry_delay_is_floored_and_clamped():
    assert calculate_retry_delay(1, base_delay_ms=100, jitter=lambda: 0.0) == MIN_RETRY_DELAY_MS
    assert calculate_retry_delay(30, jitter=lambda: 0.999) == DEFAULT_MAX_DELAY_MS


def test_permanent_errors_are_not_retryable():
    assert classify_error(PermanentRecipientError()) == (False, "PermanentRecipientError")
    retryable, signature = classify_error(RuntimeError("Contact is Blocked"))
    assert retryable is False
    assert signature == "blocked"


def test_permanent_signature_wins_over_transient_type():
    retryable, _ = classify_error(ChannelNotReadyError("number not registered"))
    assert retryable is False


def test_transient_errors_are_retryable():
    assert classify_error(ChannelNotReadyError())[0] is True
    assert classify_error(asyncio.TimeoutError())[0] is True
    assert classify_error(aiohttp.ClientConnectionError("boom"))[0] is True
    assert classify_error(RuntimeError("Protocol error (Runtime.callFunctionOn): Target closed")) == (
        True,
        "protocol error",
    )


def test_unknown_errors_default_to_retryable():
    assert classify_error(ValueError("something odd")) == (True, None)


def test_transient_signature_detection():
    assert is_transient_signature(ConnectionResetError())
    assert is_transient_signature(RuntimeError("read ECONNRESET"))
    assert not is_transient_signature(RuntimeError("bad credentials"))


def test_invalid_recipient_detection():
    assert is_invalid_recipient_error(RuntimeError("Invalid wid"))
    assert is_invalid_recipient_error(PermanentRecipientError())
    assert not is_invalid_recipient_error(RuntimeError("session closed"))
