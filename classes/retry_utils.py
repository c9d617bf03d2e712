# classes/retry_utils.py

import asyncio
import errno
import json
import logging
import random
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from classes import settings
from classes.errors import (
    ConcurrencyLimitError,
    ContentShapeError,
    OperationCancelledError,
    OperationTimeoutError,
    RateLimitError,
    RecoveryError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger("draftguard_backend")

T = TypeVar("T")

# Symptoms of a bad sample from the service rather than a transport failure.
# A fresh sample has a reasonable chance of succeeding.
_CONTENT_SHAPE_SYMPTOMS = (
    "no content received",
    "empty content",
    "empty response",
    "malformed json",
    "incomplete json",
    "invalid json",
    "unexpected token",
    "unexpected end of json",
    "missing required fields",
    "invalid response format",
)
_WRONG_COUNT_RE = re.compile(r"expected\s+\d+\s+\w+,?\s+got\s+\d+|invalid \w+ count")

_TRANSIENT_SYMPTOMS = (
    "timeout",
    "timed out",
    "aborted",
    "connection reset",
    "fetch failed",
    "network",
)
_TRANSIENT_ERRNOS = {errno.ECONNRESET, errno.ETIMEDOUT, errno.ECONNABORTED, errno.EPIPE}

# pydantic error types that mean "the model skipped or miscounted something"
_RETRYABLE_VALIDATION_TYPES = {"missing", "too_short", "too_long", "json_invalid"}


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool) and 100 <= value < 600:
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """
    Pure classification of a failure: True when re-attempting the same logical
    request has a reasonable chance of succeeding.
    """
    # bookkeeping conditions are user-visible, never re-rolled
    if isinstance(error, (ConcurrencyLimitError, OperationTimeoutError, OperationCancelledError)):
        return False

    status = _status_of(error)
    if status is not None:
        return status == 429 or 500 <= status < 600

    if isinstance(error, (TransportError, RateLimitError)):
        return True
    if isinstance(error, ValidationError):
        return bool(error.error_types & _RETRYABLE_VALIDATION_TYPES) or _message_is_content_symptom(str(error))
    if isinstance(error, (RecoveryError, json.JSONDecodeError)):
        return True
    if isinstance(error, ContentShapeError):
        return True

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    if isinstance(error, OSError) and error.errno in _TRANSIENT_ERRNOS:
        return True

    message = str(error).lower()
    if any(symptom in message for symptom in _TRANSIENT_SYMPTOMS):
        return True
    return _message_is_content_symptom(message)


def _message_is_content_symptom(message: str) -> bool:
    message = message.lower()
    if any(symptom in message for symptom in _CONTENT_SHAPE_SYMPTOMS):
        return True
    return bool(_WRONG_COUNT_RE.search(message))


def retry_after_seconds(error: BaseException) -> Optional[float]:
    """
    Server-provided wait hint, if the error carries one.
    `retry-after-ms` wins over `retry-after` (seconds).
    """
    headers = getattr(error, "headers", None)
    if not headers:
        return None
    try:
        ms = headers.get("retry-after-ms")
        if ms is not None:
            return max(0.0, float(ms) / 1000.0)
        seconds = headers.get("retry-after")
        if seconds is not None:
            return max(0.0, float(seconds))
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable retry-after header on {type(error).__name__}")
    return None


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    *,
    max_delay: float = settings.RETRY_MAX_DELAY,
    max_jitter: float = settings.RETRY_MAX_JITTER,
) -> float:
    """
    min(base_delay * 2^attempt, max_delay) + uniform jitter in [0, max_jitter].
    `attempt` is 0-based.
    """
    exponential = min(base_delay * (2 ** attempt), max_delay)
    return exponential + random.uniform(0.0, max_jitter)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = settings.RETRY_MAX_RETRIES,
    base_delay: float = settings.RETRY_BASE_DELAY,
    context: str = "",
    on_retry: Callable[[int, BaseException], Any] | None = None,
) -> T:
    """
    Run `fn` up to max_retries + 1 times. Fatal errors propagate immediately;
    retryable ones are retried after an exponential backoff (or the server's
    retry-after hint). Attempts are strictly sequential.
    """
    label = f"[{context}] " if context else ""
    last_error: BaseException | None = None

    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            retryable = is_retryable_error(e)

            if not retryable:
                logger.error(f"{label}Attempt {attempt + 1}/{max_retries + 1} failed with non-retryable {type(e).__name__}: {e}")
                raise
            if attempt >= max_retries:
                logger.error(f"{label}All {max_retries + 1} attempts exhausted. Last error {type(e).__name__}: {e}")
                raise

            hinted = retry_after_seconds(e)
            delay = hinted if hinted is not None else compute_backoff_delay(attempt, base_delay)

            if on_retry is not None:
                on_retry(attempt, e)
            else:
                logger.warning(
                    f"{label}Attempt {attempt + 1}/{max_retries + 1} failed "
                    f"(status={_status_of(e)}, error={type(e).__name__}: {e}). "
                    f"Retrying in {delay:.2f}s"
                )

            await _sleep(delay)

    # unreachable: the loop either returns or raises
    raise last_error  # type: ignore[misc]
