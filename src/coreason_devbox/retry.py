# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devbox

from typing import Any, Awaitable, Callable, TypeVar

import httpx
from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from coreason_devbox.exceptions import RemoteTransientError

T = TypeVar("T")

# Authentication and not-found failures are never retried.
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    ConnectionError,
    RemoteTransientError,
)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    name = getattr(retry_state.fn, "__qualname__", repr(retry_state.fn))
    logger.warning(f"Transient failure in {name} (attempt {retry_state.attempt_number}): {exc}")


def retry_policy(
    attempts: int,
    backoff_max: float,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
) -> AsyncRetrying:
    """Bounded retry with jittered exponential backoff.

    Args:
        attempts: Total number of attempts, including the first one.
        backoff_max: Upper bound in seconds for a single wait.
        retry_on: Exception types considered transient.

    Returns:
        AsyncRetrying: A tenacity controller that re-raises the last error.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_random_exponential(multiplier=0.5, max=backoff_max),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int,
    backoff_max: float,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
    **kwargs: Any,
) -> T:
    """Await ``func(*args, **kwargs)`` under :func:`retry_policy`."""
    retrying = retry_policy(attempts, backoff_max, retry_on)
    return await retrying(func, *args, **kwargs)
