"""Retry execution for Pass-2 model calls.

``call_with_retry`` runs a callable under a :class:`RetryPolicy`, sleeping
``backoff_base_sec * 2 ** (n - 1)`` seconds before retry ``n``. Only transient
failures are retried: HTTP 429 and 5xx, timeouts, connection errors and
responses without any output text.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

from openai import APIConnectionError, APITimeoutError

from .config import RetryPolicy
from .errors import LlmCategorizationError
from .logging_setup import get_logger

T = TypeVar("T")

_logger = get_logger("txn_categorizer.retry")


class EmptyResponseError(RuntimeError):
    """The model returned a response with no output text."""


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (APITimeoutError, APIConnectionError, TimeoutError, EmptyResponseError)):
        return True
    sc = getattr(exc, "status_code", None)
    if isinstance(sc, int) and (sc == 429 or 500 <= sc < 600):
        return True
    return False


def _sleep_backoff(seconds: float) -> None:
    time.sleep(max(0.0, seconds))


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str = "llm_call",
) -> tuple[T, int]:
    """Run ``fn`` until it succeeds or the policy is exhausted.

    Returns ``(value, attempts_used)``. Raises :class:`LlmCategorizationError`
    (chained to the last error) when attempts run out or a non-retryable
    error occurs.
    """

    attempt = 1
    while True:
        t0 = time.perf_counter()
        try:
            return fn(), attempt
        except Exception as e:  # noqa: BLE001
            dt_ms = (time.perf_counter() - t0) * 1000.0
            if attempt >= policy.max_attempts or not is_retryable(e):
                _logger.error(
                    "%s:failed_terminal attempts=%d latency_ms=%.2f error=%s",
                    label,
                    attempt,
                    dt_ms,
                    e.__class__.__name__,
                )
                raise LlmCategorizationError(
                    f"{label} failed after {attempt} attempt(s): {e}",
                    attempts=attempt,
                    last_error=e,
                ) from e
            delay = policy.delay(attempt)
            _logger.warning(
                "%s:retry attempt=%d latency_ms=%.2f error=%s backoff_sec=%.2f",
                label,
                attempt,
                dt_ms,
                e.__class__.__name__,
                delay,
            )
            _sleep_backoff(delay)
            attempt += 1


__all__ = ["EmptyResponseError", "RetryPolicy", "call_with_retry", "is_retryable"]
