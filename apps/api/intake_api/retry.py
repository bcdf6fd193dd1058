from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Fixed-delay retry: up to `max_attempts` calls, `delay_seconds` apart."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    delay_seconds: float = Field(default=5.0, ge=0)


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool],
    on_attempt: Callable[[int, BaseException | None, bool], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `fn` until it succeeds or the policy runs out.

    Non-retryable errors propagate immediately. When every attempt fails with a retryable
    error, `RetryExhausted` is raised carrying the last one. `on_attempt(attempt, error,
    will_retry)` is invoked after every attempt, successful or not.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = fn()
        except Exception as exc:  # noqa: BLE001
            retryable = is_retryable(exc)
            will_retry = retryable and attempt < policy.max_attempts
            if on_attempt is not None:
                on_attempt(attempt, exc, will_retry)
            if not retryable:
                raise
            if not will_retry:
                raise RetryExhausted(attempt, exc) from exc
            logger.info("Retrying in %.1fs (attempt %s/%s): %s", policy.delay_seconds, attempt, policy.max_attempts, exc)
            sleep(policy.delay_seconds)
            continue
        if on_attempt is not None:
            on_attempt(attempt, None, False)
        return result
