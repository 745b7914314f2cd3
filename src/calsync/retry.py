"""Bounded exponential backoff around remote calls.

``call_with_retry`` attempts an operation, classifies any failure with
:func:`calsync.errors.classify_error`, and retries only when the policy says
the failure is transient.  Delays double per attempt up to ``max_delay_ms``,
are raised to the provider's ``Retry-After`` hint when one was sent, and are
then spread by a uniform ``±jitter`` factor.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

from calsync.errors import ProviderError, classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_CODES = frozenset({429, 500, 502, 503, 504})
DEFAULT_RETRY_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "backendError"}
)
DEFAULT_RETRY_STATUSES = frozenset(
    {"RESOURCE_EXHAUSTED", "UNAVAILABLE", "INTERNAL", "ABORTED", "DEADLINE_EXCEEDED"}
)
# Local failures (bad JSON, programming errors) are not transient.
NON_RETRYABLE_DOMAINS = frozenset({"application"})

SleepFn = Callable[[float], Awaitable[None]]
RandomFn = Callable[[], float]


class RetryPolicy(BaseModel):
    """Retry envelope for one remote operation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=4, ge=1)
    base_delay_ms: int = Field(default=500, ge=0)
    max_delay_ms: int = Field(default=10_000, ge=0)
    jitter: float = Field(default=0.2, ge=0.0, le=1.0)
    idempotent: bool = True
    retry_on_codes: frozenset[int] = DEFAULT_RETRY_CODES
    retry_on_reasons: frozenset[str] = DEFAULT_RETRY_REASONS
    retry_on_statuses: frozenset[str] = DEFAULT_RETRY_STATUSES


def is_retryable(error: ProviderError, policy: RetryPolicy) -> bool:
    if not policy.idempotent:
        return False
    if error.domain in NON_RETRYABLE_DOMAINS:
        return False
    if error.code in policy.retry_on_codes:
        return True
    if error.reason in policy.retry_on_reasons:
        return True
    return error.status is not None and error.status in policy.retry_on_statuses


def compute_retry_delay_ms(
    attempt: int,
    error: ProviderError,
    policy: RetryPolicy,
    *,
    rand: RandomFn = random.random,
) -> int:
    """Return the backoff in milliseconds before retry number ``attempt + 1``."""
    delay = min(policy.base_delay_ms * 2**attempt, policy.max_delay_ms)
    floor_ms = (error.retry_after_seconds or 0) * 1000
    delay = max(delay, floor_ms)
    jitter_factor = 1 + (rand() * 2 - 1) * policy.jitter
    # Jitter never pulls the delay below the provider's Retry-After.
    return max(floor_ms, int(delay * jitter_factor))


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    context: str | None = None,
    sleep: SleepFn = asyncio.sleep,
    rand: RandomFn = random.random,
    on_retry: Callable[[ProviderError, int], None] | None = None,
) -> T:
    """Run *operation* under *policy*, raising a classified :class:`ProviderError`.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Retry envelope; defaults to :class:`RetryPolicy` defaults.
        context: Label prefixed to the final error message.
        sleep: Awaitable sleep used between attempts (seconds).
        rand: Source of uniform ``[0, 1)`` values for jitter.
        on_retry: Called with the classified error and the delay in ms
            before every backoff sleep.
    """
    resolved = policy or RetryPolicy()
    attempt = 0

    while True:
        try:
            return await operation()
        except Exception as exc:
            error = classify_error(exc)
            last_attempt = attempt >= resolved.max_attempts - 1
            if last_attempt or not is_retryable(error, resolved):
                error.with_context(context)
                if error is exc:
                    raise
                raise error from exc

            delay_ms = compute_retry_delay_ms(attempt, error, resolved, rand=rand)
            logger.warning(
                "Remote call failed (code=%d, reason=%s), retrying in %dms (attempt %d/%d)%s",
                error.code,
                error.reason,
                delay_ms,
                attempt + 1,
                resolved.max_attempts,
                f" [{context}]" if context else "",
            )
            if on_retry is not None:
                on_retry(error, delay_ms)
            attempt += 1
            await sleep(delay_ms / 1000)
