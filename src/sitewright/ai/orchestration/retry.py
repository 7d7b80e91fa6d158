"""Exponential-backoff retry for upstream model calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import TransientUpstreamError
from .state import CancellationToken

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]
RetryCallback = Callable[[int, BaseException | None, float], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff parameters; ``ceiling`` counts retries, not attempts."""

    ceiling: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @property
    def max_attempts(self) -> int:
        return max(0, self.ceiling) + 1


def build_retrying(
    policy: RetryPolicy,
    *,
    sleep: SleepFn | None = None,
    on_retry: RetryCallback | None = None,
) -> AsyncRetrying:
    """Return the tenacity controller for *policy*; only transient errors retry."""

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
        LOGGER.info(
            "Transient upstream failure (attempt %s/%s), retrying in %.1fs: %s",
            retry_state.attempt_number,
            policy.max_attempts,
            delay,
            exc,
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, exc, delay)

    return AsyncRetrying(
        reraise=True,
        sleep=sleep or asyncio.sleep,
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
        retry=retry_if_exception_type(TransientUpstreamError),
        before_sleep=_before_sleep,
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    token: CancellationToken,
    *,
    sleep: SleepFn | None = None,
    on_retry: RetryCallback | None = None,
) -> T:
    """Run *operation* under *policy*, checking *token* before every attempt.

    Raises:
        RequestCancelled: *token* was cancelled before an attempt.
        TransientUpstreamError: retries exhausted; ``retries`` equals the ceiling.
        AssistantError: any other upstream failure, raised on first occurrence.
    """

    attempts = 0
    try:
        async for attempt in build_retrying(policy, sleep=sleep, on_retry=on_retry):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                token.raise_if_cancelled()
                result = await operation()
    except TransientUpstreamError as exc:
        exc.retries = max(0, attempts - 1)
        LOGGER.warning("Upstream still failing after %s retries: %s", exc.retries, exc.detail or exc)
        raise
    return result


__all__ = ["RetryPolicy", "build_retrying", "call_with_retry"]
