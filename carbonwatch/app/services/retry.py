"""Bounded exponential backoff shared by persistence and notification delivery."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..config import Settings


logger = logging.getLogger("carbonwatch.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.5
    multiplier: float = 2.0
    max_delay_s: float = 10.0
    # Passed to the operation by callers that support timeouts (HTTP, SMTP).
    per_attempt_timeout_s: float | None = None
    # Wall-clock budget for all attempts together.
    deadline_s: float | None = None

    def delay_after(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-indexed)."""

        delay = self.base_delay_s * (self.multiplier ** (attempt - 1))
        return max(0.0, min(delay, self.max_delay_s))


def persistence_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.persist_retry_max_attempts,
        base_delay_s=settings.persist_retry_base_delay_s,
        multiplier=settings.persist_retry_multiplier,
        max_delay_s=settings.persist_retry_max_delay_s,
    )


def notification_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.notify_retry_max_attempts,
        base_delay_s=settings.notify_retry_base_delay_s,
        multiplier=settings.notify_retry_multiplier,
        max_delay_s=settings.notify_retry_max_delay_s,
        per_attempt_timeout_s=settings.notify_attempt_timeout_s,
        deadline_s=settings.notify_deadline_s,
    )


def _default_is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))


class RetryExecutor:
    """Run a callable under a RetryPolicy.

    `sleep` and `clock` are injectable so tests never wait. The last exception
    is re-raised once attempts or the deadline are exhausted, or immediately
    when `is_retryable` rejects it.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    def call(
        self,
        fn: Callable[[], T],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        is_retryable: Callable[[BaseException], bool] = _default_is_retryable,
        on_attempt: Optional[Callable[[int, Optional[BaseException]], None]] = None,
        op: str = "operation",
    ) -> T:
        policy = self.policy
        started = self._clock()
        attempt = 0

        while True:
            attempt += 1
            try:
                result = fn()
            except retry_on as exc:
                if on_attempt is not None:
                    on_attempt(attempt, exc)

                if not is_retryable(exc):
                    logger.warning(
                        "retry_aborted",
                        extra={"fields": {"op": op, "attempt": attempt, "error": str(exc)}},
                    )
                    raise

                if attempt >= policy.max_attempts:
                    logger.error(
                        "retry_exhausted",
                        extra={"fields": {"op": op, "attempts": attempt, "error": str(exc)}},
                    )
                    raise

                delay = policy.delay_after(attempt)
                if policy.deadline_s is not None:
                    elapsed = self._clock() - started
                    if elapsed + delay > policy.deadline_s:
                        logger.error(
                            "retry_deadline_exceeded",
                            extra={
                                "fields": {
                                    "op": op,
                                    "attempts": attempt,
                                    "elapsed_s": round(elapsed, 3),
                                    "deadline_s": policy.deadline_s,
                                }
                            },
                        )
                        raise

                logger.warning(
                    "retry_scheduled",
                    extra={
                        "fields": {
                            "op": op,
                            "attempt": attempt,
                            "max_attempts": policy.max_attempts,
                            "delay_s": delay,
                            "error": str(exc),
                        }
                    },
                )
                self._sleep(delay)
                continue

            if on_attempt is not None:
                on_attempt(attempt, None)
            return result
