"""Bounded retry with exponential backoff.

Every call to an unreliable remote dependency (provider media API, durable
store conflict retries, analyzer) goes through BackoffController.run()
instead of carrying its own retry loop.

delay(attempt) = min(max_delay, initial_delay * multiplier ** (attempt - 1))

On exhaustion the last underlying error is re-raised, so callers see the
real failure cause. The wait between attempts is interruptible: a
threading.Event passed as `cancel` stops the loop immediately, and an
absolute `deadline` (time.monotonic() based) stops it before a sleep that
would overrun.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from chatdesk.errors import OperationCancelled
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry policy for one kind of remote call.

    Attributes:
        max_attempts: Total attempts including the first one (>= 1).
        initial_delay: Delay in seconds after the first failure.
        max_delay: Upper bound for any single delay.
        multiplier: Growth factor between consecutive delays (>= 1).
        jitter: Optional extra random fraction of the delay (0 disables).
        retry_on: Exception types that are retried; anything else propagates
                  on first occurrence.
    """

    max_attempts: int = 3
    initial_delay: float = 0.2
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: float = 0.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        base = min(self.max_delay, self.initial_delay * self.multiplier ** (attempt - 1))
        if self.jitter:
            base = min(self.max_delay, base + random.uniform(0, base * self.jitter))
        return base


DEFAULT_POLICY = BackoffPolicy()

# Single retry for store conflicts; the eventual state is an upsert anyway
CONFLICT_RETRY_POLICY = BackoffPolicy(max_attempts=2, initial_delay=0.05, max_delay=0.05)


def deadline_in(seconds: float) -> float:
    """Absolute deadline `seconds` from now, for use with run(deadline=...)."""
    return time.monotonic() + seconds


class BackoffController:
    """Executes operations with bounded exponential retry.

    Args:
        clock: Monotonic clock used for deadline checks.
        sleep: Sleep function used when no cancel event is given
               (injectable for tests).
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        operation: Callable[[], T],
        policy: BackoffPolicy = DEFAULT_POLICY,
        *,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
        label: str = "operation",
    ) -> T:
        """Run `operation` until it succeeds or the retry budget is spent.

        Args:
            operation: Zero-argument callable performing one attempt.
            policy: Retry policy.
            deadline: Optional absolute monotonic deadline.
            cancel: Optional event; when set, no further attempt is made.
            label: Name used in log lines.

        Returns:
            The operation's return value.

        Raises:
            The last error raised by `operation` once attempts, deadline or
            cancellation run out. OperationCancelled if cancellation or the
            deadline prevented even the first attempt.
        """
        last_error: BaseException | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                break
            if deadline is not None and self._clock() >= deadline:
                break

            try:
                return operation()
            except policy.retry_on as exc:
                last_error = exc

                if attempt == policy.max_attempts:
                    break

                delay = policy.delay(attempt)
                if deadline is not None and self._clock() + delay > deadline:
                    logger.info(
                        "retry stopped by deadline",
                        extra={
                            "extra_fields": safe_log_context(
                                label=label, attempt=attempt, error_type=type(exc).__name__
                            )
                        },
                    )
                    break

                logger.warning(
                    "attempt failed, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            label=label,
                            attempt=attempt,
                            delay=round(delay, 3),
                            error_type=type(exc).__name__,
                        )
                    },
                )
                if self._wait(delay, cancel):
                    break

        if last_error is None:
            raise OperationCancelled(f"{label} cancelled before first attempt")

        logger.warning(
            "retry budget exhausted",
            extra={
                "extra_fields": safe_log_context(
                    label=label, error_type=type(last_error).__name__
                )
            },
        )
        raise last_error

    def _wait(self, delay: float, cancel: threading.Event | None) -> bool:
        """Sleep for `delay`. Returns True if cancelled while waiting."""
        if cancel is not None:
            return cancel.wait(delay)
        self._sleep(delay)
        return False
