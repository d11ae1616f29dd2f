"""Retry policy and polling combinator shared by the completion-polling components.

The backend offers no push signal for anything we wait on (job completion,
attachment promotion, upscale results), so every wait is a bounded poll loop:

    policy = RetryPolicy(max_attempts=10, interval_seconds=2.0)
    result = await poll(check, policy, label="attachment.resolve")
    if result is POLL_TIMEOUT:
        ...

A check returns a value to stop, or None to keep polling. A check raising
TransientError consumes its attempt and the loop continues; any other
exception propagates.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, TypeVar, Union

import structlog

from mjrelay.services.exceptions import TransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class PollTimeout:
    """Sentinel returned when a poll loop exhausts its attempts."""

    _instance: Optional["PollTimeout"] = None

    def __new__(cls) -> "PollTimeout":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "POLL_TIMEOUT"


POLL_TIMEOUT = PollTimeout()


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to poll and how long to wait between polls.

    Attributes:
        max_attempts: Exact number of check calls allotted
        interval_seconds: Delay before the second attempt
        backoff: Multiplier applied to the delay after each attempt (1.0 = fixed interval)
        max_interval_seconds: Upper bound for the delay when backoff > 1
        delay_first: Sleep before the first check as well
    """

    max_attempts: int
    interval_seconds: float
    backoff: float = 1.0
    max_interval_seconds: Optional[float] = None
    delay_first: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.interval_seconds < 0:
            raise ValueError(f"interval_seconds must be >= 0 (got {self.interval_seconds})")

    def delays(self) -> Iterator[float]:
        """Yield the delay to apply before each attempt (0 for the first unless delay_first)."""
        delay = self.interval_seconds
        for attempt in range(self.max_attempts):
            if attempt == 0 and not self.delay_first:
                yield 0.0
                continue
            yield delay
            delay *= self.backoff
            if self.max_interval_seconds is not None:
                delay = min(delay, self.max_interval_seconds)

    @classmethod
    def for_budget(cls, timeout_seconds: float, interval_seconds: float, **kwargs) -> "RetryPolicy":
        """Build a fixed-interval policy that covers roughly timeout_seconds of waiting."""
        if interval_seconds <= 0:
            return cls(max_attempts=1, interval_seconds=0, **kwargs)
        attempts = max(1, int(timeout_seconds // interval_seconds))
        return cls(max_attempts=attempts, interval_seconds=interval_seconds, **kwargs)


async def poll(
    check: Callable[[int], Awaitable[Optional[T]]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "poll",
    **log_context,
) -> Union[T, PollTimeout]:
    """Call check until it returns a non-None value or attempts run out.

    Args:
        check: Coroutine function receiving the 1-based attempt number
        policy: Attempt count and spacing
        sleep: Sleep implementation (injected by tests)
        label: Event prefix for log lines
        **log_context: Extra key/value pairs bound to every log line

    Returns:
        The first non-None check result, or POLL_TIMEOUT
    """
    for attempt, delay in enumerate(policy.delays(), start=1):
        if delay > 0:
            await sleep(delay)

        try:
            result = await check(attempt)
        except TransientError as e:
            logger.warning(
                f"{label}.attempt_failed",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error_type=type(e).__name__,
                error_message=str(e),
                **log_context,
            )
            continue

        if result is not None:
            logger.debug(f"{label}.succeeded", attempt=attempt, **log_context)
            return result

    logger.info(f"{label}.timeout", attempts=policy.max_attempts, **log_context)
    return POLL_TIMEOUT
