"""Retry utilities with exponential backoff."""

import random
import time
from typing import Callable, Tuple, Type, TypeVar

import structlog
from pydantic import BaseModel, Field

log = structlog.stdlib.get_logger()

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Bounded exponential backoff policy.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` never retries.
    """

    max_attempts: int = Field(default=4, ge=1, le=20, description="Total attempts including the first")
    base_delay: float = Field(default=1.0, ge=0.0, description="Delay before the first retry in seconds")
    max_delay: float = Field(default=60.0, ge=0.0, description="Upper bound for a single delay in seconds")
    jitter: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Random fraction added to each delay"
    )

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (zero-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return min(delay, self.max_delay)


def call_with_retry(
    policy: RetryPolicy,
    func: Callable[[], T],
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds or the policy is exhausted.

    Exceptions outside ``retry_on`` propagate immediately. An exception carrying a
    ``retry_after`` attribute raises the floor of the next delay.

    Args:
        policy: Retry policy to apply
        func: Zero-argument callable to execute
        retry_on: Exception types that trigger a retry
        operation: Name used in log events (defaults to the callable's name)
        sleep: Sleep function, injectable for tests

    Returns:
        The callable's return value

    Raises:
        The last exception once ``policy.max_attempts`` is reached
    """
    name = operation or getattr(func, "__name__", "operation")

    for attempt in range(policy.max_attempts):
        try:
            return func()
        except retry_on as e:
            if attempt == policy.max_attempts - 1:
                log.error(
                    "max_retries_reached",
                    function=name,
                    max_attempts=policy.max_attempts,
                    error=str(e),
                )
                raise

            delay = policy.delay_for(attempt)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))

            log.warning(
                "retrying_after_error",
                function=name,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            sleep(delay)

    raise RuntimeError(f"{name}: retry loop exited without a result")
