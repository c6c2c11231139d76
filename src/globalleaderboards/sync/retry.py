"""Exponential backoff shared by the REST client and the realtime reconnect loop."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Jitter window as a fraction of the capped delay, applied +/-
JITTER_RATIO = 0.25


def calculate_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay in seconds before retry number ``attempt`` (0-indexed).

    The cap is applied before jitter, so a jittered delay may exceed
    ``max_delay`` by up to a quarter.
    """
    capped = min(base_delay * exponential_base ** attempt, max_delay)
    if not jitter:
        return max(0.0, capped)
    spread = capped * JITTER_RATIO
    return max(0.0, capped + random.uniform(-spread, spread))


@dataclass
class RetryConfig:
    """Retry settings for REST calls."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True

    def backoff(self) -> "Backoff":
        return Backoff(
            max_attempts=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )


@dataclass
class Backoff:
    """Attempt counter for retry loops.

    ``next_delay`` consumes one attempt and returns how long to wait before
    it. The caller decides whether to sleep or to schedule a timer.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> float:
        delay = calculate_delay(
            self.attempts,
            self.base_delay,
            self.max_delay,
            self.exponential_base,
            self.jitter,
        )
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class RetryExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    retryable_exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or ``config.max_retries`` retries are spent.

    Args:
        func: Zero-argument callable to run
        config: Retry settings (defaults to ``RetryConfig()``)
        on_retry: Called as ``on_retry(attempt, error, delay)`` before each
            wait; a warning is logged when omitted
        retryable_exceptions: Errors that trigger another attempt; anything
            else propagates immediately
        sleep: Used to wait between attempts

    Raises:
        RetryExhausted: After the last attempt failed
    """
    backoff = (config or RetryConfig()).backoff()

    while True:
        try:
            return func()
        except retryable_exceptions as e:
            if backoff.exhausted:
                raise RetryExhausted(backoff.attempts + 1, e) from e

            attempt = backoff.attempts
            delay = backoff.next_delay()
            if on_retry is not None:
                on_retry(attempt, e, delay)
            else:
                logger.warning(f"Request attempt {attempt + 1} failed ({e}), retrying in {delay:.1f}s")
            sleep(delay)
