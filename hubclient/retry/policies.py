"""Retry policies consulted by the retry stage after transient failures.

A policy is a pure decision function: given the attempt count of the current
operation and the error that ended the last attempt, it answers whether to try
again and how long to wait first. Delays are returned in seconds.
"""

from __future__ import annotations

import logging
import random
from abc import ABC
from typing import Tuple

from hubclient.errors import classify_error, ErrorCategory

LOGGER = logging.getLogger(__name__)

JITTER_LOW = 0.95
JITTER_HIGH = 1.05
# 2 ** 1023 is the largest power of two a float can hold.
MAX_EXPONENT = 1023

RetryDecision = Tuple[bool, float]


def apply_jitter(delay: float) -> float:
    return delay * random.uniform(JITTER_LOW, JITTER_HIGH)


class RetryPolicy(ABC):
    """Base policy enforcing the attempt cap and the transient-only rule.

    ``max_retries`` of 0 means attempts are unlimited.
    """

    def __init__(self, max_retries: int = 0) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.max_retries = max_retries

    def should_retry(self, attempt: int, last_error: BaseException) -> RetryDecision:
        if self.max_retries > 0 and attempt >= self.max_retries:
            return False, 0.0
        if classify_error(last_error) is not ErrorCategory.TRANSIENT:
            return False, 0.0
        return True, 0.0

    def __repr__(self) -> str:
        return f"{type(self).__name__}(max_retries={self.max_retries})"


class ExponentialBackoffRetryPolicy(RetryPolicy):
    """delay = min(max_delay, 2 ** (attempt + base_exponent) ms), optionally jittered."""

    def __init__(
        self,
        max_retries: int = 0,
        max_delay: float = 12 * 60 * 60,
        use_jitter: bool = True,
        *,
        base_exponent: int = 6,
    ) -> None:
        super().__init__(max_retries)
        if max_delay < 0:
            raise ValueError("max_delay must not be negative")
        self.max_delay = float(max_delay)
        self.use_jitter = use_jitter
        self.base_exponent = base_exponent

    def compute_delay(self, attempt: int) -> float:
        exponent = min(max(attempt + self.base_exponent, 0), MAX_EXPONENT)
        delay = min(self.max_delay, (2.0 ** exponent) / 1000.0)
        return apply_jitter(delay) if self.use_jitter else delay

    def should_retry(self, attempt: int, last_error: BaseException) -> RetryDecision:
        retry, _ = super().should_retry(attempt, last_error)
        if not retry:
            return False, 0.0
        return True, self.compute_delay(attempt)


class IncrementalDelayRetryPolicy(RetryPolicy):
    """delay = min(max_delay, attempt * delay_increment), optionally jittered."""

    def __init__(
        self,
        max_retries: int = 0,
        delay_increment: float = 1.0,
        max_delay: float = 60.0,
        use_jitter: bool = True,
    ) -> None:
        super().__init__(max_retries)
        if delay_increment < 0:
            raise ValueError("delay_increment must not be negative")
        if max_delay < 0:
            raise ValueError("max_delay must not be negative")
        self.delay_increment = float(delay_increment)
        self.max_delay = float(max_delay)
        self.use_jitter = use_jitter

    def compute_delay(self, attempt: int) -> float:
        delay = min(self.max_delay, max(attempt, 0) * self.delay_increment)
        return apply_jitter(delay) if self.use_jitter else delay

    def should_retry(self, attempt: int, last_error: BaseException) -> RetryDecision:
        retry, _ = super().should_retry(attempt, last_error)
        if not retry:
            return False, 0.0
        return True, self.compute_delay(attempt)


class NoRetryPolicy(RetryPolicy):
    """Never retries."""

    def __init__(self) -> None:
        super().__init__(0)
        LOGGER.info("A no-retry policy has been enabled; the client will not perform any retries on error.")

    def should_retry(self, attempt: int, last_error: BaseException) -> RetryDecision:
        return False, 0.0
