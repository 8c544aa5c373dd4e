# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exponential backoff policy used to space out delivery retries."""

from __future__ import annotations

import random
from typing import Optional, Tuple

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 60.0  # 1min
DEFAULT_MAX_DELAY = 3600.0  # 1h
DEFAULT_JITTER = 0.0


class BackoffPolicy:
    """Map an attempt count to a wait duration and a give-up decision.

    ``delay(n) = min(base_delay * 2 ** (n - 1), max_delay)`` where ``n`` is
    the number of attempts already made (``n >= 1``). When ``jitter`` is
    non zero the delay is moved by a random offset of at most
    ``jitter * delay`` in either direction, never leaving ``(0, max_delay]``.
    """

    def __init__(
        self,
        *,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        jitter: float = DEFAULT_JITTER,
        rng: Optional[random.Random] = None,
    ):
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in the [0, 1) range")
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self.max_attempts = int(max_attempts)
        self.jitter = float(jitter)
        self._rng = rng or random.Random()

    def base(self, attempt_count: int) -> float:
        """Return the un-jittered delay after ``attempt_count`` attempts."""
        n = max(1, int(attempt_count))
        # Past this exponent the product is always above any sane max_delay.
        if n > 64:
            return self.max_delay
        return min(self.base_delay * 2 ** (n - 1), self.max_delay)

    def delay(self, attempt_count: int) -> float:
        """Return the wait before the next attempt, jitter included."""
        value = self.base(attempt_count)
        if self.jitter:
            value += self._rng.uniform(-self.jitter, self.jitter) * value
        return min(max(value, self.base_delay * (1 - self.jitter)), self.max_delay)

    def should_give_up(self, attempt_count: int) -> bool:
        """``True`` once ``attempt_count`` attempts exhaust the budget."""
        return attempt_count >= self.max_attempts

    def plan(self, attempt_count: int) -> Tuple[float, bool]:
        """Return ``(delay, give_up)`` for a job that made ``attempt_count`` attempts."""
        return self.delay(attempt_count), self.should_give_up(attempt_count)

    def __repr__(self) -> str:
        return (
            f"BackoffPolicy(base_delay={self.base_delay}, max_delay={self.max_delay}, "
            f"max_attempts={self.max_attempts}, jitter={self.jitter})"
        )
