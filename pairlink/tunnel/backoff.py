# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2025 Pairlink
#
# This file is part of Pairlink.
#
# Pairlink is free software: you can redistribute it and/or modify it under
# the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# Pairlink is distributed in the hope that it will be useful, but WITHOUT
# ANY WARRANTY; without even the implied warranty of MERCHANTABILITY
# or FITNESS FOR A PARTICULAR PURPOSE. See the GNU Affero General
# Public License for more details.

"""Retry pacing shared by signaling reconnect, ICE restart and retransmission."""

import random
from collections import deque
from dataclasses import dataclass, field


@dataclass
class Backoff:
    """Exponential backoff: ``min(base_delay * 2**n, max_delay)`` minus jitter.

    Args:
        base_delay: Delay before the first retry
        max_delay: Ceiling for any single delay
        max_attempts: Retry budget, or None for unbounded
        jitter: Fraction of the delay taken off at random (0.2 = up to -20%)
    """

    base_delay: float
    max_delay: float
    max_attempts: int | None = None
    jitter: float = 0.0
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        """True once the retry budget has been spent."""
        return self.max_attempts is not None and self.attempts >= self.max_attempts

    def peek(self) -> float:
        """Delay the next call to next_delay() would return, without jitter."""
        return min(self.base_delay * (2**self.attempts), self.max_delay)

    def next_delay(self) -> float:
        """Consume one attempt and return how long to wait before it.

        Returns:
            Delay in seconds

        Raises:
            RuntimeError: If the retry budget is exhausted
        """
        if self.exhausted:
            raise RuntimeError(f"Backoff exhausted after {self.attempts} attempts")

        delay = self.peek()
        if self.jitter > 0:
            delay *= 1 - self.jitter * random.random()
        self.attempts += 1
        return delay

    def reset(self) -> None:
        """Start over from base_delay."""
        self.attempts = 0


@dataclass
class AttemptWindow:
    """Rate limiter: a minimum spacing between attempts and a per-window ceiling.

    Args:
        cooldown: Minimum seconds between two granted attempts
        window: Length of the sliding window in seconds
        max_attempts: Attempts granted per window
    """

    cooldown: float
    window: float
    max_attempts: int
    _granted: deque[float] = field(default_factory=deque, init=False, repr=False)

    def remaining(self, now: float) -> int:
        """Attempts still available in the window ending at ``now``."""
        self._expire(now)
        return max(self.max_attempts - len(self._granted), 0)

    def try_acquire(self, now: float) -> bool:
        """Grant an attempt at time ``now`` if cooldown and ceiling allow it.

        Args:
            now: Monotonic timestamp in seconds

        Returns:
            True if the attempt may proceed
        """
        self._expire(now)
        if self._granted and now - self._granted[-1] < self.cooldown:
            return False
        if len(self._granted) >= self.max_attempts:
            return False
        self._granted.append(now)
        return True

    def exhausted(self, now: float) -> bool:
        """True when the window ceiling has been reached."""
        return self.remaining(now) == 0

    def reset(self) -> None:
        self._granted.clear()

    def _expire(self, now: float) -> None:
        while self._granted and now - self._granted[0] >= self.window:
            self._granted.popleft()
