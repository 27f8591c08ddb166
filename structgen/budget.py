"""
Deadline tracking for one generation request.

A single absolute deadline is fixed when the request is created. Every
outbound call asks the budget for a timeout so that no one attempt can push
the request past that deadline; a small safety margin is held back so the
final classification/response step still has time to run.
"""

from __future__ import annotations

import time
from collections.abc import Callable

Clock = Callable[[], float]


class BudgetManager:
    """Remaining-time bookkeeping against a fixed monotonic deadline."""

    def __init__(
        self,
        deadline: float,
        safety_margin: float = 0.25,
        clock: Clock = time.monotonic,
    ) -> None:
        self._deadline = deadline
        self._safety_margin = max(0.0, safety_margin)
        self._clock = clock
        self._created_at = clock()
        self._lowest_remaining = max(0.0, deadline - self._created_at)
        self._expired = self._lowest_remaining <= 0.0

    @classmethod
    def from_timeout(
        cls,
        timeout: float,
        safety_margin: float = 0.25,
        clock: Clock = time.monotonic,
    ) -> BudgetManager:
        return cls(clock() + timeout, safety_margin=safety_margin, clock=clock)

    @property
    def deadline(self) -> float:
        return self._deadline

    @property
    def safety_margin(self) -> float:
        return self._safety_margin

    def remaining(self) -> float:
        """Seconds left before the deadline; never increases between calls."""
        current = max(0.0, self._deadline - self._clock())
        if current < self._lowest_remaining:
            self._lowest_remaining = current
        if self._lowest_remaining <= 0.0:
            self._expired = True
        return self._lowest_remaining

    def allocate(self, ceiling: float, floor: float) -> float:
        """Timeout for the next call: clamp(remaining - margin, floor, ceiling)."""
        available = self.remaining() - self._safety_margin
        return max(floor, min(ceiling, available))

    def expired(self) -> bool:
        if not self._expired:
            self.remaining()
        return self._expired

    def elapsed(self) -> float:
        return self._clock() - self._created_at
