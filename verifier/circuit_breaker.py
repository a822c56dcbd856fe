"""Circuit breaker for overload protection.

States::

    CLOSED --(failure_count >= max_failures)--> OPEN
    OPEN   --(first check after open_until)---> CLOSED (count reset)

Successes heal gradually: each one takes one off the failure count, so
isolated failures interleaved with successes never open the breaker.
State is in-memory only and starts closed on every process start.
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"


class CircuitBreaker:
    """Count-based breaker with a fixed reset timeout."""

    def __init__(
        self,
        max_failures: int = 10,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self._clock = clock

        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.open_until = 0.0
        self.last_failure_at: Optional[float] = None

    def _trip(self, now: float) -> None:
        self.state = BreakerState.OPEN
        self.open_until = now + self.reset_timeout
        logger.warning(
            "Circuit breaker OPENED after %d failures (reset in %.0fs)",
            self.failure_count, self.reset_timeout,
        )

    def is_open(self) -> bool:
        """Return ``True`` if requests must fail fast right now.

        Applies pending transitions: an expired open window closes the
        breaker, and a closed breaker at the threshold opens.
        """
        now = self._clock()
        if self.state is BreakerState.OPEN:
            if now > self.open_until:
                self.state = BreakerState.CLOSED
                self.failure_count = 0
                logger.info("Circuit breaker RESET - allowing requests again")
                return False
            return True

        if self.failure_count >= self.max_failures:
            self._trip(now)
            return True
        return False

    def record_success(self) -> None:
        self.success_count += 1
        if self.failure_count > 0:
            self.failure_count -= 1

    def record_failure(self) -> None:
        now = self._clock()
        self.failure_count += 1
        self.last_failure_at = now
        if self.state is BreakerState.CLOSED and self.failure_count >= self.max_failures:
            self._trip(now)

    def stats(self) -> Dict[str, Any]:
        """Read-only snapshot.  An expired open window reports as closed."""
        is_open = (
            self.state is BreakerState.OPEN and self._clock() <= self.open_until
        )
        return {
            "open": is_open,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "open_until": self.open_until if is_open else None,
        }
