"""Request counters and rolling latency window."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict

DEFAULT_LATENCY_WINDOW = 100


@dataclass
class VerificationMetrics:
    """Counters for verification requests.

    ``latencies_ms`` keeps only the most recent ``window`` samples, so
    the average tracks current behaviour rather than lifetime totals.
    """

    window: int = DEFAULT_LATENCY_WINDOW
    total_requests: int = 0
    successful: int = 0
    failed: int = 0
    latencies_ms: Deque[float] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.latencies_ms = deque(self.latencies_ms, maxlen=self.window)

    def record_request(self) -> None:
        self.total_requests += 1

    def record_success(self) -> None:
        self.successful += 1

    def record_failure(self) -> None:
        self.failed += 1

    def record_latency(self, latency_ms: float) -> None:
        self.latencies_ms.append(latency_ms)

    @property
    def avg_latency_ms(self) -> float:
        if not self.latencies_ms:
            return 0.0
        return sum(self.latencies_ms) / len(self.latencies_ms)

    @property
    def success_rate(self) -> float:
        """Successful requests as a percentage of all requests."""
        if self.total_requests == 0:
            return 0.0
        return (self.successful / self.total_requests) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total_requests,
            "success": self.successful,
            "failure": self.failed,
            "success_rate": round(self.success_rate, 2),
            "avg_latency_ms": round(self.avg_latency_ms),
        }
