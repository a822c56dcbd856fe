"""Result types returned by the verifier.

Callers always get a :class:`VerificationResult`; ``code`` tells a
negative answer (``OK`` with ``verified=False``) apart from the system
being unable to answer (everything else).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ResultCode(Enum):
    """Classification of a verification outcome.

    - OK: The probe completed; ``verified`` carries the answer.
    - PROBE_FAILED: The probe could not complete (network, target, shape).
    - OVERLOADED: Circuit breaker open; nothing was attempted.
    - QUEUE_FULL: Backpressure rejection; nothing was queued.
    - TIMEOUT: The caller's wait limit expired first.
    - RETRY_EXHAUSTED: The queue gave up on the request.
    """

    OK = "ok"
    PROBE_FAILED = "probe_failed"
    OVERLOADED = "overloaded"
    QUEUE_FULL = "queue_full"
    TIMEOUT = "timeout"
    RETRY_EXHAUSTED = "retry_exhausted"


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one holdings verification.

    Attributes:
        verified: Whether the subject satisfies the criterion.
        reason: Human-readable explanation.
        has_tokens: Whether the subject holds any qualifying balance.
        details: Probe-specific extra data (holdings list, counts).
        code: :class:`ResultCode` classification.
    """

    verified: bool
    reason: str
    has_tokens: bool = False
    details: Optional[Dict[str, Any]] = None
    code: ResultCode = ResultCode.OK

    @property
    def is_rejection(self) -> bool:
        """``True`` when the service refused the request due to load."""
        return self.code in (ResultCode.OVERLOADED, ResultCode.QUEUE_FULL)

    @classmethod
    def failure(cls, code: ResultCode, reason: str) -> "VerificationResult":
        return cls(verified=False, reason=reason, has_tokens=False, code=code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "reason": self.reason,
            "has_tokens": self.has_tokens,
            "details": self.details,
            "code": self.code.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationResult":
        """Build a result from a probe's dictionary response.

        Accepts ``has_tokens`` or ``hasTokens``.

        Raises:
            KeyError: If ``verified`` is missing.
        """
        has_tokens = data.get("has_tokens", data.get("hasTokens", False))
        return cls(
            verified=bool(data["verified"]),
            reason=str(data.get("reason", "")),
            has_tokens=bool(has_tokens),
            details=data.get("details"),
            code=ResultCode(data.get("code", ResultCode.OK.value)),
        )
