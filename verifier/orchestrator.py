"""Verification orchestration engine.

:class:`VerificationOrchestrator` is the single entry point callers use
to ask "does this subject hold this token?".  It wraps a slow,
rate-limited probe with:

* Circuit-breaker fail-fast when the system is overloaded.
* Backpressure: rejects new work when the durable queue is oversubscribed.
* A result cache with a fixed TTL (bypassable per call).
* Single-flight deduplication: concurrent identical requests share one
  probe execution and receive the identical result.
* Durable, serialised execution through :class:`DurableWorkQueue`.
* Identity rotation via :class:`IdentityPool`.
* Request counters and a rolling latency average.

``verify`` is total: every path returns a :class:`VerificationResult`,
never an exception.

Concurrency:
    All state lives on one asyncio event loop.  The cache lookup, the
    pending-request lookup and the pending-request insert in ``verify``
    happen without an intervening ``await``, so they are atomic with
    respect to other callers.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from verifier.circuit_breaker import CircuitBreaker
from verifier.config import VerifierSettings
from verifier.identity_pool import IdentityPool
from verifier.metrics import VerificationMetrics
from verifier.models import ResultCode, VerificationResult
from verifier.probe import HttpProbe, Probe
from verifier.storage import JsonFileStorage, QueueStorage
from verifier.work_queue import DurableWorkQueue

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_STATUS_LOG_INTERVAL = 30.0

OVERLOADED_REASON = "System overloaded - verification temporarily disabled"
QUEUE_FULL_REASON = "Verification queue overloaded - try again later"
SHUTDOWN_REASON = "Verification service shutting down"

RequestKey = Tuple[str, Optional[str]]


@dataclass
class CacheEntry:
    result: VerificationResult
    timestamp: float


class VerificationOrchestrator:
    """
    Coordinates cache, dedup, queue, breaker, identities and probe.

    The orchestrator registers :meth:`execute` as the queue handler, so
    every queued request is eventually run by the queue's single worker.
    """

    def __init__(
        self,
        identity_pool: IdentityPool,
        queue: DurableWorkQueue,
        probe: Probe,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[VerificationMetrics] = None,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        max_queue_size: Optional[int] = None,
        verify_timeout: Optional[float] = None,
        status_log_interval: float = DEFAULT_STATUS_LOG_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the orchestrator and register it with the queue.

        Args:
            identity_pool: Source of outbound identities.
            queue: Durable queue that serialises probe executions.
            probe: External holdings check.
            breaker: Circuit breaker (default: 10 failures, 60s reset).
            metrics: Metrics container (default: 100-sample window).
            cache_ttl: Seconds a cached result stays fresh.
            max_queue_size: Pending-item threshold for backpressure
                (default: twice the identity count).
            verify_timeout: Default caller wait limit in seconds
                (``None`` waits for the shared result).
            status_log_interval: Seconds between status log lines.
            clock: Wall-clock source (epoch seconds).
        """
        self.identity_pool = identity_pool
        self.queue = queue
        self.probe = probe
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self.metrics = metrics or VerificationMetrics()
        self.cache_ttl = cache_ttl
        self.max_queue_size = (
            max_queue_size if max_queue_size is not None else 2 * len(identity_pool)
        )
        self.verify_timeout = verify_timeout
        self.status_log_interval = status_log_interval
        self._clock = clock

        self._cache: Dict[RequestKey, CacheEntry] = {}
        self._pending: Dict[RequestKey, asyncio.Future] = {}
        self._status_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._closed = False

        self.queue.set_handler(self.execute)
        self.queue.set_failure_callback(self._on_item_failed)

    @classmethod
    def from_settings(
        cls,
        settings: VerifierSettings,
        probe: Optional[Probe] = None,
        storage: Optional[QueueStorage] = None,
    ) -> "VerificationOrchestrator":
        """Wire a complete orchestrator from settings.

        Args:
            settings: Loaded configuration.
            probe: Probe to use (default: :class:`HttpProbe` from settings).
            storage: Queue storage (default: JSON file at
                ``settings.queue_file``).
        """
        pool = IdentityPool.from_file(
            settings.proxies_file, settings.identity_cooldown_seconds,
        )
        queue = DurableWorkQueue(
            storage or JsonFileStorage(settings.queue_file),
            max_attempts=settings.queue_max_attempts,
            tick_interval=settings.queue_tick_interval_seconds,
            retention_seconds=settings.queue_retention_seconds,
            cleanup_interval=settings.queue_cleanup_interval_seconds,
        )
        if probe is None:
            probe = HttpProbe(
                settings.probe_url_template, settings.probe_timeout_seconds,
            )
        return cls(
            pool,
            queue,
            probe,
            breaker=CircuitBreaker(
                settings.breaker_max_failures,
                settings.breaker_reset_timeout_seconds,
            ),
            metrics=VerificationMetrics(window=settings.latency_window),
            cache_ttl=settings.cache_ttl_seconds,
            max_queue_size=settings.resolved_max_queue_size(len(pool)),
            verify_timeout=settings.verify_timeout_seconds,
            status_log_interval=settings.status_log_interval_seconds,
        )

    @staticmethod
    def cache_key(subject: str, criterion: Optional[str]) -> RequestKey:
        # An empty criterion means "any holding", same as None
        return (subject, criterion or None)

    @staticmethod
    def _label(key: RequestKey) -> str:
        subject, criterion = key
        return f"{subject} [{criterion or 'any'}]"

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def verify(
        self,
        subject: str,
        criterion: Optional[str] = None,
        force_refresh: bool = False,
        timeout: Optional[float] = None,
    ) -> VerificationResult:
        """Verify that *subject* satisfies *criterion*.

        Args:
            subject: Identifier of the user being checked.
            criterion: Token to check for, or ``None`` for any holding.
            force_refresh: Skip the cache read.  The fresh result is
                still written to the cache.
            timeout: Seconds to wait for the shared result; overrides
                the orchestrator default.  Expiry only affects this
                caller.

        Returns:
            The verification result.  Overload, timeout and failure
            cases are encoded in ``result.code``.
        """
        self.metrics.record_request()

        if self._closed:
            logger.warning("Service shut down - rejecting verification for %s", subject)
            self.metrics.record_failure()
            return VerificationResult.failure(ResultCode.OVERLOADED, SHUTDOWN_REASON)

        if self.breaker.is_open():
            logger.warning("Circuit breaker OPEN - rejecting verification for %s", subject)
            self.metrics.record_failure()
            return VerificationResult.failure(ResultCode.OVERLOADED, OVERLOADED_REASON)

        pending_count = self.queue.pending_count()
        if pending_count > self.max_queue_size:
            logger.warning(
                "Queue overloaded (%d/%d) - rejecting verification for %s",
                pending_count, self.max_queue_size, subject,
            )
            self.breaker.record_failure()
            self.metrics.record_failure()
            return VerificationResult.failure(ResultCode.QUEUE_FULL, QUEUE_FULL_REASON)

        key = self.cache_key(subject, criterion)

        if force_refresh:
            logger.info("Force refresh requested for %s - bypassing cache", subject)
        else:
            entry = self._cache.get(key)
            if entry is not None and self._clock() - entry.timestamp < self.cache_ttl:
                logger.debug("Using cached result for %s", self._label(key))
                return entry.result

        future = self._pending.get(key)
        if future is not None:
            logger.info("Waiting for existing verification request: %s", self._label(key))
        else:
            future = asyncio.get_running_loop().create_future()
            self._pending[key] = future
            item_id = self.queue.enqueue({"subject": subject, "criterion": key[1]})
            logger.info(
                "Queued verification request for %s (queue id: %s)",
                self._label(key), item_id,
            )

        return await self._wait(future, timeout if timeout is not None else self.verify_timeout)

    async def _wait(
        self, future: asyncio.Future, timeout: Optional[float],
    ) -> VerificationResult:
        # Shielded so a cancelled or timed-out caller never cancels the
        # future other callers share.
        try:
            if timeout is None:
                return await asyncio.shield(future)
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            self.metrics.record_failure()
            return VerificationResult.failure(
                ResultCode.TIMEOUT,
                f"Verification still in progress after {timeout:.0f}s",
            )

    # ------------------------------------------------------------------
    # Execution (queue handler)
    # ------------------------------------------------------------------

    def _resolve(self, key: RequestKey, result: VerificationResult) -> None:
        """Single resolution point: drop the pending entry, then settle it."""
        future = self._pending.pop(key, None)
        if future is not None and not future.done():
            future.set_result(result)

    async def execute(self, payload: Dict[str, Any]) -> bool:
        """Run one queued verification.

        Probe failures become a failed result for the waiters and still
        return ``True``: they are answers, not queue retries.  Anything
        raised outside the probe call propagates so the queue retries.
        """
        subject = payload["subject"]
        criterion = payload.get("criterion")
        key = self.cache_key(subject, criterion)
        started = time.perf_counter()

        try:
            identity = self.identity_pool.acquire()
            raw = await self.probe.check(subject, criterion, identity)
            result = (
                raw if isinstance(raw, VerificationResult)
                else VerificationResult.from_dict(raw)
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.metrics.record_latency(elapsed_ms)
            self.metrics.record_failure()
            self.breaker.record_failure()
            logger.warning(
                "Verification failed for %s: %s (%dms)", self._label(key), e, elapsed_ms,
            )
            self._resolve(key, VerificationResult.failure(
                ResultCode.PROBE_FAILED, f"Verification failed: {e}",
            ))
            return True

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.metrics.record_latency(elapsed_ms)
        self.metrics.record_success()
        self.breaker.record_success()
        self._cache[key] = CacheEntry(result, self._clock())
        self._resolve(key, result)
        logger.info(
            "Verification completed for %s: %s (%dms)",
            self._label(key), "PASSED" if result.verified else "FAILED", elapsed_ms,
        )
        return True

    def _on_item_failed(self, payload: Dict[str, Any], error: Optional[str]) -> None:
        key = self.cache_key(payload["subject"], payload.get("criterion"))
        self.metrics.record_failure()
        self._resolve(key, VerificationResult.failure(
            ResultCode.RETRY_EXHAUSTED,
            f"Verification could not be processed: {error}",
        ))

    # ------------------------------------------------------------------
    # Maintenance & introspection
    # ------------------------------------------------------------------

    def clear_expired_cache(self) -> int:
        """Drop cache entries older than the TTL.  Returns count removed."""
        now = self._clock()
        expired = [
            key for key, entry in self._cache.items()
            if now - entry.timestamp >= self.cache_ttl
        ]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        """Read-only snapshot for dashboards and the status endpoint."""
        return {
            "queue": self.queue.stats(),
            "identities": self.identity_pool.stats(),
            "breaker": self.breaker.stats(),
            "metrics": self.metrics.to_dict(),
            "cache": {
                "size": len(self._cache),
                "pending": len(self._pending),
            },
        }

    def log_status(self) -> None:
        queue_stats = self.queue.stats()
        if queue_stats["pending"] or queue_stats["processing"]:
            identity_stats = self.identity_pool.stats()
            logger.info(
                "Queue: %d pending, %d processing | Identities: %d/%d available",
                queue_stats["pending"], queue_stats["processing"],
                identity_stats["available"], identity_stats["total"],
            )

    async def _status_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.status_log_interval,
                )
                break
            except asyncio.TimeoutError:
                pass
            self.clear_expired_cache()
            self.log_status()

    def start(self) -> None:
        """Start the queue ticker and the periodic status loop."""
        self._closed = False
        self.queue.start()
        if self._status_task is None or self._status_task.done():
            self._stop_event = asyncio.Event()
            self._status_task = asyncio.get_running_loop().create_task(self._status_loop())
        logger.info("Verification orchestrator started")

    async def shutdown(self) -> None:
        """Stop background work and release waiters.

        The in-flight execution, if any, finishes first.  Requests still
        queued stay persisted for the next run; their current waiters
        are released with an overload result.
        New ``verify`` calls are rejected the same way until :meth:`start`.
        """
        logger.info("Shutting down verification service...")
        self._closed = True
        self.queue.stop()
        self._stop_event.set()
        await self.queue.join()
        if self._status_task is not None:
            await self._status_task
            self._status_task = None

        for key in list(self._pending):
            self._resolve(key, VerificationResult.failure(
                ResultCode.OVERLOADED, SHUTDOWN_REASON,
            ))

        close = getattr(self.probe, "close", None)
        if close is not None:
            outcome = close()
            if inspect.isawaitable(outcome):
                await outcome
