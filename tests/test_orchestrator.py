import asyncio
import contextlib
from unittest.mock import AsyncMock, patch

import pytest

from helpers import wait_until
from verifier.circuit_breaker import CircuitBreaker
from verifier.config import VerifierSettings
from verifier.exceptions import ProbeError
from verifier.identity_pool import Identity, IdentityPool
from verifier.models import ResultCode, VerificationResult
from verifier.orchestrator import VerificationOrchestrator
from verifier.storage import MemoryStorage
from verifier.work_queue import DurableWorkQueue, ItemStatus, WorkItem


class FakeProbe:
    """Probe double that records calls."""

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result or VerificationResult(
            verified=True, reason="holds TOK", has_tokens=True, details={"holdings": 1},
        )
        self.error = error
        self.delay = delay
        self.calls = []

    async def check(self, subject, criterion, identity):
        self.calls.append((subject, criterion, identity.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


@contextlib.asynccontextmanager
async def running(orchestrator):
    orchestrator.start()
    try:
        yield orchestrator
    finally:
        await orchestrator.shutdown()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def storage():
    return MemoryStorage()


def build(probe, storage, clock, max_failures=10, **kwargs):
    pool = IdentityPool(
        [Identity(host=f"10.0.0.{i}", port=8000, username="u", password="p") for i in range(3)],
        cooldown_seconds=0,
        clock=clock,
    )
    queue = DurableWorkQueue(storage, tick_interval=0.005, clock=clock)
    return VerificationOrchestrator(
        pool,
        queue,
        probe,
        breaker=CircuitBreaker(max_failures=max_failures, reset_timeout=60, clock=clock),
        clock=clock,
        **kwargs,
    )


@pytest.fixture
def orchestrator(probe, storage, clock):
    return build(probe, storage, clock)


class TestVerify:
    """End-to-end verification through the queue."""

    @pytest.mark.asyncio
    async def test_verify_returns_probe_result(self, orchestrator, probe):
        async with running(orchestrator):
            result = await orchestrator.verify("alice", "TOK")

        assert result is probe.result
        assert probe.calls == [("alice", "TOK", "http://10.0.0.0:8000#u")]
        assert orchestrator.queue.stats()["completed"] == 1
        assert orchestrator.stats()["cache"] == {"size": 1, "pending": 0}

    @pytest.mark.asyncio
    async def test_single_flight(self, orchestrator, probe):
        probe.delay = 0.05
        async with running(orchestrator):
            results = await asyncio.gather(
                *[orchestrator.verify("alice", "TOK") for _ in range(10)]
            )

        assert len(probe.calls) == 1
        assert all(r is results[0] for r in results)
        assert orchestrator.queue.stats()["total"] == 1

    @pytest.mark.asyncio
    async def test_different_criteria_do_not_share(self, orchestrator, probe):
        async with running(orchestrator):
            await asyncio.gather(
                orchestrator.verify("alice", "TOK"),
                orchestrator.verify("alice", None),
            )

        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_keys_do_not_collide(self, orchestrator, probe):
        async with running(orchestrator):
            await asyncio.gather(
                orchestrator.verify("alice", None),
                orchestrator.verify("alice", "any"),
                orchestrator.verify("a:b", None),
                orchestrator.verify("a", "b:any"),
            )

        assert [(subject, criterion) for subject, criterion, _ in probe.calls] == [
            ("alice", None), ("alice", "any"), ("a:b", None), ("a", "b:any"),
        ]

    @pytest.mark.asyncio
    async def test_empty_criterion_means_any(self, orchestrator, probe):
        async with running(orchestrator):
            await orchestrator.verify("alice", None)
            cached = await orchestrator.verify("alice", "")

        assert cached is probe.result
        assert len(probe.calls) == 1

    @pytest.mark.asyncio
    async def test_cache_ttl(self, orchestrator, probe, clock):
        async with running(orchestrator):
            first = await orchestrator.verify("alice", "TOK")
            clock.advance(299)
            cached = await orchestrator.verify("alice", "TOK")
            assert cached is first
            assert len(probe.calls) == 1

            clock.advance(2)
            await orchestrator.verify("alice", "TOK")

        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_and_updates_cache(self, orchestrator, probe):
        async with running(orchestrator):
            await orchestrator.verify("alice", "TOK")
            fresh = VerificationResult(verified=False, reason="sold", has_tokens=False)
            probe.result = fresh

            refreshed = await orchestrator.verify("alice", "TOK", force_refresh=True)
            afterwards = await orchestrator.verify("alice", "TOK")

        assert refreshed is fresh
        assert afterwards is fresh
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_force_refresh_joins_in_flight_request(self, orchestrator, probe):
        probe.delay = 0.05
        async with running(orchestrator):
            plain, forced = await asyncio.gather(
                orchestrator.verify("alice", "TOK"),
                orchestrator.verify("alice", "TOK", force_refresh=True),
            )

        assert plain is forced
        assert len(probe.calls) == 1

    @pytest.mark.asyncio
    async def test_probe_dict_result_is_accepted(self, orchestrator, probe):
        probe.result = {"verified": False, "reason": "below minimum", "hasTokens": False}
        async with running(orchestrator):
            result = await orchestrator.verify("alice")

        assert result.verified is False
        assert result.code is ResultCode.OK
        assert orchestrator.metrics.successful == 1


class TestFailures:
    """Probe failures, breaker, backpressure, timeouts."""

    @pytest.mark.asyncio
    async def test_probe_failure_becomes_result(self, orchestrator, probe):
        probe.error = ProbeError("target unreachable")
        async with running(orchestrator):
            result = await orchestrator.verify("alice", "TOK")

        assert result.verified is False
        assert result.code is ResultCode.PROBE_FAILED
        assert "target unreachable" in result.reason
        # Probe failures are answers, not queue retries
        assert len(probe.calls) == 1
        assert orchestrator.queue.stats()["completed"] == 1
        assert orchestrator.breaker.failure_count == 1
        assert orchestrator.metrics.failed == 1
        assert orchestrator.stats()["cache"] == {"size": 0, "pending": 0}

    @pytest.mark.asyncio
    async def test_breaker_opens_and_heals(self, probe, storage, clock):
        orchestrator = build(probe, storage, clock, max_failures=3)
        probe.error = ProbeError("HTTP 503 from holdings endpoint")

        async with running(orchestrator):
            for subject in ("a", "b", "c"):
                await orchestrator.verify(subject)
            assert orchestrator.breaker.stats()["open"]

            rejected = await orchestrator.verify("d")
            assert rejected.code is ResultCode.OVERLOADED
            assert rejected.is_rejection
            assert len(probe.calls) == 3
            assert orchestrator.queue.stats()["total"] == 3

            clock.advance(61)
            probe.error = None
            healed = await orchestrator.verify("d")

        assert healed.code is ResultCode.OK
        assert len(probe.calls) == 4
        assert not orchestrator.breaker.stats()["open"]

    @pytest.mark.asyncio
    async def test_breaker_rejection_does_not_count_as_breaker_failure(self, orchestrator):
        for _ in range(orchestrator.breaker.max_failures):
            orchestrator.breaker.record_failure()
        count = orchestrator.breaker.failure_count

        result = await orchestrator.verify("alice")

        assert result.code is ResultCode.OVERLOADED
        assert orchestrator.breaker.failure_count == count
        assert orchestrator.metrics.failed == 1
        assert orchestrator.metrics.total_requests == 1

    @pytest.mark.asyncio
    async def test_backpressure_rejects_without_enqueue(self, orchestrator, probe):
        with patch.object(
            orchestrator.queue, "pending_count", return_value=orchestrator.max_queue_size + 1,
        ):
            result = await orchestrator.verify("alice")

        assert result.code is ResultCode.QUEUE_FULL
        assert result.is_rejection
        assert orchestrator.queue.stats()["total"] == 0
        assert orchestrator.breaker.failure_count == 1
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_backpressure_threshold_is_exclusive(self, orchestrator, probe):
        with patch.object(
            orchestrator.queue, "pending_count", return_value=orchestrator.max_queue_size,
        ):
            async with running(orchestrator):
                result = await orchestrator.verify("alice")

        assert result.code is ResultCode.OK

    @pytest.mark.asyncio
    async def test_saturated_queue_rejects_new_subjects(self, orchestrator, probe):
        release = asyncio.Event()

        async def blocking_check(subject, criterion, identity):
            probe.calls.append(subject)
            await release.wait()
            return probe.result

        probe.check = blocking_check
        overflow = orchestrator.max_queue_size + 1

        async with running(orchestrator):
            busy = asyncio.ensure_future(orchestrator.verify("busy"))
            await wait_until(lambda: probe.calls == ["busy"])
            queued = [
                asyncio.ensure_future(orchestrator.verify(f"user{n}"))
                for n in range(overflow)
            ]
            await wait_until(lambda: orchestrator.queue.pending_count() == overflow)
            total = orchestrator.queue.stats()["total"]

            result = await orchestrator.verify("late")

            assert result.code is ResultCode.QUEUE_FULL
            assert orchestrator.queue.stats()["total"] == total
            assert "late" not in probe.calls

            release.set()
            await asyncio.gather(busy, *queued)

        assert len(probe.calls) == overflow + 1

    def test_default_max_queue_size_is_twice_pool(self, orchestrator):
        assert orchestrator.max_queue_size == 6

    @pytest.mark.asyncio
    async def test_caller_timeout_does_not_affect_other_waiters(self, orchestrator, probe):
        probe.delay = 0.2
        async with running(orchestrator):
            impatient, patient = await asyncio.gather(
                orchestrator.verify("alice", "TOK", timeout=0.02),
                orchestrator.verify("alice", "TOK"),
            )

        assert impatient.code is ResultCode.TIMEOUT
        assert patient is probe.result
        assert len(probe.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_exhaustion_releases_waiters(self, orchestrator):
        orchestrator.queue.set_handler(AsyncMock(side_effect=RuntimeError("disk full")))

        async with running(orchestrator):
            result = await orchestrator.verify("alice")

        assert result.code is ResultCode.RETRY_EXHAUSTED
        assert "disk full" in result.reason
        assert orchestrator.queue.stats()["failed"] == 1
        assert orchestrator.stats()["cache"]["pending"] == 0

    @pytest.mark.asyncio
    async def test_pending_key_released_after_failure(self, orchestrator, probe):
        probe.error = ProbeError("timeout")
        async with running(orchestrator):
            await orchestrator.verify("alice")
            probe.error = None
            second = await orchestrator.verify("alice")

        assert second.code is ResultCode.OK
        assert len(probe.calls) == 2


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_restart_resumes_persisted_work(self, probe, storage, clock):
        storage.items = [
            WorkItem(
                id="a",
                payload={"subject": "alice", "criterion": "TOK"},
                status=ItemStatus.PROCESSING,
            ).to_dict(),
        ]
        orchestrator = build(probe, storage, clock)

        async with running(orchestrator):
            await wait_until(lambda: orchestrator.queue.stats()["completed"] == 1)
            result = await orchestrator.verify("alice", "TOK")

        assert result is probe.result
        assert len(probe.calls) == 1

    @pytest.mark.asyncio
    async def test_shutdown_releases_queued_waiters(self, orchestrator, probe, storage):
        release = asyncio.Event()

        async def blocking_check(subject, criterion, identity):
            probe.calls.append(subject)
            await release.wait()
            return probe.result

        probe.check = blocking_check
        orchestrator.start()
        first = asyncio.ensure_future(orchestrator.verify("alice"))
        await wait_until(lambda: probe.calls == ["alice"])
        second = asyncio.ensure_future(orchestrator.verify("bob"))
        await asyncio.sleep(0)

        stopping = asyncio.ensure_future(orchestrator.shutdown())
        await asyncio.sleep(0.01)
        release.set()
        await stopping

        assert (await first) is probe.result
        bob = await second
        assert bob.code is ResultCode.OVERLOADED
        assert "shutting down" in bob.reason
        assert storage.items[-1]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_verify_after_shutdown_is_rejected(self, orchestrator, probe):
        async with running(orchestrator):
            await orchestrator.verify("alice")

        result = await orchestrator.verify("bob")

        assert result.code is ResultCode.OVERLOADED
        assert "shutting down" in result.reason
        assert not orchestrator.queue.is_running
        assert orchestrator.queue.stats()["total"] == 1
        assert len(probe.calls) == 1

    @pytest.mark.asyncio
    async def test_start_after_shutdown_accepts_work(self, orchestrator, probe):
        async with running(orchestrator):
            await orchestrator.verify("alice")

        async with running(orchestrator):
            result = await orchestrator.verify("bob")

        assert result.code is ResultCode.OK
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_clear_expired_cache(self, orchestrator, clock):
        async with running(orchestrator):
            await orchestrator.verify("alice")
            await orchestrator.verify("bob")

        clock.advance(301)
        assert orchestrator.clear_expired_cache() == 2
        assert orchestrator.stats()["cache"]["size"] == 0

    @pytest.mark.asyncio
    async def test_stats_shape(self, orchestrator):
        async with running(orchestrator):
            await orchestrator.verify("alice")

        stats = orchestrator.stats()

        assert set(stats) == {"queue", "identities", "breaker", "metrics", "cache"}
        assert stats["metrics"]["total"] == 1
        assert stats["metrics"]["success"] == 1
        assert stats["metrics"]["success_rate"] == 100.0
        assert stats["identities"]["total"] == 3
        assert stats["breaker"]["open"] is False

    def test_from_settings(self, tmp_path, probe):
        proxies = tmp_path / "proxies.txt"
        proxies.write_text("u:p@1.1.1.1:80\nu:p@2.2.2.2:80\n")
        settings = VerifierSettings(
            proxies_file=str(proxies),
            queue_file=str(tmp_path / "queue.json"),
            breaker_max_failures=4,
        )

        orchestrator = VerificationOrchestrator.from_settings(
            settings, probe=probe, storage=MemoryStorage(),
        )

        assert len(orchestrator.identity_pool) == 2
        assert orchestrator.max_queue_size == 4
        assert orchestrator.breaker.max_failures == 4
        assert orchestrator.probe is probe
