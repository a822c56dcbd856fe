"""
Core package for the holdings verifier.

This package turns a slow, rate-limited holdings probe into a resilient
service: rotating outbound identities, a durable retry queue, a circuit
breaker, result caching and single-flight deduplication.

Submodules:
    config: Application settings (``VerifierSettings``) via Pydantic.
    identity_pool: Rotating proxy identities with per-identity cooldown.
    work_queue: Disk-persisted FIFO queue with per-item retry budget.
    storage: JSON file and in-memory backends for the work queue.
    circuit_breaker: Fail-fast breaker that heals after a timeout.
    metrics: Request counters and rolling latency window.
    orchestrator: ``VerificationOrchestrator`` public entry point.
    probe: Probe protocol and the ``aiohttp``-backed ``HttpProbe``.
    status_endpoint: ``/health`` and ``/stats`` over ``aiohttp.web``.
    dashboard: Rich table rendering of service statistics.
    logging_setup: Compressed rotating file + safe console logging.
    utils: Corruption-safe JSON read/write helpers.
"""
