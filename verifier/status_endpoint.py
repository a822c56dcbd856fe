"""HTTP status endpoint for the verification service.

Exposes orchestrator health for uptime monitors and the operations
dashboard.

Endpoints:
    GET /health -- 200 when the circuit breaker is closed, 503 when open.
    GET /stats  -- Full ``VerificationOrchestrator.stats()`` as JSON.
"""

import logging
import time
from typing import Optional

from aiohttp import web

from verifier.orchestrator import VerificationOrchestrator

logger = logging.getLogger(__name__)

ORCHESTRATOR_KEY = web.AppKey("orchestrator", VerificationOrchestrator)


async def handle_health(request: web.Request) -> web.Response:
    """Handle ``/health``."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    breaker = orchestrator.breaker.stats()
    body = {
        "status": "degraded" if breaker["open"] else "healthy",
        "timestamp": time.time(),
        "breaker": breaker,
    }
    return web.json_response(body, status=503 if breaker["open"] else 200)


async def handle_stats(request: web.Request) -> web.Response:
    """Handle ``/stats``."""
    orchestrator = request.app[ORCHESTRATOR_KEY]
    return web.json_response(orchestrator.stats())


def create_app(orchestrator: VerificationOrchestrator) -> web.Application:
    app = web.Application()
    app[ORCHESTRATOR_KEY] = orchestrator
    app.router.add_get("/health", handle_health)
    app.router.add_get("/stats", handle_stats)
    return app


class StatusServer:
    """Runs :func:`create_app` on the current event loop."""

    def __init__(
        self,
        orchestrator: VerificationOrchestrator,
        host: str = "127.0.0.1",
        port: int = 8080,
    ) -> None:
        self.orchestrator = orchestrator
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(create_app(self.orchestrator))
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Status endpoint listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
