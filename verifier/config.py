"""Application configuration for the holdings verifier.

Central configuration module powered by Pydantic v2.  Settings are loaded
from environment variables (with ``.env`` file support).

Key exports:
    VerifierSettings: Root settings model (instantiate once in ``main.py``).
    BASE_DIR / CONFIG_DIR / LOGS_DIR: Canonical project paths.
"""

# pylint: disable=no-member

import logging
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Base Paths
# ---------------------------------------------------------------------------
BASE_DIR: Path = Path(__file__).parent.parent
"""Project root directory (parent of ``verifier/``)."""

CONFIG_DIR: Path = BASE_DIR / "config"
"""Directory containing runtime files (proxies, persisted queue)."""

LOGS_DIR: Path = BASE_DIR / "logs"
"""Directory for log output files."""

logger: logging.Logger = logging.getLogger(__name__)


class VerifierSettings(BaseSettings):
    """Root configuration model for the holdings verifier.

    All fields can be set via environment variables or a ``.env`` file.

    Section overview:
        * **Core** -- log level.
        * **Identities** -- proxy file and per-identity cooldown.
        * **Queue** -- persistence path, tick rate, retry budget,
          retention of completed items.
        * **Cache** -- result TTL.
        * **Circuit breaker** -- failure threshold, reset timeout and the
          backpressure threshold.
        * **Probe** -- endpoint template and timeout.
        * **Status** -- status endpoint bind address and log cadence.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    log_level: str = "INFO"

    # Identities
    # File containing 1 proxy per line (user:pass@host:port)
    proxies_file: str = str(CONFIG_DIR / "proxies.txt")
    # Slightly above the target's 75s per-IP window
    identity_cooldown_seconds: float = 76.0

    # Queue
    queue_file: str = str(CONFIG_DIR / "verification_queue.json")
    queue_tick_interval_seconds: float = 1.0
    queue_max_attempts: int = 3
    # Completed items are kept for inspection this long
    queue_retention_seconds: float = 3600.0
    queue_cleanup_interval_seconds: float = 300.0

    # Cache
    cache_ttl_seconds: float = 300.0

    # Circuit breaker / backpressure
    breaker_max_failures: int = 10
    breaker_reset_timeout_seconds: float = 60.0
    # Backpressure threshold = multiplier x identity count
    max_queue_multiplier: int = 2
    # Explicit override for the backpressure threshold
    max_queue_size: Optional[int] = None

    # Metrics
    latency_window: int = 100

    # Caller-side wait limit (None = wait for the shared result)
    verify_timeout_seconds: Optional[float] = None

    # Probe
    # Formatted with {subject} and {criterion}
    probe_url_template: str = Field(
        default="http://127.0.0.1:9000/holdings/{subject}?criterion={criterion}",
    )
    probe_timeout_seconds: float = 15.0

    # Status surface
    status_host: str = "127.0.0.1"
    status_port: int = 8080
    status_log_interval_seconds: float = 30.0

    def resolved_max_queue_size(self, pool_size: int) -> int:
        """Return the backpressure threshold for a pool of *pool_size*.

        Args:
            pool_size: Number of identities in the pool.

        Returns:
            ``max_queue_size`` if set, otherwise
            ``max_queue_multiplier * pool_size`` (at least 1).
        """
        if self.max_queue_size is not None:
            return self.max_queue_size
        return max(1, self.max_queue_multiplier * pool_size)
