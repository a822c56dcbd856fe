"""
Holdings Verifier - Main Entry Point

Runs the verification service: durable queue worker, periodic status
logging and the HTTP status endpoint, until SIGTERM or Ctrl+C.

Usage:
    python main.py                         # Run the service
    python main.py --verify alice          # One-off check for any holding
    python main.py --verify alice --criterion WARFARE --force
    python main.py --status                # Show persisted queue stats
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import argparse
import asyncio
import logging
import signal
import sys

from verifier.config import LOGS_DIR, VerifierSettings
from verifier.dashboard import render_result, render_stats
from verifier.logging_setup import setup_logging
from verifier.orchestrator import VerificationOrchestrator
from verifier.status_endpoint import StatusServer
from verifier.storage import JsonFileStorage
from verifier.work_queue import status_counts

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Holdings verification service")
    parser.add_argument("--verify", metavar="SUBJECT", help="Verify a single subject and exit")
    parser.add_argument("--criterion", help="Token the subject must hold (default: any)")
    parser.add_argument("--force", action="store_true", help="Bypass the result cache")
    parser.add_argument("--status", action="store_true", help="Print persisted queue statistics")
    return parser.parse_args(argv)


async def run_once(settings: VerifierSettings, subject: str, criterion, force: bool) -> int:
    orchestrator = VerificationOrchestrator.from_settings(settings)
    orchestrator.start()
    try:
        result = await orchestrator.verify(subject, criterion, force_refresh=force)
    finally:
        await orchestrator.shutdown()
    render_result(subject, result)
    return 0 if result.verified else 1


async def run_service(settings: VerifierSettings) -> None:
    orchestrator = VerificationOrchestrator.from_settings(settings)
    status_server = StatusServer(orchestrator, settings.status_host, settings.status_port)

    stop_signal = asyncio.Event()

    def handle_stop():
        logger.info("🛑 Received stop signal. Initiating graceful shutdown...")
        stop_signal.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGTERM, handle_stop)
        loop.add_signal_handler(signal.SIGINT, handle_stop)

    try:
        orchestrator.start()
        await status_server.start()
        logger.info(
            "✅ Verification service running (%d identities, backpressure at %d)",
            len(orchestrator.identity_pool), orchestrator.max_queue_size,
        )
        await stop_signal.wait()
    finally:
        logger.info("🧹 Cleaning up resources...")
        await status_server.stop()
        await orchestrator.shutdown()


def main(argv=None) -> int:
    args = parse_args(argv)
    settings = VerifierSettings()
    setup_logging(settings.log_level, str(LOGS_DIR))

    if args.status:
        # Read-only: a running service may own the file
        items = JsonFileStorage(settings.queue_file).load()
        render_stats({"queue": status_counts(items)})
        return 0

    if args.verify:
        return asyncio.run(run_once(settings, args.verify, args.criterion, args.force))

    try:
        asyncio.run(run_service(settings))
    except KeyboardInterrupt:
        logger.info("👋 Stopping verifier (KeyboardInterrupt)...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
