"""
Entry point for running the delivery pipeline outside the API process.

Usage:
    # Run poller, consumer loop and recovery sweep until interrupted
    python -m outbound

    # Run a single component once and exit, for manual runs. Poll ticks must
    # never overlap, so do not schedule `--once poll` from cron; the
    # long-running mode above serializes ticks itself.
    python -m outbound --once poll
    python -m outbound --once consume
    python -m outbound --once recover

    # Expose Prometheus metrics for the workers
    python -m outbound --metrics-port 9100
"""

import argparse
import logging
import signal
import threading

from prometheus_client import start_http_server

from outbound.config import settings
from outbound.logging_utils import setup_logging
from outbound.storage import SessionLocal, init_db
from outbound.worker import PipelineRunner

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the outbound message delivery pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--once",
        choices=["poll", "consume", "recover"],
        default=None,
        help="Run one component once and exit",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Serve Prometheus metrics on this port",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: LOG_LEVEL setting)",
    )
    return parser.parse_args()


def run_once(runner: PipelineRunner, component: str) -> None:
    if component == "poll":
        result = runner.poller.tick()
        logger.info(f"Poll finished: {result}")
    elif component == "consume":
        handled = runner.consumer_loop.drain()
        logger.info(f"Consumed {handled} task(s)")
    else:
        result = runner.recover()
        logger.info(f"Recovery finished: {result}")
    runner.provider.close()


def main() -> None:
    args = parse_args()
    setup_logging(args.log_level or settings.LOG_LEVEL)
    init_db()

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info(f"Metrics server listening on port {args.metrics_port}")

    runner = PipelineRunner(settings, SessionLocal)

    if args.once:
        run_once(runner, args.once)
        return

    shutdown = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    runner.start()
    shutdown.wait()
    runner.stop()


if __name__ == "__main__":
    main()
