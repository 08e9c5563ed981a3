"""Sample host for the Librato backend: generates statsd-style metrics and flushes them."""

import argparse
import logging
import random
import signal
import sys
import threading
import time

from librato_backend.config import ConfigError, load_config
from librato_backend.flusher import Flusher
from librato_backend.models import MetricsSnapshot

SAMPLE_ENDPOINTS = ["login", "search", "checkout", "profile"]
SAMPLE_USERS = [f"user-{i}" for i in range(20)]


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="statsd Librato backend sample host")
    parser.add_argument("--config", type=str, default=None, help="statsd-style YAML config file")
    parser.add_argument("--api", type=str, default=None)
    parser.add_argument("--email", type=str, default=None)
    parser.add_argument("--token", type=str, default=None)
    parser.add_argument("--source", type=str, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--flush-interval", type=int, default=None, help="milliseconds")
    parser.add_argument("--run-time", type=int, default=60, help="seconds to run, 0 for forever")
    parser.add_argument("--debug", action="store_true", default=None)
    return parser.parse_args(argv)


def sample_snapshot() -> MetricsSnapshot:
    """Build one cycle of random metrics shaped like statsd's flush payload."""
    timers = {
        f"app.{endpoint}.latency": [random.uniform(5, 250) for _ in range(random.randint(0, 50))]
        for endpoint in SAMPLE_ENDPOINTS
    }
    return MetricsSnapshot(
        counters={
            f"app.{endpoint}.requests": random.randint(0, 100) for endpoint in SAMPLE_ENDPOINTS
        },
        gauges={"app.queue.depth": random.randint(0, 500)},
        sets={"app.active_users": set(random.sample(SAMPLE_USERS, random.randint(0, 10)))},
        timers=timers,
        pct_threshold=[90, 99],
    )


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    try:
        config = load_config(
            args.config,
            {
                "api": args.api,
                "email": args.email,
                "token": args.token,
                "source": args.source,
                "batch_size": args.batch_size,
                "flush_interval": args.flush_interval,
                "debug": args.debug,
            },
        )
        flusher = Flusher(config)
    except ConfigError as exc:
        logger.critical("%s", exc)
        return 1

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    interval = config.flush_interval / 1000
    deadline = time.monotonic() + args.run_time if args.run_time else None
    logger.info(
        "Flushing to %s every %.1fs as source=%s (batch_size=%d)",
        config.api,
        interval,
        config.source,
        config.batch_size,
    )

    try:
        while not shutdown_event.wait(timeout=interval):
            flusher.flush(int(time.time()), sample_snapshot())
            logger.info("Status: %s", flusher.status())
            if deadline is not None and time.monotonic() >= deadline:
                break
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        flusher.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
