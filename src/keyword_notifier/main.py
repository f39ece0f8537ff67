"""Application entry point: runs one ingestion loop per source until stopped."""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading

from keyword_notifier.config import load_config
from keyword_notifier.scheduler import IngestionScheduler, build_loops
from keyword_notifier.storage import init_db

logger = logging.getLogger("keyword_notifier")


def _setup_logging(log_level: str, log_format: str) -> None:
    """Configure root logger based on config."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps(
                {
                    "time": "%(asctime)s",
                    "level": "%(levelname)s",
                    "logger": "%(name)s",
                    "thread": "%(threadName)s",
                    "message": "%(message)s",
                }
            )
        )
    else:
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))


def main() -> int:
    """Load config, set up logging, and run the fetch loops until a stop signal.

    Returns the process exit status: 1 if any source ended up failed.
    """
    config = load_config()

    _setup_logging(config.log_level, config.log_format)

    enabled = [sc.source.value for sc in config.sources if sc.enabled]
    logger.info(
        "Keyword notifier starting (env=%s, db=%s, sources=%s)",
        config.app_env,
        config.database_path,
        ",".join(enabled) or "none",
    )

    init_db(config.database_path)

    scheduler = IngestionScheduler.from_config(config, build_loops(config))
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    while not stop.is_set() and not scheduler.all_failed.is_set():
        stop.wait(timeout=1.0)

    if scheduler.all_failed.is_set() and not stop.is_set():
        logger.error("Every source has failed; exiting")

    scheduler.shutdown()

    failed = scheduler.failed_sources
    if failed:
        logger.error("Stopped with failed sources: %s", ", ".join(sorted(failed)))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
