"""Certificate worker entry point."""

import os
import signal
import sys
import threading

from .bootstrap import build_components, build_generator
from .config import load_settings
from .domain.errors import ConfigError, TransientBrokerError
from .infra.logger import StructLogger, setup_logging
from .infra.xray import setup_xray
from .service.worker_pool import WorkerPool


def main() -> int:
    """Run the worker pool until SIGINT or SIGTERM."""
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = StructLogger("cert-worker")
    logger.info("Starting cert-worker...")

    try:
        settings = load_settings(logger)
    except ConfigError as e:
        logger.error("Invalid configuration", error=str(e))
        return 1

    setup_xray("cert-worker", settings.xray_enabled)

    shutdown = threading.Event()

    def signal_handler(sig, frame):
        logger.info("Received shutdown signal, shutting down gracefully...", signal=sig)
        shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    components = build_components(settings, logger)
    broker = components.broker
    pool = WorkerPool(
        broker=broker,
        generator=build_generator(settings, components.session_factory, logger),
        status_store=components.status_store,
        metrics_client=components.metrics_client,
        logger=logger,
        concurrency=settings.concurrency,
    )

    try:
        broker.init()
    except TransientBrokerError as e:
        logger.warning("Job broker unreachable at startup, reconnecting", error=str(e))
        if not broker.reconnect(stop=shutdown):
            logger.info("cert-worker stopped before the broker became available")
            return 0

    pool.start()
    logger.info(
        "cert-worker started",
        concurrency=settings.concurrency,
        table_name=settings.jobs_table,
    )

    while not shutdown.wait(1.0):
        pass

    drained = pool.stop(timeout=settings.shutdown_timeout_seconds)
    broker.close()
    logger.info("cert-worker stopped", drained=drained)
    return 0


if __name__ == "__main__":
    sys.exit(main())
