# paas_engine/run_queue_worker.py
"""Run the queue worker: deploy, lifecycle and billing jobs."""

import logging
import signal
import threading

from paas_engine.bootstrap import create_container, setup_logging
from paas_engine.executor.config import ExecutorConfig
from paas_engine.executor.executor import JobExecutor

setup_logging()
logger = logging.getLogger(__name__)


def main():
    container = create_container()
    settings = container.settings

    executor = JobExecutor(
        config=ExecutorConfig(
            worker_id=settings.executor_id,
            poll_interval_seconds=settings.claim_poll_interval_seconds,
            max_slots=settings.executor_max_slots,
        ),
        queue=container.queue,
        handlers=container.handlers,
    )

    stop_event = threading.Event()

    def signal_handler(sig, frame):
        """Handle Ctrl+C gracefully."""
        logger.info("🛑 Shutting down queue worker...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("=" * 80)
    logger.info("🚀 PAAS QUEUE WORKER")
    logger.info("=" * 80)
    logger.info(f"Worker ID: {executor.executor_id}")
    logger.info(f"Handlers: {', '.join(container.handlers.names())}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 80)

    executor.start()
    stop_event.wait()
    executor.stop()
    logger.info("Queue worker stopped")


if __name__ == "__main__":
    main()
