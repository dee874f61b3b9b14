# paas_engine/run_retry_worker.py
"""Maintenance worker - retries, stalled jobs, stale nodes and expired caches."""

import logging
import signal
import sys
import threading

from paas_engine.bootstrap import create_container, setup_logging
from paas_engine.container import Container

setup_logging()
logger = logging.getLogger(__name__)

# Cache cleanup runs every Nth cycle
CACHE_CLEANUP_EVERY = 60


class RetryWorker:
    """
    Separate process that, every poll interval:
    - promotes delayed jobs whose backoff elapsed
    - returns stalled jobs to the queue
    - marks nodes without heartbeats offline
    and periodically removes expired build caches.
    """

    def __init__(self, container: Container):
        self.container = container
        self.poll_interval = container.settings.retry_poll_interval_seconds
        self._stop_event = threading.Event()
        self._cycles = 0

    def start(self):
        logger.info("=" * 80)
        logger.info("🔄 RETRY WORKER STARTED")
        logger.info("=" * 80)
        logger.info(f"Poll interval: {self.poll_interval}s")
        logger.info(f"Stale node threshold: {self.container.settings.node_stale_threshold_minutes} min")
        logger.info("Press Ctrl+C to stop")
        logger.info("=" * 80)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Error in retry cycle: {e}", exc_info=True)
            self._stop_event.wait(self.poll_interval)

        logger.info("Retry Worker stopped")

    def stop(self):
        self._stop_event.set()

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        self.stop()

    def run_cycle(self):
        self._cycles += 1
        self.container.retry_service.process_retries()
        self.container.node_registry.mark_stale_nodes(self.container.settings.node_stale_threshold_minutes)

        if self._cycles % CACHE_CLEANUP_EVERY == 0:
            self.container.build_cache.cleanup_expired()


def main():
    try:
        RetryWorker(create_container()).start()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
