# paas_engine/executor/executor.py
"""Executor - claims queued jobs and runs their handlers."""

import logging
import threading
from typing import Dict
from uuid import UUID

from paas_engine.core.errors import LeaseError, NotFoundError, is_retryable
from paas_engine.core.models import Job
from paas_engine.core.service import JobQueue
from paas_engine.executor.config import ExecutorConfig
from paas_engine.executor.handlers import JobHandlerRegistry
from paas_engine.executor.slots import SlotManager

logger = logging.getLogger(__name__)


class JobExecutor:
    """
    Polls the configured queues, runs each claimed job in its own thread
    and renews the leases of running jobs every cycle.
    """

    def __init__(
        self,
        *,
        config: ExecutorConfig,
        queue: JobQueue,
        handlers: JobHandlerRegistry,
    ):
        self.config = config
        self.executor_id = config.worker_id
        self.queue = queue
        self.handlers = handlers
        self.poll_interval = config.poll_interval_seconds

        self.slots = SlotManager(config.max_slots)
        self._stop_event = threading.Event()
        self._thread = None

        # Running jobs: {job_id: thread}
        self._running: Dict[UUID, threading.Thread] = {}
        self._running_lock = threading.Lock()

    def start(self):
        logger.info(f"[executor {self.executor_id}] 🚀 Starting executor")
        logger.info(f"[executor] Queues: {', '.join(self.config.queue_names)}")
        logger.info(f"[executor] Max slots: {self.slots.total_slots()}")
        logger.info(f"[executor] Poll interval: {self.poll_interval}s")

        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 30.0):
        """Stop polling and wait for running jobs to finish."""
        logger.info(f"[executor {self.executor_id}] Stopping executor")
        self._stop_event.set()
        if self._thread:
            self._thread.join()

        with self._running_lock:
            threads = list(self._running.values())
        for thread in threads:
            thread.join(timeout=timeout)

    def _run_loop(self):
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"[executor] Error in main loop: {e}", exc_info=True)

            self._stop_event.wait(self.poll_interval)

    def run_cycle(self) -> int:
        """Renew leases, then claim as many jobs as there are free slots."""
        self._renew_running_leases()

        started = 0
        for queue_name in self.config.queue_names:
            while self.slots.has_free_slot() and not self._stop_event.is_set():
                job = self.queue.claim_next(queue_name, self.executor_id)
                if job is None:
                    break
                self._start_job(job)
                started += 1
        return started

    def _renew_running_leases(self):
        for job_id in self.slots.active_job_ids():
            try:
                self.queue.extend_lease(job_id, self.executor_id)
            except (LeaseError, NotFoundError):
                logger.warning(f"[executor] Lost lease for {job_id}")
            except Exception as e:
                logger.error(f"[executor] Error renewing lease for {job_id}: {e}")

    def _start_job(self, job: Job):
        slot = self.slots.reserve(job.job_id)
        if slot is None:
            # Claimed without a slot: hand it back through the retry path
            self.queue.fail(job.job_id, self.executor_id, "executor had no free slot", retryable=True)
            return

        thread = threading.Thread(
            target=self._execute_in_thread,
            args=(job,),
            daemon=True,
        )
        with self._running_lock:
            self._running[job.job_id] = thread
        thread.start()

        logger.info(f"[executor] ✅ Started {job.name} job {job.job_id} in slot {slot.slot_id}")

    def _execute_in_thread(self, job: Job):
        job_id = job.job_id
        try:
            logger.info(f"[executor] [{job_id}] Running {job.name}")

            try:
                handler = self.handlers.get(job.name)
                result = handler(job)
            except Exception as e:
                self._record_failure(job_id, e)
                return

            try:
                self.queue.ack(job_id, self.executor_id, result)
                logger.info(f"[executor] [{job_id}] ✅ Completed successfully")
            except Exception as ack_error:
                # Handler succeeded; an unacked job is redelivered once its lease expires
                logger.error(f"[executor] [{job_id}] Failed to ack: {ack_error}")

        finally:
            self.slots.release(job_id)
            with self._running_lock:
                self._running.pop(job_id, None)

    def _record_failure(self, job_id: UUID, error: Exception):
        retryable = is_retryable(error)
        logger.error(
            f"[executor] [{job_id}] ❌ Failed ({'retryable' if retryable else 'permanent'}): {error}",
            exc_info=True,
        )
        try:
            self.queue.fail(job_id, self.executor_id, str(error), retryable=retryable)
        except Exception as fail_error:
            logger.error(f"[executor] [{job_id}] Failed to mark as failed: {fail_error}")
