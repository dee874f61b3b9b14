# worker_agent/agent.py
"""
Worker agent - one per build node.

Registers the node with the control plane, then runs three loops on a
shared stop event: heartbeat (capacity + lease renewal), build polling
and workspace cleanup.
"""

import logging
import os
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import UUID

from paas_engine.builder.pipeline import BuildPipeline, BuildResult
from paas_engine.core.errors import (
    AuthenticationError,
    FatalAgentError,
    ValidationError,
    is_retryable,
)
from paas_engine.runtime.backend import ContainerBackend
from worker_agent.cleanup import CleanupReport, run_cleanup
from worker_agent.client import ControlPlaneClient
from worker_agent.config import WorkerSettings
from worker_agent.credentials import Credentials, load_credentials, save_credentials
from worker_agent.metrics import collect_metrics

logger = logging.getLogger(__name__)

MAX_WAIT_INTERVAL_SECONDS = 10.0
WAIT_BACKOFF = 1.5

BuildRunner = Callable[[Dict[str, Any], Callable[[str], None]], BuildResult]


class AgentState(Enum):
    STARTING = "starting"
    REGISTERING = "registering"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class PipelineBuildRunner:
    """Runs a queued build payload through the local BuildPipeline."""

    def __init__(self, pipeline: BuildPipeline):
        self._pipeline = pipeline

    def __call__(self, payload: Dict[str, Any], log_sink: Callable[[str], None]) -> BuildResult:
        try:
            application_id = UUID(str(payload["application_id"]))
            git_url = payload["git_url"]
            user_id = UUID(str(payload["user_id"])) if payload.get("user_id") else None
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid build payload: {e}") from e

        return self._pipeline.build(
            application_id,
            git_url=git_url,
            git_branch=payload.get("git_branch") or "main",
            git_commit=payload.get("git_commit"),
            user_id=user_id,
            buildpack=payload.get("buildpack"),
            replicas=payload.get("replicas"),
            log_sink=log_sink,
        )


class BuildLogForwarder:
    """Batches build log lines and uploads them to the control plane."""

    def __init__(self, client: ControlPlaneClient, job_id: UUID, batch_size: int = 20):
        self._client = client
        self._job_id = job_id
        self._batch_size = batch_size
        self._buffer: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, line: str) -> None:
        with self._lock:
            self._buffer.append(line)
            if len(self._buffer) < self._batch_size:
                return
            lines, self._buffer = self._buffer, []
        self._client.add_build_log(self._job_id, lines)

    def flush(self) -> None:
        with self._lock:
            lines, self._buffer = self._buffer, []
        self._client.add_build_log(self._job_id, lines)


class WorkerAgent:

    def __init__(
        self,
        *,
        settings: WorkerSettings,
        client: ControlPlaneClient,
        backend: ContainerBackend,
        runner: BuildRunner,
    ):
        self.settings = settings
        self.client = client
        self.backend = backend
        self.runner = runner

        self.state = AgentState.STOPPED
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

        self._active_jobs: Set[UUID] = set()
        self._active_lock = threading.Lock()
        self._poll_lock = threading.Lock()

    # ============================================
    # LIFECYCLE
    # ============================================

    def start(self) -> None:
        self.state = AgentState.STARTING
        self._stop_event.clear()

        logger.info("=" * 80)
        logger.info("🚀 PAAS WORKER AGENT")
        logger.info("=" * 80)
        logger.info(f"Worker: {self.settings.worker_name} ({self.settings.worker_region})")
        logger.info(f"Control plane: {self.settings.control_plane_url}")
        logger.info(f"Max concurrent builds: {self.settings.max_concurrent_builds}")
        logger.info(f"Workspace: {self.settings.workspace_dir}")
        logger.info("=" * 80)

        try:
            self.backend.ping()
        except FatalAgentError:
            raise
        except Exception as e:
            raise FatalAgentError(f"Container backend unavailable: {e}") from e
        logger.info("[agent] ✅ container backend reachable")

        self.wait_for_control_plane()

        self.state = AgentState.REGISTERING
        self.register()

        os.makedirs(self.settings.workspace_dir, exist_ok=True)

        self.state = AgentState.RUNNING
        self._threads = [
            self._spawn("heartbeat", self.settings.heartbeat_interval_seconds, self.heartbeat),
            self._spawn("build-poll", self.settings.build_poll_interval_seconds, self.poll_builds, immediate=True),
            self._spawn("cleanup", self.settings.cleanup_interval_minutes * 60, self.cleanup),
        ]
        logger.info(f"[agent] ✅ running as node {self.client.node_id}")

    def stop(self, timeout: float = 30.0) -> None:
        if self.state in (AgentState.STOPPING, AgentState.STOPPED):
            return

        logger.info("[agent] 🛑 stopping")
        self.state = AgentState.STOPPING
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

        try:
            self.cleanup()
        except Exception as e:
            logger.error(f"[agent] final cleanup failed: {e}")

        self.state = AgentState.STOPPED
        logger.info("[agent] stopped")

    def wait_for_control_plane(self) -> None:
        """Poll /api/health with capped exponential backoff until the timeout."""
        timeout = self.settings.control_plane_wait_timeout_seconds
        interval = self.settings.control_plane_wait_interval_seconds
        deadline = time.monotonic() + timeout
        attempt = 0

        while True:
            attempt += 1
            if self.client.health():
                logger.info(f"[agent] ✅ control plane reachable after {attempt} attempt(s)")
                return

            if attempt == 1 or attempt % 5 == 0:
                logger.info(f"[agent] waiting for control plane at {self.settings.control_plane_url} (attempt {attempt})")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FatalAgentError(f"Control plane not reachable after {timeout:.0f}s ({attempt} attempts)")

            if self._stop_event.wait(min(interval, remaining)):
                raise FatalAgentError("Stopped while waiting for control plane")
            interval = min(interval * WAIT_BACKOFF, MAX_WAIT_INTERVAL_SECONDS)

    def register(self) -> UUID:
        """
        Reuse known credentials when a heartbeat accepts them; otherwise
        register as a new node and persist the issued credentials.
        """
        credentials = self._known_credentials()
        if credentials is not None:
            self.client.set_credentials(credentials.node_id, credentials.auth_token)
            try:
                self.client.send_heartbeat(self._metrics(), self.active_job_ids())
                logger.info(f"[agent] reconnected with existing credentials as {credentials.node_id}")
                return credentials.node_id
            except AuthenticationError:
                logger.warning("[agent] existing credentials rejected, registering again")

        node_id, auth_token = self.client.register_worker(
            name=self.settings.worker_name,
            region=self.settings.worker_region,
            host_address=self.settings.host_address,
            runtime_agent_url=self.settings.advertised_runtime_agent_url,
            metrics=self._metrics(),
            metadata={"max_concurrent_builds": self.settings.max_concurrent_builds},
            registration_token=self.settings.registration_token,
        )
        try:
            save_credentials(self.settings.credentials_file, Credentials(node_id, auth_token))
        except OSError as e:
            logger.error(f"[agent] could not persist credentials to {self.settings.credentials_file}: {e}")

        logger.info(f"[agent] ✅ registered as node {node_id}")
        return node_id

    def _known_credentials(self) -> Optional[Credentials]:
        if self.client.has_credentials():
            return Credentials(self.client.node_id, self.client.auth_token)
        if self.settings.worker_node_id and self.settings.worker_auth_token:
            return Credentials(self.settings.worker_node_id, self.settings.worker_auth_token)
        return load_credentials(self.settings.credentials_file)

    # ============================================
    # LOOPS
    # ============================================

    def heartbeat(self) -> bool:
        """Failures trigger re-registration and are never raised."""
        try:
            response = self.client.send_heartbeat(self._metrics(), self.active_job_ids())
        except Exception as e:
            logger.warning(f"[agent] heartbeat failed: {e}; re-registering")
            try:
                self.register()
            except Exception as register_error:
                logger.error(f"[agent] ❌ re-registration failed: {register_error}")
            return False

        lost = response.get("lost_job_ids") or []
        if lost:
            logger.warning(f"[agent] control plane no longer leases {len(lost)} build(s) to this node: {lost}")
        return True

    def poll_builds(self) -> int:
        """
        Take queued builds while slots are free and run them one after
        another. A cycle that starts while the previous one is still
        running is skipped.
        """
        if not self._poll_lock.acquire(blocking=False):
            logger.debug("[agent] previous build poll still running, skipping")
            return 0

        try:
            free = self.settings.max_concurrent_builds - len(self.active_job_ids())
            if free <= 0:
                return 0

            queued = self.client.get_queued_builds(limit=free)
            processed = 0
            for build in queued:
                if self._stop_event.is_set() or processed >= free:
                    break
                try:
                    if self.process_build(build):
                        processed += 1
                except Exception as e:
                    logger.error(f"[agent] ❌ build {build.get('job_id')} failed to process: {e}", exc_info=True)
            return processed
        finally:
            self._poll_lock.release()

    def process_build(self, build: Dict[str, Any]) -> bool:
        """Accept, run and report one build. False when another node took it first."""
        job_id = UUID(str(build["job_id"]))
        accepted = self.client.accept_build(job_id)
        if accepted is None:
            logger.info(f"[agent] build {job_id} was taken by another worker")
            return False

        with self._active_lock:
            self._active_jobs.add(job_id)
        logger.info(f"[agent] 🚀 build {job_id} accepted")

        forwarder = BuildLogForwarder(self.client, job_id)
        try:
            try:
                result = self.runner(accepted.get("payload") or {}, forwarder)
            except Exception as e:
                logger.error(f"[agent] build {job_id} raised: {e}", exc_info=True)
                result = BuildResult(success=False, error=str(e), retryable=is_retryable(e))
            forwarder.flush()

            if result.success:
                self.client.update_build_status(job_id, "completed", result=result.to_dict())
                logger.info(f"[agent] ✅ build {job_id} completed")
            else:
                self.client.update_build_status(
                    job_id,
                    "failed",
                    error=result.error or "Build failed",
                    retryable=result.retryable,
                    result=result.to_dict(),
                )
                logger.warning(f"[agent] ❌ build {job_id} failed: {result.error}")
        finally:
            with self._active_lock:
                self._active_jobs.discard(job_id)
        return True

    def cleanup(self) -> CleanupReport:
        return run_cleanup(
            self.settings.workspace_dir,
            self.settings.workspace_retention_minutes,
            self.backend,
        )

    def active_job_ids(self) -> List[UUID]:
        with self._active_lock:
            return list(self._active_jobs)

    # ============================================
    # INTERNAL HELPERS
    # ============================================

    def _metrics(self) -> Dict[str, Any]:
        return collect_metrics(self.settings.workspace_dir, self.backend)

    def _spawn(self, name: str, interval: float, action: Callable[[], Any], immediate: bool = False) -> threading.Thread:
        thread = threading.Thread(
            target=self._run_loop,
            args=(name, interval, action, immediate),
            name=f"agent-{name}",
            daemon=True,
        )
        thread.start()
        return thread

    def _run_loop(self, name: str, interval: float, action: Callable[[], Any], immediate: bool) -> None:
        if not immediate and self._stop_event.wait(interval):
            return
        while not self._stop_event.is_set():
            try:
                action()
            except Exception as e:
                logger.error(f"[agent] error in {name} loop: {e}", exc_info=True)
            self._stop_event.wait(interval)
