# worker_agent/run_worker_agent.py
"""Run the worker agent on a build node."""

import logging
import signal
import sys
import threading

from paas_engine.bootstrap import create_container, setup_logging
from paas_engine.config import PlatformSettings
from paas_engine.core.errors import FatalAgentError
from paas_engine.runtime.backend import DockerBackend
from worker_agent.agent import PipelineBuildRunner, WorkerAgent
from worker_agent.client import ControlPlaneClient
from worker_agent.config import WorkerSettings

logger = logging.getLogger(__name__)


def main():
    settings = WorkerSettings()
    setup_logging(settings.log_level)

    platform = PlatformSettings().model_copy(update={
        "build_workspace_root": settings.workspace_dir,
        "build_timeout_minutes": settings.build_timeout_minutes,
    })
    backend = DockerBackend()
    container = create_container(platform, backend=backend)

    agent = WorkerAgent(
        settings=settings,
        client=ControlPlaneClient(settings.control_plane_url, timeout=settings.control_plane_timeout_seconds),
        backend=backend,
        runner=PipelineBuildRunner(container.pipeline),
    )

    stop_event = threading.Event()

    def signal_handler(sig, frame):
        """Handle Ctrl+C gracefully."""
        logger.info("🛑 Shutting down worker agent...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        agent.start()
    except FatalAgentError as e:
        logger.critical(f"❌ Worker agent cannot start: {e}")
        sys.exit(1)

    stop_event.wait()
    agent.stop()


if __name__ == "__main__":
    main()
