# worker_agent/run_runtime_agent.py
"""Run the runtime agent: the node-local service API over Docker."""

import logging

import uvicorn

from paas_engine.bootstrap import setup_logging
from paas_engine.runtime.backend import DockerBackend
from worker_agent.config import WorkerSettings
from worker_agent.runtime_server import create_runtime_app

logger = logging.getLogger(__name__)


def main():
    settings = WorkerSettings()
    setup_logging(settings.log_level)

    logger.info("🚀 Starting Runtime Agent...")
    logger.info(f"📍 Listening on {settings.runtime_agent_host}:{settings.runtime_agent_port}")

    uvicorn.run(
        create_runtime_app(DockerBackend()),
        host=settings.runtime_agent_host,
        port=settings.runtime_agent_port,
        log_level="info"
    )


if __name__ == "__main__":
    main()
