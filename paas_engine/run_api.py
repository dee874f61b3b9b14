# paas_engine/run_api.py
"""Run the control plane HTTP API."""

import logging

import uvicorn

from paas_engine.api.main import create_app
from paas_engine.bootstrap import create_container, setup_logging

setup_logging()
logger = logging.getLogger(__name__)


def main():
    container = create_container()
    settings = container.settings

    logger.info("=" * 80)
    logger.info("🚀 PAAS CONTROL PLANE API")
    logger.info("=" * 80)
    logger.info(f"Listening on {settings.api_host}:{settings.api_port}")
    logger.info(f"Storage backend: {settings.storage_backend}")
    logger.info("=" * 80)

    # uvicorn installs its own SIGINT/SIGTERM handlers for graceful shutdown
    uvicorn.run(create_app(container), host=settings.api_host, port=settings.api_port, log_level="info")


if __name__ == "__main__":
    main()
