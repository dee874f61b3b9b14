# paas_engine/bootstrap.py
"""Builds the production container from environment settings."""

import logging
from typing import Optional

from paas_engine.config import PlatformSettings
from paas_engine.container import Container, build_container, postgres_repositories
from paas_engine.infrastructure.postgres.config import DatabaseSettings
from paas_engine.infrastructure.postgres.database import create_db_engine, get_session_factory

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_container(settings: Optional[PlatformSettings] = None, **overrides) -> Container:
    """Keyword overrides (backend, storage, ...) are passed to build_container."""
    settings = settings or PlatformSettings()
    engine = create_db_engine(DatabaseSettings())
    return build_container(settings, postgres_repositories(get_session_factory(engine)), **overrides)
