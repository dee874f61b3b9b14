import logging
from uuid import UUID

from paas_engine.builder.storage import ArtifactStorage, slug_key

logger = logging.getLogger(__name__)


class SlugService:
    """Slug lookups and removal on top of artifact storage."""

    def __init__(self, storage: ArtifactStorage):
        self._storage = storage

    def fetch_url(self, application_id: UUID, deployment_id: UUID, expires_seconds: int = 3600) -> str:
        return self._storage.fetch_url(slug_key(application_id, deployment_id), expires_seconds)

    def exists(self, application_id: UUID, deployment_id: UUID) -> bool:
        return self._storage.exists(slug_key(application_id, deployment_id))

    def delete_app_slugs(self, application_id: UUID) -> int:
        removed = self._storage.delete_prefix(f"slugs/{application_id}/")
        logger.info(f"[storage] deleted {removed} slug(s) of application {application_id}")
        return removed
