"""Dependency cache kept between builds of the same application."""

import hashlib
import logging
import os
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from paas_engine.builder.buildpacks import manifest_files
from paas_engine.builder.log import BuildLog
from paas_engine.builder.storage import ArtifactStorage, cache_key_path
from paas_engine.core.models import utcnow
from paas_engine.domain.models import BuildCacheRecord
from paas_engine.domain.repository import BuildCacheRepository

logger = logging.getLogger(__name__)

MB = 1024 * 1024


@dataclass(frozen=True)
class BuildCacheConfig:
    enabled: bool = True
    max_size_mb: int = 500
    ttl_hours: int = 168


def manifest_fingerprint(workspace: str, buildpack: str) -> str:
    """Hash of the dependency manifests present in the workspace."""
    digest = hashlib.sha256()
    names = manifest_files(buildpack, os.listdir(workspace))
    for name in names:
        digest.update(name.encode())
        digest.update(b"\0")
        with open(os.path.join(workspace, name), "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
        digest.update(b"\0")
    return digest.hexdigest() if names else "none"


def build_cache_key(application_id: UUID, buildpack: str, stack: str, fingerprint: str) -> str:
    raw = f"{application_id}:{buildpack or 'auto'}:{stack or 'unknown'}:{fingerprint}"
    return hashlib.sha1(raw.encode()).hexdigest()


class BuildCacheService:

    def __init__(
        self,
        repository: BuildCacheRepository,
        storage: ArtifactStorage,
        config: Optional[BuildCacheConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._storage = storage
        self.config = config or BuildCacheConfig()
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def cache_key(self, application_id: UUID, buildpack: str, stack: str, workspace: str) -> str:
        return build_cache_key(application_id, buildpack, stack, manifest_fingerprint(workspace, buildpack))

    # -------------------------
    # LOOKUP
    # -------------------------

    def get_valid(self, application_id: UUID, cache_key: str) -> Optional[BuildCacheRecord]:
        """The record, unless it outlived the TTL (then it is removed)."""
        record = self._repo.get(application_id, cache_key)
        if record is None:
            return None

        if self._is_expired(record):
            logger.info(f"[cache] expired cache {cache_key} for {application_id}")
            self._delete_records([record])
            return None
        return record

    def restore(self, application_id: UUID, cache_key: str, cache_dir: str, log: BuildLog) -> bool:
        """Extract a valid cache into cache_dir. Any failure counts as a miss."""
        try:
            record = self.get_valid(application_id, cache_key)
            if record is None:
                log.step("Build cache miss")
                return False

            log.step(f"Build cache hit ({record.size_bytes / MB:.2f}MB)")
            with tempfile.TemporaryDirectory(prefix="paas-cache-") as tmp:
                archive = os.path.join(tmp, "cache.tgz")
                self._storage.download_file(record.storage_key, archive)
                with tarfile.open(archive, "r:gz") as tar:
                    tar.extractall(cache_dir, filter="data")

            record.last_used_at = self._clock()
            self._repo.upsert(record)
            log.step("Build cache restored")
            return True
        except Exception as e:
            log.error(f"Unable to restore build cache ({e}). Continuing without cache.")
            return False

    # -------------------------
    # PERSIST
    # -------------------------

    def persist(
        self,
        application_id: UUID,
        cache_key: str,
        cache_dir: str,
        scratch_dir: str,
        log: BuildLog,
    ) -> Optional[BuildCacheRecord]:
        """Archive and upload cache_dir, then drop the application's other caches."""
        archive = os.path.join(scratch_dir, f"{cache_key}-cache.tgz")
        try:
            log.step("Saving build cache...")
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(cache_dir, arcname=".")

            size = os.path.getsize(archive)
            max_bytes = self.config.max_size_mb * MB
            if max_bytes > 0 and size > max_bytes:
                log.step(
                    f"Skipping build cache (size {size / MB:.2f}MB exceeds "
                    f"limit of {self.config.max_size_mb}MB)"
                )
                return None

            storage_key = cache_key_path(application_id, cache_key)
            self._storage.upload_file(archive, storage_key)

            now = self._clock()
            existing = self._repo.get(application_id, cache_key)
            record = BuildCacheRecord(
                application_id=application_id,
                cache_key=cache_key,
                storage_key=storage_key,
                size_bytes=size,
                created_at=existing.created_at if existing else now,
                last_used_at=now,
            )
            self._repo.upsert(record)
            self.prune_except(application_id, cache_key)

            log.step(f"Build cache stored ({size / MB:.2f}MB)")
            return record
        except Exception as e:
            log.error(f"Failed to persist build cache ({e}).")
            return None
        finally:
            if os.path.exists(archive):
                os.remove(archive)

    # -------------------------
    # EVICTION
    # -------------------------

    def prune_except(self, application_id: UUID, keep_key: str) -> int:
        stale = [r for r in self._repo.list_for_application(application_id) if r.cache_key != keep_key]
        self._delete_records(stale)
        return len(stale)

    def invalidate(self, application_id: UUID) -> int:
        records = self._repo.list_for_application(application_id)
        self._delete_records(records)
        if records:
            logger.info(f"[cache] invalidated {len(records)} cache(s) for {application_id}")
        return len(records)

    def cleanup_expired(self) -> Tuple[int, int]:
        """Returns (removed, reclaimed_bytes)."""
        if self.config.ttl_hours <= 0:
            return 0, 0

        expired = [r for r in self._repo.list_all() if self._is_expired(r)]
        self._delete_records(expired)

        reclaimed = sum(r.size_bytes or 0 for r in expired)
        if expired:
            logger.info(f"[cache] removed {len(expired)} expired cache(s), {reclaimed / MB:.2f}MB reclaimed")
        return len(expired), reclaimed

    def _is_expired(self, record: BuildCacheRecord) -> bool:
        if self.config.ttl_hours <= 0:
            return False
        last_used = record.last_used_at or record.created_at
        return last_used + timedelta(hours=self.config.ttl_hours) < self._clock()

    def _delete_records(self, records: List[BuildCacheRecord]) -> None:
        for record in records:
            try:
                self._storage.delete(record.storage_key)
            except Exception as e:
                logger.warning(f"[cache] failed to delete artifact {record.storage_key}: {e}")
            self._repo.delete(record.application_id, record.cache_key)
