"""Artifact storage for slugs and build caches."""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from paas_engine.config import PlatformSettings
from paas_engine.core.errors import TransientInfrastructureError

logger = logging.getLogger(__name__)


def slug_key(application_id, deployment_id) -> str:
    return f"slugs/{application_id}/{deployment_id}.tar.gz"


def cache_key_path(application_id, cache_key: str) -> str:
    return f"build-cache/{application_id}/{cache_key}.tgz"


class ArtifactStorage(ABC):
    """Keyed blob store. Keys are relative, '/'-separated paths."""

    @abstractmethod
    def upload_file(self, local_path: str, key: str) -> str:
        """Store the file under `key` and return its URL."""
        raise NotImplementedError

    @abstractmethod
    def download_file(self, key: str, destination: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        """Missing keys are not an error."""
        raise NotImplementedError

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def exists(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def fetch_url(self, key: str, expires_seconds: int = 3600) -> str:
        """Location a runtime node can download the object from."""
        raise NotImplementedError


# -------------------------
# LOCAL FILESYSTEM
# -------------------------

class LocalArtifactStorage(ArtifactStorage):

    def __init__(self, base_path: str):
        self._base = os.path.abspath(base_path)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self._base, key))
        if not path.startswith(self._base + os.sep):
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def upload_file(self, local_path: str, key: str) -> str:
        destination = self._path(key)
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        shutil.copyfile(local_path, destination)
        return destination

    def download_file(self, key: str, destination: str) -> None:
        source = self._path(key)
        if not os.path.exists(source):
            raise FileNotFoundError(source)
        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        shutil.copyfile(source, destination)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if os.path.isfile(path):
            os.remove(path)

    def delete_prefix(self, prefix: str) -> int:
        root = self._path(prefix)
        if not os.path.exists(root):
            return 0
        if os.path.isfile(root):
            os.remove(root)
            return 1

        removed = sum(len(files) for _, _, files in os.walk(root))
        shutil.rmtree(root, ignore_errors=True)
        return removed

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def fetch_url(self, key: str, expires_seconds: int = 3600) -> str:
        return self._path(key)


# -------------------------
# S3
# -------------------------

class S3ArtifactStorage(ArtifactStorage):

    def __init__(
        self,
        bucket: str,
        region_name: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region_name,
            endpoint_url=endpoint_url,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )

    def upload_file(self, local_path: str, key: str) -> str:
        try:
            self.client.upload_file(
                local_path,
                self.bucket,
                key,
                ExtraArgs={"ContentType": "application/gzip"},
            )
        except (BotoCoreError, ClientError) as e:
            raise TransientInfrastructureError(f"Upload of {key} failed: {e}") from e
        return f"s3://{self.bucket}/{key}"

    def download_file(self, key: str, destination: str) -> None:
        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        try:
            self.client.download_file(self.bucket, key, destination)
        except (BotoCoreError, ClientError) as e:
            raise TransientInfrastructureError(f"Download of {key} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise TransientInfrastructureError(f"Delete of {key} failed: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if not objects:
                    continue
                self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": objects})
                removed += len(objects)
        except (BotoCoreError, ClientError) as e:
            raise TransientInfrastructureError(f"Delete of {prefix}* failed: {e}") from e
        return removed

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise TransientInfrastructureError(f"Lookup of {key} failed: {e}") from e

    def fetch_url(self, key: str, expires_seconds: int = 3600) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise TransientInfrastructureError(f"Presign of {key} failed: {e}") from e


def create_storage(settings: PlatformSettings) -> ArtifactStorage:
    if settings.storage_backend == "s3":
        if not settings.storage_s3_bucket:
            raise ValueError("PAAS_STORAGE_S3_BUCKET is required for the s3 storage backend")
        logger.info(f"[storage] using s3://{settings.storage_s3_bucket}")
        return S3ArtifactStorage(
            bucket=settings.storage_s3_bucket,
            region_name=settings.storage_s3_region,
            endpoint_url=settings.storage_s3_endpoint,
            aws_access_key_id=settings.storage_s3_access_key,
            aws_secret_access_key=settings.storage_s3_secret_key,
        )

    logger.info(f"[storage] using local path {settings.storage_local_path}")
    return LocalArtifactStorage(settings.storage_local_path)
