"""
Asset storage for image renditions: local disk, S3-compatible buckets and an
in-memory test double.

Keys follow `{category}/{entity_id}/{filename}` for the full rendition and
`{category}/{entity_id}/thumbnails/{filename}` for the thumbnail. Public URLs
are the key under a fixed prefix, so a static file server rooted at the
storage base serves them directly.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from media_pipeline.image_processor import ProcessedImage, process_image
from shared.errors import StorageError
from shared.types import ImageAsset

logger = logging.getLogger(__name__)

THUMBNAIL_DIR = "thumbnails"
WEBP_CONTENT_TYPE = "image/webp"


class BlobBackend(Protocol):
    """Defines the operations the asset store needs from durable storage."""

    def ensure_prefix(self, prefix: str) -> None:
        ...

    def put(self, key: str, data: bytes, content_type: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def delete_prefix(self, prefix: str) -> None:
        ...

    def list_keys(self, prefix: str) -> list[str]:
        ...


@dataclass
class InMemoryBlobBackend:
    """Test double for storage interactions."""

    objects: dict = None
    prefixes: set = None

    def __post_init__(self):
        if self.objects is None:
            self.objects = {}
        if self.prefixes is None:
            self.prefixes = set()

    def ensure_prefix(self, prefix: str) -> None:
        self.prefixes.add(prefix.rstrip("/"))

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self.objects[key] = bytes(data)

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def delete_prefix(self, prefix: str) -> None:
        prefix = prefix.rstrip("/") + "/"
        for key in [k for k in self.objects if k.startswith(prefix)]:
            del self.objects[key]
        self.prefixes = {
            p for p in self.prefixes if not (p + "/").startswith(prefix)
        }

    def list_keys(self, prefix: str) -> list[str]:
        prefix = prefix.rstrip("/") + "/"
        return sorted(k for k in self.objects if k.startswith(prefix))


@dataclass
class LocalBlobBackend:
    """Filesystem storage rooted at `base_dir`."""

    base_dir: str

    def _path(self, key: str) -> str:
        base = os.path.abspath(self.base_dir)
        path = os.path.abspath(os.path.join(base, key))
        if os.path.commonpath([base, path]) != base:
            raise StorageError("Storage key escapes the upload directory", {"key": key})
        return path

    def ensure_prefix(self, prefix: str) -> None:
        try:
            os.makedirs(self._path(prefix), exist_ok=True)
        except OSError as e:
            raise StorageError(f"Could not create directory: {e}", {"key": prefix}) from e

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        directory = os.path.dirname(path)
        temp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            # Write to a sibling temp file and rename so readers never see a partial file.
            with tempfile.NamedTemporaryFile(dir=directory, delete=False, suffix=".part") as temp_file:
                temp_path = temp_file.name
                temp_file.write(data)
                temp_file.flush()
                os.fsync(temp_file.fileno())
            os.replace(temp_path, path)
            temp_path = None
        except OSError as e:
            raise StorageError(f"Could not write asset: {e}", {"key": key}) from e
        finally:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Could not delete asset: {e}", {"key": key}) from e

    def delete_prefix(self, prefix: str) -> None:
        path = self._path(prefix)
        if not os.path.exists(path):
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise StorageError(f"Could not delete directory: {e}", {"key": prefix}) from e

    def list_keys(self, prefix: str) -> list[str]:
        root = self._path(prefix)
        base = os.path.abspath(self.base_dir)
        keys: list[str] = []
        for dirpath, _, files in os.walk(root):
            for name in files:
                full_path = os.path.join(dirpath, name)
                keys.append(os.path.relpath(full_path, base).replace(os.sep, "/"))
        return sorted(keys)


@dataclass
class S3BlobBackend:
    """
    S3-compatible storage client. Requests use bounded timeouts and are not
    retried; failures surface to the caller as StorageError.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    timeout_seconds: float = 30.0

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
            connect_timeout=self.timeout_seconds,
            read_timeout=self.timeout_seconds,
            retries={"total_max_attempts": 1},
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    def ensure_prefix(self, prefix: str) -> None:
        # Object stores have no directories; keys create their own prefixes.
        return None

    def put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not write asset: {e}", {"key": key}) from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not delete asset: {e}", {"key": key}) from e

    def delete_prefix(self, prefix: str) -> None:
        keys = self.list_keys(prefix)
        try:
            for start in range(0, len(keys), 1000):
                batch = keys[start : start + 1000]
                self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not delete prefix: {e}", {"key": prefix}) from e

    def list_keys(self, prefix: str) -> list[str]:
        prefix = prefix.rstrip("/") + "/"
        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not list assets: {e}", {"key": prefix}) from e
        return sorted(keys)


@dataclass
class StoredAsset:
    url: str
    thumbnail_url: str
    filename: str
    original_name: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "url": self.url,
            "thumbnail_url": self.thumbnail_url,
            "filename": self.filename,
            "original_name": self.original_name,
        }

    def to_image_asset(self) -> ImageAsset:
        return ImageAsset(
            url=self.url,
            thumbnail_url=self.thumbnail_url,
            filename=self.filename,
            original_name=self.original_name,
        )


@dataclass
class AssetStore:
    """Places rendition pairs in a blob backend under the entity's directory."""

    backend: BlobBackend
    url_prefix: str = "/uploads"

    @staticmethod
    def entity_prefix(category: str, entity_id: str) -> str:
        return f"{category}/{entity_id}"

    def full_key(self, category: str, entity_id: str, filename: str) -> str:
        return f"{self.entity_prefix(category, entity_id)}/{filename}"

    def thumbnail_key(self, category: str, entity_id: str, filename: str) -> str:
        return f"{self.entity_prefix(category, entity_id)}/{THUMBNAIL_DIR}/{filename}"

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix.rstrip('/')}/{key}"

    def ensure_entity_dirs(self, category: str, entity_id: str) -> None:
        prefix = self.entity_prefix(category, entity_id)
        self.backend.ensure_prefix(prefix)
        self.backend.ensure_prefix(f"{prefix}/{THUMBNAIL_DIR}")

    def save(
        self,
        buffer: bytes,
        category: str,
        entity_id: str,
        original_name: Optional[str] = None,
    ) -> StoredAsset:
        """Processes a raw upload and stores both renditions."""
        processed = process_image(buffer, original_name)
        return self.save_processed(processed, category, entity_id)

    def save_processed(
        self, processed: ProcessedImage, category: str, entity_id: str
    ) -> StoredAsset:
        """
        Writes the full rendition then the thumbnail. If the thumbnail write
        fails the full rendition is removed before the error propagates.
        """
        self.ensure_entity_dirs(category, entity_id)
        full_key = self.full_key(category, entity_id, processed.filename)
        thumbnail_key = self.thumbnail_key(category, entity_id, processed.filename)

        self.backend.put(full_key, processed.full, WEBP_CONTENT_TYPE)
        try:
            self.backend.put(thumbnail_key, processed.thumbnail, WEBP_CONTENT_TYPE)
        except StorageError:
            logger.warning("Thumbnail write failed for %s; removing full rendition", full_key)
            self.backend.delete(full_key)
            raise

        logger.info("Saved asset %s", full_key)
        return StoredAsset(
            url=self.url_for(full_key),
            thumbnail_url=self.url_for(thumbnail_key),
            filename=processed.filename,
            original_name=processed.original_name,
        )

    def remove(self, category: str, entity_id: str, filename: str) -> None:
        self.backend.delete(self.full_key(category, entity_id, filename))
        self.backend.delete(self.thumbnail_key(category, entity_id, filename))
        logger.info("Removed asset %s/%s/%s", category, entity_id, filename)

    def remove_all(self, category: str, entity_id: str) -> None:
        self.backend.delete_prefix(self.entity_prefix(category, entity_id))
        logger.info("Removed all assets under %s/%s", category, entity_id)

    def list_entity_ids(self, category: str) -> list[str]:
        ids = set()
        for key in self.backend.list_keys(category):
            parts = key.split("/")
            if len(parts) >= 3:
                ids.add(parts[1])
        return sorted(ids)

    def list_filenames(self, category: str, entity_id: str) -> list[str]:
        """Filenames of full or thumbnail renditions under one entity."""
        names = set()
        for key in self.backend.list_keys(self.entity_prefix(category, entity_id)):
            names.add(key.rsplit("/", 1)[-1])
        return sorted(names)
