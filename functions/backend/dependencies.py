"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from backend.config import Settings, get_settings
from backend.db import DbClient, InMemoryDbClient, PostgresDbClient
from backend.image_service import ImageService
from backend.locks import EntityLocks, InMemoryEntityLocks, RedisEntityLocks
from backend.storage import (
    AssetStore,
    InMemoryBlobBackend,
    LocalBlobBackend,
    S3BlobBackend,
)

_db_client: DbClient | None = None
_asset_store: AssetStore | None = None
_entity_locks: EntityLocks | None = None
_image_service: ImageService | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so documents persist across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def build_asset_store(settings: Settings) -> AssetStore:
    """Choose the blob backend from settings: S3 bucket, in-memory or local disk."""
    if settings.asset_bucket and not settings.use_in_memory_backends:
        backend = S3BlobBackend(
            bucket=settings.asset_bucket,
            region=settings.asset_region or "",
            endpoint=settings.asset_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            timeout_seconds=settings.io_timeout_seconds,
        )
        url_prefix = settings.asset_public_url or settings.upload_url_prefix
        return AssetStore(backend=backend, url_prefix=url_prefix)
    if settings.use_in_memory_backends:
        return AssetStore(
            backend=InMemoryBlobBackend(), url_prefix=settings.upload_url_prefix
        )
    return AssetStore(
        backend=LocalBlobBackend(settings.upload_dir),
        url_prefix=settings.upload_url_prefix,
    )


def get_asset_store() -> AssetStore:
    global _asset_store
    if _asset_store:
        return _asset_store
    _asset_store = build_asset_store(get_settings())
    return _asset_store


def get_entity_locks() -> EntityLocks:
    global _entity_locks
    if _entity_locks:
        return _entity_locks

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _entity_locks = RedisEntityLocks(
            url=settings.redis_url,
            prefix=settings.redis_lock_prefix,
            timeout_seconds=settings.lock_timeout_seconds,
        )
    else:
        _entity_locks = InMemoryEntityLocks(timeout_seconds=settings.lock_timeout_seconds)
    return _entity_locks


def get_image_service() -> ImageService:
    """Return the ImageService wired to the singleton db, store and locks."""
    global _image_service
    if _image_service:
        return _image_service

    settings = get_settings()
    _image_service = ImageService(
        get_db_client(),
        get_asset_store(),
        get_entity_locks(),
        max_workers=settings.max_parallel_uploads,
        io_timeout_seconds=settings.io_timeout_seconds,
    )
    return _image_service


def reset_singletons() -> None:
    """Drop cached clients (tests switch settings between cases)."""
    global _db_client, _asset_store, _entity_locks, _image_service
    _db_client = None
    _asset_store = None
    _entity_locks = None
    _image_service = None
