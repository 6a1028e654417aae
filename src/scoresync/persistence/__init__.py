"""Pluggable persistence backends behind Protocol interfaces."""

from __future__ import annotations

from scoresync.core.config import AppSettings
from scoresync.persistence.local_store import LocalFileStore
from scoresync.persistence.lock import CacheRunLock
from scoresync.persistence.memory_backend import MemoryCacheBackend
from scoresync.persistence.redis_backend import RedisCacheBackend
from scoresync.persistence.s3_backend import S3FileStore


def create_persistence(settings: AppSettings | None = None):
    """Create wired-up persistence backends from application settings.

    Returns:
        Tuple of (cache, run_lock, artifact_store).
    """
    if settings is None:
        settings = AppSettings()

    if settings.cache_backend == "redis":
        cache = RedisCacheBackend(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            namespace=settings.redis.namespace,
        )
    else:
        cache = MemoryCacheBackend()

    run_lock = CacheRunLock(cache, ttl=settings.workflow.run_lock_ttl)

    if settings.artifact_store == "s3":
        artifact_store = S3FileStore(
            bucket=settings.s3.bucket,
            region=settings.s3.region,
            endpoint_url=settings.s3.endpoint_url,
        )
    else:
        artifact_store = LocalFileStore(settings.artifact_dir)

    return cache, run_lock, artifact_store
