"""Redis cache backend implementing ICacheBackend.

Keys are namespaced (``scoresync:<key>`` by default) so snapshot entries and
run locks can share a Redis database with other services.
"""

from __future__ import annotations

import logging

import redis

from scoresync.core.exceptions import CacheError

logger = logging.getLogger(__name__)


class RedisCacheBackend:
    """ICacheBackend over Redis: grade snapshot cache and per-course run locks."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        namespace: str = "scoresync",
    ) -> None:
        self._namespace = namespace
        self._client = redis.Redis(host=host, port=port, db=db, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    def _wrap(self, op: str, key: str, exc: Exception) -> CacheError:
        return CacheError(f"Redis {op} failed for key={key!r}: {exc}")

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(self._key(key))
        except Exception as exc:
            raise self._wrap("GET", key, exc) from exc

    def setex(self, key: str, ttl: int, value: str) -> None:
        try:
            self._client.setex(self._key(key), ttl, value)
        except Exception as exc:
            raise self._wrap("SETEX", key, exc) from exc

    def set_if_absent(self, key: str, ttl: int, value: str) -> bool:
        try:
            return bool(self._client.set(self._key(key), value, nx=True, ex=ttl))
        except Exception as exc:
            raise self._wrap("SET NX", key, exc) from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except Exception as exc:
            raise self._wrap("DELETE", key, exc) from exc

    def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete ``key`` only while it still holds ``value`` (WATCH/MULTI)."""
        full_key = self._key(key)
        try:
            with self._client.pipeline() as pipe:
                try:
                    pipe.watch(full_key)
                    if pipe.get(full_key) != value:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(full_key)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    logger.info("Key %s changed during compare-and-delete; left in place", full_key)
                    return False
        except Exception as exc:
            raise self._wrap("compare-and-delete", key, exc) from exc
