import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class StorageUnavailable(Exception):
    """Raised when the durable key-value backend cannot be read or written."""


def _decode(key: str, raw: str | bytes | None) -> Any | None:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding undecodable value stored under %r", key)
        return None


def _encode(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise StorageUnavailable(f"Value is not serializable: {exc}") from exc


class MemoryKeyValueStore:
    """Process-local store. Values are kept encoded so callers never share references."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        return _decode(key, self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = _encode(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileKeyValueStore:
    """All keys live in one JSON document, rewritten atomically on every change."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StorageUnavailable(f"Cannot read {self._path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Queue file %s is corrupted, starting empty", self._path)
            return {}
        if not isinstance(data, dict):
            logger.warning("Queue file %s has unexpected shape, starting empty", self._path)
            return {}
        return data

    def _dump(self, data: dict[str, Any]) -> None:
        encoded = _encode(data)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(encoded, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise StorageUnavailable(f"Cannot write {self._path}: {exc}") from exc

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data[key] = value
            await asyncio.to_thread(self._dump, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if key not in data:
                return
            data.pop(key, None)
            await asyncio.to_thread(self._dump, data)


class RedisKeyValueStore:
    def __init__(self, client: Redis, key_prefix: str = "budget") -> None:
        self._redis = client
        self._key_prefix = key_prefix

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}:kv:{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(self._redis_key(key))
        except RedisError as exc:
            raise StorageUnavailable(f"Redis read failed: {exc}") from exc
        return _decode(key, raw)

    async def set(self, key: str, value: Any) -> None:
        encoded = _encode(value)
        try:
            await self._redis.set(self._redis_key(key), encoded)
        except RedisError as exc:
            raise StorageUnavailable(f"Redis write failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._redis_key(key))
        except RedisError as exc:
            raise StorageUnavailable(f"Redis delete failed: {exc}") from exc


async def connect_redis(redis_url: str | None) -> Redis | None:
    if not redis_url:
        return None
    client = Redis.from_url(redis_url, decode_responses=False)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("Redis at %s unreachable, using local storage: %s", redis_url, exc)
        await client.aclose()
        return None
    return client


def open_kv_store(redis_client: Redis | None, queue_file: str, key_prefix: str = "budget"):
    if redis_client is not None:
        return RedisKeyValueStore(redis_client, key_prefix=key_prefix)
    return FileKeyValueStore(queue_file)
