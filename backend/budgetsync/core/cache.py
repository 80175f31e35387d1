import pickle
import threading
from dataclasses import dataclass

import httpx
from redis.asyncio import Redis
from redis.exceptions import RedisError

# Hop-by-hop and body-framing headers that no longer describe a decoded snapshot.
_DROPPED_HEADERS = frozenset(
    {"content-encoding", "content-length", "transfer-encoding", "connection", "keep-alive"}
)


@dataclass(frozen=True)
class CachedResponse:
    url: str
    status_code: int
    headers: tuple[tuple[str, str], ...]
    content: bytes

    @classmethod
    def from_response(cls, response: httpx.Response) -> "CachedResponse":
        # The caller must have read the body already.
        headers = tuple(
            (name, value) for name, value in response.headers.items() if name.lower() not in _DROPPED_HEADERS
        )
        return cls(
            url=str(response.request.url),
            status_code=response.status_code,
            headers=headers,
            content=response.content,
        )

    def to_response(self, request: httpx.Request | None = None) -> httpx.Response:
        return httpx.Response(
            self.status_code,
            headers=list(self.headers),
            content=self.content,
            request=request,
        )


def request_key(request: httpx.Request | str) -> str:
    if isinstance(request, httpx.Request):
        return str(request.url)
    return str(request)


class CacheBucket:
    def __init__(self, storage: "CacheStorage", name: str) -> None:
        self._storage = storage
        self.name = name

    async def put(self, request: httpx.Request | str, entry: CachedResponse) -> None:
        await self._storage._put(self.name, request_key(request), entry)

    async def put_many(self, entries: list[tuple[str, CachedResponse]]) -> None:
        for key, entry in entries:
            await self._storage._put(self.name, request_key(key), entry)

    async def match(self, request: httpx.Request | str) -> CachedResponse | None:
        return await self._storage._match_in(self.name, request_key(request))

    async def keys(self) -> list[str]:
        return await self._storage._bucket_keys(self.name)


class CacheStorage:
    """Named buckets of response snapshots.

    Writes go to redis when it is reachable and always to the local dict, reads
    prefer redis and fall back to the local copy on any redis error.
    """

    def __init__(self, redis: Redis | None = None, key_prefix: str = "budget") -> None:
        self._buckets: dict[str, dict[str, CachedResponse]] = {}
        self._lock = threading.Lock()
        self._key_prefix = key_prefix
        self._redis = redis

    def _names_key(self) -> str:
        return f"{self._key_prefix}:assets:buckets"

    def _bucket_key(self, name: str) -> str:
        return f"{self._key_prefix}:assets:{name}"

    async def open(self, name: str) -> CacheBucket:
        if self._redis is not None:
            try:
                await self._redis.sadd(self._names_key(), name)
            except RedisError:
                pass
        with self._lock:
            self._buckets.setdefault(name, {})
        return CacheBucket(self, name)

    async def has(self, name: str) -> bool:
        return name in await self.keys()

    async def keys(self) -> list[str]:
        names: set[str] = set()
        if self._redis is not None:
            try:
                raw = await self._redis.smembers(self._names_key())
                names.update(n.decode("utf-8") if isinstance(n, bytes) else str(n) for n in raw)
            except RedisError:
                pass
        with self._lock:
            names.update(self._buckets.keys())
        return sorted(names)

    async def delete(self, name: str) -> bool:
        existed = False
        if self._redis is not None:
            try:
                removed = await self._redis.srem(self._names_key(), name)
                await self._redis.delete(self._bucket_key(name))
                existed = bool(removed)
            except RedisError:
                pass
        with self._lock:
            existed = self._buckets.pop(name, None) is not None or existed
        return existed

    async def match(self, request: httpx.Request | str) -> CachedResponse | None:
        key = request_key(request)
        for name in await self.keys():
            entry = await self._match_in(name, key)
            if entry is not None:
                return entry
        return None

    async def _put(self, name: str, key: str, entry: CachedResponse) -> None:
        if self._redis is not None:
            try:
                await self._redis.sadd(self._names_key(), name)
                await self._redis.hset(
                    self._bucket_key(name), key, pickle.dumps(entry, protocol=pickle.HIGHEST_PROTOCOL)
                )
            except (RedisError, pickle.PickleError, TypeError):
                pass

        with self._lock:
            self._buckets.setdefault(name, {})[key] = entry

    async def _match_in(self, name: str, key: str) -> CachedResponse | None:
        if self._redis is not None:
            try:
                raw = await self._redis.hget(self._bucket_key(name), key)
                if raw is not None:
                    return pickle.loads(raw)
            except (RedisError, pickle.PickleError, ValueError, EOFError):
                pass

        with self._lock:
            return self._buckets.get(name, {}).get(key)

    async def _bucket_keys(self, name: str) -> list[str]:
        keys: set[str] = set()
        if self._redis is not None:
            try:
                raw = await self._redis.hkeys(self._bucket_key(name))
                keys.update(k.decode("utf-8") if isinstance(k, bytes) else str(k) for k in raw)
            except RedisError:
                pass
        with self._lock:
            keys.update(self._buckets.get(name, {}).keys())
        return sorted(keys)
