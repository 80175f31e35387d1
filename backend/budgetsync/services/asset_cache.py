"""Versioned shell cache with stale-while-revalidate fetch interception.

The controller owns one cache generation named by its version tag. ``install``
warms that generation with the shell assets, ``activate`` deletes every other
generation, and ``fetch`` serves GET requests from cache while refreshing the
cached copy from the network.
"""
import asyncio
import logging
from enum import Enum
from typing import Iterable

import httpx

from budgetsync.core.cache import CacheBucket, CachedResponse, CacheStorage, request_key

logger = logging.getLogger(__name__)


class CacheInstallError(Exception):
    pass


class AssetUnavailable(Exception):
    def __init__(self, url: str):
        super().__init__(f"{url} is not cached and the network is unreachable")
        self.url = url


class WorkerState(str, Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class AssetCacheController:
    def __init__(
        self,
        storage: CacheStorage,
        client: httpx.AsyncClient,
        version: str,
        shell_assets: Iterable[str],
    ) -> None:
        self._storage = storage
        self._client = client
        self.version = version
        self.shell_assets = tuple(shell_assets)
        self.state = WorkerState.PARSED
        self._refreshes: set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self.state is WorkerState.ACTIVATED

    async def _current(self) -> CacheBucket:
        return await self._storage.open(self.version)

    async def install(self) -> None:
        self.state = WorkerState.INSTALLING
        try:
            bucket = await self._current()
            entries: list[tuple[str, CachedResponse]] = []
            for asset in self.shell_assets:
                request = self._client.build_request("GET", asset)
                try:
                    response = await self._client.send(request)
                    await response.aread()
                except httpx.HTTPError as exc:
                    raise CacheInstallError(f"Failed to fetch shell asset {asset}: {exc}") from exc
                if not response.is_success:
                    raise CacheInstallError(f"Shell asset {asset} returned HTTP {response.status_code}")
                entries.append((request_key(request), CachedResponse.from_response(response)))
            await bucket.put_many(entries)
        except CacheInstallError:
            self.state = WorkerState.REDUNDANT
            raise
        self.state = WorkerState.INSTALLED
        logger.info("Installed cache generation %s with %d asset(s)", self.version, len(self.shell_assets))

    async def activate(self) -> list[str]:
        self.state = WorkerState.ACTIVATING
        deleted = []
        for name in await self._storage.keys():
            if name != self.version:
                await self._storage.delete(name)
                deleted.append(name)
        self.state = WorkerState.ACTIVATED
        if deleted:
            logger.info("Activated %s, removed stale generations: %s", self.version, ", ".join(deleted))
        return deleted

    async def start(self) -> bool:
        try:
            await self.install()
        except CacheInstallError as exc:
            logger.warning("Cache install for %s failed, staying on previous generation: %s", self.version, exc)
            return False
        await self.activate()
        return True

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        if request.method != "GET" or not self.active:
            return await self._client.send(request)

        lookup = asyncio.ensure_future(self._storage.match(request))
        network = asyncio.ensure_future(self._revalidate(request, lookup))

        cached = await lookup
        if cached is not None:
            self._track(network)
            return cached.to_response(request)

        response = await network
        if response is None:
            raise AssetUnavailable(str(request.url))
        return response

    async def _revalidate(self, request: httpx.Request, lookup: asyncio.Future) -> httpx.Response | None:
        try:
            response = await self._client.send(request)
            await response.aread()
        except httpx.HTTPError as exc:
            logger.debug("Network fetch for %s failed: %s", request.url, exc)
            cached = await lookup
            return cached.to_response(request) if cached is not None else None

        bucket = await self._current()
        await bucket.put(request, CachedResponse.from_response(response))
        return response

    def _track(self, task: asyncio.Task) -> None:
        self._refreshes.add(task)
        task.add_done_callback(self._refresh_done)

    def _refresh_done(self, task: asyncio.Task) -> None:
        self._refreshes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Background cache refresh failed: %s", task.exception())

    async def drain(self) -> None:
        """Wait for background refreshes started by cache hits."""
        while self._refreshes:
            await asyncio.gather(*list(self._refreshes), return_exceptions=True)
