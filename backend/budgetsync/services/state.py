from dataclasses import dataclass
from datetime import timezone, tzinfo

import httpx
from redis.asyncio import Redis

from budgetsync.core.cache import CacheStorage
from budgetsync.core.config import Settings, resolve_timezone
from budgetsync.core.kv import connect_redis, open_kv_store
from budgetsync.services.action_store import ActionStore, KeyValueStore
from budgetsync.services.api_client import BudgetApiClient, build_http_client
from budgetsync.services.asset_cache import AssetCacheController
from budgetsync.services.connectivity import ConnectivityMonitor
from budgetsync.services.offline_queue import OfflineQueueManager


@dataclass
class Services:
    queue: OfflineQueueManager
    monitor: ConnectivityMonitor
    assets: AssetCacheController
    api: BudgetApiClient
    origin: httpx.AsyncClient
    redis: Redis | None = None
    display_tz: tzinfo = timezone.utc

    async def start(self) -> None:
        await self.assets.start()
        await self.monitor.start()

    async def aclose(self) -> None:
        await self.monitor.stop()
        await self.queue.cancel()
        await self.assets.drain()
        await self.api.aclose()
        await self.origin.aclose()
        if self.redis is not None:
            await self.redis.aclose()


def assemble(
    settings: Settings,
    kv: KeyValueStore,
    cache_storage: CacheStorage,
    api_http: httpx.AsyncClient,
    origin_http: httpx.AsyncClient,
    redis: Redis | None = None,
) -> Services:
    api = BudgetApiClient(api_http)
    queue = OfflineQueueManager(ActionStore(kv, key=settings.queue_key), api)
    monitor = ConnectivityMonitor(queue, online=settings.start_online, notice_seconds=settings.sync_notice_seconds)
    assets = AssetCacheController(cache_storage, origin_http, settings.cache_version, settings.shell_assets)
    return Services(
        queue=queue,
        monitor=monitor,
        assets=assets,
        api=api,
        origin=origin_http,
        redis=redis,
        display_tz=resolve_timezone(settings.tz),
    )


async def build_services(settings: Settings) -> Services:
    redis = await connect_redis(settings.redis_url)
    kv = open_kv_store(redis, settings.queue_file, key_prefix=settings.redis_prefix)
    cache_storage = CacheStorage(redis=redis, key_prefix=settings.redis_prefix)
    api_http = build_http_client(settings.api_base_url, settings.api_token, settings.request_timeout)
    origin_http = httpx.AsyncClient(base_url=settings.origin_url, timeout=settings.request_timeout)
    return assemble(settings, kv, cache_storage, api_http, origin_http, redis=redis)
