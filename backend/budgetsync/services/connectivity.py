import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from budgetsync.services.offline_queue import FlushResult, OfflineQueueManager

logger = logging.getLogger(__name__)

OFFLINE_BANNER = "Offline mode: entries will be queued and synced when you reconnect."


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class ConnectivityEvent:
    state: ConnectivityState
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_flag(cls, online: bool) -> "ConnectivityEvent":
        return cls(ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE)


class ConnectivityMonitor:
    """Two-state online/offline machine fed by host connectivity notifications.

    State changes apply as soon as an event is published. The reconnect flush
    runs as a background task, so later events never wait behind it.
    """

    def __init__(self, queue: OfflineQueueManager, online: bool = True, notice_seconds: float = 3.2) -> None:
        self._queue = queue
        self._state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        self._notice_seconds = notice_seconds
        self._notice: str | None = None
        self._notice_timer: asyncio.TimerHandle | None = None
        self._events: asyncio.Queue[ConnectivityEvent] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._syncs: set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    @property
    def notice(self) -> str | None:
        return self._notice

    def banner(self) -> str | None:
        if not self.online:
            return OFFLINE_BANNER
        return self._notice

    def publish(self, online: bool) -> ConnectivityEvent:
        event = ConnectivityEvent.from_flag(online)
        if self._transition(event) and event.state is ConnectivityState.ONLINE:
            self._events.put_nowait(event)
        return event

    def _transition(self, event: ConnectivityEvent) -> bool:
        previous = self._state
        if event.state is previous:
            return False
        self._state = event.state
        logger.info("Connectivity changed: %s -> %s", previous.value, event.state.value)
        return True

    async def handle(self, event: ConnectivityEvent) -> FlushResult | None:
        """Apply one event and, on reconnect, wait for the resulting flush."""
        if not self._transition(event) or event.state is ConnectivityState.OFFLINE:
            return None
        return await self._sync_after_reconnect()

    async def _sync_after_reconnect(self) -> FlushResult:
        result = await self._queue.flush()
        if result.flushed > 0:
            self._show_notice(f"{result.flushed} offline item(s) synced")
        return result

    async def run(self) -> None:
        while True:
            await self._events.get()
            try:
                # Dropped if the host went offline again before we got here.
                if self.online:
                    self._track(asyncio.create_task(self._sync_after_reconnect()))
            finally:
                self._events.task_done()

    async def join(self) -> None:
        """Wait until every published event has been picked up."""
        await self._events.join()

    async def drain(self) -> None:
        """Wait for published events and the flushes they started."""
        await self.join()
        while self._syncs:
            await asyncio.gather(*list(self._syncs), return_exceptions=True)

    async def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self.run())
        if self.online:
            # Startup flush shows no notice.
            self._track(asyncio.create_task(self._queue.flush()))

    async def stop(self) -> None:
        self._clear_notice()
        tasks = list(self._syncs)
        if self._consumer is not None:
            tasks.append(self._consumer)
            self._consumer = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _track(self, task: asyncio.Task) -> None:
        self._syncs.add(task)
        task.add_done_callback(self._sync_done)

    def _sync_done(self, task: asyncio.Task) -> None:
        self._syncs.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background flush failed: %s", task.exception())

    def _show_notice(self, message: str) -> None:
        if self._notice_timer is not None:
            self._notice_timer.cancel()
        self._notice = message
        loop = asyncio.get_running_loop()
        self._notice_timer = loop.call_later(self._notice_seconds, self._clear_notice)

    def _clear_notice(self) -> None:
        if self._notice_timer is not None:
            self._notice_timer.cancel()
        self._notice_timer = None
        self._notice = None
