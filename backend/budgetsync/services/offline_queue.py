"""Offline write queue and its flush protocol.

A flush pass snapshots the stored queue, replays every action in order against
the budget API one request at a time, and clears the snapshot only when every
action was accepted. Any failure keeps the whole queue, so accepted actions are
sent again by the next pass (at-least-once delivery, the API has no
deduplication key).
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from budgetsync.core.kv import StorageUnavailable
from budgetsync.models.actions import ExpenseAction, IncomeAction
from budgetsync.services.action_store import ActionStore
from budgetsync.services.api_client import BudgetApiClient

logger = logging.getLogger(__name__)


class ActionRejected(Exception):
    def __init__(self, kind: str, detail: str):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail


@dataclass(frozen=True)
class FlushResult:
    flushed: int
    pending: int


@dataclass(frozen=True)
class SubmitResult:
    queued: bool
    stored: bool
    status: str
    record: dict | None = None


def stamp_occurred_at(action: ExpenseAction | IncomeAction) -> ExpenseAction | IncomeAction:
    """Stamp the entry time on an action that has none."""
    if action.payload.occurred_at is not None:
        return action
    payload = action.payload.model_copy(update={"occurred_at": datetime.now(timezone.utc)})
    return action.model_copy(update={"payload": payload})


class OfflineQueueManager:
    def __init__(self, store: ActionStore, client: BudgetApiClient) -> None:
        self._store = store
        self._client = client
        self._inflight: asyncio.Future[FlushResult] | None = None

    @property
    def flushing(self) -> bool:
        return self._inflight is not None

    async def enqueue(self, action: ExpenseAction | IncomeAction) -> bool:
        try:
            size = await self._store.append(action)
        except StorageUnavailable as exc:
            logger.warning("Dropping offline %s action, storage unavailable: %s", action.type, exc)
            return False
        logger.info("Queued offline %s action (queue size %d)", action.type, size)
        return True

    async def pending(self) -> list[ExpenseAction | IncomeAction]:
        return await self._store.read_all()

    async def flush(self) -> FlushResult:
        """Run one flush pass, or join the pass already in flight."""
        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._flush_pass())
            self._inflight = task
            task.add_done_callback(self._release)
        return await asyncio.shield(task)

    async def cancel(self) -> None:
        """Abort the pass in flight. Nothing is discarded unless every send completed."""
        task = self._inflight
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _release(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _deliver(self, index: int, action: ExpenseAction | IncomeAction) -> bool:
        try:
            response = await self._client.send_action(action)
        except httpx.HTTPError as exc:
            logger.warning("Failed to flush offline item #%d (%s): %s", index, action.type, exc)
            return False
        if not response.is_success:
            logger.warning(
                "Failed to flush offline item #%d (%s): HTTP %d", index, action.type, response.status_code
            )
            return False
        return True

    async def _flush_pass(self) -> FlushResult:
        queue = await self._store.read_all()
        if not queue:
            return FlushResult(flushed=0, pending=0)

        flushed = 0
        for index, action in enumerate(queue):
            if await self._deliver(index, action):
                flushed += 1

        if flushed == len(queue):
            try:
                pending = await self._store.discard(len(queue))
            except StorageUnavailable as exc:
                logger.warning("Flushed %d action(s) but could not clear the queue: %s", flushed, exc)
                pending = len(queue)
        else:
            pending = len(await self._store.read_all())
        logger.info("Flush pass delivered %d/%d action(s), %d pending", flushed, len(queue), pending)
        return FlushResult(flushed=flushed, pending=pending)

    async def submit(self, action: ExpenseAction | IncomeAction, online: bool) -> SubmitResult:
        if not online:
            action = stamp_occurred_at(action)
            stored = await self.enqueue(action)
            return SubmitResult(queued=True, stored=stored, status=f"Offline: {action.type} queued")

        try:
            response = await self._client.send_action(action)
        except httpx.HTTPError as exc:
            logger.warning("Direct %s submit failed: %s", action.type, exc)
            raise ActionRejected(action.type, f"Could not save {action.type}")
        if not response.is_success:
            logger.warning("Direct %s submit rejected: HTTP %d", action.type, response.status_code)
            raise ActionRejected(action.type, f"Could not save {action.type}")

        record = None
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get(action.type), dict):
                record = body[action.type]
        except ValueError:
            record = None
        return SubmitResult(queued=False, stored=True, status=f"{action.type.capitalize()} saved", record=record)
