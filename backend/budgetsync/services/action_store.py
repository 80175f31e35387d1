import asyncio
import logging
from typing import Any, Protocol

from pydantic import ValidationError

from budgetsync.core.kv import StorageUnavailable
from budgetsync.models.actions import ExpenseAction, IncomeAction, dump_action, offline_action_adapter

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_KEY = "budget-offline-queue"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


def parse_entries(raw: Any) -> list[ExpenseAction | IncomeAction]:
    """Validate a stored sequence, dropping falsy and malformed entries."""
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("Stored queue is not a list (%s), ignoring it", type(raw).__name__)
        return []
    actions: list[ExpenseAction | IncomeAction] = []
    for index, entry in enumerate(raw):
        if not entry:
            continue
        try:
            actions.append(offline_action_adapter.validate_python(entry))
        except ValidationError as exc:
            logger.warning("Dropping malformed queued action at position %d: %s", index, exc.error_count())
    return actions


class ActionStore:
    """Ordered list of pending actions persisted under a single key."""

    def __init__(self, kv: KeyValueStore, key: str = DEFAULT_QUEUE_KEY) -> None:
        self._kv = kv
        self._key = key
        self._lock = asyncio.Lock()

    @property
    def key(self) -> str:
        return self._key

    async def _load(self) -> list[ExpenseAction | IncomeAction]:
        return parse_entries(await self._kv.get(self._key))

    async def _write(self, actions: list[ExpenseAction | IncomeAction]) -> None:
        if actions:
            await self._kv.set(self._key, [dump_action(action) for action in actions])
        else:
            await self._kv.delete(self._key)

    async def append(self, action: ExpenseAction | IncomeAction) -> int:
        async with self._lock:
            actions = await self._load()
            actions.append(action)
            await self._write(actions)
            return len(actions)

    async def read_all(self) -> list[ExpenseAction | IncomeAction]:
        try:
            return await self._load()
        except StorageUnavailable as exc:
            logger.warning("Offline queue unreadable, treating as empty: %s", exc)
            return []

    async def clear(self) -> None:
        async with self._lock:
            await self._kv.delete(self._key)

    async def discard(self, count: int) -> int:
        """Remove the first ``count`` actions and return how many remain."""
        if count <= 0:
            return len(await self.read_all())
        async with self._lock:
            actions = await self._load()
            remaining = actions[count:]
            await self._write(remaining)
            return len(remaining)
