import asyncio
import json
import os
import pathlib
import sys
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx

BACKEND_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("API_BASE_URL", "http://api.test")

from budgetsync.core.kv import MemoryKeyValueStore, StorageUnavailable
from budgetsync.models.actions import ExpenseAction, ExpensePayload, IncomeAction, IncomePayload
from budgetsync.services.action_store import ActionStore
from budgetsync.services.api_client import BudgetApiClient, build_http_client
from budgetsync.services.offline_queue import ActionRejected, OfflineQueueManager


def expense(amount: str, **extra) -> ExpenseAction:
    return ExpenseAction(
        payload=ExpensePayload(user_id="user-1", amount=Decimal(amount), category="GROCERIES", **extra)
    )


def income(amount: str) -> IncomeAction:
    return IncomeAction(payload=IncomePayload(user_id="user-1", amount=Decimal(amount), source="SALARY"))


class FakeBudgetApi:
    """Scripted write endpoints: one outcome (status code or exception) per request."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else 200
        if isinstance(outcome, Exception):
            raise outcome
        kind = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(outcome, json={kind: {"id": f"row-{len(self.requests)}"}})

    @property
    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def connect_error(message: str = "network down") -> httpx.ConnectError:
    return httpx.ConnectError(message)


class FailingKeyValueStore:
    async def get(self, key):
        raise StorageUnavailable("quota exceeded")

    async def set(self, key, value):
        raise StorageUnavailable("quota exceeded")

    async def delete(self, key):
        raise StorageUnavailable("quota exceeded")


class OfflineQueueTests(unittest.IsolatedAsyncioTestCase):
    def build(self, outcomes=None, handler=None, kv=None):
        self.api = FakeBudgetApi(outcomes)
        transport = httpx.MockTransport(handler or self.api.handler)
        self.http = build_http_client("http://api.test", transport=transport)
        self.store = ActionStore(kv or MemoryKeyValueStore())
        return OfflineQueueManager(self.store, BudgetApiClient(self.http))

    async def asyncTearDown(self):
        await self.http.aclose()

    async def test_flush_empty_queue_makes_no_requests(self):
        queue = self.build()

        result = await queue.flush()

        self.assertEqual(result.flushed, 0)
        self.assertEqual(self.api.requests, [])

    async def test_flush_all_accepted_clears_queue(self):
        queue = self.build()
        actions = [expense("12.50"), income("1000"), expense("3.00")]
        for action in actions:
            await queue.enqueue(action)

        result = await queue.flush()

        self.assertEqual(result.flushed, 3)
        self.assertEqual(result.pending, 0)
        self.assertEqual(await self.store.read_all(), [])
        self.assertEqual(self.api.paths, ["/api/expense", "/api/income", "/api/expense"])
        self.assertEqual(self.api.bodies()[1]["source"], "SALARY")
        self.assertEqual(self.api.requests[0].headers["content-type"], "application/json")

    async def test_partial_http_failure_keeps_entire_queue(self):
        queue = self.build(outcomes=[201, 500, 201])
        actions = [expense("1.00"), expense("2.00"), income("3.00")]
        for action in actions:
            await queue.enqueue(action)

        result = await queue.flush()

        self.assertEqual(result.flushed, 2)
        self.assertEqual(result.pending, 3)
        self.assertEqual(await self.store.read_all(), actions)
        # The failure in the middle does not stop later actions from being sent.
        self.assertEqual(len(self.api.requests), 3)

    async def test_network_errors_are_counted_per_action(self):
        queue = self.build(outcomes=[connect_error(), 200, connect_error()])
        actions = [expense("1.00"), expense("2.00"), expense("3.00")]
        for action in actions:
            await queue.enqueue(action)

        result = await queue.flush()

        self.assertEqual(result.flushed, 1)
        self.assertEqual(await self.store.read_all(), actions)

    async def test_retry_after_partial_failure_resends_accepted_actions(self):
        queue = self.build(outcomes=[200, 503, 200, 200])
        await queue.enqueue(expense("1.00"))
        await queue.enqueue(income("2.00"))

        first = await queue.flush()
        second = await queue.flush()

        self.assertEqual(first.flushed, 1)
        self.assertEqual(second.flushed, 2)
        self.assertEqual(self.api.paths, ["/api/expense", "/api/income", "/api/expense", "/api/income"])
        self.assertEqual(await self.store.read_all(), [])

    async def test_concurrent_flushes_share_one_pass(self):
        queue = self.build()
        for i in range(4):
            await queue.enqueue(expense(f"{i + 1}.00"))

        first, second = await asyncio.gather(queue.flush(), queue.flush())

        self.assertEqual(first, second)
        self.assertEqual(first.flushed, 4)
        self.assertEqual(len(self.api.requests), 4)
        self.assertFalse(queue.flushing)

    async def test_action_enqueued_mid_flush_waits_for_next_pass(self):
        late = income("99.00")
        api = FakeBudgetApi()

        async def handler(request: httpx.Request) -> httpx.Response:
            if not api.requests:
                await queue.enqueue(late)
            return api.handler(request)

        queue = self.build(handler=handler)
        self.api = api
        await queue.enqueue(expense("1.00"))
        await queue.enqueue(expense("2.00"))

        result = await queue.flush()

        self.assertEqual(result.flushed, 2)
        self.assertEqual(result.pending, 1)
        self.assertEqual(await self.store.read_all(), [late])

    async def test_payload_dates_are_sent_as_utc_timestamps(self):
        queue = self.build()
        occurred = datetime(2026, 3, 1, 9, 30, tzinfo=timezone(timedelta(hours=-5)))
        await queue.enqueue(expense("7.25", occurred_at=occurred, note="lunch"))
        await queue.enqueue(expense("1.00"))

        await queue.flush()

        first, second = self.api.bodies()
        self.assertEqual(first["occurredAt"], "2026-03-01T14:30:00Z")
        self.assertEqual(first["note"], "lunch")
        self.assertEqual(first["amount"], "7.25")
        self.assertNotIn("occurredAt", second)

    async def test_enqueue_reports_dropped_write_when_storage_unavailable(self):
        queue = self.build(kv=FailingKeyValueStore())

        self.assertFalse(await queue.enqueue(expense("1.00")))
        self.assertEqual((await queue.flush()).flushed, 0)
        self.assertEqual(self.api.requests, [])

    async def test_submit_offline_queues_without_network(self):
        queue = self.build()

        result = await queue.submit(expense("4.00"), online=False)

        self.assertTrue(result.queued)
        self.assertTrue(result.stored)
        self.assertEqual(result.status, "Offline: expense queued")
        self.assertEqual(len(await queue.pending()), 1)
        self.assertEqual(self.api.requests, [])

    async def test_submit_offline_stamps_entry_time_for_later_flush(self):
        queue = self.build()
        before = datetime.now(timezone.utc)

        await queue.submit(expense("4.00"), online=False)
        after = datetime.now(timezone.utc)
        await queue.flush()

        (body,) = self.api.bodies()
        sent_at = datetime.fromisoformat(body["occurredAt"].replace("Z", "+00:00"))
        self.assertTrue(body["occurredAt"].endswith("Z"))
        self.assertLessEqual(before.replace(microsecond=0), sent_at)
        self.assertLessEqual(sent_at, after)

    async def test_submit_offline_keeps_given_entry_time(self):
        queue = self.build()
        occurred = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)

        await queue.submit(expense("4.00", occurred_at=occurred), online=False)

        (queued,) = await queue.pending()
        self.assertEqual(queued.payload.occurred_at, occurred)

    async def test_submit_online_posts_directly(self):
        queue = self.build(outcomes=[201])

        result = await queue.submit(income("500"), online=True)

        self.assertFalse(result.queued)
        self.assertEqual(result.status, "Income saved")
        self.assertEqual(result.record, {"id": "row-1"})
        self.assertEqual(await queue.pending(), [])

    async def test_submit_online_failure_is_rejected(self):
        queue = self.build(outcomes=[400, connect_error()])

        with self.assertRaises(ActionRejected) as ctx:
            await queue.submit(expense("4.00"), online=True)
        self.assertEqual(ctx.exception.detail, "Could not save expense")

        with self.assertRaises(ActionRejected):
            await queue.submit(expense("4.00"), online=True)
        self.assertEqual(await queue.pending(), [])


if __name__ == "__main__":
    unittest.main()
