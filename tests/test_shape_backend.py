import asyncio
import json
import os
import sys
import unittest

import httpx

# Ensure we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from livequery.backends.shape import ShapeBackend, where_clause
from livequery.channels.registry import SubscriptionRegistry
from livequery.descriptor import Filter, ResourceDescriptor, eq
from livequery.events import ChangeKind
from livequery.exceptions import ChannelError, FetchError
from livequery.live_query import LiveQuery
from livequery.policies import UpsertById

PAGE_1 = [
    {"key": '"public"."gallery"/"1"', "value": {"id": "1", "title": "Lomba"}, "headers": {"operation": "insert"}},
    {"key": '"public"."gallery"/"2"', "value": {"id": "2", "title": "Wisuda"}, "headers": {"operation": "insert"}},
]
PAGE_2 = [
    {"key": '"public"."gallery"/"1"', "value": {"id": "1", "title": "Lomba Baca"}, "headers": {"operation": "update"}},
    {"key": '"public"."gallery"/"2"', "value": {"id": "2"}, "headers": {"operation": "delete"}},
    {"key": '"public"."gallery"/"3"', "value": {"id": "3", "title": "Pentas"}, "headers": {"operation": "insert"}},
    {"headers": {"control": "up-to-date"}},
]
LIVE = [
    {"key": '"public"."gallery"/"4"', "value": {"id": "4", "title": "Pramuka"}, "headers": {"operation": "insert"}},
    {"headers": {"control": "up-to-date"}},
]


class ShapeServer:
    """Serves a two-page shape log and a live SSE stream."""

    def __init__(self, live_status: int = 200, live_messages=None):
        self.requests = []
        self.live_status = live_status
        self.live_messages = live_messages or LIVE

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        params = request.url.params
        if params.get("live") == "true":
            if self.live_status != 200:
                return httpx.Response(self.live_status)
            body = f"data: {json.dumps(self.live_messages)}\n\n"
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())
        if params["offset"] == "-1":
            return httpx.Response(200, json=PAGE_1, headers={"electric-handle": "h1", "electric-offset": "0_1"})
        return httpx.Response(200, json=PAGE_2, headers={"electric-handle": "h1", "electric-offset": "0_5",
                                                         "electric-up-to-date": ""})


async def wait_for(predicate, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def test_where_clause_rendering():
    assert where_clause([]) is None
    assert where_clause([eq("gallery_id", "g'1")]) == "\"gallery_id\" = 'g''1'"
    assert where_clause([Filter("id", "in", [1, 2]), eq("is_published", True)]) == \
        "\"id\" IN (1, 2) AND \"is_published\" = true"
    assert where_clause([Filter("deleted_at", "eq", None)]) == "\"deleted_at\" IS NULL"
    assert where_clause([Filter("views", "gte", 10)]) == "\"views\" >= 10"


class TestShapeBackend(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.server = ShapeServer()
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self.server))
        self.backend = ShapeBackend("http://electric.test/", client=self.client)

    async def asyncTearDown(self):
        await self.backend.aclose()
        await self.client.aclose()

    async def test_fetch_folds_the_shape_log(self):
        rows = await self.backend.fetch("gallery", order_by="id")

        self.assertEqual(rows, [{"id": "1", "title": "Lomba Baca"}, {"id": "3", "title": "Pentas"}])
        first, second = self.server.requests
        self.assertEqual(str(first.url).split("?")[0], "http://electric.test/v1/shape")
        self.assertEqual(first.url.params["offset"], "-1")
        self.assertEqual(second.url.params["offset"], "0_1")
        self.assertEqual(second.url.params["handle"], "h1")

    async def test_fetch_sends_where_and_columns(self):
        await self.backend.fetch("gallery", filters=(eq("category", "kegiatan"),), columns=("id", "title"),
                                 single=True)
        params = self.server.requests[0].url.params
        self.assertEqual(params["table"], "gallery")
        self.assertEqual(params["where"], "\"category\" = 'kegiatan'")
        self.assertEqual(params["columns"], "id,title")

    async def test_fetch_single_and_limit(self):
        row = await self.backend.fetch("gallery", order_by="id", descending=True, single=True)
        self.assertEqual(row["id"], "3")
        rows = await self.backend.fetch("gallery", order_by="id", limit=1)
        self.assertEqual([r["id"] for r in rows], ["1"])

    async def test_fetch_http_error_is_fetch_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
        backend = ShapeBackend("http://electric.test", client=client)
        with self.assertRaises(FetchError) as info:
            await backend.fetch("settings")
        self.assertEqual(info.exception.resource, "settings")
        await client.aclose()

    async def test_subscribe_follows_the_live_stream(self):
        events, errors = [], []
        descriptor = ResourceDescriptor("gallery")
        handle = await self.backend.subscribe(descriptor, events.append, errors.append)

        await wait_for(lambda: errors)
        live = self.server.requests[-1].url.params
        self.assertEqual(live["live"], "true")
        self.assertEqual(live["live_sse"], "true")
        self.assertEqual(live["offset"], "0_5")
        self.assertEqual(live["handle"], "h1")
        self.assertEqual(live["replica"], "full")

        self.assertEqual(len(events), 1)
        self.assertIs(events[0].kind, ChangeKind.INSERTED)
        self.assertEqual(events[0].row, {"id": "4", "title": "Pramuka"})
        self.assertEqual(events[0].resource, "gallery")
        self.assertIsInstance(errors[0], ChannelError)

        await self.backend.unsubscribe(handle)

    async def test_must_refetch_forgets_the_dropped_feed(self):
        self.server.live_messages = [{"headers": {"control": "must-refetch"}}]
        errors = []
        for _ in range(3):
            await self.backend.subscribe(ResourceDescriptor("gallery"), lambda event: None, errors.append)
            self.assertEqual(len(self.backend._feeds), 1)
            await wait_for(lambda: not self.backend._feeds)

        self.assertEqual(len(errors), 3)
        self.assertTrue(all(isinstance(error, ChannelError) for error in errors))
        self.assertIn("must be refetched", str(errors[0]))

    async def test_subscribe_failure_raises_channel_error(self):
        self.server.live_status = 503
        with self.assertRaises(ChannelError):
            await self.backend.subscribe(ResourceDescriptor("gallery"), lambda event: None)

    async def test_live_query_over_shapes(self):
        live = LiveQuery(self.backend, SubscriptionRegistry(self.backend))
        sub = live.open(ResourceDescriptor("gallery", order_by="id"), UpsertById())

        snapshot = await sub.ready()
        self.assertEqual([row["id"] for row in snapshot], ["1", "3"])
        await wait_for(lambda: len(sub.snapshot.peek()) == 3)
        self.assertEqual(sub.snapshot.peek()[-1]["title"], "Pramuka")

        await live.shutdown()


if __name__ == '__main__':
    unittest.main()
