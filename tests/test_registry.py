import asyncio
import os
import sys
import unittest

# Ensure we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../')))

from livequery.backends.memory import MemoryBackend
from livequery.channels.registry import ChannelState, RetryPolicy, SubscriptionRegistry
from livequery.descriptor import ResourceDescriptor, eq
from livequery.events import ChangeEvent
from livequery.exceptions import ChannelConnectionError, RegistryError

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.004)


class TestSubscriptionRegistry(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = MemoryBackend()
        self.registry = SubscriptionRegistry(self.backend, retry=FAST_RETRY)

    async def asyncTearDown(self):
        await self.registry.close_all()

    async def test_acquire_twice_shares_one_channel(self):
        first = await self.registry.acquire("gallery|all")
        second = await self.registry.acquire("gallery|all")

        self.assertIs(first, second)
        self.assertEqual(self.registry.observers("gallery|all"), 2)
        await first.wait_ready()
        self.assertEqual(self.backend.subscribe_calls, 1)

        await self.registry.release("gallery|all")
        self.assertEqual(self.registry.observers("gallery|all"), 1)
        self.assertIn("gallery|all", self.registry)
        self.assertEqual(first.state, ChannelState.OPEN)

        await self.registry.release("gallery|all")
        self.assertNotIn("gallery|all", self.registry)
        self.assertEqual(first.state, ChannelState.CLOSED)
        self.assertEqual(self.backend.unsubscribe_calls, 1)

    async def test_concurrent_acquire_opens_one_channel(self):
        descriptor = ResourceDescriptor("gallery_comments", filters=(eq("gallery_id", "g1"),))
        channels = await asyncio.gather(*(self.registry.acquire(descriptor) for _ in range(5)))

        self.assertEqual(len({id(channel) for channel in channels}), 1)
        self.assertEqual(len(self.registry), 1)
        self.assertEqual(self.registry.observers(descriptor), 5)
        await channels[0].wait_ready()
        self.assertEqual(self.backend.subscribe_calls, 1)

    async def test_concurrent_release_and_acquire_leaves_no_orphan(self):
        key = "posts|all"
        await self.registry.acquire(key)
        await asyncio.gather(self.registry.release(key), self.registry.acquire(key))

        channel = self.registry.get(key)
        self.assertIsNotNone(channel)
        self.assertEqual(channel.observer_count, 1)
        await self.registry.release(key)
        self.assertEqual(len(self.registry), 0)

    async def test_release_without_acquire_raises(self):
        with self.assertRaises(RegistryError):
            await self.registry.release("users|all")

        await self.registry.acquire("users|all")
        await self.registry.release("users|all")
        with self.assertRaises(RegistryError):
            await self.registry.release("users|all")

    async def test_filters_in_any_order_share_a_key(self):
        a = ResourceDescriptor("posts", filters=(eq("is_published", True), eq("category", "news")))
        b = ResourceDescriptor("posts", filters=(eq("category", "news"), eq("is_published", True)))
        self.assertEqual(a.channel_key, b.channel_key)

        self.assertIs(await self.registry.acquire(a), await self.registry.acquire(b))

    async def test_events_fan_out_to_every_listener(self):
        channel = await self.registry.acquire("gallery|all")
        await channel.wait_ready()
        seen_a, seen_b = [], []
        channel.add_listener(seen_a.append)
        remove_b = channel.add_listener(seen_b.append)

        self.backend.insert("gallery", {"id": 1, "title": "Lomba"})
        remove_b()
        self.backend.insert("gallery", {"id": 2, "title": "Wisuda"})

        self.assertEqual([event.row["id"] for event in seen_a], [1, 2])
        self.assertEqual([event.row["id"] for event in seen_b], [1])

    async def test_listener_errors_do_not_reach_the_feed(self):
        channel = await self.registry.acquire("gallery|all")
        await channel.wait_ready()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        channel.add_listener(broken)
        channel.add_listener(seen.append)
        with self.assertLogs("livequery.exceptions", level="ERROR"):
            self.backend.emit(ChangeEvent.inserted({"id": 1}, resource="gallery"))
        self.assertEqual(len(seen), 1)

    async def test_retries_with_backoff_then_opens(self):
        self.backend.fail_subscribe = 2
        channel = await self.registry.acquire("settings|all")
        with self.assertLogs("livequery.channels.registry", level="INFO") as logs:
            state = await channel.wait_ready()

        self.assertEqual(state, ChannelState.OPEN)
        self.assertEqual(self.backend.subscribe_calls, 3)
        self.assertEqual(channel.attempts, 2)
        self.assertTrue(any("retrying" in line for line in logs.output))

    async def test_degrades_after_max_attempts(self):
        self.backend.fail_subscribe = True
        channel = await self.registry.acquire("settings|all")
        errors = []
        channel.add_error_listener(errors.append)

        state = await channel.wait_ready()

        self.assertEqual(state, ChannelState.DEGRADED)
        self.assertEqual(self.backend.subscribe_calls, FAST_RETRY.max_attempts)
        self.assertIsInstance(channel.error, ChannelConnectionError)
        self.assertEqual(errors, [channel.error])

    async def test_dropped_feed_reconnects(self):
        channel = await self.registry.acquire("gallery|all")
        await channel.wait_ready()

        self.backend.drop_subscriptions(ConnectionError("socket closed"))
        self.assertEqual(channel.state, ChannelState.CONNECTING)
        await channel.wait_ready()

        self.assertEqual(channel.state, ChannelState.OPEN)
        self.assertEqual(self.backend.subscribe_calls, 2)

    async def test_close_all_closes_every_channel(self):
        await self.registry.acquire("gallery|all")
        await self.registry.acquire("posts|all")
        await self.registry.close_all()
        self.assertEqual(len(self.registry), 0)


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0)
    assert [policy.delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


if __name__ == '__main__':
    unittest.main()
