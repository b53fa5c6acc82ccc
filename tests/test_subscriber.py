"""Tests for live subscriptions."""

import asyncio

from redis.exceptions import ConnectionError as RedisConnectionError

from storefront.documents import PRODUCTS, DocumentStore
from storefront.subscriber import Subscription


class UnreachableFeed:
    """Wraps a Redis client so the first `failures` SUBSCRIBE calls fail."""

    def __init__(self, redis, failures: int = 1):
        self.redis = redis
        self.failures = failures

    def pubsub(self):
        pubsub = self.redis.pubsub()
        subscribe = pubsub.subscribe

        async def flaky_subscribe(*channels):
            if self.failures > 0:
                self.failures -= 1
                raise RedisConnectionError("feed unavailable")
            return await subscribe(*channels)

        pubsub.subscribe = flaky_subscribe
        return pubsub

    def __getattr__(self, name):
        return getattr(self.redis, name)


class TestStart:
    """Tests for opening a subscription."""

    async def test_initial_snapshot(self, seeded_catalog):
        snapshots, errors = [], []
        subscription = Subscription(seeded_catalog, PRODUCTS, snapshots.append, errors.append)

        await subscription.start()
        await subscription.close()

        assert [d["id"] for d in snapshots[0]] == ["p1", "p2"]
        assert errors == []

    async def test_unreachable_feed_still_delivers_snapshot(
        self, session_factory, redis, seeded_catalog, eventually
    ):
        store = DocumentStore(session_factory, UnreachableFeed(redis), "test-app")
        snapshots, errors = [], []
        subscription = Subscription(
            store, PRODUCTS, snapshots.append, errors.append, poll_timeout=0.05
        )

        await subscription.start()
        try:
            assert len(errors) == 1
            assert not subscription.subscribed
            assert [d["id"] for d in snapshots[0]] == ["p1", "p2"]

            await eventually(lambda: subscription.subscribed)
            await store.add(PRODUCTS, {"name": "Seeds"})

            await eventually(lambda: len(snapshots[-1]) == 3)
        finally:
            await subscription.close()
        assert subscription.closed


class TestListener:
    """Tests for the background listener."""

    async def test_change_triggers_snapshot(self, store, eventually):
        snapshots = []
        subscription = Subscription(store, PRODUCTS, snapshots.append, lambda e: None)
        await subscription.start()

        await store.set(PRODUCTS, "p1", {"name": "Slice"})

        try:
            await eventually(lambda: len(snapshots) == 2)
        finally:
            await subscription.close()
        assert snapshots[-1] == [{"id": "p1", "name": "Slice"}]

    async def test_callback_error_does_not_stop_listener(self, store, eventually):
        calls = []
        delivered = []

        def on_snapshot(documents):
            calls.append(documents)
            if len(calls) == 2:
                raise ValueError("render failed")
            delivered.append(documents)

        subscription = Subscription(store, PRODUCTS, on_snapshot, lambda e: None)
        await subscription.start()

        await store.set(PRODUCTS, "p1", {"name": "Slice"})
        await eventually(lambda: len(calls) == 2)
        await store.set(PRODUCTS, "p2", {"name": "Rind"})

        try:
            await eventually(lambda: len(delivered) == 2)
        finally:
            await subscription.close()
        assert [d["id"] for d in delivered[-1]] == ["p1", "p2"]


class TestClose:
    """Tests for releasing a subscription."""

    async def test_close_twice(self, store):
        subscription = Subscription(store, PRODUCTS, lambda docs: None, lambda e: None)
        await subscription.start()

        await subscription.close()
        await subscription.close()

        assert subscription.closed
        assert not subscription.active

    async def test_close_after_listener_crashed(self, store):
        subscription = Subscription(store, PRODUCTS, lambda docs: None, lambda e: None)
        await subscription.start()
        subscription._task.cancel()

        async def crashed():
            raise RuntimeError("listener crashed")

        subscription._task = asyncio.create_task(crashed())
        await asyncio.sleep(0)

        await subscription.close()

        assert subscription.closed
