"""Tests for the throttled snapshot broadcaster."""

import asyncio

from multifetch.broadcaster import EventBroadcaster


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return {'version': self.calls}


class TestSubscriptions:
    async def test_initial_state_is_delivered(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.05)
        subscription = broadcaster.subscribe()
        message = subscription.get_nowait()
        assert message['type'] == 'state'
        assert message['data'] == {'version': 1}

    async def test_slow_subscriber_keeps_newest_messages(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.0)
        subscription = broadcaster.subscribe(maxsize=2)
        for _ in range(5):
            broadcaster.publish(immediate=True)
        assert subscription.dropped == 4
        assert subscription.get_nowait()['data'] == {'version': 5}
        assert subscription.get_nowait()['data'] == {'version': 6}

    async def test_closed_subscription_stops_receiving(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.0)
        subscription = broadcaster.subscribe()
        subscription.close()
        broadcaster.publish(immediate=True)
        assert broadcaster.subscriber_count == 0
        assert subscription.get_nowait()['type'] == 'state'
        assert subscription.queue.empty()


class TestThrottle:
    async def test_rapid_updates_coalesce_into_trailing_broadcast(self):
        snapshots = Counter()
        broadcaster = EventBroadcaster(snapshots, min_interval=0.05)
        received = []
        broadcaster.add_listener(received.append)

        for _ in range(10):
            broadcaster.publish()
        assert broadcaster.broadcast_count == 1

        await asyncio.sleep(0.1)
        assert broadcaster.broadcast_count == 2
        # One snapshot for the initial state plus one per broadcast.
        assert snapshots.calls == 3
        assert [message['type'] for message in received] == ['state', 'update', 'update']

    async def test_immediate_publish_bypasses_window_and_supersedes_pending(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.05)
        broadcaster.publish()
        broadcaster.publish()
        broadcaster.publish(immediate=True)
        assert broadcaster.broadcast_count == 2
        await asyncio.sleep(0.1)
        assert broadcaster.broadcast_count == 2


class TestListeners:
    async def test_failing_listener_is_dropped_without_affecting_others(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.0)
        received = []

        def broken(message):
            if message['type'] == 'update':
                raise RuntimeError("socket closed")

        broadcaster.add_listener(broken)
        broadcaster.add_listener(received.append)
        broadcaster.publish(immediate=True)
        broadcaster.publish(immediate=True)

        assert broadcaster.subscriber_count == 1
        assert [message['type'] for message in received] == ['state', 'update', 'update']

    async def test_async_listener(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.0)
        received = []

        async def listener(message):
            received.append(message['type'])

        broadcaster.add_listener(listener)
        broadcaster.publish(immediate=True)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert received == ['state', 'update']

    async def test_failing_async_listener_is_dropped(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.0)

        async def listener(message):
            raise ConnectionResetError()

        broadcaster.add_listener(listener)
        await asyncio.sleep(0.01)
        assert broadcaster.subscriber_count == 0

    async def test_remover(self):
        broadcaster = EventBroadcaster(Counter(), min_interval=0.0)
        received = []
        remove = broadcaster.add_listener(received.append)
        remove()
        broadcaster.publish(immediate=True)
        assert len(received) == 1
