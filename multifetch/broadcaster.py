"""
Fans queue-state snapshots out to any number of live observers.

Rapid-fire updates are coalesced: at most one broadcast goes out per
``min_interval`` window, with a trailing broadcast so the last change is never
lost. Status transitions are published with ``immediate=True`` and bypass the
window. A subscriber whose delivery fails is dropped without affecting the
others.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set

Snapshot = Dict[str, Any]
Listener = Callable[[Dict[str, Any]], Any]


class Subscription:
    """
    A bounded mailbox of broadcast messages for one observer.

    When the observer falls behind, the oldest message is discarded; every
    message is a full snapshot, so only the newest one matters.
    """
    def __init__(self, broadcaster: "EventBroadcaster", maxsize: int = 16):
        self._broadcaster = broadcaster
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def push(self, message: Dict[str, Any]):
        if self.closed:
            return
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(message)

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def get_nowait(self) -> Dict[str, Any]:
        return self.queue.get_nowait()

    def close(self):
        self.closed = True
        self._broadcaster.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        return await self.queue.get()


class EventBroadcaster:
    """Throttled fan-out of full-state snapshots."""

    def __init__(self, snapshot_provider: Callable[[], Snapshot], min_interval: float = 0.25):
        """
        Initializes the EventBroadcaster.

        Args:
            snapshot_provider: Builds the canonical snapshot; called once per broadcast.
            min_interval: Minimum seconds between two throttled broadcasts.
        """
        self.snapshot_provider = snapshot_provider
        self.min_interval = min_interval
        self.logger = logging.getLogger(__name__)
        self._subscriptions: Set[Subscription] = set()
        self._listeners: List[Listener] = []
        self._listener_tasks: Set[asyncio.Task] = set()
        self._pending: Optional[asyncio.TimerHandle] = None
        self._last_broadcast: float = float('-inf')
        self.broadcast_count = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def subscribe(self, maxsize: int = 16) -> Subscription:
        """Registers a mailbox observer and delivers the current state to it immediately."""
        subscription = Subscription(self, maxsize)
        self._subscriptions.add(subscription)
        subscription.push({'type': 'state', 'data': self.snapshot_provider()})
        return subscription

    def unsubscribe(self, subscription: Subscription):
        self._subscriptions.discard(subscription)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """
        Registers a push callback (sync or async) and sends it the current state.

        Returns:
            A function that removes the listener again.
        """
        self._listeners.append(listener)
        self._deliver(listener, {'type': 'state', 'data': self.snapshot_provider()})

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def publish(self, immediate: bool = False):
        """
        Requests a broadcast.

        Args:
            immediate: Bypass the throttle window (used for status transitions).
                A pending trailing broadcast is superseded.
        """
        loop = asyncio.get_running_loop()
        if immediate:
            self._cancel_pending()
            self._broadcast()
            return
        if self._pending is not None:
            return
        elapsed = loop.time() - self._last_broadcast
        if elapsed >= self.min_interval:
            self._broadcast()
        else:
            self._pending = loop.call_later(self.min_interval - elapsed, self._flush)

    def close(self):
        self._cancel_pending()
        for subscription in list(self._subscriptions):
            subscription.closed = True
        self._subscriptions.clear()
        self._listeners.clear()

    def _cancel_pending(self):
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _flush(self):
        self._pending = None
        self._broadcast()

    def _broadcast(self):
        message = {'type': 'update', 'data': self.snapshot_provider()}
        self._last_broadcast = asyncio.get_running_loop().time()
        self.broadcast_count += 1
        for subscription in list(self._subscriptions):
            try:
                subscription.push(message)
            except Exception as e:
                self.logger.debug(f"Dropping subscriber after delivery error: {e}")
                self._subscriptions.discard(subscription)
        for listener in list(self._listeners):
            self._deliver(listener, message)

    def _deliver(self, listener: Listener, message: Dict[str, Any]):
        try:
            result = listener(message)
        except Exception as e:
            self.logger.debug(f"Dropping listener after delivery error: {e}")
            self._drop_listener(listener)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._listener_tasks.add(task)
            task.add_done_callback(lambda t: self._listener_done(listener, t))

    def _listener_done(self, listener: Listener, task: asyncio.Task):
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            self.logger.debug(f"Dropping listener after delivery error: {task.exception()}")
            self._drop_listener(listener)

    def _drop_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)
