"""
Real-time notification fan-out for the admin views.

Events are ``{"type": ..., "data": ...}`` dicts pushed to every WebSocket
subscriber connected at publish time. Delivery is best-effort and
at-most-once: nothing is acknowledged, queued for later, or replayed to
subscribers that connect afterwards.

When Redis is reachable, events go through the ``qrmenu:events`` channel and
each API process relays them to its own subscribers, so viewers connected to
different instances see the same stream.
"""
import asyncio
import json
import logging
import threading
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "qrmenu:events"

NEW_ORDER = "new_order"
ORDER_READY = "order_ready"
ORDER_COMPLETED = "order_completed"
ORDER_STATUS_UPDATED = "order_status_updated"
NEW_WAITER_CALL = "new_waiter_call"


class Subscription:
    """One connected viewer: a queue living on the viewer's event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, event: Dict[str, Any]) -> None:
        # publish() runs on threadpool workers, the queue belongs to the loop
        self.loop.call_soon_threadsafe(self.queue.put_nowait, event)

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()


class SubscriberRegistry:
    """Process-local set of subscribers."""

    def __init__(self):
        self._subscribers = set()
        self._lock = threading.Lock()

    def subscribe(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        subscription = Subscription(loop or asyncio.get_running_loop())
        with self._lock:
            self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def publish(self, event: Dict[str, Any]) -> int:
        """Deliver to the subscribers present right now; returns how many were reached."""
        with self._lock:
            snapshot = list(self._subscribers)

        delivered = 0
        for subscription in snapshot:
            try:
                subscription.deliver(event)
                delivered += 1
            except RuntimeError as e:
                # loop already closed, the viewer is gone
                logger.debug(f"Dropping dead subscriber: {e}")
                self.unsubscribe(subscription)
        return delivered

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)


class Broadcaster:
    def __init__(self, registry: Optional[SubscriberRegistry] = None, redis=None, channel: str = EVENTS_CHANNEL):
        self.registry = registry if registry is not None else SubscriberRegistry()
        self.redis = redis
        self.channel = channel
        self._pubsub = None
        self._relay_thread = None

    @property
    def relay_running(self) -> bool:
        return self._relay_thread is not None and self._relay_thread.is_alive()

    def publish(self, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        event = {"type": event_type, "data": data}
        if self.relay_running and self.redis.publish(self.channel, event):
            return event
        reached = self.registry.publish(event)
        logger.debug(f"Event {event_type} delivered to {reached} local subscribers")
        return event

    def start_relay(self) -> bool:
        """Subscribe to the shared channel and forward its events to local subscribers."""
        if self.relay_running:
            return True
        if self.redis is None or not self.redis.is_available():
            logger.info("Redis unavailable, notifications stay process-local")
            return False

        self._pubsub = self.redis.pubsub()
        self._pubsub.subscribe(**{self.channel: self._on_message})
        self._relay_thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        logger.info(f"Relaying notifications from Redis channel {self.channel}")
        return True

    def stop_relay(self) -> None:
        if self._relay_thread is not None:
            self._relay_thread.stop()
            self._relay_thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None

    def _on_message(self, message) -> None:
        try:
            event = json.loads(message["data"])
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed event on {self.channel}: {e}")
            return
        self.registry.publish(event)

    def broadcast_notification(self, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.publish(event_type, data)

    def new_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self.publish(NEW_ORDER, {"order": order})

    def order_ready(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self.publish(ORDER_READY, {"order": order})

    def order_completed(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return self.publish(ORDER_COMPLETED, {"order": order})

    def order_status_updated(self, order: Dict[str, Any], previous_status: str) -> Dict[str, Any]:
        return self.publish(ORDER_STATUS_UPDATED, {"order": order, "previousStatus": previous_status})

    def new_waiter_call(self, waiter_call: Dict[str, Any]) -> Dict[str, Any]:
        return self.publish(NEW_WAITER_CALL, {"waiterCall": waiter_call})
