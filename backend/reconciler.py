"""
Staff-side worker that drives duration-based readiness through the REST API.

Once a second every held non-terminal order is reconciled: items whose
``created_at + duration`` has passed are marked ready, and an order whose
items are all ready is completed with a single status write. Orders are
reconciled concurrently; the steps for one order run in sequence.

Notifications from the Redis event channel are debounced into batches that
update the held orders between polls.
"""
import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import redis

import notifications
from api_client import ApiError, QRMenuClient
from models import ACTIVE_ORDER_STATUSES, TERMINAL_ORDER_STATUSES, ItemStatus, OrderStatus
from readiness import all_items_ready, is_item_due, utcnow
from redis_client import redis_client

logger = logging.getLogger(__name__)

TICK_INTERVAL = 1.0
RESUBSCRIBE_BACKOFF = 5.0

ORDER_EVENTS = (
    notifications.NEW_ORDER,
    notifications.ORDER_READY,
    notifications.ORDER_COMPLETED,
    notifications.ORDER_STATUS_UPDATED,
)
STATISTICS_EVENTS = (
    notifications.NEW_ORDER,
    notifications.ORDER_COMPLETED,
    notifications.NEW_WAITER_CALL,
)


class OrderReconciler:
    def __init__(self, client: QRMenuClient, max_workers: int = 4):
        self.client = client
        self.orders: Dict[int, Dict] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reconcile")

    def refresh(self) -> int:
        orders = self.client.list_orders(statuses=list(ACTIVE_ORDER_STATUSES), include_items=True)
        with self._lock:
            self.orders = {o["id"]: o for o in orders}
        logger.info(f"Holding {len(orders)} active orders")
        return len(orders)

    def held_orders(self) -> List[Dict]:
        with self._lock:
            return list(self.orders.values())

    def reconcile_order(self, order: Dict, now: Optional[datetime] = None) -> Dict:
        now = now or utcnow()
        result = {"items_ready": 0, "completed": False}
        if order["status"] in TERMINAL_ORDER_STATUSES:
            return result

        if not order.get("items"):
            order["items"] = self.client.get_order_items(order["id"])

        for item in order["items"]:
            if not is_item_due(item["status"], item.get("created_at") or order["created_at"], item.get("duration"), now):
                continue
            try:
                self.client.update_order_item_status(order["id"], item["id"], ItemStatus.READY.value)
            except ApiError as e:
                logger.warning(f"Could not mark item {item['id']} of order {order['id']} ready: {e.message}")
                continue
            item["status"] = ItemStatus.READY.value
            result["items_ready"] += 1

        if all_items_ready(i["status"] for i in order["items"]):
            try:
                self.client.update_order_status(order["id"], OrderStatus.COMPLETED.value)
            except ApiError as e:
                logger.warning(f"Could not complete order {order['id']}: {e.message}")
                return result
            order["status"] = OrderStatus.COMPLETED.value
            result["completed"] = True
            logger.info(f"Order {order['id']} completed, all items ready")

        return result

    def _reconcile_safely(self, order: Dict, now: datetime) -> Dict:
        try:
            return self.reconcile_order(order, now)
        except ApiError as e:
            logger.warning(f"Reconciling order {order['id']} failed: {e.message}")
            return {"items_ready": 0, "completed": False}

    def tick(self, now: Optional[datetime] = None) -> Dict:
        now = now or utcnow()
        pending = [o for o in self.held_orders() if o["status"] not in TERMINAL_ORDER_STATUSES]
        results = list(self._executor.map(lambda o: self._reconcile_safely(o, now), pending))

        with self._lock:
            for order_id in [i for i, o in self.orders.items() if o["status"] in TERMINAL_ORDER_STATUSES]:
                del self.orders[order_id]

        return {
            "items_ready": sum(r["items_ready"] for r in results),
            "orders_completed": sum(1 for r in results if r["completed"]),
        }

    def apply_events(self, events: Iterable[Dict]) -> bool:
        """Fold a batch of notifications into the held orders.

        Returns True when the batch should trigger a statistics refresh.
        """
        refresh_statistics = False
        for event in events:
            event_type = event.get("type")
            order = (event.get("data") or {}).get("order")

            if event_type in ORDER_EVENTS and order:
                with self._lock:
                    if order["status"] in TERMINAL_ORDER_STATUSES:
                        self.orders.pop(order["id"], None)
                    else:
                        held = self.orders.get(order["id"])
                        merged = dict(order)
                        if not merged.get("items") and held:
                            merged["items"] = held.get("items")
                        self.orders[order["id"]] = merged

            if event_type in STATISTICS_EVENTS:
                refresh_statistics = True
        return refresh_statistics

    def close(self) -> None:
        self._executor.shutdown(wait=True)


class EventDebouncer:
    """Collects events and hands them to ``callback`` as one batch per window."""

    def __init__(self, callback: Callable[[List[Dict]], None], window: float = 0.5):
        self.callback = callback
        self.window = window
        self._pending: List[Dict] = []
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def push(self, event: Dict) -> None:
        with self._lock:
            self._pending.append(event)
            if self._timer is None:
                self._timer = threading.Timer(self.window, self.flush)
                self._timer.daemon = True
                self._timer.start()

    def flush(self) -> None:
        with self._lock:
            batch, self._pending = self._pending, []
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if batch:
            self.callback(batch)


def listen_for_events(client, debouncer: EventDebouncer, stop_event: threading.Event,
                      channel: str = notifications.EVENTS_CHANNEL,
                      backoff: float = RESUBSCRIBE_BACKOFF) -> None:
    while not stop_event.is_set():
        pubsub = client.pubsub()
        if pubsub is None:
            stop_event.wait(backoff)
            continue
        try:
            pubsub.subscribe(channel)
            logger.info(f"Listening for events on {channel}")
            while not stop_event.is_set():
                message = pubsub.get_message(timeout=1.0)
                if not message:
                    continue
                try:
                    debouncer.push(json.loads(message["data"]))
                except (TypeError, ValueError) as e:
                    logger.warning(f"Ignoring malformed event: {e}")
        except redis.RedisError as e:
            logger.warning(f"Event subscription lost: {e}, retrying in {backoff}s")
            stop_event.wait(backoff)
        finally:
            pubsub.close()


def run_worker() -> None:
    client = QRMenuClient(os.getenv("QRMENU_API_URL", "http://localhost:8000"))
    client.login(os.getenv("QRMENU_USERNAME", "admin"), os.getenv("QRMENU_PASSWORD", "admin123"))
    poll_interval = float(os.getenv("QRMENU_POLL_INTERVAL", "30"))

    reconciler = OrderReconciler(client)
    reconciler.refresh()
    stop_event = threading.Event()

    def on_batch(events: List[Dict]) -> None:
        if not reconciler.apply_events(events):
            return
        try:
            stats = client.dashboard_statistics()
            logger.info(
                f"Active orders: {stats['active_orders']}, "
                f"active waiter calls: {stats['active_waiter_calls']}"
            )
        except ApiError as e:
            logger.warning(f"Statistics refresh failed: {e.message}")

    debouncer = EventDebouncer(on_batch)
    if redis_client.is_available():
        threading.Thread(
            target=listen_for_events,
            args=(redis_client, debouncer, stop_event),
            name="event-listener",
            daemon=True,
        ).start()
    else:
        logger.info(f"Redis unavailable, polling every {poll_interval}s")

    last_refresh = time.monotonic()
    try:
        while not stop_event.wait(TICK_INTERVAL):
            if time.monotonic() - last_refresh >= poll_interval:
                try:
                    reconciler.refresh()
                except ApiError as e:
                    logger.warning(f"Refresh failed: {e.message}")
                last_refresh = time.monotonic()

            result = reconciler.tick()
            if result["items_ready"] or result["orders_completed"]:
                logger.info(f"Tick: {result}")
    except KeyboardInterrupt:
        logger.info("Worker stopped")
    finally:
        stop_event.set()
        debouncer.flush()
        reconciler.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    run_worker()
