"""
Duration-based item readiness.

An order item is due once ``created_at + duration minutes`` has passed. The
staff worker (reconciler.py) applies this rule from the outside through the
REST API; ``ReadinessSweeper`` can apply the same rule inside the API process
when SERVER_SIDE_READINESS is enabled.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

import models
from errors import AppError

logger = logging.getLogger(__name__)

Timestamp = Union[str, datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[Timestamp]) -> Optional[datetime]:
    """ISO strings and naive datetimes are read as UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def ready_at(created_at: Timestamp, duration_minutes: Optional[int]) -> datetime:
    return parse_timestamp(created_at) + timedelta(minutes=duration_minutes or 0)


def remaining_seconds(created_at: Timestamp, duration_minutes: Optional[int],
                      now: Optional[datetime] = None) -> float:
    now = parse_timestamp(now) if now is not None else utcnow()
    return (ready_at(created_at, duration_minutes) - now).total_seconds()


def is_item_due(status: str, created_at: Timestamp, duration_minutes: Optional[int],
                now: Optional[datetime] = None) -> bool:
    if status == models.ItemStatus.READY.value:
        return False
    return remaining_seconds(created_at, duration_minutes, now) <= 0


def all_items_ready(statuses: Iterable[str]) -> bool:
    statuses = list(statuses)
    return bool(statuses) and all(s == models.ItemStatus.READY.value for s in statuses)


def sweep_due_items(db, broadcaster=None, now: Optional[datetime] = None) -> dict:
    import order_lifecycle

    now = now or utcnow()
    marked = 0
    completed = 0

    orders = db.query(models.Order).filter(
        models.Order.status.in_(models.ACTIVE_ORDER_STATUSES)
    ).all()
    for order in orders:
        order_id = order.id
        items = list(order.items)
        for item in items:
            if is_item_due(item.status, item.created_at or order.created_at, item.duration, now):
                order_lifecycle.update_order_item_status(db, order_id, item.id, models.ItemStatus.READY.value)
                marked += 1

        fresh = order_lifecycle.get_order(db, order_id)
        if fresh.status not in models.TERMINAL_ORDER_STATUSES and all_items_ready(i.status for i in fresh.items):
            order_lifecycle.update_order_status(
                db, order_id, models.OrderStatus.COMPLETED.value, broadcaster=broadcaster
            )
            completed += 1

    return {"items_ready": marked, "orders_completed": completed}


class ReadinessSweeper(threading.Thread):
    def __init__(self, session_factory, broadcaster=None, interval: float = 5.0):
        super().__init__(name="readiness-sweeper", daemon=True)
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        logger.info(f"Server-side readiness sweep every {self.interval}s")
        while not self._stop_event.wait(self.interval):
            db = self.session_factory()
            try:
                result = sweep_due_items(db, self.broadcaster)
                if result["items_ready"] or result["orders_completed"]:
                    logger.info(f"Readiness sweep: {result}")
            except (AppError, SQLAlchemyError) as e:
                logger.error(f"Readiness sweep failed: {e}")
            finally:
                db.close()

    def stop(self):
        self._stop_event.set()
