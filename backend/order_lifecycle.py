"""
Order lifecycle: creation, status transitions and their side effects.

Order statuses move new -> processing -> ready -> completed, with cancelled
reachable from any non-terminal status. Under the default ``strict`` policy
these transitions are enforced; ``completed`` is additionally accepted from
any non-terminal status once every item is ready, which is how the
duration-driven reconciliation finishes an order. ORDER_STATUS_POLICY=lenient
restores the unconditional overwrite.

Item statuses (preparing/ready) are overwritten unconditionally.
"""
import logging
import os
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import qr_codes
import table_service
from errors import AppError, NotFoundError, StoreError, ValidationError
from readiness import all_items_ready
from redis_client import redis_client
from schemas import OrderCreate

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    models.OrderStatus.NEW.value: {models.OrderStatus.PROCESSING.value, models.OrderStatus.CANCELLED.value},
    models.OrderStatus.PROCESSING.value: {models.OrderStatus.READY.value, models.OrderStatus.CANCELLED.value},
    models.OrderStatus.READY.value: {models.OrderStatus.COMPLETED.value, models.OrderStatus.CANCELLED.value},
    models.OrderStatus.COMPLETED.value: set(),
    models.OrderStatus.CANCELLED.value: set(),
}

ITEM_STATUSES = {s.value for s in models.ItemStatus}


def status_policy() -> str:
    return os.getenv("ORDER_STATUS_POLICY", "strict").strip().lower()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_option(option: models.OrderItemOption) -> dict:
    return {
        "id": option.id,
        "order_item_id": option.order_item_id,
        "product_option_id": option.product_option_id,
        "product_option_name": option.product_option_name,
        "price": _money(option.price),
    }


def serialize_item(item: models.OrderItem) -> dict:
    return {
        "id": item.id,
        "order_id": item.order_id,
        "product_id": item.product_id,
        "product_name": item.product_name,
        "quantity": item.quantity,
        "price": _money(item.price),
        "special_instructions": item.special_instructions,
        "status": item.status,
        "duration": item.duration,
        "created_at": _iso(item.created_at),
        "updated_at": _iso(item.updated_at),
        "options": [serialize_option(o) for o in item.options],
    }


def serialize_order(order: models.Order, include_items: bool = True) -> dict:
    data = {
        "id": order.id,
        "table_id": order.table_id,
        "table_number": order.table.table_number if order.table else None,
        "order_type": order.order_type,
        "status": order.status,
        "total_amount": _money(order.total_amount),
        "special_instructions": order.special_instructions,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "customer_address": order.customer_address,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if include_items:
        data["items"] = [serialize_item(i) for i in order.items]
    return data


def _load_order(db: Session, order_id: int, for_update: bool = False) -> models.Order:
    query = db.query(models.Order).filter(models.Order.id == order_id)
    if for_update:
        query = query.with_for_update()
    order = query.first()
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_order(db: Session, order_id: int) -> models.Order:
    return _load_order(db, order_id)


def get_order_items(db: Session, order_id: int) -> List[models.OrderItem]:
    _load_order(db, order_id)
    return db.query(models.OrderItem).filter(
        models.OrderItem.order_id == order_id
    ).order_by(models.OrderItem.id).all()


def list_orders(db: Session, statuses: Optional[List[str]] = None, table_id: Optional[int] = None,
                start_date: Optional[date] = None, end_date: Optional[date] = None,
                include_items: bool = False) -> List[dict]:
    query = db.query(models.Order)

    if statuses:
        unknown = [s for s in statuses if s not in ORDER_TRANSITIONS]
        if unknown:
            raise ValidationError(f"Invalid order status filter: {', '.join(unknown)}")
        query = query.filter(models.Order.status.in_(statuses))
    if table_id is not None:
        query = query.filter(models.Order.table_id == table_id)
    if start_date is not None:
        query = query.filter(models.Order.created_at >= datetime.combine(start_date, time.min))
    if end_date is not None:
        query = query.filter(models.Order.created_at < datetime.combine(end_date + timedelta(days=1), time.min))

    orders = query.order_by(models.Order.created_at.desc(), models.Order.id.desc()).all()
    return [serialize_order(o, include_items=include_items) for o in orders]


def _resolve_table(db: Session, payload: OrderCreate) -> Tuple[Optional[models.RestaurantTable], bool]:
    """Return the order's table and whether it was staged just now."""
    if payload.table_id is not None:
        return table_service.get_table(db, payload.table_id), False

    if payload.order_type == models.OrderType.TAKEAWAY.value:
        return None, False

    if payload.table_number:
        number = payload.table_number.strip()
        table = db.query(models.RestaurantTable).filter(
            models.RestaurantTable.table_number == number
        ).first()
        if table:
            return table, False
        logger.info(f"Table {number} does not exist yet, creating it for the order")
        return table_service.add_table(db, number), True

    raise ValidationError("A table ID or the takeaway order type is required")


def _mark_table_occupied(db: Session, table_id: int) -> bool:
    """Best-effort: the order is already committed when this runs."""
    try:
        table = db.query(models.RestaurantTable).filter(models.RestaurantTable.id == table_id).first()
        if not table:
            return False
        table.status = models.TableStatus.OCCUPIED.value
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not mark table {table_id} as occupied: {e}")
        return False

    redis_client.invalidate_tables_cache()
    return True


def _release_table_if_idle(db: Session, table_id: int, order_id: int) -> None:
    if table_service.count_active_orders(db, table_id, exclude_order_id=order_id) > 0:
        return
    table = db.query(models.RestaurantTable).filter(models.RestaurantTable.id == table_id).first()
    if table:
        table.status = models.TableStatus.AVAILABLE.value


def create_order(db: Session, payload: OrderCreate, broadcaster=None) -> dict:
    # QR file written for a table staged in this transaction, removed if it rolls back
    staged_qr_url = None
    try:
        table, created = _resolve_table(db, payload)
        if created:
            staged_qr_url = table.qr_code_url

        order = models.Order(
            table_id=table.id if table else None,
            order_type=payload.order_type,
            status=models.OrderStatus.NEW.value,
            total_amount=payload.total_amount,
            special_instructions=payload.special_instructions,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            customer_phone=payload.customer_phone,
            customer_address=payload.customer_address,
        )
        db.add(order)
        db.flush()

        for item_in in payload.items:
            product = db.query(models.Product).filter(models.Product.id == item_in.product_id).first()
            if not product:
                raise NotFoundError(f"Product {item_in.product_id} not found")

            item = models.OrderItem(
                order_id=order.id,
                product_id=product.id,
                product_name=product.name,
                quantity=item_in.quantity,
                price=item_in.price if item_in.price is not None else product.price,
                special_instructions=item_in.special_instructions,
                status=models.ItemStatus.PREPARING.value,
                duration=item_in.duration if item_in.duration is not None else product.preparation_time,
            )
            db.add(item)
            db.flush()

            for option_in in item_in.options:
                option = db.query(models.ProductOption).filter(
                    models.ProductOption.id == option_in.product_option_id
                ).first()
                if not option:
                    raise NotFoundError(f"Product option {option_in.product_option_id} not found")

                db.add(models.OrderItemOption(
                    order_item_id=item.id,
                    product_option_id=option.id,
                    product_option_name=option.name,
                    price=option_in.price_modifier if option_in.price_modifier is not None else option.price_modifier,
                ))

        db.commit()
    except AppError:
        db.rollback()
        qr_codes.delete_qr_file(staged_qr_url)
        raise
    except SQLAlchemyError as e:
        db.rollback()
        qr_codes.delete_qr_file(staged_qr_url)
        raise StoreError("Order could not be created", error=str(e))

    order_id = order.id
    logger.info(f"Order {order_id} created ({payload.order_type}, {len(payload.items)} items)")

    if table is not None and payload.order_type == models.OrderType.TABLE.value:
        _mark_table_occupied(db, table.id)

    data = serialize_order(get_order(db, order_id))
    if broadcaster is not None:
        broadcaster.new_order(data)
    return data


def _transition_allowed(order: models.Order, target: str) -> bool:
    if target in ORDER_TRANSITIONS[order.status]:
        return True
    # derived completion once the kitchen has finished every item
    return (
        target == models.OrderStatus.COMPLETED.value
        and order.status not in models.TERMINAL_ORDER_STATUSES
        and all_items_ready(i.status for i in order.items)
    )


def update_order_status(db: Session, order_id: int, status: str, broadcaster=None,
                        strict: Optional[bool] = None) -> dict:
    if status not in ORDER_TRANSITIONS:
        raise ValidationError("Invalid order status")
    if strict is None:
        strict = status_policy() == "strict"

    order = _load_order(db, order_id, for_update=True)
    previous = order.status

    if previous == status:
        data = serialize_order(order)
        db.commit()
        return data

    if strict and not _transition_allowed(order, status):
        db.rollback()
        raise ValidationError(f"Cannot change order status from {previous} to {status}")

    order.status = status
    if status in models.TERMINAL_ORDER_STATUSES and order.table_id:
        _release_table_if_idle(db, order.table_id, order.id)

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Order status could not be updated", error=str(e))

    if order.table_id:
        redis_client.invalidate_tables_cache()

    data = serialize_order(get_order(db, order_id))
    logger.info(f"Order {order_id} status {previous} -> {status}")

    if broadcaster is not None:
        if status == models.OrderStatus.READY.value:
            broadcaster.order_ready(data)
        elif status == models.OrderStatus.COMPLETED.value:
            broadcaster.order_completed(data)
        else:
            broadcaster.order_status_updated(data, previous)
    return data


def update_order_item_status(db: Session, order_id: int, item_id: int, status: str) -> dict:
    if status not in ITEM_STATUSES:
        raise ValidationError("Invalid order item status")

    _load_order(db, order_id, for_update=True)
    item = db.query(models.OrderItem).filter(
        models.OrderItem.id == item_id,
        models.OrderItem.order_id == order_id,
    ).first()
    if not item:
        db.rollback()
        raise NotFoundError("Order item not found")

    item.status = status
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Order item status could not be updated", error=str(e))

    items = get_order_items(db, order_id)
    data = serialize_item(item)
    data["all_items_ready"] = all_items_ready(i.status for i in items)
    return data


def delete_order(db: Session, order_id: int) -> None:
    order = _load_order(db, order_id)
    table_id = order.table_id

    try:
        if table_id:
            _release_table_if_idle(db, table_id, order_id)
        db.delete(order)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Order could not be deleted", error=str(e))

    if table_id:
        redis_client.invalidate_tables_cache()
    logger.info(f"Order {order_id} deleted")
