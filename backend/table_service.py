"""
Restaurant tables: creation with QR codes, occupancy and guarded deletion.
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import qr_codes
from errors import ConflictError, NotFoundError, StoreError
from redis_client import redis_client

logger = logging.getLogger(__name__)


def serialize_table(table: models.RestaurantTable) -> dict:
    return {
        "id": table.id,
        "table_number": table.table_number,
        "qr_code_url": table.qr_code_url,
        "is_active": bool(table.is_active),
        "status": table.status,
        "created_at": table.created_at.isoformat() if table.created_at else None,
        "updated_at": table.updated_at.isoformat() if table.updated_at else None,
    }


def get_table(db: Session, table_id: int) -> models.RestaurantTable:
    table = db.query(models.RestaurantTable).filter(models.RestaurantTable.id == table_id).first()
    if not table:
        raise NotFoundError("Table not found")
    return table


def list_tables(db: Session, status: Optional[str] = None, is_active: Optional[bool] = None) -> List[dict]:
    unfiltered = status is None and is_active is None
    if unfiltered:
        cached = redis_client.get_cached_tables()
        if cached is not None:
            return cached

    query = db.query(models.RestaurantTable)
    if status is not None:
        query = query.filter(models.RestaurantTable.status == status)
    if is_active is not None:
        query = query.filter(models.RestaurantTable.is_active == is_active)
    tables = [serialize_table(t) for t in query.order_by(models.RestaurantTable.table_number).all()]

    if unfiltered:
        redis_client.cache_tables(tables)
    return tables


def _attach_qr_code(table: models.RestaurantTable) -> None:
    try:
        table.qr_code_url = qr_codes.generate_table_qr(table.id)
    except (OSError, ValueError) as e:
        # the table is usable without a code; it can be regenerated later
        logger.warning(f"QR code generation failed for table {table.id}: {e}")


def add_table(db: Session, table_number: str, is_active: bool = True,
              status: str = models.TableStatus.AVAILABLE.value) -> models.RestaurantTable:
    """Stage a new table in the session (flushed, not committed) and give it a QR code."""
    exists = db.query(models.RestaurantTable).filter(
        models.RestaurantTable.table_number == table_number
    ).first()
    if exists:
        raise ConflictError("This table number is already in use")

    table = models.RestaurantTable(table_number=table_number, is_active=is_active, status=status)
    db.add(table)
    db.flush()
    _attach_qr_code(table)
    return table


def create_table(db: Session, table_number: str, is_active: bool = True,
                 status: str = models.TableStatus.AVAILABLE.value) -> dict:
    try:
        table = add_table(db, table_number, is_active, status)
        db.commit()
        db.refresh(table)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Table could not be created", error=str(e))

    redis_client.invalidate_tables_cache()
    logger.info(f"Table {table.table_number} created with id {table.id}")
    return serialize_table(table)


def update_table(db: Session, table_id: int, table_number: Optional[str] = None,
                 is_active: Optional[bool] = None, status: Optional[str] = None,
                 regenerate_qr: bool = False) -> dict:
    table = get_table(db, table_id)

    if table_number and table_number != table.table_number:
        taken = db.query(models.RestaurantTable).filter(
            models.RestaurantTable.table_number == table_number,
            models.RestaurantTable.id != table_id,
        ).first()
        if taken:
            raise ConflictError("This table number is already in use")
        table.table_number = table_number

    if is_active is not None:
        table.is_active = is_active
    if status is not None:
        table.status = status

    old_url = table.qr_code_url
    if regenerate_qr:
        _attach_qr_code(table)
    new_url = table.qr_code_url

    try:
        db.commit()
        db.refresh(table)
    except SQLAlchemyError as e:
        db.rollback()
        if new_url != old_url:
            qr_codes.delete_qr_file(new_url)
        raise StoreError("Table could not be updated", error=str(e))

    # the old file goes only once the row points at the new one
    if old_url and new_url != old_url:
        qr_codes.delete_qr_file(old_url)
    redis_client.invalidate_tables_cache()
    return serialize_table(table)


def set_table_status(db: Session, table_id: int, status: str) -> dict:
    table = get_table(db, table_id)
    table.status = status
    try:
        db.commit()
        db.refresh(table)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Table status could not be updated", error=str(e))

    redis_client.invalidate_tables_cache()
    return serialize_table(table)


def regenerate_qr_code(db: Session, table_id: int) -> dict:
    return update_table(db, table_id, regenerate_qr=True)


def count_active_orders(db: Session, table_id: int, exclude_order_id: Optional[int] = None) -> int:
    query = db.query(models.Order).filter(
        models.Order.table_id == table_id,
        models.Order.status.in_(models.ACTIVE_ORDER_STATUSES),
    )
    if exclude_order_id is not None:
        query = query.filter(models.Order.id != exclude_order_id)
    return query.count()


def delete_table(db: Session, table_id: int) -> None:
    table = get_table(db, table_id)

    if count_active_orders(db, table_id) > 0:
        raise ConflictError(
            "This table has active orders. Complete or cancel them first."
        )

    qr_code_url = table.qr_code_url
    try:
        db.delete(table)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Table could not be deleted", error=str(e))

    if qr_code_url:
        qr_codes.delete_qr_file(qr_code_url)
    redis_client.invalidate_tables_cache()
