"""
Waiter calls: a guest at a table asks for a waiter.

A table has at most one active (pending or in_progress) call at a time; the
partial unique index on waiter_calls enforces it in the database as well.
Completed calls are final.
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
import table_service
from errors import ConflictError, NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

CALL_STATUSES = {s.value for s in models.WaiterCallStatus}
ACTIVE_CALL_MESSAGE = "There is already an active waiter call for this table"


def serialize_call(call: models.WaiterCall) -> dict:
    return {
        "id": call.id,
        "table_id": call.table_id,
        "table_number": call.table.table_number if call.table else None,
        "status": call.status,
        "created_at": call.created_at.isoformat() if call.created_at else None,
        "updated_at": call.updated_at.isoformat() if call.updated_at else None,
    }


def get_call(db: Session, call_id: int) -> models.WaiterCall:
    call = db.query(models.WaiterCall).filter(models.WaiterCall.id == call_id).first()
    if not call:
        raise NotFoundError("Waiter call not found")
    return call


def _active_call_for(db: Session, table_id: int) -> Optional[models.WaiterCall]:
    return db.query(models.WaiterCall).filter(
        models.WaiterCall.table_id == table_id,
        models.WaiterCall.status.in_(models.ACTIVE_CALL_STATUSES),
    ).first()


def create_call(db: Session, table_id: Optional[int], broadcaster=None) -> dict:
    if table_id is None:
        raise ValidationError("Table ID is required")

    table_service.get_table(db, table_id)
    if _active_call_for(db, table_id):
        raise ConflictError(ACTIVE_CALL_MESSAGE)

    call = models.WaiterCall(table_id=table_id, status=models.WaiterCallStatus.PENDING.value)
    try:
        db.add(call)
        db.commit()
    except IntegrityError:
        # a concurrent request won the race for this table
        db.rollback()
        raise ConflictError(ACTIVE_CALL_MESSAGE)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Waiter call could not be created", error=str(e))

    data = serialize_call(get_call(db, call.id))
    logger.info(f"Waiter call {data['id']} created for table {data['table_number']}")
    if broadcaster is not None:
        broadcaster.new_waiter_call(data)
    return data


def update_call_status(db: Session, call_id: int, status: str) -> dict:
    if status not in CALL_STATUSES:
        raise ValidationError("Invalid waiter call status")

    call = get_call(db, call_id)
    if call.status == status:
        return serialize_call(call)
    if call.status == models.WaiterCallStatus.COMPLETED.value:
        raise ValidationError("A completed waiter call cannot be reopened")

    call.status = status
    try:
        db.commit()
    except IntegrityError:
        # only reachable when a concurrent create claimed the table's active slot
        db.rollback()
        raise ConflictError(ACTIVE_CALL_MESSAGE)
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Waiter call status could not be updated", error=str(e))

    return serialize_call(get_call(db, call_id))


def list_calls(db: Session, status: Optional[str] = None, table_id: Optional[int] = None) -> List[dict]:
    query = db.query(models.WaiterCall)
    if status is not None:
        if status not in CALL_STATUSES:
            raise ValidationError("Invalid waiter call status")
        query = query.filter(models.WaiterCall.status == status)
    if table_id is not None:
        query = query.filter(models.WaiterCall.table_id == table_id)

    calls = query.order_by(models.WaiterCall.created_at.desc(), models.WaiterCall.id.desc()).all()
    return [serialize_call(c) for c in calls]


def count_active(db: Session) -> int:
    return db.query(models.WaiterCall).filter(
        models.WaiterCall.status.in_(models.ACTIVE_CALL_STATUSES)
    ).count()


def recent_calls(db: Session, limit: int = 10) -> List[dict]:
    calls = db.query(models.WaiterCall).order_by(
        models.WaiterCall.created_at.desc(), models.WaiterCall.id.desc()
    ).limit(max(1, min(limit, 100))).all()
    return [serialize_call(c) for c in calls]


def delete_call(db: Session, call_id: int) -> None:
    call = get_call(db, call_id)
    try:
        db.delete(call)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreError("Waiter call could not be deleted", error=str(e))
