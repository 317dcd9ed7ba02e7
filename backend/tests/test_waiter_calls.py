import pytest
from sqlalchemy.exc import IntegrityError

import models
import waiter_call_manager
from errors import ConflictError, ValidationError


def _call(client, table_id):
    return client.post("/api/waiter-calls", json={"table_id": table_id})


def _set_status(client, headers, call_id, status):
    return client.put(f"/api/waiter-calls/{call_id}/status", json={"status": status}, headers=headers)


def test_create_call(client, api_recorder, table):
    resp = _call(client, table)

    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["status"] == "pending"
    assert data["table_id"] == table
    assert data["table_number"] == "7"
    assert api_recorder.registry.types() == ["new_waiter_call"]
    assert api_recorder.registry.events[0]["data"]["waiterCall"]["id"] == data["id"]


def test_second_active_call_is_rejected(client, admin_headers, table):
    first = _call(client, table).json()["data"]
    resp = _call(client, table)
    assert resp.status_code == 400
    assert resp.json()["message"] == waiter_call_manager.ACTIVE_CALL_MESSAGE

    _set_status(client, admin_headers, first["id"], "in_progress")
    assert _call(client, table).status_code == 400

    _set_status(client, admin_headers, first["id"], "completed")
    assert _call(client, table).status_code == 201


def test_missing_or_unknown_table(client):
    assert client.post("/api/waiter-calls", json={}).status_code == 400
    assert _call(client, 999).status_code == 404


def test_completed_call_is_final(client, admin_headers, table):
    call_id = _call(client, table).json()["data"]["id"]

    assert _set_status(client, admin_headers, call_id, "completed").status_code == 200
    resp = _set_status(client, admin_headers, call_id, "pending")
    assert resp.status_code == 400
    assert client.get(f"/api/waiter-calls/{call_id}", headers=admin_headers).json()["data"]["status"] == "completed"


def test_in_progress_may_return_to_pending(client, admin_headers, table):
    call_id = _call(client, table).json()["data"]["id"]

    assert _set_status(client, admin_headers, call_id, "in_progress").status_code == 200
    resp = _set_status(client, admin_headers, call_id, "pending")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "pending"


def test_invalid_status_is_rejected(client, admin_headers, table):
    call_id = _call(client, table).json()["data"]["id"]
    assert _set_status(client, admin_headers, call_id, "ignored").status_code == 400
    assert _set_status(client, admin_headers, 999, "completed").status_code == 404


def test_listing_and_active_count(client, db, admin_headers, table):
    other = models.RestaurantTable(table_number="8")
    db.add(other)
    db.commit()

    first = _call(client, table).json()["data"]["id"]
    second = _call(client, other.id).json()["data"]["id"]
    _set_status(client, admin_headers, first, "completed")

    calls = client.get("/api/waiter-calls", headers=admin_headers).json()["data"]
    assert [c["id"] for c in calls] == [second, first]

    pending = client.get("/api/waiter-calls?status=pending", headers=admin_headers).json()["data"]
    assert [c["id"] for c in pending] == [second]

    by_table = client.get(f"/api/waiter-calls?table_id={table}", headers=admin_headers).json()["data"]
    assert [c["id"] for c in by_table] == [first]

    count = client.get("/api/waiter-calls/active/count", headers=admin_headers).json()["data"]["count"]
    assert count == 1

    recent = client.get("/api/waiter-calls/recent?limit=1", headers=admin_headers).json()["data"]
    assert [c["id"] for c in recent] == [second]

    assert client.get("/api/waiter-calls").status_code == 401


def test_delete_call(client, admin_headers, table):
    call_id = _call(client, table).json()["data"]["id"]

    assert client.delete(f"/api/waiter-calls/{call_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/waiter-calls/{call_id}", headers=admin_headers).status_code == 404
    assert _call(client, table).status_code == 201


def test_database_allows_one_active_call_per_table(db, table):
    db.add(models.WaiterCall(table_id=table, status="pending"))
    db.commit()

    db.add(models.WaiterCall(table_id=table, status="in_progress"))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    db.add(models.WaiterCall(table_id=table, status="completed"))
    db.commit()
    assert db.query(models.WaiterCall).count() == 2


def test_manager_rejects_reopening(db, table):
    call = waiter_call_manager.create_call(db, table)
    waiter_call_manager.update_call_status(db, call["id"], "completed")

    with pytest.raises(ValidationError):
        waiter_call_manager.update_call_status(db, call["id"], "in_progress")


def test_manager_conflict_and_missing_table_id(db, table):
    waiter_call_manager.create_call(db, table)
    with pytest.raises(ConflictError):
        waiter_call_manager.create_call(db, table)
    with pytest.raises(ValidationError):
        waiter_call_manager.create_call(db, None)
