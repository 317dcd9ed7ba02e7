import os

import pytest

import models
import order_lifecycle
from errors import NotFoundError, ValidationError
from schemas import OrderCreate


def _create(client, payload):
    resp = client.post("/api/orders", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _set_status(client, headers, order_id, status):
    return client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers)


def test_create_order_round_trip(client, admin_headers, table, order_payload):
    created = _create(client, order_payload(table_id=table))

    assert created["status"] == "new"
    assert created["table_id"] == table
    assert created["table_number"] == "7"
    assert created["total_amount"] == 23.5
    assert len(created["items"]) == 2

    burger, fries = created["items"]
    assert burger["product_name"] == "Burger"
    assert burger["quantity"] == 2
    assert burger["status"] == "preparing"
    assert burger["special_instructions"] == "no onions"
    assert burger["options"][0]["product_option_name"] == "Extra cheese"
    assert burger["options"][0]["price"] == 1.5
    assert fries["options"] == []

    fetched = client.get(f"/api/orders/{created['id']}", headers=admin_headers).json()["data"]
    assert fetched["items"] == created["items"]
    assert fetched["total_amount"] == 23.5


def test_item_duration_defaults_to_preparation_time(client, table, order_payload):
    payload = order_payload(table_id=table)
    payload["items"][1]["duration"] = 2

    created = _create(client, payload)

    assert created["items"][0]["duration"] == 10
    assert created["items"][1]["duration"] == 2


def test_total_amount_is_not_recomputed(client, table, order_payload):
    created = _create(client, order_payload(table_id=table, total_amount=1.0))
    assert created["total_amount"] == 1.0


def test_table_order_marks_table_occupied(client, table, order_payload):
    _create(client, order_payload(table_id=table))

    resp = client.get(f"/api/tables/{table}")
    assert resp.json()["data"]["status"] == "occupied"


def test_order_by_unknown_table_number_creates_table(client, order_payload):
    created = _create(client, order_payload(table_number="42"))

    tables = client.get("/api/tables").json()["data"]
    new_table = next(t for t in tables if t["table_number"] == "42")
    assert created["table_id"] == new_table["id"]
    assert new_table["status"] == "occupied"
    assert new_table["qr_code_url"].endswith(".png")
    file_name = new_table["qr_code_url"].rsplit("/", 1)[-1]
    assert os.path.exists(os.path.join(os.environ["QR_CODE_DIR"], file_name))


def test_order_by_existing_table_number_reuses_table(client, table, order_payload):
    created = _create(client, order_payload(table_number="7"))
    assert created["table_id"] == table


def test_takeaway_order_needs_no_table(client, order_payload):
    created = _create(client, order_payload(order_type="takeaway", customer_name="Ann"))
    assert created["table_id"] is None
    assert created["table_number"] is None
    assert created["customer_name"] == "Ann"


def test_table_order_without_table_is_rejected(client, order_payload):
    resp = client.post("/api/orders", json=order_payload())
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_empty_items_are_rejected(client, table, order_payload):
    resp = client.post("/api/orders", json=order_payload(table_id=table, items=[]))
    assert resp.status_code == 400
    assert "items" in resp.json()["message"].lower()


def test_unknown_table_id_is_not_found(client, order_payload):
    resp = client.post("/api/orders", json=order_payload(table_id=999))
    assert resp.status_code == 404


def test_failed_creation_leaves_no_rows(client, db, table, order_payload):
    payload = order_payload(table_id=table)
    payload["items"].append({"product_id": 999, "quantity": 1})

    resp = client.post("/api/orders", json=payload)

    assert resp.status_code == 404
    assert db.query(models.Order).count() == 0
    assert db.query(models.OrderItem).count() == 0
    assert db.query(models.OrderItemOption).count() == 0


def test_staff_routes_require_token(client, table, order_payload):
    created = _create(client, order_payload(table_id=table))

    assert client.get("/api/orders").status_code == 401
    assert client.get(f"/api/orders/{created['id']}").status_code == 401
    assert client.put(f"/api/orders/{created['id']}/status", json={"status": "processing"}).status_code == 401


def test_strict_policy_walks_the_lifecycle(client, admin_headers, table, order_payload):
    order_id = _create(client, order_payload(table_id=table))["id"]

    assert _set_status(client, admin_headers, order_id, "completed").status_code == 400
    for status in ("processing", "ready", "completed"):
        resp = _set_status(client, admin_headers, order_id, status)
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["status"] == status

    resp = _set_status(client, admin_headers, order_id, "new")
    assert resp.status_code == 400
    assert "completed" in resp.json()["message"]


def test_cancel_allowed_from_any_active_status(client, admin_headers, table, order_payload):
    order_id = _create(client, order_payload(table_id=table))["id"]
    assert _set_status(client, admin_headers, order_id, "processing").status_code == 200
    assert _set_status(client, admin_headers, order_id, "cancelled").status_code == 200
    assert _set_status(client, admin_headers, order_id, "processing").status_code == 400


def test_completion_allowed_once_all_items_ready(client, admin_headers, table, order_payload):
    order = _create(client, order_payload(table_id=table))

    for item in order["items"]:
        resp = client.put(
            f"/api/orders/{order['id']}/items/{item['id']}/status",
            json={"status": "ready"},
            headers=admin_headers,
        )
        assert resp.status_code == 200

    resp = _set_status(client, admin_headers, order["id"], "completed")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "completed"


def test_lenient_policy_accepts_any_status(monkeypatch, client, admin_headers, table, order_payload):
    monkeypatch.setenv("ORDER_STATUS_POLICY", "lenient")
    order_id = _create(client, order_payload(table_id=table))["id"]

    assert _set_status(client, admin_headers, order_id, "completed").status_code == 200
    resp = _set_status(client, admin_headers, order_id, "new")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "new"


def test_unknown_status_is_rejected(client, admin_headers, table, order_payload):
    order_id = _create(client, order_payload(table_id=table))["id"]
    assert _set_status(client, admin_headers, order_id, "served").status_code == 400
    assert _set_status(client, admin_headers, 999, "processing").status_code == 404


def test_item_status_update_reports_readiness(client, admin_headers, table, order_payload):
    order = _create(client, order_payload(table_id=table))
    first, second = order["items"]
    url = f"/api/orders/{order['id']}/items/{{}}/status"

    resp = client.put(url.format(first["id"]), json={"status": "ready"}, headers=admin_headers)
    assert resp.json()["data"]["status"] == "ready"
    assert resp.json()["data"]["all_items_ready"] is False

    resp = client.put(url.format(second["id"]), json={"status": "ready"}, headers=admin_headers)
    assert resp.json()["data"]["all_items_ready"] is True

    resp = client.put(url.format(second["id"]), json={"status": "preparing"}, headers=admin_headers)
    assert resp.json()["data"]["status"] == "preparing"

    assert client.put(url.format(first["id"]), json={"status": "done"}, headers=admin_headers).status_code == 400


def test_item_of_another_order_is_not_found(client, admin_headers, table, order_payload):
    first = _create(client, order_payload(table_id=table))
    second = _create(client, order_payload(table_id=table))

    resp = client.put(
        f"/api/orders/{first['id']}/items/{second['items'][0]['id']}/status",
        json={"status": "ready"},
        headers=admin_headers,
    )
    assert resp.status_code == 404


def test_get_order_items(client, admin_headers, table, order_payload):
    order = _create(client, order_payload(table_id=table))
    items = client.get(f"/api/orders/{order['id']}/items", headers=admin_headers).json()["data"]
    assert [i["id"] for i in items] == [i["id"] for i in order["items"]]


def test_list_orders_newest_first_with_filters(client, admin_headers, table, order_payload):
    first = _create(client, order_payload(table_id=table))["id"]
    second = _create(client, order_payload(table_id=table))["id"]
    takeaway = _create(client, order_payload(order_type="takeaway"))["id"]
    _set_status(client, admin_headers, first, "cancelled")

    orders = client.get("/api/orders", headers=admin_headers).json()["data"]
    assert [o["id"] for o in orders] == [takeaway, second, first]
    assert "items" not in orders[0]

    resp = client.get("/api/orders?status=new&status=processing&include_items=true", headers=admin_headers)
    active = resp.json()["data"]
    assert {o["id"] for o in active} == {second, takeaway}
    assert all("items" in o for o in active)

    by_table = client.get(f"/api/orders?table_id={table}", headers=admin_headers).json()["data"]
    assert {o["id"] for o in by_table} == {first, second}

    assert client.get("/api/orders?status=bogus", headers=admin_headers).status_code == 400


def test_completing_last_active_order_releases_table(client, admin_headers, table, order_payload):
    first = _create(client, order_payload(table_id=table))["id"]
    second = _create(client, order_payload(table_id=table))["id"]

    _set_status(client, admin_headers, first, "cancelled")
    assert client.get(f"/api/tables/{table}").json()["data"]["status"] == "occupied"

    _set_status(client, admin_headers, second, "cancelled")
    assert client.get(f"/api/tables/{table}").json()["data"]["status"] == "available"


def test_delete_order_requires_manager_and_releases_table(client, admin_headers, table, order_payload):
    order_id = _create(client, order_payload(table_id=table))["id"]

    assert client.delete(f"/api/orders/{order_id}").status_code == 401
    resp = client.delete(f"/api/orders/{order_id}", headers=admin_headers)
    assert resp.status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=admin_headers).status_code == 404
    assert client.get(f"/api/tables/{table}").json()["data"]["status"] == "available"


def test_status_events(client, admin_headers, api_recorder, table, order_payload):
    order_id = _create(client, order_payload(table_id=table))["id"]
    for status in ("processing", "ready", "completed"):
        _set_status(client, admin_headers, order_id, status)

    events = api_recorder.registry.events
    assert api_recorder.registry.types() == ["new_order", "order_status_updated", "order_ready", "order_completed"]
    assert events[1]["data"]["previousStatus"] == "new"
    assert events[1]["data"]["order"]["status"] == "processing"
    assert events[3]["data"]["order"]["id"] == order_id


def test_rejected_transition_publishes_nothing(db, recorder, table, order_payload):
    order = order_lifecycle.create_order(db, OrderCreate(**order_payload(table_id=table)), recorder)

    with pytest.raises(ValidationError):
        order_lifecycle.update_order_status(db, order["id"], "ready", recorder, strict=True)

    assert recorder.registry.types() == ["new_order"]


def test_same_status_is_a_no_op(db, recorder, table, order_payload):
    order = order_lifecycle.create_order(db, OrderCreate(**order_payload(table_id=table)), recorder)

    data = order_lifecycle.update_order_status(db, order["id"], "new", recorder)

    assert data["status"] == "new"
    assert recorder.registry.types() == ["new_order"]


def test_get_order_missing(db):
    with pytest.raises(NotFoundError):
        order_lifecycle.get_order(db, 12345)


def test_table_five_scenario(client, db, admin_headers, order_payload):
    table_five = models.RestaurantTable(table_number="5")
    db.add(table_five)
    db.commit()
    table_id = table_five.id
    assert client.get(f"/api/tables/{table_id}").json()["data"]["status"] == "available"

    _create(client, order_payload(table_id=table_id))
    resp = client.put(f"/api/tables/{table_id}/status", json={"status": "occupied"}, headers=admin_headers)
    assert resp.status_code == 200

    assert client.get(f"/api/tables/{table_id}").json()["data"]["status"] == "occupied"


def test_failed_creation_removes_qr_of_staged_table(client, db, order_payload):
    qr_dir = os.environ["QR_CODE_DIR"]
    before = set(os.listdir(qr_dir)) if os.path.isdir(qr_dir) else set()
    payload = order_payload(table_number="77")
    payload["items"].append({"product_id": 999, "quantity": 1})

    resp = client.post("/api/orders", json=payload)

    assert resp.status_code == 404
    assert db.query(models.RestaurantTable).filter(models.RestaurantTable.table_number == "77").count() == 0
    after = set(os.listdir(qr_dir)) if os.path.isdir(qr_dir) else set()
    assert after == before
