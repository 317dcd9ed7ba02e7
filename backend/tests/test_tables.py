import os

import pytest
from sqlalchemy.exc import SQLAlchemyError

import table_service
from errors import StoreError


def _qr_file(url):
    return os.path.join(os.environ["QR_CODE_DIR"], url.rsplit("/", 1)[-1])


def test_create_table_generates_qr_code(client, admin_headers):
    resp = client.post("/api/tables", json={"table_number": " 12 "}, headers=admin_headers)

    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["table_number"] == "12"
    assert data["status"] == "available"
    assert os.path.exists(_qr_file(data["qr_code_url"]))

    qr = client.get(f"/api/tables/{data['id']}/qr-code").json()["data"]
    assert qr["qr_code_url"] == data["qr_code_url"]
    assert qr["menu_url"].endswith(f"/menu?table={data['id']}")


def test_duplicate_table_number_is_rejected(client, admin_headers, table):
    resp = client.post("/api/tables", json={"table_number": "7"}, headers=admin_headers)
    assert resp.status_code == 400
    assert "already in use" in resp.json()["message"]


def test_table_writes_require_roles(client, table):
    assert client.post("/api/tables", json={"table_number": "9"}).status_code == 401
    assert client.put(f"/api/tables/{table}/status", json={"status": "reserved"}).status_code == 401
    assert client.delete(f"/api/tables/{table}").status_code == 401


def test_list_tables_with_filters(client, admin_headers, table):
    client.post("/api/tables", json={"table_number": "8", "is_active": False}, headers=admin_headers)

    assert [t["table_number"] for t in client.get("/api/tables").json()["data"]] == ["7", "8"]
    active = client.get("/api/tables?is_active=true").json()["data"]
    assert [t["table_number"] for t in active] == ["7"]


def test_update_table_and_status(client, admin_headers, table):
    resp = client.put(f"/api/tables/{table}", json={"table_number": "7A", "regenerate_qr": True}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["table_number"] == "7A"
    assert resp.json()["data"]["qr_code_url"]

    resp = client.put(f"/api/tables/{table}/status", json={"status": "reserved"}, headers=admin_headers)
    assert resp.json()["data"]["status"] == "reserved"

    bad = client.put(f"/api/tables/{table}/status", json={"status": "broken"}, headers=admin_headers)
    assert bad.status_code == 400


def test_regenerating_qr_removes_old_file(client, admin_headers):
    created = client.post("/api/tables", json={"table_number": "20"}, headers=admin_headers).json()["data"]

    resp = client.post(f"/api/tables/{created['id']}/qr-code", headers=admin_headers)

    new_url = resp.json()["data"]["qr_code_url"]
    assert new_url != created["qr_code_url"]
    assert os.path.exists(_qr_file(new_url))
    assert not os.path.exists(_qr_file(created["qr_code_url"]))


def test_table_with_active_orders_cannot_be_deleted(client, admin_headers, table, order_payload):
    order_id = client.post("/api/orders", json=order_payload(table_id=table)).json()["data"]["id"]

    resp = client.delete(f"/api/tables/{table}", headers=admin_headers)
    assert resp.status_code == 400
    assert "active orders" in resp.json()["message"]

    client.put(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=admin_headers)
    assert client.delete(f"/api/tables/{table}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/tables/{table}").status_code == 404


def test_missing_table(client):
    resp = client.get("/api/tables/999")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Table not found"}


def test_failed_regeneration_keeps_old_qr_file(db, monkeypatch):
    created = table_service.create_table(db, "30")
    before = set(os.listdir(os.environ["QR_CODE_DIR"]))

    def failing_commit():
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(db, "commit", failing_commit)
    with pytest.raises(StoreError):
        table_service.update_table(db, created["id"], regenerate_qr=True)

    assert os.path.exists(_qr_file(created["qr_code_url"]))
    assert set(os.listdir(os.environ["QR_CODE_DIR"])) == before
