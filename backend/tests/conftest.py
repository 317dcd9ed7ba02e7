import os
import tempfile
from decimal import Decimal

_TMP_DIR = tempfile.mkdtemp(prefix="qrmenu-tests-")

# Must be set before the application modules are imported.
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["REDIS_HOST"] = ""
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["QR_CODE_DIR"] = os.path.join(_TMP_DIR, "qrcodes")
os.environ["INITIAL_TABLES"] = "0"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin-pass"
os.environ.pop("ORDER_STATUS_POLICY", None)
os.environ.pop("SERVER_SIDE_READINESS", None)

import pytest
from fastapi.testclient import TestClient

import database
import main
import models
from notifications import Broadcaster, SubscriberRegistry


class RecordingRegistry(SubscriberRegistry):
    def __init__(self):
        super().__init__()
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return 0

    def types(self):
        return [e["type"] for e in self.events]


@pytest.fixture
def db():
    models.Base.metadata.drop_all(bind=database.engine)
    models.Base.metadata.create_all(bind=database.engine)
    session = database.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(client):
    resp = client.post("/api/auth/login", json={"username": "admin", "password": "admin-pass"})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['data']['access_token']}"}


@pytest.fixture
def recorder():
    return Broadcaster(registry=RecordingRegistry())


@pytest.fixture
def api_recorder(monkeypatch, recorder):
    monkeypatch.setattr(main, "broadcaster", recorder)
    return recorder


@pytest.fixture
def menu(db):
    category = models.Category(name="Mains")
    burger = models.Product(category=category, name="Burger", price=Decimal("9.50"), preparation_time=10)
    fries = models.Product(category=category, name="Fries", price=Decimal("3.00"), preparation_time=5)
    cheese = models.ProductOption(product=burger, name="Extra cheese", price_modifier=Decimal("1.50"))
    db.add_all([category, burger, fries, cheese])
    db.commit()
    return {"burger": burger.id, "fries": fries.id, "cheese": cheese.id}


@pytest.fixture
def table(db):
    restaurant_table = models.RestaurantTable(table_number="7")
    db.add(restaurant_table)
    db.commit()
    return restaurant_table.id


@pytest.fixture
def order_payload(menu):
    def build(table_id=None, **overrides):
        payload = {
            "table_id": table_id,
            "order_type": "table",
            "total_amount": 23.5,
            "items": [
                {
                    "product_id": menu["burger"],
                    "quantity": 2,
                    "price": 9.5,
                    "special_instructions": "no onions",
                    "options": [{"product_option_id": menu["cheese"], "price_modifier": 1.5}],
                },
                {"product_id": menu["fries"], "quantity": 1, "price": 3.0},
            ],
        }
        payload.update(overrides)
        return payload

    return build
