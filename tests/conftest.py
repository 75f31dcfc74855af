from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import main
from database import MemoryStore
from schemas import Product, Purchase
from store import PRODUCTS_KEY, StoreRepository, _products_adapter, dump_snapshot

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
CATALOG_DATE = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_product(**overrides) -> Product:
    data = {
        "id": "1",
        "name": "Pterodactyl Panel Pro",
        "description": "Panel setup",
        "price": 150000,
        "stock": 10,
        "category": "Panel",
        "image": "https://example.com/panel.png",
        "features": ["Custom Theme"],
        "is_active": True,
        "created_at": CATALOG_DATE,
        "updated_at": CATALOG_DATE,
        "sales_count": 0,
        "views": 0,
    }
    data.update(overrides)
    return Product(**data)


def make_purchase(**overrides) -> Purchase:
    data = {
        "id": "p1",
        "order_id": "PTH-ABC123-XYZ",
        "product_id": "1",
        "product_name": "Pterodactyl Panel Pro",
        "price": 100,
        "customer_name": "Ana",
        "customer_email": "ana@x.com",
        "customer_phone": "08123456789",
        "payment_method": "QRIS",
        "status": "pending",
        "created_at": NOW,
    }
    data.update(overrides)
    return Purchase(**data)


def storage_with_products(*products, storage=None) -> MemoryStore:
    storage = storage if storage is not None else MemoryStore()
    storage.set(PRODUCTS_KEY, dump_snapshot(_products_adapter, list(products)))
    return storage


@pytest.fixture
def storage():
    return storage_with_products(make_product())


@pytest.fixture
def repo(storage):
    return StoreRepository(storage)


@pytest.fixture
def client(repo):
    main.app.state.repo = repo
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def auth_headers(client):
    resp = client.post("/admin/login", json={"username": "admin", "password": "admin123"})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}
