import json
import re
import threading
from datetime import datetime, timezone

import pytest

from conftest import make_product, storage_with_products
from database import MemoryStore, PersistenceError
from store import (
    ADMIN_KEY,
    InvalidArgument,
    InvalidTransition,
    NotFound,
    PLACEHOLDER_IMAGE,
    PRODUCTS_KEY,
    PURCHASES_KEY,
    SETTINGS_KEY,
    StoreRepository,
    generate_order_id,
    to_base36,
)

ORDER_ID_RE = re.compile(r"^PTH-[0-9A-Z]+-[0-9A-Z]{3}$")


class FailingStore(MemoryStore):
    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_writes = False

    def set(self, key, value):
        if self.fail_writes:
            raise PersistenceError(f"quota exceeded writing {key}")
        super().set(key, value)


def buy(repo, product_id="1", email="ana@x.com", method="QRIS"):
    return repo.create_purchase(repo.get_product(product_id), "Ana", email, "0812345678", method)


# Loading

def test_empty_storage_loads_seed():
    repo = StoreRepository(MemoryStore())
    assert [p.id for p in repo.products] == ["1", "2", "3", "4", "5", "6"]
    assert repo.purchases == []
    assert repo.admin.username == "admin"
    assert repo.settings.store_name == "PTEROHUB.ID"


def test_unparseable_storage_falls_back_to_seed():
    repo = StoreRepository(MemoryStore({PRODUCTS_KEY: "{not json", PURCHASES_KEY: '[{"id": 1}]'}))
    assert len(repo.products) == 6
    assert repo.purchases == []


def test_newer_snapshot_version_is_rejected():
    raw = json.dumps({"version": 99, "data": []})
    repo = StoreRepository(MemoryStore({PRODUCTS_KEY: raw}))
    assert len(repo.products) == 6


def test_legacy_browser_format_is_accepted():
    legacy_products = [{
        "id": "9", "name": "Old", "description": "d", "price": 1000, "stock": 2,
        "category": "Bot", "image": "x", "features": [], "isActive": True,
        "createdAt": "2024-01-01T00:00:00.000Z", "updatedAt": "2024-01-01T00:00:00.000Z",
        "salesCount": 1, "views": 3,
    }]
    legacy_admin = {"username": "boss", "password": "secret1", "isLoggedIn": False, "storeName": "Shop"}
    repo = StoreRepository(MemoryStore({
        PRODUCTS_KEY: json.dumps(legacy_products),
        ADMIN_KEY: json.dumps(legacy_admin),
    }))
    assert repo.get_product("9").sales_count == 1
    assert repo.admin.password != "secret1"
    assert repo.login("boss", "secret1")


def test_products_round_trip_through_storage(repo, storage):
    repo.add_product({"name": "New", "price": 5000, "stock": 3, "features": ["a", "b"], "original_price": 7000})
    reloaded = StoreRepository(storage)
    assert reloaded.products == repo.products


def test_snapshots_are_versioned_camel_case(repo, storage):
    payload = json.loads(storage.get(PRODUCTS_KEY))
    assert payload["version"] == 1
    assert "salesCount" in payload["data"][0]
    assert "isActive" in payload["data"][0]


# Products

def test_add_product_defaults(repo):
    product = repo.add_product({"name": "Bot", "price": 1000, "stock": 4, "category": "", "image": None})
    assert product.image == PLACEHOLDER_IMAGE
    assert product.category == "Other"
    assert product.sales_count == 0
    assert product.views == 0
    assert product.created_at == product.updated_at
    assert product.id not in ("", "1")
    assert repo.products[-1] == product


def test_add_product_invalid_price(repo):
    with pytest.raises(InvalidArgument):
        repo.add_product({"name": "Bad", "price": 0, "stock": 1})


def test_update_product_merges_and_touches_updated_at(repo):
    before = repo.get_product("1")
    updated = repo.update_product("1", {"price": 175000, "is_active": False})
    assert updated.price == 175000
    assert updated.is_active is False
    assert updated.name == before.name
    assert updated.updated_at > before.updated_at


def test_update_product_not_found(repo):
    with pytest.raises(NotFound):
        repo.update_product("nope", {"name": "x"})


def test_update_product_rejects_counters(repo):
    with pytest.raises(InvalidArgument):
        repo.update_product("1", {"sales_count": 0})


def test_update_product_rejects_negative_stock(repo):
    with pytest.raises(InvalidArgument):
        repo.update_product("1", {"stock": -1})
    assert repo.get_product("1").stock == 10


def test_delete_product_keeps_purchases(repo):
    purchase = buy(repo)
    repo.delete_product("1")
    with pytest.raises(NotFound):
        repo.get_product("1")
    assert repo.purchases[0].product_name == purchase.product_name
    with pytest.raises(NotFound):
        repo.delete_product("1")


def test_restock(repo):
    product = repo.restock_product("1", 5)
    assert product.stock == 15


@pytest.mark.parametrize("amount", [0, -3, True, 2.5])
def test_restock_rejects_non_positive(repo, amount):
    with pytest.raises(InvalidArgument):
        repo.restock_product("1", amount)


def test_restock_not_found(repo):
    with pytest.raises(NotFound):
        repo.restock_product("missing", 1)


def test_increment_views_keeps_updated_at(repo):
    before = repo.get_product("1")
    after = repo.increment_product_views("1")
    assert after.views == before.views + 1
    assert after.updated_at == before.updated_at


def test_list_products_filters():
    repo = StoreRepository(storage_with_products(
        make_product(id="1", name="Panel Pro", category="Panel"),
        make_product(id="2", name="WA Bot", description="whatsapp automation", category="Bot"),
        make_product(id="3", name="Hidden", category="Bot", is_active=False),
    ))
    assert [p.id for p in repo.list_products(active=True)] == ["1", "2"]
    assert [p.id for p in repo.list_products(search="WHATSAPP")] == ["2"]
    assert [p.id for p in repo.list_products(active=True, search="panel")] == ["1"]
    assert [p.id for p in repo.list_products(category="Bot")] == ["2", "3"]
    assert repo.list_categories() == ["Panel", "Bot"]


# Purchases

def test_create_purchase_snapshots_product_and_adjusts_stock(repo):
    purchase = buy(repo)
    assert purchase.status == "pending"
    assert purchase.price == 150000
    assert purchase.product_name == "Pterodactyl Panel Pro"
    assert ORDER_ID_RE.match(purchase.order_id)
    product = repo.get_product("1")
    assert product.stock == 9
    assert product.sales_count == 1
    assert repo.purchases[0] == purchase


def test_purchases_are_newest_first(repo):
    first = buy(repo)
    second = buy(repo)
    assert [p.id for p in repo.purchases] == [second.id, first.id]


def test_stock_never_goes_negative():
    repo = StoreRepository(storage_with_products(make_product(stock=2)))
    for _ in range(5):
        buy(repo)
    product = repo.get_product("1")
    assert product.stock == 0
    assert product.sales_count == 5


def test_price_snapshot_survives_product_change(repo):
    purchase = buy(repo)
    repo.update_product("1", {"price": 1, "name": "Renamed"})
    stored = repo.get_purchase_by_order_id(purchase.order_id)
    assert stored.price == 150000
    assert stored.product_name == "Pterodactyl Panel Pro"


def test_create_purchase_rejects_unknown_payment_method(repo):
    with pytest.raises(InvalidArgument):
        buy(repo, method="PAYPAL")
    assert repo.purchases == []


def test_failed_write_leaves_state_unchanged():
    storage = FailingStore()
    repo = StoreRepository(storage)
    storage.fail_writes = True
    with pytest.raises(PersistenceError):
        buy(repo)
    assert repo.purchases == []
    assert repo.get_product("1").sales_count == 45


def test_paid_at_is_stamped_once(repo):
    purchase = buy(repo)
    first = repo.update_purchase_status(purchase.id, "paid")
    assert first.paid_at is not None
    second = repo.update_purchase_status(purchase.id, "paid")
    assert second.paid_at == first.paid_at


def test_completed_at_is_stamped(repo):
    purchase = buy(repo)
    updated = repo.update_purchase_status(purchase.id, "completed")
    assert updated.completed_at is not None
    assert updated.status == "completed"


def test_status_changes_are_permissive_by_default(repo):
    purchase = buy(repo)
    repo.update_purchase_status(purchase.id, "completed")
    assert repo.update_purchase_status(purchase.id, "pending").status == "pending"


def test_strict_mode_rejects_backwards_transition(storage):
    repo = StoreRepository(storage, strict_transitions=True)
    purchase = buy(repo)
    with pytest.raises(InvalidTransition):
        repo.update_purchase_status(purchase.id, "completed")
    repo.update_purchase_status(purchase.id, "paid")
    repo.update_purchase_status(purchase.id, "paid")
    repo.update_purchase_status(purchase.id, "completed")
    with pytest.raises(InvalidTransition):
        repo.update_purchase_status(purchase.id, "cancelled")


def test_update_status_errors(repo):
    with pytest.raises(NotFound):
        repo.update_purchase_status("missing", "paid")
    purchase = buy(repo)
    with pytest.raises(InvalidArgument):
        repo.update_purchase_status(purchase.id, "shipped")


def test_bulk_update_skips_unknown_ids(repo):
    a = buy(repo)
    b = buy(repo)
    c = buy(repo)
    assert repo.bulk_update_status([a.id, c.id, "ghost"], "paid") == 2
    statuses = {p.id: p.status for p in repo.purchases}
    assert statuses == {a.id: "paid", b.id: "pending", c.id: "paid"}
    assert all(p.paid_at for p in repo.purchases if p.status == "paid")


def test_get_purchase_by_order_id_is_case_insensitive(repo):
    purchase = buy(repo)
    assert repo.get_purchase_by_order_id(purchase.order_id.lower()) == purchase
    assert repo.get_purchase_by_order_id(purchase.order_id[:-1]) is None
    assert repo.get_purchase_by_order_id("PTH-NOPE-123") is None


def test_list_purchases_filters(repo):
    a = buy(repo, email="a@x.com")
    b = buy(repo, email="b@x.com")
    repo.update_purchase_status(b.id, "paid")
    assert [p.id for p in repo.list_purchases(status="paid")] == [b.id]
    assert [p.id for p in repo.list_purchases(search=a.order_id.lower())] == [a.id]
    assert len(repo.list_purchases(search="panel")) == 2


def test_derived_views_follow_mutations(repo):
    purchase = buy(repo)
    assert repo.get_stats().total_sales == 0
    repo.update_purchase_status(purchase.id, "paid")
    assert repo.get_stats().total_sales == 150000
    assert repo.get_customers()[0].total_spent == 150000


# Order ids

def test_to_base36():
    assert to_base36(0) == "0"
    assert to_base36(35) == "Z"
    assert to_base36(36) == "10"


def test_generate_order_id_format():
    now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    order_id = generate_order_id(now)
    assert ORDER_ID_RE.match(order_id)
    prefix, stamp, suffix = order_id.split("-")
    assert prefix == "PTH"
    assert stamp == to_base36(int(now.timestamp() * 1000))
    assert len(suffix) == 3


# Admin & settings

def test_login(repo, storage):
    assert not repo.login("admin", "wrong")
    assert not repo.login("root", "admin123")
    assert not repo.admin.is_logged_in
    assert repo.login("admin", "admin123")
    assert repo.admin.is_logged_in
    assert json.loads(storage.get(ADMIN_KEY))["data"]["isLoggedIn"] is True
    repo.logout()
    assert not repo.admin.is_logged_in


def test_admin_password_is_not_stored_in_plaintext(repo, storage):
    repo.login("admin", "admin123")
    assert "admin123" not in storage.get(ADMIN_KEY)


def test_change_password(repo):
    with pytest.raises(InvalidArgument):
        repo.change_password("123")
    repo.change_password("newpass1")
    assert not repo.login("admin", "admin123")
    assert repo.login("admin", "newpass1")


def test_update_admin_profile(repo):
    admin = repo.update_admin_profile({"email": "owner@pterohub.id", "store_name": "Hub"})
    assert admin.email == "owner@pterohub.id"
    with pytest.raises(InvalidArgument):
        repo.update_admin_profile({"is_logged_in": True})


def test_update_settings(repo, storage):
    settings = repo.update_settings({"enable_dana": False, "maintenance_mode": True})
    assert not settings.payment_enabled("DANA")
    assert settings.payment_enabled("QRIS")
    assert json.loads(storage.get(SETTINGS_KEY))["data"]["enableDANA"] is False
    with pytest.raises(InvalidArgument):
        repo.update_settings({"theme": "dark"})


def test_reset_restores_seed(repo, storage):
    buy(repo)
    repo.reset()
    assert len(repo.products) == 6
    assert repo.purchases == []
    assert storage.get(PURCHASES_KEY) is None


# Storage consistency

class KeyFailingStore(MemoryStore):
    def __init__(self, failing_key, initial=None):
        super().__init__(initial)
        self.failing_key = failing_key
        self.armed = False

    def set(self, key, value):
        if self.armed and key == self.failing_key:
            raise PersistenceError(f"quota exceeded writing {key}")
        super().set(key, value)


class BlockingStore(MemoryStore):
    """Holds product writes until released, so a reader can run mid-purchase."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.armed = False
        self.writing = threading.Event()
        self.release = threading.Event()

    def set(self, key, value):
        if self.armed and key == PRODUCTS_KEY:
            self.writing.set()
            self.release.wait(5)
        super().set(key, value)


def test_failed_product_write_rolls_back_stored_purchases():
    storage = KeyFailingStore(PRODUCTS_KEY)
    repo = StoreRepository(storage)
    storage.armed = True
    with pytest.raises(PersistenceError):
        buy(repo)
    assert repo.purchases == []
    reloaded = StoreRepository(storage)
    assert reloaded.purchases == []
    assert reloaded.get_product("1").sales_count == 45
    assert reloaded.get_product("1").stock == 10


def test_stats_wait_for_purchase_in_progress():
    storage = storage_with_products(make_product(), storage=BlockingStore())
    repo = StoreRepository(storage)
    storage.armed = True
    writer = threading.Thread(target=buy, args=(repo,))
    writer.start()
    assert storage.writing.wait(5)

    results = []
    reader = threading.Thread(target=lambda: results.append(repo.get_stats()))
    reader.start()
    reader.join(0.2)
    assert reader.is_alive()

    storage.release.set()
    writer.join(5)
    reader.join(5)
    stats = results[0]
    assert stats.total_orders == 1
    assert [(t.name, t.sales) for t in stats.top_products] == [("Pterodactyl Panel Pro", 1)]
    assert repo.snapshot() == (repo.products, repo.purchases)


def test_create_purchases_commits_batch():
    repo = StoreRepository(storage_with_products(
        make_product(id="1", stock=1),
        make_product(id="2", name="WA Bot", price=75000, stock=3),
    ))
    created = repo.create_purchases(
        [repo.get_product("1"), repo.get_product("2")], "Ana", "ana@x.com", "0812", "DANA",
    )
    assert [p.product_id for p in created] == ["1", "2"]
    assert [p.product_id for p in repo.purchases] == ["2", "1"]
    assert repo.get_product("1").stock == 0
    assert repo.get_product("2").stock == 2
    assert repo.get_product("2").sales_count == 1


def test_create_purchases_fails_as_a_whole():
    storage = storage_with_products(
        make_product(id="1"), make_product(id="2"), storage=KeyFailingStore(PRODUCTS_KEY),
    )
    repo = StoreRepository(storage)
    storage.armed = True
    with pytest.raises(PersistenceError):
        repo.create_purchases(repo.products, "Ana", "ana@x.com", "0812", "QRIS")
    assert StoreRepository(storage).purchases == []


def test_update_product_rejects_counters_by_json_name(repo):
    with pytest.raises(InvalidArgument):
        repo.update_product("1", {"salesCount": 0})
    with pytest.raises(InvalidArgument):
        repo.update_product("1", {"createdAt": "2020-01-01T00:00:00Z"})
    assert repo.update_product("1", {"isActive": False}).is_active is False


def test_settings_accept_json_names(repo):
    assert repo.update_settings({"enableQRIS": False, "storeName": "Hub"}).enable_qris is False


@pytest.mark.parametrize("version", ["1", None, [1], True])
def test_malformed_snapshot_version_falls_back_to_seed(version):
    raw = json.dumps({"version": version, "data": []})
    repo = StoreRepository(MemoryStore({PRODUCTS_KEY: raw}))
    assert len(repo.products) == 6
