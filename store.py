"""
Entity repository for the shop: products, purchases, admin account and
store settings.

The repository owns the in-memory collections and writes the full snapshot of
a collection to the key-value store after every mutation. Customer and
dashboard views are computed on demand from the current snapshot (see
analytics.py).
"""

import json
import logging
import secrets
import threading
from collections import Counter
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from passlib.context import CryptContext
from pydantic import TypeAdapter, ValidationError

import analytics
from database import PersistenceError
from schemas import (
    AdminUser,
    Customer,
    DashboardStats,
    PAYMENT_METHODS,
    PURCHASE_STATUSES,
    Product,
    Purchase,
    StoreSettings,
)

logger = logging.getLogger(__name__)

PRODUCTS_KEY = "pterohub_products"
PURCHASES_KEY = "pterohub_purchases"
ADMIN_KEY = "pterohub_admin"
SETTINGS_KEY = "pterohub_settings"
ALL_KEYS = (PRODUCTS_KEY, PURCHASES_KEY, ADMIN_KEY, SETTINGS_KEY)

SCHEMA_VERSION = 1

PLACEHOLDER_IMAGE = "https://placehold.co/800x600?text=No+Image"
DEFAULT_CATEGORY = "Other"
MIN_PASSWORD_LENGTH = 6

ORDER_PREFIX = "PTH"
BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Forward moves along pending -> paid -> processing -> completed, cancel from
# any open state. Only enforced in strict mode.
STATUS_TRANSITIONS = {
    "pending": {"paid", "cancelled"},
    "paid": {"processing", "completed", "cancelled"},
    "processing": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

PROTECTED_PRODUCT_FIELDS = {"id", "created_at", "updated_at", "sales_count", "views"}
ADMIN_PROFILE_FIELDS = {"username", "email", "phone", "store_name"}

password_ctx = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

_products_adapter = TypeAdapter(List[Product])
_purchases_adapter = TypeAdapter(List[Purchase])
_admin_adapter = TypeAdapter(AdminUser)
_settings_adapter = TypeAdapter(StoreSettings)


# Errors

class StoreError(Exception):
    pass


class NotFound(StoreError):
    pass


class InvalidArgument(StoreError):
    pass


class InvalidTransition(InvalidArgument):
    pass


class Unauthorized(StoreError):
    pass


# Helpers

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_order_id(now: Optional[datetime] = None) -> str:
    """PTH-<millisecond timestamp in base 36>-<3 random base 36 chars>."""
    millis = int((now or utcnow()).timestamp() * 1000)
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(3))
    return f"{ORDER_PREFIX}-{to_base36(millis)}-{suffix}"


def by_field_name(model, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite camelCase keys (``salesCount``) to attribute names (``sales_count``)."""
    names = {f.alias: name for name, f in model.model_fields.items() if f.alias}
    return {names.get(k, k): v for k, v in fields.items()}


def dump_snapshot(adapter: TypeAdapter, value) -> str:
    data = adapter.dump_python(value, mode="json", by_alias=True)
    return json.dumps({"version": SCHEMA_VERSION, "data": data})


def load_snapshot(adapter: TypeAdapter, raw: str):
    """Parse a stored snapshot. Bare payloads without the version envelope are
    treated as the original browser format."""
    payload = json.loads(raw)
    if isinstance(payload, dict) and "version" in payload and "data" in payload:
        version = payload["version"]
        if isinstance(version, bool) or not isinstance(version, int):
            raise ValueError(f"Invalid snapshot version {version!r}")
        if version > SCHEMA_VERSION:
            raise ValueError(f"Unsupported snapshot version {payload['version']}")
        payload = payload["data"]
    return adapter.validate_python(payload)


# Seed data

def seed_products(now: Optional[datetime] = None) -> List[Product]:
    now = now or utcnow()
    samples = [
        {
            "id": "1",
            "name": "Pterodactyl Panel Pro",
            "description": "Complete Pterodactyl panel setup with custom themes, plugins, and full configuration. Perfect for game server hosting business.",
            "price": 150000,
            "original_price": 200000,
            "stock": 10,
            "category": "Panel",
            "image": "https://images.unsplash.com/photo-1558494949-ef010cbdcc31?w=800&h=600&fit=crop",
            "features": ["Custom Theme", "Auto Installer", "24/7 Support", "Free Updates"],
            "sales_count": 45,
            "views": 320,
        },
        {
            "id": "2",
            "name": "WA Bot Script Premium",
            "description": "Advanced WhatsApp automation bot with AI integration, auto-reply, broadcast, and group management features.",
            "price": 75000,
            "stock": 25,
            "category": "Bot",
            "image": "https://images.unsplash.com/photo-1611746872915-64382b5c76da?w=800&h=600&fit=crop",
            "features": ["AI Integration", "Auto Reply", "Broadcast", "Group Manager"],
            "sales_count": 128,
            "views": 890,
        },
        {
            "id": "3",
            "name": "Game Server Bundle",
            "description": "Complete game server setup including Minecraft, CS:GO, and Valorant server configurations with monitoring tools.",
            "price": 250000,
            "original_price": 350000,
            "stock": 5,
            "category": "Bundle",
            "image": "https://images.unsplash.com/photo-1542751371-adc38448a05e?w=800&h=600&fit=crop",
            "features": ["Minecraft Server", "CS:GO Server", "Monitoring Tools", "Backup System"],
            "sales_count": 23,
            "views": 156,
        },
        {
            "id": "4",
            "name": "VPS Configuration Script",
            "description": "Automated VPS setup script with security hardening, panel installation, and optimization for gaming servers.",
            "price": 50000,
            "stock": 50,
            "category": "Script",
            "image": "https://images.unsplash.com/photo-1629654297299-c8506221ca97?w=800&h=600&fit=crop",
            "features": ["Auto Setup", "Security Hardening", "Optimization", "One-Click Install"],
            "sales_count": 89,
            "views": 445,
        },
        {
            "id": "5",
            "name": "Discord Bot Starter",
            "description": "Feature-rich Discord bot with moderation, music, economy system, and custom commands.",
            "price": 45000,
            "stock": 30,
            "category": "Bot",
            "image": "https://images.unsplash.com/photo-1614680376593-902f74cf0d41?w=800&h=600&fit=crop",
            "features": ["Moderation", "Music Player", "Economy System", "Custom Commands"],
            "sales_count": 67,
            "views": 334,
        },
        {
            "id": "6",
            "name": "Cloud Panel Enterprise",
            "description": "Enterprise-grade cloud management panel with multi-server support, billing integration, and API access.",
            "price": 500000,
            "stock": 3,
            "category": "Panel",
            "image": "https://images.unsplash.com/photo-1451187580459-43490279c0fa?w=800&h=600&fit=crop",
            "features": ["Multi-Server", "Billing API", "User Management", "Analytics"],
            "sales_count": 12,
            "views": 98,
        },
    ]
    return [Product(is_active=True, created_at=now, updated_at=now, **s) for s in samples]


def default_admin() -> AdminUser:
    return AdminUser(
        username="admin",
        password=password_ctx.hash("admin123"),
        email="admin@pterohub.id",
        store_name="PTEROHUB.ID",
    )


def default_settings() -> StoreSettings:
    return StoreSettings(
        store_name="PTEROHUB.ID",
        store_description="Premium Digital Solutions",
        contact_email="support@pterohub.id",
        contact_phone="+62 812-3456-7890",
        whatsapp_number="6281234567890",
    )


class StoreRepository:
    """Authoritative holder of the shop collections.

    Every mutation runs under one lock, builds the new collection, persists it
    and only then swaps it in, so a failed write leaves memory unchanged and
    the PersistenceError reaches the caller.
    """

    def __init__(self, storage, strict_transitions: bool = False, tz: Optional[tzinfo] = None):
        self.storage = storage
        self.strict_transitions = strict_transitions
        self.tz = tz or timezone.utc
        self._lock = threading.RLock()
        self._load_all()

    # ---------- Loading / saving ----------

    def _load_all(self):
        self._products: List[Product] = self._load(PRODUCTS_KEY, _products_adapter, seed_products)
        self._purchases: List[Purchase] = self._load(PURCHASES_KEY, _purchases_adapter, list)
        self._admin: AdminUser = self._load(ADMIN_KEY, _admin_adapter, default_admin)
        self._settings: StoreSettings = self._load(SETTINGS_KEY, _settings_adapter, default_settings)
        if password_ctx.identify(self._admin.password) is None:
            # plaintext password from the original browser format
            self._admin = self._admin.model_copy(update={"password": password_ctx.hash(self._admin.password)})

    def _load(self, key: str, adapter: TypeAdapter, default: Callable[[], Any]):
        raw = self.storage.get(key)
        if raw is None:
            return default()
        try:
            return load_snapshot(adapter, raw)
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning("Stored %s is unreadable, falling back to seed data: %s", key, e)
            return default()

    def _save(self, key: str, adapter: TypeAdapter, value) -> None:
        try:
            self.storage.set(key, dump_snapshot(adapter, value))
        except PersistenceError:
            logger.exception("Failed to persist %s", key)
            raise

    def _commit_products(self, products: List[Product]) -> None:
        self._save(PRODUCTS_KEY, _products_adapter, products)
        self._products = products

    def _commit_purchases(self, purchases: List[Purchase]) -> None:
        self._save(PURCHASES_KEY, _purchases_adapter, purchases)
        self._purchases = purchases

    def reset(self) -> None:
        """Drop every stored collection and reload the seed data."""
        with self._lock:
            for key in ALL_KEYS:
                self.storage.clear(key)
            self._load_all()
        logger.info("Store data reset to seed")

    # ---------- Products ----------

    @property
    def products(self) -> List[Product]:
        with self._lock:
            return list(self._products)

    def _product_index(self, product_id: str) -> int:
        for i, p in enumerate(self._products):
            if p.id == product_id:
                return i
        raise NotFound(f"Product not found: {product_id}")

    @staticmethod
    def _validate_product(data: Dict[str, Any]) -> Product:
        try:
            return Product.model_validate(data)
        except ValidationError as e:
            raise InvalidArgument(str(e)) from e

    def get_product(self, product_id: str) -> Product:
        return self._products[self._product_index(product_id)]

    def list_products(self, active: Optional[bool] = None, search: Optional[str] = None,
                      category: Optional[str] = None) -> List[Product]:
        items = self.products
        if active is not None:
            items = [p for p in items if p.is_active == active]
        if search:
            q = search.lower()
            items = [
                p for p in items
                if q in p.name.lower() or q in p.description.lower() or q in p.category.lower()
            ]
        if category:
            items = [p for p in items if p.category == category]
        return items

    def list_categories(self) -> List[str]:
        return list(dict.fromkeys(p.category for p in self._products))

    def add_product(self, fields: Dict[str, Any]) -> Product:
        data = {k: v for k, v in by_field_name(Product, fields).items() if v is not None}
        if not data.get("image"):
            data["image"] = PLACEHOLDER_IMAGE
        if not data.get("category"):
            data["category"] = DEFAULT_CATEGORY
        now = utcnow()
        data.update(id=str(ObjectId()), created_at=now, updated_at=now, sales_count=0, views=0)
        product = self._validate_product(data)
        with self._lock:
            self._commit_products(self._products + [product])
        logger.info("Product added: %s (%s)", product.name, product.id)
        return product

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Product:
        fields = by_field_name(Product, fields)
        protected = PROTECTED_PRODUCT_FIELDS & set(fields)
        if protected:
            raise InvalidArgument(f"Fields cannot be updated: {', '.join(sorted(protected))}")
        with self._lock:
            i = self._product_index(product_id)
            data = self._products[i].model_dump()
            data.update(fields)
            data["updated_at"] = utcnow()
            product = self._validate_product(data)
            products = list(self._products)
            products[i] = product
            self._commit_products(products)
        logger.info("Product updated: %s", product_id)
        return product

    def delete_product(self, product_id: str) -> None:
        with self._lock:
            i = self._product_index(product_id)
            self._commit_products(self._products[:i] + self._products[i + 1:])
        logger.info("Product deleted: %s", product_id)

    def restock_product(self, product_id: str, amount: int) -> Product:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidArgument("Restock amount must be a positive integer")
        with self._lock:
            i = self._product_index(product_id)
            current = self._products[i]
            product = current.model_copy(update={"stock": current.stock + amount, "updated_at": utcnow()})
            products = list(self._products)
            products[i] = product
            self._commit_products(products)
        logger.info("Product %s restocked by %d (stock=%d)", product_id, amount, product.stock)
        return product

    def increment_product_views(self, product_id: str) -> Product:
        with self._lock:
            i = self._product_index(product_id)
            product = self._products[i].model_copy(update={"views": self._products[i].views + 1})
            products = list(self._products)
            products[i] = product
            self._commit_products(products)
        return product

    # ---------- Purchases ----------

    @property
    def purchases(self) -> List[Purchase]:
        with self._lock:
            return list(self._purchases)

    def _purchase_index(self, purchase_id: str) -> int:
        for i, p in enumerate(self._purchases):
            if p.id == purchase_id:
                return i
        raise NotFound(f"Purchase not found: {purchase_id}")

    def list_purchases(self, search: Optional[str] = None, status: Optional[str] = None) -> List[Purchase]:
        items = self.purchases
        if search:
            q = search.lower()
            items = [
                p for p in items
                if q in p.order_id.lower() or q in p.customer_name.lower() or q in p.product_name.lower()
            ]
        if status:
            items = [p for p in items if p.status == status]
        return items

    def get_purchase_by_order_id(self, order_id: str) -> Optional[Purchase]:
        needle = order_id.lower()
        for p in self._purchases:
            if p.order_id.lower() == needle:
                return p
        return None

    def create_purchase(self, product: Product, customer_name: str, customer_email: str,
                        customer_phone: str, payment_method: str) -> Purchase:
        return self.create_purchases([product], customer_name, customer_email, customer_phone, payment_method)[0]

    def create_purchases(self, products: List[Product], customer_name: str, customer_email: str,
                         customer_phone: str, payment_method: str) -> List[Purchase]:
        """One purchase per product, all committed together or not at all.

        Each purchase snapshots its product's name and price; each product
        loses one unit of stock (never below zero) and gains one sale.
        """
        if payment_method not in PAYMENT_METHODS:
            raise InvalidArgument(f"Unknown payment method: {payment_method}")
        with self._lock:
            now = utcnow()
            created = []
            for product in products:
                try:
                    created.append(Purchase(
                        id=str(ObjectId()),
                        order_id=generate_order_id(now),
                        product_id=product.id,
                        product_name=product.name,
                        price=product.price,
                        customer_name=customer_name,
                        customer_email=customer_email,
                        customer_phone=customer_phone,
                        payment_method=payment_method,
                        status="pending",
                        created_at=now,
                    ))
                except ValidationError as e:
                    raise InvalidArgument(str(e)) from e
            sold = Counter(p.id for p in products)
            updated_products = [
                p.model_copy(update={
                    "stock": max(0, p.stock - sold[p.id]),
                    "sales_count": p.sales_count + sold[p.id],
                })
                if p.id in sold else p
                for p in self._products
            ]
            previous = self._purchases
            # newest first, as if each product had been bought in turn
            purchases = list(reversed(created)) + previous
            self._save(PURCHASES_KEY, _purchases_adapter, purchases)
            try:
                self._save(PRODUCTS_KEY, _products_adapter, updated_products)
            except PersistenceError:
                # put the stored purchases back so both keys stay in step
                self._save(PURCHASES_KEY, _purchases_adapter, previous)
                raise
            self._purchases = purchases
            self._products = updated_products
        for purchase in created:
            logger.info("Purchase created: %s for %s (%s)", purchase.order_id, purchase.product_name, payment_method)
        return created

    def _apply_status(self, purchase: Purchase, status: str, now: datetime) -> Purchase:
        if self.strict_transitions and status != purchase.status \
                and status not in STATUS_TRANSITIONS[purchase.status]:
            raise InvalidTransition(f"Cannot change order {purchase.order_id} from {purchase.status} to {status}")
        update: Dict[str, Any] = {"status": status}
        if status == "paid" and purchase.paid_at is None:
            update["paid_at"] = now
        if status == "completed" and purchase.completed_at is None:
            update["completed_at"] = now
        return purchase.model_copy(update=update)

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in PURCHASE_STATUSES:
            raise InvalidArgument(f"Unknown status: {status}")

    def update_purchase_status(self, purchase_id: str, status: str) -> Purchase:
        self._check_status(status)
        with self._lock:
            i = self._purchase_index(purchase_id)
            purchase = self._apply_status(self._purchases[i], status, utcnow())
            purchases = list(self._purchases)
            purchases[i] = purchase
            self._commit_purchases(purchases)
        logger.info("Order %s status -> %s", purchase.order_id, status)
        return purchase

    def bulk_update_status(self, ids: Iterable[str], status: str) -> int:
        self._check_status(status)
        wanted = set(ids)
        updated = 0
        with self._lock:
            now = utcnow()
            purchases = []
            for p in self._purchases:
                if p.id in wanted:
                    p = self._apply_status(p, status, now)
                    updated += 1
                purchases.append(p)
            if updated:
                self._commit_purchases(purchases)
        logger.info("Bulk status -> %s applied to %d order(s)", status, updated)
        return updated

    # ---------- Derived views ----------

    def snapshot(self) -> Tuple[List[Product], List[Purchase]]:
        """Products and purchases taken together under the lock."""
        with self._lock:
            return list(self._products), list(self._purchases)

    def get_customers(self) -> List[Customer]:
        return analytics.get_customers(self.purchases)

    def get_stats(self, now: Optional[datetime] = None) -> DashboardStats:
        products, purchases = self.snapshot()
        return analytics.get_stats(products, purchases, now=now, tz=self.tz)

    # ---------- Admin ----------

    @property
    def admin(self) -> AdminUser:
        return self._admin

    def _commit_admin(self, admin: AdminUser) -> None:
        self._save(ADMIN_KEY, _admin_adapter, admin)
        self._admin = admin

    def verify_password(self, password: str) -> bool:
        return password_ctx.verify(password, self._admin.password)

    def login(self, username: str, password: str) -> bool:
        user_ok = secrets.compare_digest(username.encode(), self._admin.username.encode())
        password_ok = self.verify_password(password)
        if not (user_ok and password_ok):
            logger.info("Failed admin login")
            return False
        with self._lock:
            self._commit_admin(self._admin.model_copy(update={"is_logged_in": True}))
        logger.info("Admin logged in")
        return True

    def logout(self) -> None:
        with self._lock:
            self._commit_admin(self._admin.model_copy(update={"is_logged_in": False}))

    def change_password(self, new_password: str) -> None:
        if not isinstance(new_password, str) or len(new_password) < MIN_PASSWORD_LENGTH:
            raise InvalidArgument(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        with self._lock:
            self._commit_admin(self._admin.model_copy(update={"password": password_ctx.hash(new_password)}))
        logger.info("Admin password changed")

    def update_admin_profile(self, fields: Dict[str, Any]) -> AdminUser:
        fields = by_field_name(AdminUser, fields)
        unknown = set(fields) - ADMIN_PROFILE_FIELDS
        if unknown:
            raise InvalidArgument(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "username" in fields and not fields["username"]:
            raise InvalidArgument("Username cannot be empty")
        with self._lock:
            try:
                admin = AdminUser.model_validate({**self._admin.model_dump(), **fields})
            except ValidationError as e:
                raise InvalidArgument(str(e)) from e
            self._commit_admin(admin)
        return admin

    # ---------- Settings ----------

    @property
    def settings(self) -> StoreSettings:
        return self._settings

    def update_settings(self, fields: Dict[str, Any]) -> StoreSettings:
        fields = by_field_name(StoreSettings, fields)
        unknown = set(fields) - set(StoreSettings.model_fields)
        if unknown:
            raise InvalidArgument(f"Unknown settings: {', '.join(sorted(unknown))}")
        with self._lock:
            try:
                settings = StoreSettings.model_validate({**self._settings.model_dump(), **fields})
            except ValidationError as e:
                raise InvalidArgument(str(e)) from e
            self._save(SETTINGS_KEY, _settings_adapter, settings)
            self._settings = settings
        logger.info("Settings updated: %s", ", ".join(sorted(fields)))
        return settings
