import logging
import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from database import PersistenceError, create_store
from schemas import (
    AdminProfileUpdate,
    BulkStatusUpdate,
    CheckoutRequest,
    Customer,
    DashboardStats,
    LoginRequest,
    PasswordChange,
    Product,
    ProductIn,
    ProductUpdate,
    Purchase,
    PurchaseStatus,
    RestockRequest,
    SeedRequest,
    SettingsUpdate,
    StatusUpdate,
    StoreSettings,
)
from store import InvalidArgument, NotFound, StoreRepository, Unauthorized

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# Config
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
STORE_UTC_OFFSET = float(os.getenv("STORE_UTC_OFFSET", "7"))
STRICT_STATUS_TRANSITIONS = os.getenv("STRICT_STATUS_TRANSITIONS", "0") == "1"

# App setup
app = FastAPI(title="PTEROHUB Store API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
security = HTTPBearer(auto_error=False)


def create_repository(storage=None) -> StoreRepository:
    return StoreRepository(
        storage if storage is not None else create_store(),
        strict_transitions=STRICT_STATUS_TRANSITIONS,
        tz=timezone(timedelta(hours=STORE_UTC_OFFSET)),
    )


app.state.repo = create_repository()


def get_repo(request: Request) -> StoreRepository:
    return request.app.state.repo


# Error mapping
@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidArgument)
async def invalid_argument_handler(request: Request, exc: InvalidArgument):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


# Auth
def create_token(username: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": username,
        "role": "admin",
        "exp": now + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")


async def get_current_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    repo: StoreRepository = Depends(get_repo),
):
    if credentials is None:
        raise Unauthorized("Not authenticated")
    payload = decode_token(credentials.credentials)
    admin = repo.admin
    if payload.get("sub") != admin.username or not admin.is_logged_in:
        raise Unauthorized("Session is no longer valid")
    return admin


def admin_profile(admin) -> dict:
    return admin.model_dump(mode="json", by_alias=True, exclude={"password"})


# Health
@app.get("/")
def root():
    return {"message": "PTEROHUB Store API running"}


@app.get("/test")
def test_storage(repo: StoreRepository = Depends(get_repo)):
    response = {
        "backend": "✅ Running",
        "storage": repo.storage.name,
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "connection_status": "Not Connected",
        "keys": [],
    }
    try:
        response["keys"] = repo.storage.keys()
        response["connection_status"] = "Connected"
    except PersistenceError as e:
        response["connection_status"] = f"⚠️ Error: {str(e)[:80]}"
    return response


# Storefront
@app.get("/api/products", response_model=List[Product])
def list_products(q: Optional[str] = None, category: Optional[str] = None,
                  repo: StoreRepository = Depends(get_repo)):
    return repo.list_products(active=True, search=q, category=category)


@app.get("/api/products/{product_id}", response_model=Product)
def get_product(product_id: str, repo: StoreRepository = Depends(get_repo)):
    product = repo.get_product(product_id)
    if not product.is_active:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/api/products/{product_id}/view", response_model=Product)
def view_product(product_id: str, repo: StoreRepository = Depends(get_repo)):
    return repo.increment_product_views(product_id)


@app.get("/api/categories")
def list_categories(repo: StoreRepository = Depends(get_repo)):
    active = repo.list_products(active=True)
    return list(dict.fromkeys(p.category for p in active))


@app.get("/api/settings", response_model=StoreSettings)
def get_settings(repo: StoreRepository = Depends(get_repo)):
    return repo.settings


# Checkout & order status
@app.post("/api/checkout", status_code=201)
def checkout(payload: CheckoutRequest, repo: StoreRepository = Depends(get_repo)):
    settings = repo.settings
    if settings.maintenance_mode:
        raise HTTPException(status_code=503, detail="Store is under maintenance")
    if not settings.payment_enabled(payload.payment_method):
        raise HTTPException(status_code=400, detail=f"Payment method {payload.payment_method} is disabled")

    products = []
    for product_id in payload.product_ids:
        product = repo.get_product(product_id)
        if not product.is_active:
            raise HTTPException(status_code=404, detail=f"Product not found: {product_id}")
        if product.stock <= 0:
            raise HTTPException(status_code=400, detail=f"Out of stock: {product.name}")
        products.append(product)

    # Payment is simulated: every order starts as pending until an admin confirms it
    purchases = repo.create_purchases(
        products,
        payload.customer_name,
        payload.customer_email,
        payload.customer_phone,
        payload.payment_method,
    )
    return {
        "orderId": purchases[0].order_id,
        "total": sum(p.price for p in purchases),
        "purchases": [p.model_dump(mode="json", by_alias=True) for p in purchases],
    }


@app.get("/api/orders/{order_id}", response_model=Purchase)
def order_status(order_id: str, repo: StoreRepository = Depends(get_repo)):
    purchase = repo.get_purchase_by_order_id(order_id.strip())
    if purchase is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return purchase


# Admin auth
@app.post("/admin/login")
def login(payload: LoginRequest, repo: StoreRepository = Depends(get_repo)):
    if not repo.login(payload.username, payload.password):
        raise Unauthorized("Invalid credentials")
    return {"token": create_token(repo.admin.username), "admin": admin_profile(repo.admin)}


@app.post("/admin/logout")
def logout(admin=Depends(get_current_admin), repo: StoreRepository = Depends(get_repo)):
    repo.logout()
    return {"loggedOut": True}


@app.get("/admin/me")
def me(admin=Depends(get_current_admin)):
    return admin_profile(admin)


@app.put("/admin/me")
def update_profile(update: AdminProfileUpdate, admin=Depends(get_current_admin),
                   repo: StoreRepository = Depends(get_repo)):
    updated = repo.update_admin_profile(update.model_dump(exclude_unset=True))
    # a new username invalidates the old token subject
    return {"token": create_token(updated.username), "admin": admin_profile(updated)}


@app.post("/admin/password")
def change_password(payload: PasswordChange, admin=Depends(get_current_admin),
                    repo: StoreRepository = Depends(get_repo)):
    if not repo.verify_password(payload.current_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    if payload.new_password != payload.confirm_password:
        raise HTTPException(status_code=400, detail="Password confirmation does not match")
    repo.change_password(payload.new_password)
    return {"changed": True}


# Admin products
@app.get("/admin/products", response_model=List[Product])
def admin_list_products(q: Optional[str] = None, category: Optional[str] = None,
                        active: Optional[bool] = None, admin=Depends(get_current_admin),
                        repo: StoreRepository = Depends(get_repo)):
    return repo.list_products(active=active, search=q, category=category)


@app.post("/admin/products", response_model=Product, status_code=201)
def create_product(payload: ProductIn, admin=Depends(get_current_admin),
                   repo: StoreRepository = Depends(get_repo)):
    return repo.add_product(payload.model_dump())


@app.put("/admin/products/{product_id}", response_model=Product)
def update_product(product_id: str, payload: ProductUpdate, admin=Depends(get_current_admin),
                   repo: StoreRepository = Depends(get_repo)):
    return repo.update_product(product_id, payload.model_dump(exclude_unset=True))


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, admin=Depends(get_current_admin),
                   repo: StoreRepository = Depends(get_repo)):
    repo.delete_product(product_id)
    return {"id": product_id, "deleted": True}


@app.post("/admin/products/{product_id}/restock", response_model=Product)
def restock_product(product_id: str, payload: RestockRequest, admin=Depends(get_current_admin),
                    repo: StoreRepository = Depends(get_repo)):
    return repo.restock_product(product_id, payload.amount)


# Admin orders, customers, stats
@app.get("/admin/orders", response_model=List[Purchase])
def admin_list_orders(q: Optional[str] = None, status: Optional[PurchaseStatus] = None,
                      admin=Depends(get_current_admin), repo: StoreRepository = Depends(get_repo)):
    return repo.list_purchases(search=q, status=status)


@app.put("/admin/orders/{purchase_id}/status", response_model=Purchase)
def update_order_status(purchase_id: str, payload: StatusUpdate, admin=Depends(get_current_admin),
                        repo: StoreRepository = Depends(get_repo)):
    return repo.update_purchase_status(purchase_id, payload.status)


@app.post("/admin/orders/bulk-status")
def bulk_order_status(payload: BulkStatusUpdate, admin=Depends(get_current_admin),
                      repo: StoreRepository = Depends(get_repo)):
    return {"updated": repo.bulk_update_status(payload.ids, payload.status)}


@app.get("/admin/customers", response_model=List[Customer])
def admin_customers(admin=Depends(get_current_admin), repo: StoreRepository = Depends(get_repo)):
    return repo.get_customers()


@app.get("/admin/stats", response_model=DashboardStats)
def admin_stats(admin=Depends(get_current_admin), repo: StoreRepository = Depends(get_repo)):
    return repo.get_stats()


# Admin settings & data
@app.put("/admin/settings", response_model=StoreSettings)
def update_settings(payload: SettingsUpdate, admin=Depends(get_current_admin),
                    repo: StoreRepository = Depends(get_repo)):
    return repo.update_settings(payload.model_dump(exclude_unset=True))


@app.post("/admin/seed")
def seed(req: SeedRequest, admin=Depends(get_current_admin), repo: StoreRepository = Depends(get_repo)):
    # Only reseed when the catalog is empty or force=True
    if not req.force and repo.products:
        return {"seeded": False, "message": "Products already exist", "count": len(repo.products)}
    repo.reset()
    return {"seeded": True, "count": len(repo.products)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
