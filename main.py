import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Depends, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from jose import jwt, JWTError
from pymongo.errors import PyMongoError

import config
import reports
from database import db, ensure_indexes, serialize
from errors import MarketplaceError, NoDispatcherAvailable, NotFound, Forbidden
from lifecycle import Actor, OrderLifecycleManager, payment_blocks_confirmation
from notifications import StoreNotifier
from repositories import Store
from schemas import Coordinates, Role, OrderStatus, DeliveryStatus, PaymentMethod, PaymentStatus

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("marketplace")

bearer_scheme = HTTPBearer(auto_error=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        try:
            ensure_indexes(db)
        except PyMongoError:
            logger.exception("index_setup_failed")
    yield


app = FastAPI(title="Vunalet Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.reason})

# ------------------------- Dependencies -------------------------

def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def get_store(database=Depends(get_db)) -> Store:
    return Store.from_db(database)


def get_manager(store: Store = Depends(get_store)) -> OrderLifecycleManager:
    return OrderLifecycleManager(store, StoreNotifier(store.notifications))

# ------------------------- Auth utils -------------------------

def role_from_claims(payload: dict) -> Optional[str]:
    role = payload.get("role")
    if not role:
        metadata = payload.get("metadata") or payload.get("public_metadata") or {}
        role = metadata.get("role") if isinstance(metadata, dict) else None
    return role


def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: Store = Depends(get_store),
) -> Actor:
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    if credentials is None:
        raise credentials_exception
    try:
        payload = jwt.decode(
            credentials.credentials,
            config.CLERK_JWT_KEY,
            algorithms=[config.CLERK_JWT_ALGORITHM],
            options={"verify_aud": False},
        )
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    role = role_from_claims(payload)
    if role is None:
        profile = store.users.get(user_id)
        role = profile.get("role") if profile else None
    return Actor(user_id=user_id, role=role)


def require_roles(*roles):
    def wrapper(actor: Actor = Depends(get_current_actor)):
        if actor.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden: insufficient role")
        return actor
    return wrapper


def require_secret(expected: str, provided: Optional[str]):
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid secret")


def admin_secret(x_admin_secret: Optional[str] = Header(None)):
    require_secret(config.ADMIN_SECRET, x_admin_secret)


def payment_secret(x_payment_secret: Optional[str] = Header(None)):
    require_secret(config.PAYMENT_SECRET, x_payment_secret)


def load_participant_order(order_id: str, actor: Actor, manager: OrderLifecycleManager) -> dict:
    order = manager.get_order(order_id)
    participants = {order.get("buyerId"), order.get("farmerId"), order.get("dispatcherId")}
    open_for_claim = actor.role == "dispatcher" and order.get("assignmentStatus") == "available"
    if actor.user_id not in participants and not open_for_claim:
        raise Forbidden("Not a participant of this order")
    return order

# ------------------------- Users -------------------------

class ProfileIn(BaseModel):
    email: str
    role: Optional[Role] = None
    firstName: str
    lastName: str
    phone: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    businessName: Optional[str] = None


@app.put("/users/me")
def upsert_profile(body: ProfileIn, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    profile = store.users.upsert(actor.user_id, body.model_dump(exclude_none=True))
    return serialize(profile)


@app.get("/users/me")
def my_profile(actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    profile = store.users.get(actor.user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="User profile not found")
    return serialize(profile)


@app.post("/users/{clerk_user_id}/verify", dependencies=[Depends(admin_secret)])
def verify_user(clerk_user_id: str, store: Store = Depends(get_store)):
    profile = store.users.set_verified(clerk_user_id, True)
    if not profile:
        raise HTTPException(status_code=404, detail="User profile not found")
    return serialize(profile)


@app.get("/users/{clerk_user_id}/ratings")
def user_ratings(clerk_user_id: str, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    return {
        "summary": reports.rating_summary(store, clerk_user_id),
        "ratings": [serialize(r) for r in store.ratings.for_rated_user(clerk_user_id)],
    }


@app.get("/dispatchers")
def list_dispatchers(actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    return [serialize(p) for p in store.users.by_role("dispatcher", verified_only=True)]


@app.get("/dispatchers/workloads")
def dispatcher_workloads(actor: Actor = Depends(require_roles("farmer", "dispatcher")),
                         manager: OrderLifecycleManager = Depends(get_manager)):
    return [w.to_dict() for w in manager.dispatcher_workloads()]

# ------------------------- Catalog -------------------------

class ProductIn(BaseModel):
    categoryId: str
    name: str
    price: float = Field(..., ge=0)
    unit: str
    quantity: float = Field(..., ge=0)
    description: Optional[str] = None
    location: Optional[str] = None
    coordinates: Optional[Coordinates] = None


@app.post("/products")
def create_product(body: ProductIn, actor: Actor = Depends(require_roles("farmer")), store: Store = Depends(get_store)):
    now = datetime.now(timezone.utc)
    doc = {
        **body.model_dump(),
        "farmerId": actor.user_id,
        "status": "active" if body.quantity > 0 else "out_of_stock",
        "createdAt": now,
        "updatedAt": now,
    }
    pid = store.products.insert(doc)
    store.categories.bump_product_count(body.categoryId, 1)
    return {"id": pid}


@app.get("/products")
def list_products(farmerId: Optional[str] = None, categoryId: Optional[str] = None,
                  limit: Optional[int] = Query(None, ge=1, le=200), store: Store = Depends(get_store)):
    return [serialize(p) for p in store.products.search(farmer_id=farmerId, category_id=categoryId, limit=limit)]


@app.get("/products/{product_id}")
def product_detail(product_id: str, store: Store = Depends(get_store)):
    product = store.products.get(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize(product)


class CategoryIn(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    isActive: bool = True


@app.get("/categories")
def list_categories(store: Store = Depends(get_store)):
    return [serialize(c) for c in store.categories.active()]


@app.put("/categories/{category_id}", dependencies=[Depends(admin_secret)])
def upsert_category(category_id: str, body: CategoryIn, store: Store = Depends(get_store)):
    return serialize(store.categories.upsert(category_id, body.model_dump(exclude_none=True)))

# ------------------------- Orders -------------------------

class OrderItemIn(BaseModel):
    productId: str
    quantity: float = Field(..., gt=0)


class OrderIn(BaseModel):
    farmerId: str
    products: List[OrderItemIn] = Field(..., min_length=1)
    deliveryAddress: str
    deliveryCoordinates: Optional[Coordinates] = None
    pickupLocation: Optional[str] = None
    pickupCoordinates: Optional[Coordinates] = None
    deliveryDistance: float = Field(0, ge=0)
    deliveryCost: Optional[float] = Field(None, ge=0)
    paymentMethod: PaymentMethod
    specialInstructions: Optional[str] = None
    estimatedPickupTime: Optional[str] = None
    estimatedDeliveryTime: Optional[str] = None
    autoAssign: bool = True


@app.post("/orders")
def create_order(body: OrderIn, actor: Actor = Depends(require_roles("buyer")),
                 manager: OrderLifecycleManager = Depends(get_manager)):
    data = body.model_dump(exclude={"autoAssign"})
    order = manager.create_order(actor.user_id, data)
    assignment = {"isAssigned": False, "reason": "Open for dispatchers to claim"}
    if body.autoAssign:
        try:
            order, _, result = manager.assign_dispatcher(order["id"], method="checkout")
            assignment = result.to_dict()
        except NoDispatcherAvailable as e:
            logger.info("checkout_unassigned order_id=%s reason=%s", order["id"], e.reason)
            assignment = {"isAssigned": False, "reason": e.reason}
    return {"order": serialize(order), "assignment": assignment}


@app.get("/orders")
def my_orders(status: Optional[OrderStatus] = None, limit: Optional[int] = Query(None, ge=1, le=200),
              actor: Actor = Depends(require_roles("buyer", "farmer", "dispatcher")),
              store: Store = Depends(get_store)):
    return [serialize(o) for o in store.orders.for_user(actor.role, actor.user_id, status=status, limit=limit)]


@app.get("/orders/available")
def available_orders(actor: Actor = Depends(require_roles("dispatcher")), store: Store = Depends(get_store)):
    return [serialize(o) for o in reports.available_orders(store, datetime.now(timezone.utc))]


@app.get("/orders/stats")
def order_stats(actor: Actor = Depends(require_roles("buyer", "farmer", "dispatcher")),
                store: Store = Depends(get_store)):
    return reports.order_stats(store, actor.role, actor.user_id)


@app.get("/orders/pending-total")
def order_pending_total(actor: Actor = Depends(require_roles("buyer", "farmer", "dispatcher")),
                        store: Store = Depends(get_store)):
    return {"pendingTotal": reports.pending_total(store, actor.role, actor.user_id)}


@app.post("/orders/auto-assign", dependencies=[Depends(admin_secret)])
def auto_assign_expired(manager: OrderLifecycleManager = Depends(get_manager)):
    return manager.auto_assign_expired_orders()


@app.get("/orders/{order_id}")
def order_detail(order_id: str, actor: Actor = Depends(get_current_actor),
                 manager: OrderLifecycleManager = Depends(get_manager)):
    return serialize(load_participant_order(order_id, actor, manager))


class StatusUpdateIn(BaseModel):
    status: OrderStatus
    estimatedDeliveryTime: Optional[str] = None
    actualDeliveryTime: Optional[str] = None
    cancellationReason: Optional[str] = None


@app.post("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusUpdateIn, actor: Actor = Depends(get_current_actor),
                        manager: OrderLifecycleManager = Depends(get_manager)):
    if body.status == "confirmed" and payment_blocks_confirmation(manager.get_order(order_id)):
        raise HTTPException(status_code=409, detail="Payment failed; order cannot be confirmed")
    order = manager.transition_order(
        order_id, body.status, actor,
        estimatedDeliveryTime=body.estimatedDeliveryTime,
        actualDeliveryTime=body.actualDeliveryTime,
        cancellationReason=body.cancellationReason,
    )
    return serialize(order)


class CancelIn(BaseModel):
    reason: Optional[str] = None


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelIn, actor: Actor = Depends(get_current_actor),
                 manager: OrderLifecycleManager = Depends(get_manager)):
    return serialize(manager.cancel_order(order_id, actor, body.reason))


class AssignIn(BaseModel):
    dispatcherId: Optional[str] = None


@app.post("/orders/{order_id}/assign")
def assign_dispatcher(order_id: str, body: AssignIn, actor: Actor = Depends(require_roles("buyer", "farmer")),
                      manager: OrderLifecycleManager = Depends(get_manager)):
    load_participant_order(order_id, actor, manager)
    order, delivery, result = manager.assign_dispatcher(order_id, body.dispatcherId, method="checkout")
    return {"order": serialize(order), "delivery": serialize(delivery), "assignment": result.to_dict()}


@app.post("/orders/{order_id}/claim")
def claim_order(order_id: str, actor: Actor = Depends(require_roles("dispatcher")),
                manager: OrderLifecycleManager = Depends(get_manager)):
    order, delivery = manager.claim_order(order_id, actor)
    return {"order": serialize(order), "delivery": serialize(delivery)}


class PaymentMethodIn(BaseModel):
    paymentMethod: PaymentMethod


@app.put("/orders/{order_id}/payment-method")
def change_payment_method(order_id: str, body: PaymentMethodIn, actor: Actor = Depends(require_roles("buyer")),
                          manager: OrderLifecycleManager = Depends(get_manager)):
    return serialize(manager.change_payment_method(order_id, body.paymentMethod, actor))

# ------------------------- Deliveries -------------------------

@app.get("/orders/{order_id}/delivery")
def order_delivery(order_id: str, actor: Actor = Depends(get_current_actor),
                   manager: OrderLifecycleManager = Depends(get_manager)):
    load_participant_order(order_id, actor, manager)
    return serialize(manager.get_delivery(order_id))


class DeliveryStatusIn(BaseModel):
    status: DeliveryStatus
    notes: Optional[str] = None


@app.post("/orders/{order_id}/delivery/status")
def update_delivery_status(order_id: str, body: DeliveryStatusIn, actor: Actor = Depends(require_roles("dispatcher")),
                           manager: OrderLifecycleManager = Depends(get_manager)):
    return serialize(manager.transition_delivery(order_id, body.status, actor, notes=body.notes))


@app.get("/deliveries")
def my_deliveries(status: Optional[DeliveryStatus] = None, actor: Actor = Depends(require_roles("dispatcher")),
                  store: Store = Depends(get_store)):
    return [serialize(d) for d in store.deliveries.for_dispatcher(actor.user_id, status=status)]

# ------------------------- Payments -------------------------

class PaymentCallbackIn(BaseModel):
    orderId: str
    status: PaymentStatus
    reference: Optional[str] = None


@app.post("/payments/callback", dependencies=[Depends(payment_secret)])
def payment_callback(body: PaymentCallbackIn, manager: OrderLifecycleManager = Depends(get_manager)):
    order = manager.record_payment_status(body.orderId, body.status, body.reference)
    return {"ok": True, "orderId": order["id"], "paymentStatus": order["paymentStatus"]}


class BalanceIn(BaseModel):
    token: str = "L ZAR Coin"
    walletBalance: float
    ledgerBalance: float = 0


@app.put("/balances/{clerk_user_id}", dependencies=[Depends(payment_secret)])
def upsert_balance(clerk_user_id: str, body: BalanceIn, store: Store = Depends(get_store)):
    doc = store.balances.upsert(clerk_user_id, body.token, body.walletBalance, body.ledgerBalance)
    return serialize(doc)


@app.get("/balances/me")
def my_balance(token: str = "L ZAR Coin", actor: Actor = Depends(require_roles("buyer", "farmer", "dispatcher")),
               store: Store = Depends(get_store)):
    balance = store.balances.get(actor.user_id, token) or {}
    return {
        "token": token,
        "walletBalance": balance.get("walletBalance", 0),
        "ledgerBalance": reports.pending_total(store, actor.role, actor.user_id),
    }

# ------------------------- Ratings -------------------------

class RatingIn(BaseModel):
    ratedUserId: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


@app.post("/orders/{order_id}/ratings")
def rate_order(order_id: str, body: RatingIn, actor: Actor = Depends(get_current_actor),
               manager: OrderLifecycleManager = Depends(get_manager)):
    rating = manager.upsert_rating(order_id, actor.user_id, body.ratedUserId, body.rating, body.comment)
    return serialize(rating)


@app.get("/orders/{order_id}/ratings")
def order_ratings(order_id: str, actor: Actor = Depends(get_current_actor),
                  manager: OrderLifecycleManager = Depends(get_manager)):
    load_participant_order(order_id, actor, manager)
    return [serialize(r) for r in manager.store.ratings.for_order(order_id)]

# ------------------------- Notifications -------------------------

@app.get("/notifications")
def my_notifications(unread: bool = False, limit: Optional[int] = Query(50, ge=1, le=200),
                     actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    return [serialize(n) for n in store.notifications.for_user(actor.user_id, unread_only=unread, limit=limit)]


@app.post("/notifications/read-all")
def mark_all_read(actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    return {"updated": store.notifications.mark_all_read(actor.user_id)}


@app.post("/notifications/{notification_id}/read")
def mark_read(notification_id: str, actor: Actor = Depends(get_current_actor), store: Store = Depends(get_store)):
    doc = store.notifications.mark_read(notification_id, actor.user_id)
    if not doc:
        raise NotFound("Notification not found")
    return serialize(doc)

# Root and health
@app.get("/")
def read_root():
    return {"message": "Vunalet Marketplace API running"}

@app.get("/test")
def test_database():
    response = {"backend": "✅ Running", "database": "❌ Not Available"}
    try:
        if db is not None:
            db.list_collection_names()
            response["database"] = "✅ Connected"
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
