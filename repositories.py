"""
Repositories over the marketplace collections.

One class per collection with a query method per index, so the lifecycle
code never builds Mongo queries itself. Every state change is a single
document update; status changes are filtered on the expected current value.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument

from database import get_by_id, insert_with_id, list_many

TERMINAL_ORDER_STATUSES = ["delivered", "cancelled"]


class OrderRepository:
    collection = "orders"

    def __init__(self, database):
        self.db = database

    @property
    def _col(self):
        return self.db[self.collection]

    def insert(self, doc: dict) -> str:
        return insert_with_id(self.db, self.collection, doc)

    def get(self, order_id: str) -> Optional[dict]:
        return get_by_id(self.db, self.collection, order_id)

    def for_user(self, role: str, user_id: str, status: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
        field = {"buyer": "buyerId", "farmer": "farmerId", "dispatcher": "dispatcherId"}[role]
        query: Dict[str, Any] = {field: user_id}
        if status:
            query["orderStatus"] = status
        return list_many(self.db, self.collection, query, sort=[("createdAt", DESCENDING)], limit=limit)

    def open_for_claiming(self, now: datetime) -> List[dict]:
        return list_many(self.db, self.collection, {
            "assignmentStatus": "available",
            "dispatcherId": None,
            "orderStatus": {"$nin": TERMINAL_ORDER_STATUSES},
            "assignmentExpiryTime": {"$gt": now},
        }, sort=[("createdAt", DESCENDING)])

    def expired_unassigned(self, now: datetime) -> List[dict]:
        return list_many(self.db, self.collection, {
            "assignmentStatus": "available",
            "dispatcherId": None,
            "orderStatus": {"$nin": TERMINAL_ORDER_STATUSES},
            "assignmentExpiryTime": {"$lte": now},
        }, sort=[("createdAt", 1)])

    def count_for_dispatcher(self, dispatcher_id: str, active_only: bool = False) -> int:
        query: Dict[str, Any] = {"dispatcherId": dispatcher_id}
        if active_only:
            query["orderStatus"] = {"$nin": TERMINAL_ORDER_STATUSES}
        return self._col.count_documents(query)

    def transition(self, order_id: str, expected_status: str, patch: dict, history_entry: dict) -> Optional[dict]:
        """Apply `patch` only if the order is still in `expected_status`."""
        return self._col.find_one_and_update(
            {"id": order_id, "orderStatus": expected_status},
            {"$set": patch, "$push": {"history": history_entry}},
            return_document=ReturnDocument.AFTER,
        )

    def bind_dispatcher(self, order_id: str, dispatcher_id: str, assignment_status: str,
                        method: str, history_entry: dict, now: datetime) -> Optional[dict]:
        """Set the dispatcher only if none is bound yet and the order is still open."""
        return self._col.find_one_and_update(
            {"id": order_id, "dispatcherId": None, "orderStatus": {"$nin": TERMINAL_ORDER_STATUSES}},
            {
                "$set": {
                    "dispatcherId": dispatcher_id,
                    "assignmentStatus": assignment_status,
                    "assignmentMethod": method,
                    "updatedAt": now,
                },
                "$push": {"history": history_entry},
            },
            return_document=ReturnDocument.AFTER,
        )

    def unbind_dispatcher(self, order_id: str, dispatcher_id: str, now: datetime) -> None:
        """Return an order to the claimable pool after a failed bind."""
        self._col.update_one(
            {"id": order_id, "dispatcherId": dispatcher_id},
            {"$set": {"dispatcherId": None, "assignmentStatus": "available",
                      "assignmentMethod": None, "updatedAt": now},
             "$pop": {"history": 1}},
        )

    def set_payment_status(self, order_id: str, status: str, history_entry: dict, now: datetime) -> Optional[dict]:
        return self._col.find_one_and_update(
            {"id": order_id},
            {"$set": {"paymentStatus": status, "updatedAt": now},
             "$push": {"history": history_entry}},
            return_document=ReturnDocument.AFTER,
        )

    def set_payment_method(self, order_id: str, method: str, now: datetime) -> Optional[dict]:
        return self._col.find_one_and_update(
            {"id": order_id, "paymentStatus": "pending"},
            {"$set": {"paymentMethod": method, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )


class DeliveryRepository:
    collection = "deliveries"

    def __init__(self, database):
        self.db = database

    def insert(self, doc: dict) -> str:
        return insert_with_id(self.db, self.collection, doc)

    def for_order(self, order_id: str) -> Optional[dict]:
        return self.db[self.collection].find_one({"orderId": order_id})

    def for_dispatcher(self, dispatcher_id: str, status: Optional[str] = None) -> List[dict]:
        query: Dict[str, Any] = {"dispatcherId": dispatcher_id}
        if status:
            query["status"] = status
        return list_many(self.db, self.collection, query, sort=[("createdAt", DESCENDING)])

    def transition(self, order_id: str, expected_status: str, patch: dict) -> Optional[dict]:
        # orderId is never part of a patch; the link to the order is fixed at insert
        patch = {k: v for k, v in patch.items() if k != "orderId"}
        return self.db[self.collection].find_one_and_update(
            {"orderId": order_id, "status": expected_status},
            {"$set": patch},
            return_document=ReturnDocument.AFTER,
        )


class RatingRepository:
    collection = "ratings"

    def __init__(self, database):
        self.db = database

    def upsert(self, order_id: str, rated_user_id: str, fields: dict, now: datetime) -> dict:
        """One row per (orderId, ratedUserId); backed by a unique index."""
        return self.db[self.collection].find_one_and_update(
            {"orderId": order_id, "ratedUserId": rated_user_id},
            {"$set": {**fields, "updatedAt": now}, "$setOnInsert": {"createdAt": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def for_order(self, order_id: str) -> List[dict]:
        return list_many(self.db, self.collection, {"orderId": order_id})

    def for_rated_user(self, user_id: str) -> List[dict]:
        return list_many(self.db, self.collection, {"ratedUserId": user_id}, sort=[("updatedAt", DESCENDING)])


class NotificationRepository:
    collection = "notifications"

    def __init__(self, database):
        self.db = database

    def insert(self, doc: dict) -> str:
        return insert_with_id(self.db, self.collection, doc)

    def for_user(self, user_id: str, unread_only: bool = False, limit: Optional[int] = None) -> List[dict]:
        query: Dict[str, Any] = {"userId": user_id}
        if unread_only:
            query["isRead"] = False
        return list_many(self.db, self.collection, query, sort=[("createdAt", DESCENDING)], limit=limit)

    def mark_read(self, notification_id: str, user_id: str) -> Optional[dict]:
        return self.db[self.collection].find_one_and_update(
            {"id": notification_id, "userId": user_id},
            {"$set": {"isRead": True}},
            return_document=ReturnDocument.AFTER,
        )

    def mark_all_read(self, user_id: str) -> int:
        res = self.db[self.collection].update_many({"userId": user_id, "isRead": False}, {"$set": {"isRead": True}})
        return res.modified_count


class UserProfileRepository:
    collection = "userProfiles"

    def __init__(self, database):
        self.db = database

    def get(self, clerk_user_id: str) -> Optional[dict]:
        return self.db[self.collection].find_one({"clerkUserId": clerk_user_id})

    def by_role(self, role: str, verified_only: bool = False) -> List[dict]:
        query: Dict[str, Any] = {"role": role}
        if verified_only:
            query["isVerified"] = True
        return list_many(self.db, self.collection, query, sort=[("createdAt", 1)])

    def upsert(self, clerk_user_id: str, data: dict) -> dict:
        now = datetime.now(timezone.utc)
        existing = self.get(clerk_user_id)
        if existing:
            return self.db[self.collection].find_one_and_update(
                {"_id": existing["_id"]},
                {"$set": {**data, "updatedAt": now}},
                return_document=ReturnDocument.AFTER,
            )
        doc = {"isVerified": False, **data, "clerkUserId": clerk_user_id, "createdAt": now, "updatedAt": now}
        insert_with_id(self.db, self.collection, doc)
        return self.get(clerk_user_id)

    def set_verified(self, clerk_user_id: str, verified: bool = True) -> Optional[dict]:
        return self.db[self.collection].find_one_and_update(
            {"clerkUserId": clerk_user_id},
            {"$set": {"isVerified": verified, "updatedAt": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )


class ProductRepository:
    collection = "products"

    def __init__(self, database):
        self.db = database

    def insert(self, doc: dict) -> str:
        return insert_with_id(self.db, self.collection, doc)

    def get(self, product_id: str) -> Optional[dict]:
        return get_by_id(self.db, self.collection, product_id)

    def search(self, farmer_id: Optional[str] = None, category_id: Optional[str] = None,
               status: Optional[str] = "active", limit: Optional[int] = None) -> List[dict]:
        query: Dict[str, Any] = {}
        if farmer_id:
            query["farmerId"] = farmer_id
        if category_id:
            query["categoryId"] = category_id
        if status:
            query["status"] = status
        return list_many(self.db, self.collection, query, sort=[("createdAt", DESCENDING)], limit=limit)

    def take_stock(self, product_id: str, quantity: float) -> Optional[dict]:
        """Decrease stock if enough remains; marks the product out of stock at zero."""
        col = self.db[self.collection]
        updated = col.find_one_and_update(
            {"id": product_id, "status": "active", "quantity": {"$gte": quantity}},
            {"$inc": {"quantity": -quantity}, "$set": {"updatedAt": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None and updated.get("quantity", 0) <= 0:
            col.update_one({"_id": updated["_id"]}, {"$set": {"status": "out_of_stock"}})
            updated["status"] = "out_of_stock"
        return updated

    def return_stock(self, product_id: str, quantity: float) -> None:
        self.db[self.collection].update_one(
            {"id": product_id},
            {"$inc": {"quantity": quantity}, "$set": {"status": "active", "updatedAt": datetime.now(timezone.utc)}},
        )


class CategoryRepository:
    collection = "categories"

    def __init__(self, database):
        self.db = database

    def active(self) -> List[dict]:
        return list_many(self.db, self.collection, {"isActive": True}, sort=[("name", 1)])

    def get(self, category_id: str) -> Optional[dict]:
        return self.db[self.collection].find_one({"categoryId": category_id})

    def upsert(self, category_id: str, data: dict) -> dict:
        now = datetime.now(timezone.utc)
        existing = self.get(category_id)
        if existing:
            self.db[self.collection].update_one({"_id": existing["_id"]}, {"$set": {**data, "updatedAt": now}})
        else:
            insert_with_id(self.db, self.collection, {
                "productCount": 0, "isActive": True, **data,
                "categoryId": category_id, "createdAt": now, "updatedAt": now,
            })
        return self.get(category_id)

    def bump_product_count(self, category_id: str, delta: int = 1) -> None:
        self.db[self.collection].update_one({"categoryId": category_id}, {"$inc": {"productCount": delta}})


class BalanceRepository:
    collection = "balances"

    def __init__(self, database):
        self.db = database

    def get(self, clerk_user_id: str, token: str) -> Optional[dict]:
        return self.db[self.collection].find_one({"clerkUserId": clerk_user_id, "token": token})

    def upsert(self, clerk_user_id: str, token: str, wallet_balance: float, ledger_balance: float) -> dict:
        return self.db[self.collection].find_one_and_update(
            {"clerkUserId": clerk_user_id, "token": token},
            {"$set": {
                "walletBalance": wallet_balance,
                "ledgerBalance": ledger_balance,
                "updatedAt": datetime.now(timezone.utc),
            }},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )


@dataclass
class Store:
    orders: OrderRepository
    deliveries: DeliveryRepository
    ratings: RatingRepository
    notifications: NotificationRepository
    users: UserProfileRepository
    products: ProductRepository
    categories: CategoryRepository
    balances: BalanceRepository

    @classmethod
    def from_db(cls, database) -> "Store":
        return cls(
            orders=OrderRepository(database),
            deliveries=DeliveryRepository(database),
            ratings=RatingRepository(database),
            notifications=NotificationRepository(database),
            users=UserProfileRepository(database),
            products=ProductRepository(database),
            categories=CategoryRepository(database),
            balances=BalanceRepository(database),
        )
