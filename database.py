"""
MongoDB access for the marketplace.

`db` is None when DATABASE_URL is not configured; endpoints report that via /test.
"""
from typing import Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def to_oid(val):
    try:
        return ObjectId(str(val))
    except Exception:
        return None


def insert_with_id(database, collection: str, doc: dict) -> str:
    res = database[collection].insert_one(doc)
    oid = str(res.inserted_id)
    database[collection].update_one({"_id": res.inserted_id}, {"$set": {"id": oid}})
    doc["id"] = oid
    return oid


def get_by_id(database, collection: str, id_str: str):
    oid = to_oid(id_str)
    q = {"$or": ([{"_id": oid}] if oid else []) + [{"id": id_str}]}
    return database[collection].find_one(q)


def list_many(database, collection: str, query: dict = None, sort: Optional[list] = None, limit: Optional[int] = None):
    cursor = database[collection].find(query or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    res = []
    for d in cursor:
        d["id"] = str(d.get("_id")) if not d.get("id") else d["id"]
        res.append(d)
    return res


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Drop the raw ObjectId so documents can be returned as JSON."""
    if not doc:
        return doc
    d = {**doc}
    oid = d.pop("_id", None)
    if not d.get("id") and oid is not None:
        d["id"] = str(oid)
    return d


# Index per lookup key, mirroring the queries in repositories.py
INDEXES = {
    "orders": [
        [("buyerId", ASCENDING)],
        [("farmerId", ASCENDING)],
        [("dispatcherId", ASCENDING)],
        [("orderStatus", ASCENDING)],
        [("paymentStatus", ASCENDING)],
        [("assignmentStatus", ASCENDING), ("assignmentExpiryTime", ASCENDING)],
        [("createdAt", DESCENDING)],
    ],
    "deliveries": [
        [("orderId", ASCENDING)],
        [("dispatcherId", ASCENDING)],
        [("status", ASCENDING)],
    ],
    "ratings": [
        [("orderId", ASCENDING), ("ratedUserId", ASCENDING)],
        [("ratedUserId", ASCENDING)],
        [("raterId", ASCENDING)],
    ],
    "notifications": [
        [("userId", ASCENDING), ("createdAt", DESCENDING)],
        [("isRead", ASCENDING)],
    ],
    "userProfiles": [
        [("clerkUserId", ASCENDING)],
        [("role", ASCENDING)],
        [("email", ASCENDING)],
    ],
    "products": [
        [("farmerId", ASCENDING)],
        [("categoryId", ASCENDING)],
        [("status", ASCENDING)],
    ],
    "categories": [
        [("categoryId", ASCENDING)],
        [("slug", ASCENDING)],
    ],
    "balances": [
        [("clerkUserId", ASCENDING), ("token", ASCENDING)],
    ],
}

UNIQUE_INDEXES = {
    ("deliveries", ("orderId",)),
    ("userProfiles", ("clerkUserId",)),
    ("ratings", ("orderId", "ratedUserId")),
}


def ensure_indexes(database) -> None:
    for collection, specs in INDEXES.items():
        for keys in specs:
            unique = (collection, tuple(field for field, _ in keys)) in UNIQUE_INDEXES
            database[collection].create_index(keys, unique=unique)
