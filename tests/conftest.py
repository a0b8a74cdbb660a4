"""
Pytest fixtures: an in-memory Mongo (mongomock), seeded users and products,
and a lifecycle manager with a controllable clock.
"""
import random
from datetime import datetime, timedelta, timezone

import mongomock
import pytest

from database import ensure_indexes
from lifecycle import Actor, OrderLifecycleManager
from notifications import StoreNotifier
from repositories import Store

START = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient()["vunalet_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def store(mongo_db):
    return Store.from_db(mongo_db)


@pytest.fixture
def seed(store):
    """Two verified dispatchers, one unverified, a farmer with stock and a buyer."""
    def profile(user_id, role, first):
        return {"email": f"{user_id}@example.com", "role": role, "firstName": first, "lastName": "Test"}

    store.users.upsert("farmer-1", profile("farmer-1", "farmer", "Thandi"))
    store.users.upsert("farmer-2", profile("farmer-2", "farmer", "Pieter"))
    store.users.upsert("buyer-1", profile("buyer-1", "buyer", "Lerato"))
    for did in ("disp-a", "disp-b"):
        store.users.upsert(did, profile(did, "dispatcher", did))
        store.users.set_verified(did, True)
    store.users.upsert("disp-new", profile("disp-new", "dispatcher", "Sipho"))

    def product(farmer_id, name, price, quantity, unit):
        return store.products.insert({
            "farmerId": farmer_id, "categoryId": "vegetables", "name": name, "price": price,
            "quantity": quantity, "unit": unit, "status": "active", "createdAt": START,
        })

    return {
        "tomatoes": product("farmer-1", "Tomatoes", 20.0, 50, "kg"),
        "spinach": product("farmer-1", "Spinach", 15.0, 10, "bunch"),
        "maize": product("farmer-2", "Maize", 8.0, 100, "kg"),
    }


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def manager(store, seed, clock):
    return OrderLifecycleManager(store, StoreNotifier(store.notifications), clock=clock, rng=random.Random(7))


@pytest.fixture
def farmer():
    return Actor("farmer-1", "farmer")


@pytest.fixture
def buyer():
    return Actor("buyer-1", "buyer")


@pytest.fixture
def place_order(manager, seed):
    def _place(quantity=2, delivery_cost=25.0, payment_method="cash", **extra):
        data = {
            "farmerId": "farmer-1",
            "products": [{"productId": seed["tomatoes"], "quantity": quantity}],
            "deliveryAddress": "12 Long Street, Cape Town",
            "pickupLocation": "Stellenbosch Farm",
            "deliveryDistance": 48.0,
            "deliveryCost": delivery_cost,
            "paymentMethod": payment_method,
        }
        data.update(extra)
        return manager.create_order("buyer-1", data)
    return _place


@pytest.fixture
def deliver_order(manager, place_order, farmer):
    """Place an order and walk it and its delivery all the way to delivered."""
    def _deliver():
        order = place_order()
        order, _, result = manager.assign_dispatcher(order["id"])
        courier = Actor(result.dispatcher_id, "dispatcher")
        for status in ("confirmed", "preparing", "ready"):
            manager.transition_order(order["id"], status, farmer)
        manager.transition_delivery(order["id"], "picked_up", courier)
        manager.transition_order(order["id"], "in_transit", courier)
        manager.transition_delivery(order["id"], "in_transit", courier)
        order = manager.transition_order(order["id"], "delivered", courier)
        manager.transition_delivery(order["id"], "delivered", courier)
        return order
    return _deliver
