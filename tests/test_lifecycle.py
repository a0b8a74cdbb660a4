"""
Order and delivery state machine tests against an in-memory Mongo.
"""
from datetime import datetime

import pytest
from pymongo.errors import PyMongoError

from errors import Forbidden, InvalidTransition, NoDispatcherAvailable, NotFound, ValidationError
from lifecycle import (
    ORDER_TRANSITIONS,
    Actor,
    OrderLifecycleManager,
    check_delivery_transition,
    payment_blocks_confirmation,
    to_naive_utc,
)


class BrokenNotifier:
    def notify(self, user_id, event, kind="system"):
        raise RuntimeError("push service down")


def test_create_order_prices_from_catalog_and_opens_claim_window(place_order, store, seed):
    order = place_order(quantity=2, delivery_cost=25.0)
    assert order["orderStatus"] == "pending"
    assert order["paymentStatus"] == "pending"
    assert order["assignmentStatus"] == "available"
    assert order["dispatcherId"] is None
    assert order["subtotal"] == 40.0
    assert order["totalAmount"] == 65.0
    assert order["platformFee"] == 1.0
    assert order["farmerAmount"] == 39.0
    assert order["dispatcherAmount"] == 25.0
    assert order["assignmentExpiryTime"] == datetime(2025, 1, 6, 8, 10)
    assert order["products"][0]["name"] == "Tomatoes"
    assert store.products.get(seed["tomatoes"])["quantity"] == 48


def test_delivery_cost_defaults_to_distance_rate(place_order):
    order = place_order(delivery_cost=None, deliveryDistance=100.0)
    assert order["deliveryCost"] == 0.5
    assert order["dispatcherAmount"] == 0.5


def test_insufficient_stock_releases_earlier_items(manager, store, seed):
    data = {
        "farmerId": "farmer-1",
        "products": [
            {"productId": seed["tomatoes"], "quantity": 5},
            {"productId": seed["spinach"], "quantity": 100},
        ],
        "deliveryAddress": "12 Long Street, Cape Town",
        "paymentMethod": "cash",
    }
    with pytest.raises(ValidationError):
        manager.create_order("buyer-1", data)
    assert store.products.get(seed["tomatoes"])["quantity"] == 50
    assert store.orders.for_user("buyer", "buyer-1") == []


def test_products_must_come_from_one_farmer(manager, seed):
    data = {
        "farmerId": "farmer-1",
        "products": [{"productId": seed["maize"], "quantity": 1}],
        "deliveryAddress": "12 Long Street, Cape Town",
        "paymentMethod": "lisk_zar",
    }
    with pytest.raises(ValidationError):
        manager.create_order("buyer-1", data)


def test_full_lifecycle_keeps_order_and_delivery_in_step(deliver_order, manager, store):
    order = deliver_order()
    assert order["orderStatus"] == "delivered"
    assert order["actualDeliveryTime"]
    delivery = manager.get_delivery(order["id"])
    assert delivery["status"] == "delivered"
    assert delivery["actualPickupTime"]
    events = [h["event"] for h in store.orders.get(order["id"])["history"]]
    assert events[0] == "Created"
    assert events[-1] == "Status changed to delivered"
    assert len(events) == 7


def test_ready_to_confirmed_is_invalid(manager, place_order, farmer):
    order = place_order()
    for status in ("confirmed", "preparing", "ready"):
        manager.transition_order(order["id"], status, farmer)
    with pytest.raises(InvalidTransition):
        manager.transition_order(order["id"], "confirmed", farmer)
    assert manager.get_order(order["id"])["orderStatus"] == "ready"


def test_delivered_order_accepts_no_further_transitions(deliver_order, manager, farmer):
    order = deliver_order()
    for target in ORDER_TRANSITIONS:
        with pytest.raises(InvalidTransition):
            manager.transition_order(order["id"], target, farmer)


def test_cancelled_order_records_reason(manager, place_order, buyer):
    order = place_order()
    cancelled = manager.cancel_order(order["id"], buyer, "Changed my mind")
    assert cancelled["orderStatus"] == "cancelled"
    assert cancelled["cancellationReason"] == "Changed my mind"
    with pytest.raises(InvalidTransition):
        manager.assign_dispatcher(order["id"])


@pytest.mark.parametrize("target", sorted(ORDER_TRANSITIONS))
def test_cancelled_order_accepts_no_further_transitions(manager, place_order, buyer, farmer, target):
    order = place_order()
    manager.cancel_order(order["id"], buyer)
    with pytest.raises(InvalidTransition):
        manager.transition_order(order["id"], target, farmer)


def test_order_in_transit_can_still_be_cancelled(manager, place_order, farmer, buyer):
    order = place_order()
    _, _, result = manager.assign_dispatcher(order["id"])
    for status in ("confirmed", "preparing", "ready"):
        manager.transition_order(order["id"], status, farmer)
    manager.transition_order(order["id"], "in_transit", Actor(result.dispatcher_id, "dispatcher"))
    cancelled = manager.cancel_order(order["id"], buyer, "Not home")
    assert cancelled["orderStatus"] == "cancelled"


def test_unknown_status_is_a_validation_error(manager, place_order, farmer):
    order = place_order()
    with pytest.raises(ValidationError):
        manager.transition_order(order["id"], "shipped", farmer)


def test_delivery_cannot_run_ahead_of_order(manager, place_order):
    order = place_order()
    _, _, result = manager.assign_dispatcher(order["id"])
    courier = Actor(result.dispatcher_id, "dispatcher")
    with pytest.raises(InvalidTransition):
        manager.transition_delivery(order["id"], "picked_up", courier)
    with pytest.raises(InvalidTransition):
        manager.transition_delivery(order["id"], "delivered", courier)
    with pytest.raises(InvalidTransition):
        check_delivery_transition("in_transit", "delivered", "preparing")


def test_only_the_right_actor_may_transition(manager, place_order, buyer):
    order = place_order()
    with pytest.raises(Forbidden):
        manager.transition_order(order["id"], "confirmed", buyer)
    with pytest.raises(Forbidden):
        manager.transition_order(order["id"], "confirmed", Actor("farmer-2", "farmer"))
    _, _, result = manager.assign_dispatcher(order["id"])
    other = "disp-b" if result.dispatcher_id == "disp-a" else "disp-a"
    with pytest.raises(Forbidden):
        manager.transition_delivery(order["id"], "picked_up", Actor(other, "dispatcher"))


def test_missing_order_is_not_found(manager, farmer):
    with pytest.raises(NotFound):
        manager.transition_order("0123456789abcdef01234567", "confirmed", farmer)


def test_assignment_creates_delivery_and_notifies_dispatcher(manager, place_order, store):
    order = place_order()
    updated, delivery, result = manager.assign_dispatcher(order["id"])
    assert result.dispatcher_id == "disp-a"
    assert updated["dispatcherId"] == "disp-a"
    assert updated["assignmentStatus"] == "auto_assigned"
    assert updated["assignmentMethod"] == "checkout"
    assert delivery["orderId"] == order["id"]
    assert delivery["status"] == "assigned"
    assert delivery["pickupLocation"] == "Stellenbosch Farm"

    notes = store.notifications.for_user("disp-a")
    assert len(notes) == 1
    assert notes[0]["title"] == "New Delivery Assignment"
    assert notes[0]["message"] == (
        "You have been assigned a new delivery from Stellenbosch Farm to 12 Long Street, Cape Town"
    )
    assert notes[0]["metadata"]["orderId"] == order["id"]


def test_second_assignment_is_rejected(manager, place_order):
    order = place_order()
    manager.assign_dispatcher(order["id"])
    with pytest.raises(InvalidTransition):
        manager.assign_dispatcher(order["id"], "disp-b")


def test_assignment_prefers_least_loaded_dispatcher(manager, place_order):
    first = manager.assign_dispatcher(place_order()["id"])[2]
    second = manager.assign_dispatcher(place_order()["id"])[2]
    assert first.dispatcher_id == "disp-a"
    assert second.dispatcher_id == "disp-b"


def test_unverified_dispatchers_are_never_selected(manager, place_order, store):
    for did in ("disp-a", "disp-b"):
        store.users.set_verified(did, False)
    order = place_order()
    with pytest.raises(NoDispatcherAvailable) as exc:
        manager.assign_dispatcher(order["id"])
    assert exc.value.reason == "No dispatchers available"
    assert manager.get_order(order["id"])["dispatcherId"] is None


def test_explicit_dispatcher_must_exist(manager, place_order):
    order = place_order()
    with pytest.raises(NotFound):
        manager.assign_dispatcher(order["id"], "farmer-1")


def test_random_fallback_when_workloads_fail(manager, monkeypatch):
    def broken(ids):
        raise PyMongoError("count failed")
    monkeypatch.setattr(manager, "workloads_for", broken)
    result = manager.select_dispatcher()
    assert result.method == "random"
    assert result.reason == "Randomly assigned"
    assert result.dispatcher_id in {"disp-a", "disp-b"}


def test_failed_notification_does_not_undo_assignment(store, seed, clock, place_order):
    quiet = OrderLifecycleManager(store, BrokenNotifier(), clock=clock)
    order = place_order()
    updated, delivery, _ = quiet.assign_dispatcher(order["id"])
    assert updated["dispatcherId"] == "disp-a"
    assert store.deliveries.for_order(order["id"]) is not None
    assert store.notifications.for_user("disp-a") == []


def test_dispatcher_claims_within_window(manager, place_order):
    order = place_order()
    updated, delivery = manager.claim_order(order["id"], Actor("disp-b", "dispatcher"))
    assert updated["dispatcherId"] == "disp-b"
    assert updated["assignmentStatus"] == "claimed"
    assert updated["assignmentMethod"] == "manual"
    assert delivery["dispatcherId"] == "disp-b"


def test_claim_after_window_is_rejected(manager, place_order, clock):
    order = place_order()
    clock.advance(minutes=11)
    with pytest.raises(InvalidTransition):
        manager.claim_order(order["id"], Actor("disp-b", "dispatcher"))


def test_only_dispatchers_claim(manager, place_order, buyer):
    order = place_order()
    with pytest.raises(Forbidden):
        manager.claim_order(order["id"], buyer)


def test_auto_assign_spreads_expired_orders(manager, place_order, clock):
    first = place_order()
    second = place_order()
    clock.advance(minutes=11)
    result = manager.auto_assign_expired_orders()
    assert result["assigned"] == 2
    assigned = {a["orderId"]: a["dispatcherId"] for a in result["assignments"]}
    assert set(assigned) == {first["id"], second["id"]}
    assert set(assigned.values()) == {"disp-a", "disp-b"}
    assert manager.get_order(first["id"])["assignmentMethod"] == "auto"


def test_auto_assign_skips_orders_still_in_window(manager, place_order):
    place_order()
    result = manager.auto_assign_expired_orders()
    assert result["assigned"] == 0


def test_payment_status_is_recorded_and_buyer_notified(manager, place_order, store):
    order = place_order(payment_method="lisk_zar")
    updated = manager.record_payment_status(order["id"], "paid", "tx-991")
    assert updated["paymentStatus"] == "paid"
    assert updated["history"][-1]["event"] == "Payment paid (tx-991)"
    kinds = [n["type"] for n in store.notifications.for_user("buyer-1")]
    assert "payment" in kinds
    with pytest.raises(InvalidTransition):
        manager.change_payment_method(order["id"], "cash", Actor("buyer-1", "buyer"))


def test_invalid_payment_status_is_rejected(manager, place_order):
    order = place_order()
    with pytest.raises(ValidationError):
        manager.record_payment_status(order["id"], "refunded")


def test_failed_payment_blocks_confirmation(manager, place_order):
    order = place_order(payment_method="lisk_zar")
    assert payment_blocks_confirmation(order) is False
    failed = manager.record_payment_status(order["id"], "failed")
    assert payment_blocks_confirmation(failed) is True


def test_buyer_can_switch_payment_method_while_pending(manager, place_order, buyer):
    order = place_order(payment_method="lisk_zar")
    updated = manager.change_payment_method(order["id"], "cash", buyer)
    assert updated["paymentMethod"] == "cash"
    with pytest.raises(Forbidden):
        manager.change_payment_method(order["id"], "lisk_zar", Actor("farmer-1", "farmer"))


def test_status_changes_notify_other_participants(manager, place_order, farmer, store):
    order = place_order()
    manager.transition_order(order["id"], "confirmed", farmer)
    buyer_notes = store.notifications.for_user("buyer-1")
    assert any(n["type"] == "order_update" for n in buyer_notes)
    assert store.notifications.for_user("farmer-1") == []


def test_invalid_coordinates_are_rejected_before_stock_is_taken(place_order, store, seed):
    with pytest.raises(ValidationError):
        place_order(quantity=5, deliveryCoordinates={"lat": 200})
    assert store.products.get(seed["tomatoes"])["quantity"] == 50


def test_missing_delivery_address_is_rejected_before_stock_is_taken(place_order, store, seed):
    with pytest.raises(ValidationError):
        place_order(quantity=5, deliveryAddress=None)
    assert store.products.get(seed["tomatoes"])["quantity"] == 50


def test_schema_failure_after_reservation_releases_stock(place_order, store, seed):
    with pytest.raises(ValidationError):
        place_order(quantity=5, estimatedPickupTime=1200)
    assert store.products.get(seed["tomatoes"])["quantity"] == 50
    assert store.orders.for_user("buyer", "buyer-1") == []


def test_failed_insert_releases_stock(place_order, store, seed, monkeypatch):
    def refuse(doc):
        raise PyMongoError("write concern failed")
    monkeypatch.setattr(store.orders, "insert", refuse)
    with pytest.raises(PyMongoError):
        place_order(quantity=5)
    assert store.products.get(seed["tomatoes"])["quantity"] == 50


def test_unverified_dispatcher_cannot_claim(manager, place_order):
    order = place_order()
    with pytest.raises(Forbidden):
        manager.claim_order(order["id"], Actor("disp-new", "dispatcher"))
    assert manager.get_order(order["id"])["dispatcherId"] is None


def test_unverified_dispatcher_cannot_be_assigned_explicitly(manager, place_order):
    order = place_order()
    with pytest.raises(Forbidden):
        manager.assign_dispatcher(order["id"], "disp-new")
    assert manager.get_order(order["id"])["dispatcherId"] is None


def test_stray_delivery_blocks_binding(manager, place_order, store):
    order = place_order()
    store.deliveries.insert({"orderId": order["id"], "dispatcherId": "disp-b", "status": "assigned"})
    with pytest.raises(InvalidTransition):
        manager.assign_dispatcher(order["id"])
    assert manager.get_order(order["id"])["dispatcherId"] is None


def test_duplicate_delivery_on_insert_undoes_the_bind(manager, place_order, store, monkeypatch):
    order = place_order()
    store.deliveries.insert({"orderId": order["id"], "dispatcherId": "disp-b", "status": "assigned"})
    monkeypatch.setattr(store.deliveries, "for_order", lambda order_id: None)
    with pytest.raises(InvalidTransition):
        manager.assign_dispatcher(order["id"])
    reloaded = manager.get_order(order["id"])
    assert reloaded["dispatcherId"] is None
    assert reloaded["assignmentStatus"] == "available"
    assert [h["event"] for h in reloaded["history"]] == ["Created"]


def test_timestamps_follow_the_injected_clock(manager, place_order, farmer, store, clock):
    order = place_order()
    clock.advance(minutes=3)
    _, delivery, _ = manager.assign_dispatcher(order["id"])
    assert to_naive_utc(delivery["createdAt"]) == to_naive_utc(clock.now)
    clock.advance(minutes=2)
    manager.transition_order(order["id"], "confirmed", farmer)
    reloaded = store.orders.get(order["id"])
    assert to_naive_utc(reloaded["updatedAt"]) == to_naive_utc(clock.now)
    assert reloaded["history"][-1]["at"] == clock.now.isoformat()
