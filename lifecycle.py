"""
Order lifecycle: order and delivery state machines, dispatcher linkage,
payment status recording and rating upserts.

Order:    pending -> confirmed -> preparing -> ready -> in_transit -> delivered
          cancelled from any state before delivered
Delivery: assigned -> picked_up -> in_transit -> delivered, never ahead of its order

The manager talks to storage only through the repositories in `Store` and to
the push layer only through the injected notifier.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from dispatch import (
    AssignmentResult,
    DispatcherWorkload,
    find_best_dispatcher,
    pick_random_dispatcher,
)
from errors import Forbidden, InvalidTransition, NoDispatcherAvailable, NotFound, ValidationError
from notifications import NotificationEvent, delivery_assigned_event, order_status_event, payment_event
from pricing import compute_amounts, delivery_cost_for
from repositories import Store
from schemas import Coordinates, Order

logger = logging.getLogger("marketplace.lifecycle")

ORDER_FLOW = ["pending", "confirmed", "preparing", "ready", "in_transit", "delivered"]
TERMINAL_STATUSES = {"delivered", "cancelled"}
ORDER_TRANSITIONS: Dict[str, set] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"preparing", "cancelled"},
    "preparing": {"ready", "cancelled"},
    "ready": {"in_transit", "cancelled"},
    "in_transit": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

DELIVERY_FLOW = ["assigned", "picked_up", "in_transit", "delivered"]
DELIVERY_TRANSITIONS: Dict[str, set] = {
    "assigned": {"picked_up"},
    "picked_up": {"in_transit"},
    "in_transit": {"delivered"},
    "delivered": set(),
}
# lowest order status each delivery status may coexist with
DELIVERY_REQUIRES_ORDER = {
    "assigned": "pending",
    "picked_up": "ready",
    "in_transit": "in_transit",
    "delivered": "delivered",
}

FARMER_TARGETS = {"confirmed", "preparing", "ready"}
DISPATCHER_TARGETS = {"in_transit", "delivered"}
PAYMENT_STATUSES = {"pending", "paid", "failed"}
PAYMENT_METHODS = {"lisk_zar", "cash"}
ORDER_PATCH_FIELDS = {"estimatedDeliveryTime", "actualDeliveryTime", "cancellationReason"}
DEFAULT_PICKUP_LOCATION = "Farm Location"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Optional[str] = None


def to_naive_utc(value: datetime) -> datetime:
    """BSON datetimes come back naive UTC; compare and store claim windows that way."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def check_order_transition(current: str, target: str) -> None:
    if target not in ORDER_TRANSITIONS:
        raise ValidationError(f"Unknown order status: {target}")
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Order is already {current}")
    if target not in ORDER_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move order from {current} to {target}")


def check_delivery_transition(current: str, target: str, order_status: str) -> None:
    if target not in DELIVERY_TRANSITIONS:
        raise ValidationError(f"Unknown delivery status: {target}")
    if order_status == "cancelled":
        raise InvalidTransition("Order has been cancelled")
    if target not in DELIVERY_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move delivery from {current} to {target}")
    required = DELIVERY_REQUIRES_ORDER[target]
    if ORDER_FLOW.index(order_status) < ORDER_FLOW.index(required):
        raise InvalidTransition(f"Delivery cannot be {target} while order is {order_status}")


def authorize_order_transition(order: dict, target: str, actor: Actor) -> None:
    if target in FARMER_TARGETS:
        allowed = actor.role == "farmer" and actor.user_id == order.get("farmerId")
    elif target in DISPATCHER_TARGETS:
        allowed = actor.role == "dispatcher" and actor.user_id == order.get("dispatcherId")
    elif target == "cancelled":
        allowed = actor.user_id in (order.get("buyerId"), order.get("farmerId"))
    else:
        allowed = False
    if not allowed:
        raise Forbidden(f"Not allowed to mark this order {target}")


def payment_blocks_confirmation(order: dict) -> bool:
    return order.get("paymentStatus") == "failed"


def _history(event: str, by: Optional[str], at: datetime) -> dict:
    return {"at": at.isoformat(), "event": event, "by": by}


class OrderLifecycleManager:
    def __init__(self, store: Store, notifier, clock: Optional[Callable[[], datetime]] = None,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.notifier = notifier
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.rng = rng

    # ------------------------- Orders -------------------------

    def get_order(self, order_id: str) -> dict:
        order = self.store.orders.get(order_id)
        if not order:
            raise NotFound("Order not found")
        return order

    def create_order(self, buyer_id: str, data: dict) -> dict:
        if data.get("paymentMethod") not in PAYMENT_METHODS:
            raise ValidationError("paymentMethod must be lisk_zar or cash")
        for field in ("farmerId", "deliveryAddress"):
            if not data.get(field):
                raise ValidationError(f"{field} is required")
        for field in ("deliveryCoordinates", "pickupCoordinates"):
            if data.get(field) is not None:
                try:
                    Coordinates.model_validate(data[field])
                except SchemaError:
                    raise ValidationError(f"{field} must hold a valid lat/lng")
        farmer_id = data["farmerId"]
        distance = float(data.get("deliveryDistance") or 0)
        delivery_cost = data.get("deliveryCost")
        if delivery_cost is None:
            delivery_cost = delivery_cost_for(distance)

        items = self._reserve_items(farmer_id, data.get("products") or [])
        try:
            amounts = compute_amounts(items, float(delivery_cost))
            now = self.clock()
            order = Order(
                buyerId=buyer_id,
                farmerId=farmer_id,
                products=items,
                deliveryDistance=distance,
                deliveryAddress=data["deliveryAddress"],
                deliveryCoordinates=data.get("deliveryCoordinates"),
                pickupLocation=data.get("pickupLocation") or DEFAULT_PICKUP_LOCATION,
                pickupCoordinates=data.get("pickupCoordinates"),
                paymentMethod=data["paymentMethod"],
                specialInstructions=data.get("specialInstructions"),
                estimatedPickupTime=data.get("estimatedPickupTime"),
                estimatedDeliveryTime=data.get("estimatedDeliveryTime"),
                assignmentExpiryTime=to_naive_utc(now + timedelta(minutes=config.CLAIM_WINDOW_MINUTES)),
                createdAt=now,
                updatedAt=now,
                history=[_history("Created", buyer_id, now)],
                **amounts,
            ).model_dump()
            oid = self.store.orders.insert(order)
        except SchemaError as e:
            self._release_items(items)
            raise ValidationError(f"Invalid order: {e.errors()[0]['msg']}")
        except Exception:
            # stock goes back whatever failed after the reservation
            self._release_items(items)
            raise
        logger.info("order_created order_id=%s buyer_id=%s farmer_id=%s total=%s",
                    oid, buyer_id, farmer_id, order["totalAmount"])
        return self.get_order(oid)

    def _reserve_items(self, farmer_id: str, requested: List[dict]) -> List[dict]:
        if not requested:
            raise ValidationError("Order must contain at least one product")
        taken: List[dict] = []
        try:
            for item in requested:
                quantity = float(item.get("quantity") or 0)
                if quantity <= 0:
                    raise ValidationError("Product quantity must be positive")
                product = self.store.products.get(item["productId"])
                if not product:
                    raise NotFound(f"Product {item['productId']} not found")
                if product.get("farmerId") != farmer_id:
                    raise ValidationError("All products in an order must come from the same farmer")
                if self.store.products.take_stock(product["id"], quantity) is None:
                    raise ValidationError(f"Insufficient stock for {product.get('name')}")
                taken.append({
                    "productId": product["id"],
                    "name": product.get("name"),
                    "price": float(product.get("price", 0)),
                    "quantity": quantity,
                    "unit": product.get("unit"),
                })
        except (NotFound, ValidationError):
            self._release_items(taken)
            raise
        return taken

    def _release_items(self, items: List[dict]) -> None:
        for item in items:
            self.store.products.return_stock(item["productId"], item["quantity"])

    def transition_order(self, order_id: str, target: str, actor: Actor, **fields) -> dict:
        order = self.get_order(order_id)
        current = order.get("orderStatus")
        check_order_transition(current, target)
        authorize_order_transition(order, target, actor)

        patch = {k: v for k, v in fields.items() if k in ORDER_PATCH_FIELDS and v is not None}
        now = self.clock()
        patch["orderStatus"] = target
        patch["updatedAt"] = now
        if target == "delivered" and not patch.get("actualDeliveryTime"):
            patch["actualDeliveryTime"] = now.isoformat()

        updated = self.store.orders.transition(
            order["id"], current, patch, _history(f"Status changed to {target}", actor.user_id, now))
        if updated is None:
            raise InvalidTransition("Order status changed concurrently, reload and retry")
        logger.info("order_transition order_id=%s from=%s to=%s by=%s", order["id"], current, target, actor.user_id)

        for user_id in {order.get("buyerId"), order.get("farmerId"), order.get("dispatcherId")} - {actor.user_id, None}:
            self._notify(user_id, order_status_event(order["id"], target), "order_update")
        return updated

    def cancel_order(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> dict:
        return self.transition_order(order_id, "cancelled", actor, cancellationReason=reason)

    def record_payment_status(self, order_id: str, status: str, reference: Optional[str] = None) -> dict:
        if status not in PAYMENT_STATUSES:
            raise ValidationError("paymentStatus must be pending, paid or failed")
        order = self.get_order(order_id)
        event = f"Payment {status}" + (f" ({reference})" if reference else "")
        now = self.clock()
        updated = self.store.orders.set_payment_status(order["id"], status, _history(event, None, now), now)
        if updated is None:
            raise NotFound("Order not found")
        logger.info("payment_recorded order_id=%s status=%s", order["id"], status)
        self._notify(order.get("buyerId"), payment_event(order["id"], status), "payment")
        return updated

    def change_payment_method(self, order_id: str, method: str, actor: Actor) -> dict:
        if method not in PAYMENT_METHODS:
            raise ValidationError("paymentMethod must be lisk_zar or cash")
        order = self.get_order(order_id)
        if actor.user_id != order.get("buyerId"):
            raise Forbidden("Only the buyer can change the payment method")
        updated = self.store.orders.set_payment_method(order["id"], method, self.clock())
        if updated is None:
            raise InvalidTransition("Payment method can only change while payment is pending")
        return updated

    # ------------------------- Dispatcher assignment -------------------------

    def dispatcher_ids(self) -> List[str]:
        return [p["clerkUserId"] for p in self.store.users.by_role("dispatcher", verified_only=True)]

    def workloads_for(self, dispatcher_ids: List[str]) -> List[DispatcherWorkload]:
        return [
            DispatcherWorkload(
                dispatcher_id=did,
                pending_orders=self.store.orders.count_for_dispatcher(did, active_only=True),
                total_orders=self.store.orders.count_for_dispatcher(did),
            )
            for did in dispatcher_ids
        ]

    def dispatcher_workloads(self) -> List[DispatcherWorkload]:
        return self.workloads_for(self.dispatcher_ids())

    def select_dispatcher(self) -> AssignmentResult:
        ids = self.dispatcher_ids()
        if not ids:
            return find_best_dispatcher([])
        try:
            workloads = self.workloads_for(ids)
        except PyMongoError:
            logger.warning("workload_unavailable dispatchers=%s falling back to random", len(ids), exc_info=True)
            return pick_random_dispatcher(ids, self.rng)
        return find_best_dispatcher(workloads)

    def assign_dispatcher(self, order_id: str, dispatcher_id: Optional[str] = None,
                          method: str = "checkout") -> Tuple[dict, dict, AssignmentResult]:
        order = self.get_order(order_id)
        self._ensure_assignable(order)
        if dispatcher_id is None:
            result = self.select_dispatcher()
            if not result.is_assigned:
                raise NoDispatcherAvailable(result.reason)
            if result.method == "random":
                method = "random"
        else:
            self._require_verified_dispatcher(dispatcher_id)
            result = AssignmentResult(dispatcher_id=dispatcher_id, is_assigned=True,
                                      reason="Assigned explicitly", method="explicit")
        updated, delivery = self._bind(order, result.dispatcher_id, "auto_assigned", method)
        return updated, delivery, result

    def claim_order(self, order_id: str, actor: Actor) -> Tuple[dict, dict]:
        if actor.role != "dispatcher":
            raise Forbidden("Only dispatchers can claim orders")
        self._require_verified_dispatcher(actor.user_id)
        order = self.get_order(order_id)
        self._ensure_assignable(order)
        if order.get("assignmentStatus") != "available":
            raise InvalidTransition("Order is not available for claiming")
        expiry = order.get("assignmentExpiryTime")
        if expiry is not None and to_naive_utc(self.clock()) > to_naive_utc(expiry):
            raise InvalidTransition("Order claiming window has expired")
        return self._bind(order, actor.user_id, "claimed", "manual")

    def auto_assign_expired_orders(self, now: Optional[datetime] = None) -> dict:
        now = to_naive_utc(now or self.clock())
        expired = self.store.orders.expired_unassigned(now)
        if not expired:
            return {"assigned": 0, "message": "No expired orders to assign", "assignments": []}
        ids = self.dispatcher_ids()
        if not ids:
            raise NoDispatcherAvailable("No dispatchers available for auto-assignment")
        try:
            workloads: Optional[List[DispatcherWorkload]] = self.workloads_for(ids)
        except PyMongoError:
            logger.warning("workload_unavailable dispatchers=%s falling back to random", len(ids), exc_info=True)
            workloads = None

        assignments = []
        for order in expired:
            if workloads is None:
                choice = pick_random_dispatcher(ids, self.rng)
                method = "random"
            else:
                choice = find_best_dispatcher(workloads)
                method = "auto"
            try:
                self._bind(order, choice.dispatcher_id, "auto_assigned", method)
            except InvalidTransition:
                # claimed or cancelled since the query ran
                continue
            assignments.append({"orderId": order["id"], "dispatcherId": choice.dispatcher_id})
            if workloads is not None:
                workloads = [
                    DispatcherWorkload(w.dispatcher_id, w.pending_orders + 1, w.total_orders + 1)
                    if w.dispatcher_id == choice.dispatcher_id else w
                    for w in workloads
                ]
        logger.info("auto_assign_expired assigned=%s expired=%s", len(assignments), len(expired))
        return {
            "assigned": len(assignments),
            "message": f"Auto-assigned {len(assignments)} expired orders",
            "assignments": assignments,
        }

    def _ensure_assignable(self, order: dict) -> None:
        if order.get("orderStatus") in TERMINAL_STATUSES:
            raise InvalidTransition(f"Order is already {order.get('orderStatus')}")
        if order.get("dispatcherId"):
            raise InvalidTransition("Order already has a dispatcher")

    def _require_verified_dispatcher(self, dispatcher_id: str) -> dict:
        profile = self.store.users.get(dispatcher_id)
        if not profile or profile.get("role") != "dispatcher":
            raise NotFound("Dispatcher not found")
        if not profile.get("isVerified"):
            raise Forbidden("Dispatcher is not verified")
        return profile

    def _bind(self, order: dict, dispatcher_id: str, assignment_status: str, method: str) -> Tuple[dict, dict]:
        if self.store.deliveries.for_order(order["id"]) is not None:
            raise InvalidTransition("Order already has a delivery")
        now = self.clock()
        updated = self.store.orders.bind_dispatcher(
            order["id"], dispatcher_id, assignment_status, method,
            _history(f"Dispatcher assigned ({method})", dispatcher_id, now), now,
        )
        if updated is None:
            raise InvalidTransition("Order was assigned or closed concurrently")

        pickup = order.get("pickupLocation") or DEFAULT_PICKUP_LOCATION
        delivery = {
            "orderId": order["id"],
            "dispatcherId": dispatcher_id,
            "pickupLocation": pickup,
            "deliveryLocation": order.get("deliveryAddress"),
            "pickupCoordinates": order.get("pickupCoordinates"),
            "deliveryCoordinates": order.get("deliveryCoordinates"),
            "status": "assigned",
            "estimatedPickupTime": order.get("estimatedPickupTime"),
            "estimatedDeliveryTime": order.get("estimatedDeliveryTime"),
            "notes": order.get("specialInstructions"),
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            self.store.deliveries.insert(delivery)
        except DuplicateKeyError:
            self.store.orders.unbind_dispatcher(order["id"], dispatcher_id, now)
            raise InvalidTransition("Order already has a delivery")
        logger.info("dispatcher_assigned order_id=%s dispatcher_id=%s method=%s", order["id"], dispatcher_id, method)

        self._notify(dispatcher_id, delivery_assigned_event(
            order["id"], pickup, order.get("deliveryAddress"),
            order.get("estimatedPickupTime"), order.get("estimatedDeliveryTime"),
        ), "delivery")
        return updated, delivery

    # ------------------------- Deliveries -------------------------

    def get_delivery(self, order_id: str) -> dict:
        delivery = self.store.deliveries.for_order(order_id)
        if not delivery:
            raise NotFound("Delivery not found")
        return delivery

    def transition_delivery(self, order_id: str, target: str, actor: Actor, notes: Optional[str] = None) -> dict:
        delivery = self.get_delivery(order_id)
        if actor.role != "dispatcher" or actor.user_id != delivery.get("dispatcherId"):
            raise Forbidden("Only the assigned dispatcher can update this delivery")
        order = self.get_order(order_id)
        current = delivery.get("status")
        check_delivery_transition(current, target, order.get("orderStatus"))

        now = self.clock()
        stamp = now.isoformat()
        patch = {"status": target, "updatedAt": now}
        if target == "picked_up":
            patch["actualPickupTime"] = stamp
        elif target == "delivered":
            patch["actualDeliveryTime"] = order.get("actualDeliveryTime") or stamp
        if notes:
            patch["notes"] = notes
        updated = self.store.deliveries.transition(order_id, current, patch)
        if updated is None:
            raise InvalidTransition("Delivery status changed concurrently, reload and retry")
        logger.info("delivery_transition order_id=%s from=%s to=%s", order_id, current, target)
        return updated

    # ------------------------- Ratings -------------------------

    def upsert_rating(self, order_id: str, rater_id: str, rated_user_id: str, rating: int,
                      comment: Optional[str] = None) -> dict:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be an integer between 1 and 5")
        order = self.get_order(order_id)
        if order.get("orderStatus") != "delivered":
            raise ValidationError("Only delivered orders can be rated")
        participants = {order.get("buyerId"), order.get("farmerId"), order.get("dispatcherId")} - {None}
        if rater_id not in participants:
            raise Forbidden("Only participants of the order can rate")
        if rated_user_id not in participants or rated_user_id == rater_id:
            raise ValidationError("ratedUserId must be another participant of the order")

        saved = self.store.ratings.upsert(order["id"], rated_user_id, {
            "raterId": rater_id,
            "rating": rating,
            "comment": comment,
        }, self.clock())
        logger.info("rating_saved order_id=%s rated_user_id=%s rating=%s", order["id"], rated_user_id, rating)
        return saved

    # ------------------------- Notifications -------------------------

    def _notify(self, user_id: Optional[str], event: NotificationEvent, kind: str) -> None:
        """Best effort: a failed notification never undoes the state change."""
        if not user_id:
            return
        try:
            self.notifier.notify(user_id, event, kind)
        except Exception:
            logger.warning("notification_failed user_id=%s tag=%s", user_id, event.tag, exc_info=True)
