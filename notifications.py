"""
Notification events and the store-backed notifier.

The push layer reads the `notifications` collection; this module only records
structured events for a user.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel

from repositories import NotificationRepository

logger = logging.getLogger("marketplace.notifications")


class NotificationEvent(BaseModel):
    title: str
    body: str
    tag: Optional[str] = None
    url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class StoreNotifier:
    def __init__(self, repo: NotificationRepository):
        self.repo = repo

    def notify(self, user_id: str, event: NotificationEvent, kind: str = "system") -> str:
        nid = self.repo.insert({
            "userId": user_id,
            "type": kind,
            "title": event.title,
            "message": event.body,
            "tag": event.tag,
            "url": event.url,
            "metadata": event.metadata,
            "isRead": False,
            "createdAt": datetime.now(timezone.utc),
        })
        logger.info("notification_created id=%s user_id=%s type=%s tag=%s", nid, user_id, kind, event.tag)
        return nid


def delivery_assigned_event(order_id: str, pickup_location: str, delivery_location: str,
                            estimated_pickup_time: Optional[str] = None,
                            estimated_delivery_time: Optional[str] = None) -> NotificationEvent:
    return NotificationEvent(
        title="New Delivery Assignment",
        body=f"You have been assigned a new delivery from {pickup_location} to {delivery_location}",
        tag=f"delivery-{order_id}",
        url=f"/dashboard?order={order_id}",
        metadata={
            "orderId": order_id,
            "pickupLocation": pickup_location,
            "deliveryLocation": delivery_location,
            "estimatedPickupTime": estimated_pickup_time,
            "estimatedDeliveryTime": estimated_delivery_time,
        },
    )


def order_status_event(order_id: str, status: str) -> NotificationEvent:
    label = status.replace("_", " ")
    return NotificationEvent(
        title="Order Update",
        body=f"Your order is now {label}",
        tag=f"order-{order_id}",
        url=f"/dashboard?order={order_id}",
        metadata={"orderId": order_id, "orderStatus": status},
    )


def payment_event(order_id: str, status: str) -> NotificationEvent:
    return NotificationEvent(
        title="Payment Update",
        body=f"Payment for your order is {status}",
        tag=f"payment-{order_id}",
        url=f"/dashboard?order={order_id}",
        metadata={"orderId": order_id, "paymentStatus": status},
    )
