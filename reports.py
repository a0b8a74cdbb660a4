"""Read-side summaries for dashboards."""
from datetime import datetime
from typing import Dict, List, Optional

from database import serialize
from lifecycle import ORDER_FLOW, TERMINAL_STATUSES, to_naive_utc
from repositories import Store

# revenue/pending field credited to each role
ROLE_AMOUNT_FIELD = {"farmer": "farmerAmount", "dispatcher": "dispatcherAmount", "buyer": "totalAmount"}


def order_stats(store: Store, role: str, user_id: str) -> dict:
    orders = store.orders.for_user(role, user_id)
    stats = {"total": len(orders)}
    for status in ORDER_FLOW + ["cancelled"]:
        stats[status] = sum(1 for o in orders if o.get("orderStatus") == status)
    field = ROLE_AMOUNT_FIELD[role]
    stats["totalRevenue"] = round(
        sum(float(o.get(field, 0)) for o in orders if o.get("orderStatus") == "delivered"), 2)
    return stats


def pending_total(store: Store, role: str, user_id: str) -> float:
    """Money still tied up in orders that are neither delivered nor cancelled."""
    field = ROLE_AMOUNT_FIELD[role]
    orders = store.orders.for_user(role, user_id)
    return round(sum(float(o.get(field, 0)) for o in orders if o.get("orderStatus") not in TERMINAL_STATUSES), 2)


def available_orders(store: Store, now: datetime) -> List[dict]:
    """Claimable orders with seconds left in the window and buyer/farmer profiles attached."""
    now = to_naive_utc(now)
    profiles: Dict[str, Optional[dict]] = {}

    def profile(user_id):
        if user_id not in profiles:
            profiles[user_id] = serialize(store.users.get(user_id))
        return profiles[user_id]

    result = []
    for order in store.orders.open_for_claiming(now):
        expiry = order.get("assignmentExpiryTime")
        remaining = (to_naive_utc(expiry) - now).total_seconds() if expiry else 0
        result.append({
            **order,
            "timeRemaining": max(0, int(remaining)),
            "buyerInfo": profile(order.get("buyerId")),
            "farmerInfo": profile(order.get("farmerId")),
        })
    return result


def rating_summary(store: Store, user_id: str) -> dict:
    ratings = store.ratings.for_rated_user(user_id)
    distribution = {str(star): 0 for star in range(1, 6)}
    if not ratings:
        return {"averageRating": 0, "totalRatings": 0, "ratingDistribution": distribution}
    for r in ratings:
        distribution[str(int(r["rating"]))] += 1
    average = sum(r["rating"] for r in ratings) / len(ratings)
    return {
        "averageRating": round(average, 1),
        "totalRatings": len(ratings),
        "ratingDistribution": distribution,
    }
