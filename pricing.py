from typing import Iterable, Optional

import config
from errors import ValidationError


def round_money(value: float) -> float:
    return round(float(value), 2)


def delivery_cost_for(distance_km: float, cost_per_km: Optional[float] = None) -> float:
    rate = config.COST_PER_KM if cost_per_km is None else cost_per_km
    return round_money(max(0.0, distance_km) * rate)


def compute_amounts(items: Iterable[dict], delivery_cost: float, fee_percent: Optional[float] = None) -> dict:
    """Split an order's money between farmer, dispatcher and platform.

    totalAmount = subtotal + deliveryCost; the farmer receives the subtotal
    minus the platform fee and the dispatcher receives the delivery cost.
    """
    items = list(items)
    if not items:
        raise ValidationError("Order must contain at least one product")
    if delivery_cost < 0:
        raise ValidationError("deliveryCost must not be negative")
    rate = config.PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent
    subtotal = round_money(sum(float(i["price"]) * float(i["quantity"]) for i in items))
    platform_fee = round_money(subtotal * rate / 100)
    amounts = {
        "subtotal": subtotal,
        "deliveryCost": round_money(delivery_cost),
        "totalAmount": round_money(subtotal + delivery_cost),
        "platformFee": platform_fee,
        "farmerAmount": round_money(subtotal - platform_fee),
        "dispatcherAmount": round_money(delivery_cost),
    }
    validate_amounts(amounts["totalAmount"], amounts["farmerAmount"], amounts["dispatcherAmount"])
    return amounts


def validate_amounts(total_amount: float, farmer_amount: float, dispatcher_amount: float) -> None:
    if farmer_amount < 0 or dispatcher_amount < 0:
        raise ValidationError("Payout amounts must not be negative")
    # cents tolerance for float rounding
    if farmer_amount + dispatcher_amount > total_amount + 0.005:
        raise ValidationError("farmerAmount + dispatcherAmount exceeds totalAmount")
