"""Final-price resolution for purchases, products and subscription plans.

These functions never raise on bad discount data: a malformed discount record
must not block an unrelated purchase flow.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from edupay.common.clock import as_utc, utcnow


ZERO = Decimal("0")


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def to_decimal(value: Any) -> Decimal:
    """Coerce numbers/strings to Decimal; missing or unparsable values become 0."""

    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return ZERO


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


@dataclass(frozen=True)
class PlanPrice:
    """Resolved subscription plan price."""

    original_price: Decimal
    discount_amount: Decimal
    final_price: Decimal
    is_discounted: bool
    discount_expired: bool = False
    discount_type: str | None = None
    discount_value: Decimal | None = None
    error: str | None = None


def calc_final_purchase_price(purchase: Any) -> Decimal:
    """Prefer a stored `payment_amount`; else `max(0, original_price - discount_amount)`."""

    payment_amount = _field(purchase, "payment_amount")
    if payment_amount is not None and payment_amount != "":
        return to_decimal(payment_amount)
    original_price = to_decimal(_field(purchase, "original_price"))
    discount_amount = to_decimal(_field(purchase, "discount_amount"))
    return max(ZERO, original_price - discount_amount)


def calc_product_price(product: Any) -> Decimal:
    return to_decimal(_field(product, "price"))


def calc_subscription_plan_price(plan: Any, now: datetime | None = None) -> PlanPrice:
    """Apply a plan's percentage/fixed discount if it is active and unexpired."""

    original_price = to_decimal(_field(plan, "price"))
    undiscounted = PlanPrice(
        original_price=original_price,
        discount_amount=ZERO,
        final_price=original_price,
        is_discounted=False,
    )
    if not _field(plan, "has_discount"):
        return undiscounted

    valid_until = _parse_datetime(_field(plan, "discount_valid_until"))
    if valid_until is not None and (as_utc(now) if now else utcnow()) > valid_until:
        return PlanPrice(
            original_price=original_price,
            discount_amount=ZERO,
            final_price=original_price,
            is_discounted=False,
            discount_expired=True,
        )

    discount_type = _field(plan, "discount_type")
    discount_value = to_decimal(_field(plan, "discount_value"))
    if discount_type == "percentage":
        discount_amount = original_price * discount_value / Decimal(100)
    elif discount_type == "fixed":
        discount_amount = discount_value
    else:
        return PlanPrice(
            original_price=original_price,
            discount_amount=ZERO,
            final_price=original_price,
            is_discounted=False,
            error=f"Unknown discount type: {discount_type}",
        )

    discount_amount = min(discount_amount, original_price)
    return PlanPrice(
        original_price=original_price,
        discount_amount=discount_amount,
        final_price=max(ZERO, original_price - discount_amount),
        is_discounted=True,
        discount_type=discount_type,
        discount_value=discount_value,
    )


def calc_item_price(item: Any, item_type: str) -> Decimal:
    """Dispatch to the right pricing rule for `purchase`, `product` or `subscription`."""

    if item_type == "purchase":
        return calc_final_purchase_price(item)
    if item_type == "product":
        return calc_product_price(item)
    if item_type == "subscription":
        return calc_subscription_plan_price(item).final_price
    raise ValueError(f"Unknown item type: {item_type}. Must be 'purchase', 'product', or 'subscription'")
