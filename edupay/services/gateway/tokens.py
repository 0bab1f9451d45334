"""Extract reusable charge tokens and card metadata from gateway payloads."""

import re
from dataclasses import dataclass
from typing import Any


BRANDS = {
    "visa": "visa",
    "mastercard": "mastercard",
    "master": "mastercard",
    "mc": "mastercard",
    "amex": "amex",
    "american_express": "amex",
    "american express": "amex",
    "diners": "diners",
    "discover": "discover",
    "jcb": "jcb",
    "isracard": "isracard",
}


@dataclass(frozen=True)
class CardInfo:
    last4: str = "0000"
    brand: str = "unknown"
    expiry_month: str | None = None
    expiry_year: str | None = None
    holder_name: str | None = None


def _dig(payload: Any, *path: str) -> Any:
    cursor = payload
    for key in path:
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(key)
    return cursor


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def extract_token(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    token = _first(
        _dig(payload, "payment_method", "token"),
        _dig(payload, "token_uid"),
        _dig(payload, "token"),
        _dig(payload, "transaction", "token"),
        _dig(payload, "transaction", "token_uid"),
        _dig(payload, "transaction", "payment_method", "token"),
        _dig(payload, "data", "card_information", "token"),
        _dig(payload, "card_token"),
        _dig(payload, "customer_token"),
        _dig(payload, "payment_token"),
    )
    return str(token) if token is not None else None


def normalize_brand(brand: Any) -> str:
    if not brand:
        return "unknown"
    normalized = str(brand).lower().strip()
    return BRANDS.get(normalized, normalized)


def extract_card_info(payload: dict[str, Any] | None) -> CardInfo:
    payload = payload or {}
    card = (
        _first(
            _dig(payload, "payment_method", "card"),
            _dig(payload, "card"),
            _dig(payload, "transaction", "card"),
            _dig(payload, "transaction", "payment_method", "card"),
            _dig(payload, "data", "card_information"),
        )
        or {}
    )
    if not isinstance(card, dict):
        card = {}
    customer = _first(_dig(payload, "customer"), _dig(payload, "transaction", "customer")) or {}

    raw_last4 = _first(
        card.get("last_4"),
        card.get("last4"),
        card.get("four_digits"),
        card.get("last_four"),
        payload.get("card_last4"),
        _dig(payload, "transaction", "card_last4"),
    )
    digits = re.sub(r"\D", "", str(raw_last4 or ""))
    expiry_month = _first(card.get("exp_month"), card.get("expiry_month"), card.get("month"))
    expiry_year = _first(card.get("exp_year"), card.get("expiry_year"), card.get("year"))
    return CardInfo(
        last4=digits[-4:] if len(digits) >= 4 else "0000",
        brand=normalize_brand(_first(card.get("brand"), card.get("type"), card.get("card_brand"), card.get("brand_name"))),
        expiry_month=str(expiry_month) if expiry_month is not None else None,
        expiry_year=str(expiry_year) if expiry_year is not None else None,
        holder_name=_first(
            card.get("holder_name"),
            card.get("name"),
            card.get("cardholder_name"),
            customer.get("name") if isinstance(customer, dict) else None,
            customer.get("full_name") if isinstance(customer, dict) else None,
        ),
    )
