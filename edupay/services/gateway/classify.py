"""Tolerant classification of gateway status responses.

PayPlus is inconsistent about which field carries the verdict, so any single
positive indicator decides. A completed indicator beats a failed one: if the
money was captured, treating it as failed is the worse mistake.
"""

from typing import Any

from edupay.services.gateway.schemas import GatewayOutcome, StatusIndicators


SUCCESS_CODE = "000"
COMPLETED_STATUSES = frozenset({"approved", "success", "completed", "paid"})
FAILED_STATUSES = frozenset({"failed", "declined", "rejected", "error", "cancelled", "canceled"})


def _norm(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def classify(indicators: StatusIndicators) -> GatewayOutcome:
    status = _norm(indicators.status)
    code = _norm(indicators.status_code)

    if status in COMPLETED_STATUSES or code == SUCCESS_CODE:
        return GatewayOutcome.COMPLETED
    if status in FAILED_STATUSES or (code is not None and code != SUCCESS_CODE):
        return GatewayOutcome.FAILED
    return GatewayOutcome.PENDING


def indicators_from_payload(payload: dict[str, Any] | None) -> StatusIndicators:
    """Pull status indicators out of a webhook body or a PaymentData response."""

    payload = payload or {}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    transaction = payload.get("transaction") or data.get("transaction") or {}
    if not isinstance(transaction, dict):
        transaction = {}
    results = payload.get("results") if isinstance(payload.get("results"), dict) else {}

    status = transaction.get("status") or payload.get("status")
    status_code = transaction.get("status_code") or payload.get("status_code")
    return StatusIndicators(
        status=status,
        status_code=str(status_code) if status_code is not None else None,
        results_status=results.get("status"),
        has_transaction=bool(transaction),
    )


def classify_payload(payload: dict[str, Any] | None) -> GatewayOutcome:
    return classify(indicators_from_payload(payload))
