"""Subscription record collaborator used by the completion cascade."""

import calendar
from datetime import datetime, timedelta
from decimal import Decimal

from edupay.common.clock import as_utc, utcnow
from edupay.common.logging import logger
from edupay.services.ledger.models import SubscriptionHistory


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def subscription_end_date(start: datetime, billing_period: str | None) -> datetime:
    """Renewal boundary for one billing period starting at `start`."""

    start = as_utc(start)
    if billing_period == "daily":
        return start + timedelta(days=1)
    if billing_period == "weekly":
        return start + timedelta(days=7)
    if billing_period == "monthly":
        return _add_months(start, 1)
    if billing_period == "quarterly":
        return _add_months(start, 3)
    if billing_period == "yearly":
        return _add_months(start, 12)
    return start + timedelta(days=30)


class SubscriptionService:
    """Creates the subscription grants that actually give buyers access."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create_active_subscription_record(
        self,
        buyer_id: str,
        plan_id: str,
        start_date: datetime,
        end_date: datetime,
        source_transaction_id: str,
        purchase_id: str | None = None,
        purchased_price: Decimal | None = None,
        billing_period: str = "monthly",
        gateway_subscription_uid: str | None = None,
        metadata: dict | None = None,
    ) -> SubscriptionHistory:
        with self.session_factory() as db:
            record = SubscriptionHistory(
                buyer_id=buyer_id,
                subscription_plan_id=plan_id,
                action_type="subscribe",
                status="active",
                billing_period=billing_period,
                start_date=start_date,
                end_date=end_date,
                purchased_price=purchased_price,
                gateway_subscription_uid=gateway_subscription_uid or f"txn_{source_transaction_id}",
                transaction_id=source_transaction_id,
                purchase_id=purchase_id,
                meta=metadata or {},
            )
            db.add(record)
            db.commit()
            logger.info(
                "subscription activated buyer_id=%s plan_id=%s transaction_id=%s end_date=%s",
                buyer_id,
                plan_id,
                source_transaction_id,
                end_date.isoformat(),
            )
            return record

    def activate_for_purchase(self, purchase, transaction_id: str, source: str, payload: dict | None) -> SubscriptionHistory:
        """Grant the plan bought by one completed subscription purchase."""

        start = utcnow()
        billing_period = (purchase.meta or {}).get("billing_period") or "monthly"
        return self.create_active_subscription_record(
            buyer_id=purchase.buyer_id,
            plan_id=purchase.purchasable_id,
            start_date=start,
            end_date=subscription_end_date(start, billing_period),
            source_transaction_id=transaction_id,
            purchase_id=purchase.id,
            purchased_price=purchase.payment_amount,
            billing_period=billing_period,
            gateway_subscription_uid=(payload or {}).get("subscription_uid"),
            metadata={
                "completed_by": source,
                "completed_at": start.isoformat(),
                "purchase_id": purchase.id,
                "gateway_data_available": bool(payload),
            },
        )
