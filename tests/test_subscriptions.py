"""Subscription renewal windows and grant records."""

from datetime import datetime, timezone

import pytest

from edupay.services.subscriptions.service import SubscriptionService, subscription_end_date


START = datetime(2026, 1, 31, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "period, expected",
    [
        ("daily", datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)),
        ("weekly", datetime(2026, 2, 7, 10, 0, tzinfo=timezone.utc)),
        ("monthly", datetime(2026, 2, 28, 10, 0, tzinfo=timezone.utc)),
        ("quarterly", datetime(2026, 4, 30, 10, 0, tzinfo=timezone.utc)),
        ("yearly", datetime(2027, 1, 31, 10, 0, tzinfo=timezone.utc)),
        ("fortnightly", datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)),
        (None, datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)),
    ],
)
def test_end_date_per_billing_period(period, expected):
    assert subscription_end_date(START, period) == expected


def test_create_active_record(session_factory):
    service = SubscriptionService(session_factory)

    record = service.create_active_subscription_record(
        buyer_id="buyer_1",
        plan_id="plan_basic",
        start_date=START,
        end_date=subscription_end_date(START, "monthly"),
        source_transaction_id="txn_1",
    )

    assert record.status == "active"
    assert record.action_type == "subscribe"
    assert record.gateway_subscription_uid == "txn_txn_1"
