"""Reconciliation poller: classification, race handling and cycle isolation."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import completed_status, declined_status
from edupay.common.clock import utcnow
from edupay.common.errors import GatewayDispatchError, GatewayError, TransactionNotFoundError
from edupay.services.ledger.audit import load_status_history
from edupay.services.ledger.models import Coupon, CustomerToken, Purchase, Transaction


def _dispatch(intents, make_purchase, count):
    ids = []
    for index in range(count):
        purchase = make_purchase(purchasable_id=f"item_{index}")
        ids.append(asyncio.run(intents.create_payment_intent([purchase.id], "buyer_1")).transaction_id)
    return ids


def _set_created_at(session_factory, transaction_id, when):
    with session_factory() as db:
        db.execute(update(Transaction).where(Transaction.id == transaction_id).values(created_at=when))
        db.commit()


def test_poll_completes_when_webhook_never_arrives(session_factory, gateway, poller, dispatched_transaction, load):
    transaction_id, purchase_id = dispatched_transaction
    gateway.status_by_page["page_1"] = completed_status(uid="gw_5", token="tok_abcdef123456")

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["checked"] == 1
    assert summary["completed"] == 1
    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "completed"
    assert transaction.race_condition_winner == "polling"
    assert transaction.gateway_transaction_uid == "gw_5"
    assert load(Purchase, purchase_id).payment_status == "completed"
    with session_factory() as db:
        assert db.query(CustomerToken).filter_by(buyer_id="buyer_1").count() == 1


def test_webhook_winning_mid_cycle_is_not_reprocessed(session_factory, gateway, intents, completion, poller, make_purchase, load):
    with session_factory() as db:
        db.add(Coupon(code="SPRING", usage_count=0))
        db.commit()
    purchase = make_purchase(discount_amount="20")
    intent = asyncio.run(
        intents.create_payment_intent([purchase.id], "buyer_1", applied_discounts=[{"code": "SPRING"}])
    )
    gateway.status_by_page["page_1"] = completed_status()

    async def webhook_arrives_first(_):
        await completion.process_completion(intent.transaction_id, {"status": "approved"}, "webhook")

    gateway.before_query = webhook_arrives_first
    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["already_processed"] == 1
    assert summary["completed"] == 0
    assert load(Coupon, "SPRING").usage_count == 1
    transaction = load(Transaction, intent.transaction_id)
    assert transaction.race_condition_winner == "webhook"
    audit = poller.get_transaction_audit(intent.transaction_id)
    assert audit["race_condition_summary"]["won_count"] == 1
    assert audit["race_condition_summary"]["lost_count"] == 1
    assert audit["race_condition_summary"]["had_race"] is True


def test_completed_transaction_reported_by_manual_check(completion, poller, dispatched_transaction):
    transaction_id, _ = dispatched_transaction
    asyncio.run(completion.process_completion(transaction_id, {}, "webhook"))

    result = asyncio.run(poller.check_specific_transaction(transaction_id))

    assert result["classification"] == "already_processed"
    assert result["race_condition_winner"] == "webhook"


def test_declined_status_runs_failure_path(gateway, poller, dispatched_transaction, load):
    transaction_id, purchase_id = dispatched_transaction
    gateway.status_by_page["page_1"] = declined_status()

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["failed"] == 1
    assert load(Transaction, transaction_id).payment_status == "failed"
    assert load(Purchase, purchase_id).payment_status == "failed"


def test_still_pending_only_updates_bookkeeping(session_factory, poller, dispatched_transaction, load):
    transaction_id, _ = dispatched_transaction

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["still_pending"] == 1
    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "in_progress"
    assert transaction.status_last_checked_at is not None
    with session_factory() as db:
        last = load_status_history(db, transaction_id)[-1]
    assert last.event_type.value == "poll_check"
    assert last.outcome.value == "still_pending"


def test_gateway_error_isolated_to_one_transaction(session_factory, gateway, intents, poller, make_purchase, load):
    first, second = _dispatch(intents, make_purchase, 2)
    gateway.status_errors["page_1"] = GatewayError("HTTP 503", "query_status", retryable=True)
    gateway.status_by_page["page_2"] = completed_status()

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["checked"] == 2
    assert summary["errors"] == 1
    assert summary["completed"] == 1
    assert load(Transaction, first).payment_status == "in_progress"
    assert load(Transaction, second).payment_status == "completed"
    with session_factory() as db:
        outcomes = [entry.outcome.value for entry in load_status_history(db, first)]
    assert "gateway_error" in outcomes


def test_unexpected_exception_does_not_abort_cycle(gateway, intents, poller, make_purchase, load):
    first, second = _dispatch(intents, make_purchase, 2)
    gateway.status_errors["page_2"] = RuntimeError("malformed response")
    gateway.status_by_page["page_1"] = completed_status()

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["errors"] == 1
    assert load(Transaction, first).payment_status == "completed"


def test_overlapping_cycle_is_skipped(gateway, poller, dispatched_transaction):
    async def slow_gateway(_):
        await asyncio.sleep(0.01)

    gateway.before_query = slow_gateway

    async def overlap():
        return await asyncio.gather(poller.poll_all_pending_transactions(), poller.poll_all_pending_transactions())

    first, second = asyncio.run(overlap())

    assert first["skipped"] is False
    assert second == {"skipped": True}


def test_old_pending_transaction_expires(session_factory, poller, dispatched_transaction, load):
    transaction_id, purchase_id = dispatched_transaction
    with session_factory() as db:
        db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(expires_at=utcnow() - timedelta(hours=2))
        )
        db.commit()

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["expired"] == 1
    assert load(Transaction, transaction_id).payment_status == "expired"
    assert load(Purchase, purchase_id).payment_status == "failed"


def _undispatched(session_factory, gateway, intents, make_purchase, **values):
    purchase = make_purchase()
    gateway.page_error = GatewayError("gateway down", "create_page")
    with pytest.raises(GatewayDispatchError) as excinfo:
        asyncio.run(intents.create_payment_intent([purchase.id], "buyer_1"))
    gateway.page_error = None
    transaction_id = excinfo.value.transaction_id
    if values:
        with session_factory() as db:
            db.execute(update(Transaction).where(Transaction.id == transaction_id).values(**values))
            db.commit()
    return transaction_id, purchase.id


def test_abandoned_intent_without_page_expires(session_factory, gateway, intents, poller, make_purchase, load):
    transaction_id, purchase_id = _undispatched(
        session_factory, gateway, intents, make_purchase, expires_at=utcnow() - timedelta(minutes=1)
    )

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["checked"] == 1
    assert summary["expired"] == 1
    assert gateway.status_queries == []
    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "expired"
    assert transaction.race_condition_winner == "polling"
    released = load(Purchase, purchase_id)
    assert released.payment_status == "cart"
    assert released.transaction_id is None


def test_abandoned_intent_within_window_is_left_alone(session_factory, gateway, intents, poller, make_purchase, load):
    transaction_id, _ = _undispatched(session_factory, gateway, intents, make_purchase)

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["checked"] == 0
    assert load(Transaction, transaction_id).payment_status == "pending"


def test_unresolved_token_charge_is_not_expired(session_factory, gateway, intents, poller, make_purchase, load):
    transaction_id, _ = _undispatched(
        session_factory,
        gateway,
        intents,
        make_purchase,
        expires_at=utcnow() - timedelta(minutes=1),
        token_charge_state="ambiguous",
    )

    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["expired"] == 0
    assert load(Transaction, transaction_id).payment_status == "pending"


def test_approval_for_transaction_expired_mid_check_counts_as_error(
    gateway, completion, poller, dispatched_transaction, load
):
    transaction_id, _ = dispatched_transaction
    gateway.status_by_page["page_1"] = completed_status(uid="gw_late")

    async def expired_meanwhile(_):
        await completion.handle_failed_transaction_with_audit(
            transaction_id, None, "webhook", terminal_status="expired"
        )

    gateway.before_query = expired_meanwhile
    summary = asyncio.run(poller.poll_all_pending_transactions())

    assert summary["errors"] == 1
    assert summary["completed"] == 0
    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "expired"
    assert transaction.gateway_response["requires_reconciliation"]["reported_by"] == "polling"


def test_selection_is_newest_first_and_capped(session_factory, gateway, intents, poller, make_purchase):
    oldest, middle, newest = _dispatch(intents, make_purchase, 3)
    now = utcnow()
    _set_created_at(session_factory, oldest, now - timedelta(minutes=30))
    _set_created_at(session_factory, middle, now - timedelta(minutes=20))
    _set_created_at(session_factory, newest, now - timedelta(minutes=10))

    summary = asyncio.run(poller.poll_all_pending_transactions(limit=2))

    assert summary["checked"] == 2
    assert gateway.status_queries == ["page_3", "page_2"]


def test_max_age_excludes_old_transactions(session_factory, gateway, poller, dispatched_transaction):
    transaction_id, _ = dispatched_transaction
    _set_created_at(session_factory, transaction_id, utcnow() - timedelta(days=3))

    summary = asyncio.run(poller.poll_all_pending_transactions(max_age_hours=24))

    assert summary["checked"] == 0
    assert gateway.status_queries == []


def test_polling_status_tracks_cycles(poller, dispatched_transaction):
    asyncio.run(poller.poll_all_pending_transactions())
    asyncio.run(poller.poll_all_pending_transactions())

    status = poller.get_polling_status()

    assert status["cycles_run"] == 2
    assert status["totals"]["still_pending"] == 2
    assert status["last_cycle"]["checked"] == 1
    assert status["cycle_in_progress"] is False


def test_manual_check_of_unknown_transaction(poller):
    with pytest.raises(TransactionNotFoundError):
        asyncio.run(poller.check_specific_transaction("txn_unknown"))


def test_background_loop_start_and_stop(poller):
    poller.interval_seconds = 0.01

    async def run_briefly():
        poller.start()
        await asyncio.sleep(0.05)
        active = poller.get_polling_status()["active"]
        await poller.stop()
        return active

    assert asyncio.run(run_briefly()) is True
    assert poller.get_polling_status()["active"] is False
    assert poller.cycles_run >= 1
