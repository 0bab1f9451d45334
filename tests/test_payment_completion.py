"""Completion arbiter: exactly-one-winner claims, cascades and best-effort effects."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from edupay.common.clock import utcnow
from edupay.common.errors import CompletionProcessingError, TransactionNotFoundError
from edupay.common.state_machine import CompletionSource, TransactionStatus
from edupay.services.completion import service as completion_module
from edupay.services.completion.service import PaymentCompletionService
from edupay.services.gateway.schemas import TokenCharge
from edupay.services.ledger.audit import load_status_history
from edupay.services.ledger.models import (
    Coupon,
    CustomerToken,
    FileAsset,
    Purchase,
    SubscriptionHistory,
    Transaction,
)
from edupay.services.ledger.store import merge_transaction_metadata
from edupay.services.subscriptions.service import SubscriptionService


def _claims(session_factory, transaction_id):
    with session_factory() as db:
        return [entry for entry in load_status_history(db, transaction_id) if entry.event_type.value == "claim"]


def test_exactly_one_winner_among_concurrent_sources(session_factory, completion, dispatched_transaction, load):
    transaction_id, purchase_id = dispatched_transaction
    sources = ["webhook", "polling", "webhook", "polling", "webhook"]

    async def race():
        return await asyncio.gather(
            *(completion.process_completion(transaction_id, {"status": "approved"}, source) for source in sources)
        )

    results = asyncio.run(race())

    assert sum(1 for result in results if not result.already_processed) == 1
    assert sum(1 for result in results if result.already_processed) == len(sources) - 1
    claims = _claims(session_factory, transaction_id)
    assert [entry.outcome.value for entry in claims].count("won_race") == 1
    assert [entry.outcome.value for entry in claims].count("lost_race") == len(sources) - 1

    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "completed"
    assert transaction.processing_attempts == len(sources)
    assert transaction.race_condition_winner == "webhook"
    assert load(Purchase, purchase_id).payment_status == "completed"


def test_completion_cascades_every_linked_purchase(session_factory, intents, completion, make_purchase):
    purchases = [make_purchase(purchasable_id=f"item_{index}") for index in range(3)]
    intent = asyncio.run(intents.create_payment_intent([p.id for p in purchases], "buyer_1"))

    result = asyncio.run(completion.process_completion(intent.transaction_id, {}, "webhook"))

    assert result.details["purchases_updated"] == 3
    with session_factory() as db:
        linked = db.execute(select(Purchase).where(Purchase.transaction_id == intent.transaction_id)).scalars().all()
    assert {purchase.payment_status for purchase in linked} == {"completed"}
    assert all(purchase.meta["completion_details"]["completed_by"] == "webhook" for purchase in linked)
    assert all(purchase.payment_method == "payplus" for purchase in linked)


def test_unknown_transaction_is_a_hard_error(completion):
    with pytest.raises(TransactionNotFoundError):
        asyncio.run(completion.process_completion("txn_missing", {}, "webhook"))


def test_lost_race_reports_winner(completion, dispatched_transaction):
    transaction_id, _ = dispatched_transaction
    asyncio.run(completion.process_completion(transaction_id, {}, "polling"))

    second = asyncio.run(completion.process_completion(transaction_id, {}, "webhook"))

    assert second.success and second.already_processed
    assert second.processed_by == "polling"
    assert second.status == "completed"


def test_webhook_timestamp_recorded_even_when_losing(completion, dispatched_transaction, load):
    transaction_id, _ = dispatched_transaction
    asyncio.run(completion.process_completion(transaction_id, {}, "polling"))
    asyncio.run(completion.process_completion(transaction_id, {}, "webhook"))

    transaction = load(Transaction, transaction_id)
    assert transaction.webhook_received_at is not None
    assert transaction.race_condition_winner == "polling"


def test_coupon_failure_does_not_block_other_coupons(session_factory, intents, completion, make_purchase, load):
    with session_factory() as db:
        db.add(Coupon(code="SPRING", usage_count=0))
        db.commit()
    purchase = make_purchase(discount_amount="10")
    intent = asyncio.run(
        intents.create_payment_intent(
            [purchase.id], "buyer_1", applied_discounts=[{"code": "GHOST"}, {"code": "SPRING"}]
        )
    )

    result = asyncio.run(completion.process_completion(intent.transaction_id, {}, "webhook"))

    assert result.success and not result.already_processed
    assert result.details["coupons_committed"] == 1
    assert any("GHOST" in error for error in result.details["side_effect_errors"])
    assert load(Coupon, "SPRING").usage_count == 1
    transaction = load(Transaction, intent.transaction_id)
    assert transaction.payment_status == "completed"
    assert transaction.gateway_response["completion_processing"]["coupons_committed"] == 1


def test_token_saved_once_per_buyer(session_factory, gateway, intents, completion, make_purchase):
    payload = {"transaction": {"uid": "gw_77", "token": "tok_1234567890", "card": {"four_digits": "4242", "brand": "VISA"}}}
    first = make_purchase(purchasable_id="a")
    second = make_purchase(purchasable_id="b")
    intent_a = asyncio.run(intents.create_payment_intent([first.id], "buyer_1"))
    asyncio.run(completion.process_completion(intent_a.transaction_id, payload, "webhook"))
    gateway.token_result = TokenCharge(approved=False, error="card expired")
    intent_b = asyncio.run(intents.create_payment_intent([second.id], "buyer_1"))
    result = asyncio.run(completion.process_completion(intent_b.transaction_id, payload, "webhook"))

    with session_factory() as db:
        tokens = db.execute(select(CustomerToken).where(CustomerToken.buyer_id == "buyer_1")).scalars().all()
    assert len(tokens) == 1
    assert tokens[0].is_default is True
    assert tokens[0].card_last4 == "4242"
    assert tokens[0].card_brand == "visa"
    assert result.details["tokens_saved"] == 0


def test_gateway_transaction_uid_recorded(completion, dispatched_transaction, load):
    transaction_id, _ = dispatched_transaction
    asyncio.run(completion.process_completion(transaction_id, {"transaction": {"uid": "gw_42"}}, "webhook"))
    assert load(Transaction, transaction_id).gateway_transaction_uid == "gw_42"


def test_subscription_purchase_grants_access(session_factory, intents, completion, make_purchase):
    purchase = make_purchase(
        purchasable_type="subscription",
        purchasable_id="plan_pro",
        original_price="300",
        meta={"billing_period": "yearly"},
    )
    intent = asyncio.run(intents.create_payment_intent([purchase.id], "buyer_1"))

    result = asyncio.run(completion.process_completion(intent.transaction_id, {}, "webhook"))

    assert result.details["subscriptions_created"] == 1
    with session_factory() as db:
        record = db.execute(select(SubscriptionHistory)).scalar_one()
    assert record.status == "active"
    assert record.subscription_plan_id == "plan_pro"
    assert record.transaction_id == intent.transaction_id
    assert (record.end_date - record.start_date).days in (365, 366)


def test_file_purchase_increments_download_counter(session_factory, intents, completion, make_purchase, load):
    with session_factory() as db:
        db.add(FileAsset(id="file_9", title="Worksheet", downloads_count=4))
        db.commit()
    purchase = make_purchase(purchasable_type="file", purchasable_id="file_9")
    intent = asyncio.run(intents.create_payment_intent([purchase.id], "buyer_1"))

    asyncio.run(completion.process_completion(intent.transaction_id, {}, "webhook"))
    asyncio.run(completion.process_completion(intent.transaction_id, {}, "polling"))

    assert load(FileAsset, "file_9").downloads_count == 5


def test_cascade_failure_keeps_claim_and_annotates(monkeypatch, session_factory, completion, dispatched_transaction, load):
    transaction_id, _ = dispatched_transaction

    def broken_cascade(*args, **kwargs):
        raise RuntimeError("purchases table locked")

    monkeypatch.setattr(completion_module, "update_purchases_where", broken_cascade)

    with pytest.raises(CompletionProcessingError) as excinfo:
        asyncio.run(completion.process_completion(transaction_id, {}, "webhook"))

    assert excinfo.value.transaction_id == transaction_id
    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "completed"
    assert "purchases table locked" in transaction.gateway_response["error_during_completion"]["error_message"]
    with session_factory() as db:
        history = load_status_history(db, transaction_id)
    assert history[-1].event_type.value == "completion_error"


def test_failure_path_fails_purchases_and_blocks_later_completion(completion, dispatched_transaction, load):
    transaction_id, purchase_id = dispatched_transaction

    failed = asyncio.run(
        completion.handle_failed_transaction_with_audit(transaction_id, {"status": "declined"}, "polling", reason="declined")
    )
    late = asyncio.run(completion.process_completion(transaction_id, {}, "webhook"))

    assert failed.status == "failed" and not failed.already_processed
    assert late.already_processed and late.status == "failed"
    assert load(Purchase, purchase_id).payment_status == "failed"
    assert load(Transaction, transaction_id).race_condition_winner == "polling"


def test_duplicate_failure_is_harmless(completion, dispatched_transaction, load):
    transaction_id, _ = dispatched_transaction
    asyncio.run(completion.handle_failed_transaction_with_audit(transaction_id, {}, "webhook"))
    again = asyncio.run(completion.handle_failed_transaction_with_audit(transaction_id, {}, "polling"))

    assert again.already_processed
    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "failed"
    assert transaction.race_condition_winner == "webhook"


def test_failure_cascade_never_downgrades_completed_purchase(
    intents, completion, make_purchase, dispatched_transaction, load
):
    transaction_id, purchase_id = dispatched_transaction
    settled = make_purchase(purchasable_id="other", payment_status="completed", transaction_id=transaction_id)

    asyncio.run(completion.handle_failed_transaction_with_audit(transaction_id, {}, "polling"))

    assert load(Purchase, settled.id).payment_status == "completed"
    assert load(Purchase, purchase_id).payment_status == "failed"


def test_failure_status_must_be_a_failure(completion, dispatched_transaction):
    transaction_id, _ = dispatched_transaction
    with pytest.raises(ValueError):
        asyncio.run(
            completion.handle_failed_transaction_with_audit(transaction_id, {}, "polling", terminal_status="completed")
        )


def _seed_dispatched(factory, transaction_id="txn_threads"):
    with factory() as db:
        db.add(
            Transaction(
                id=transaction_id,
                buyer_id="buyer_1",
                total_amount=Decimal("100"),
                payment_status="in_progress",
                gateway_page_uid=f"page_{transaction_id}",
                expires_at=utcnow() + timedelta(minutes=30),
                gateway_response={"coupon_info": {"applied_coupons": []}},
            )
        )
        db.add(
            Purchase(
                buyer_id="buyer_1",
                purchasable_type="workshop",
                purchasable_id="item_1",
                original_price=Decimal("100"),
                payment_status="pending",
                transaction_id=transaction_id,
            )
        )
        db.commit()
    return transaction_id


def test_claims_from_threads_have_exactly_one_winner(file_session_factory):
    transaction_id = _seed_dispatched(file_session_factory)
    sources = [CompletionSource.WEBHOOK, CompletionSource.POLLING] * 4
    barrier = threading.Barrier(len(sources))

    def claim(source):
        service = PaymentCompletionService(file_session_factory, SubscriptionService(file_session_factory))
        barrier.wait()
        return service.atomic_status_update(transaction_id, source, TransactionStatus.COMPLETED)

    with ThreadPoolExecutor(max_workers=len(sources)) as pool:
        claims = list(pool.map(claim, sources))

    assert sum(1 for claim in claims if claim.won) == 1
    assert {claim.current_status for claim in claims} == {"completed"}
    outcomes = [entry.outcome.value for entry in _claims(file_session_factory, transaction_id)]
    assert outcomes.count("won_race") == 1
    assert outcomes.count("lost_race") == len(sources) - 1
    with file_session_factory() as db:
        transaction = db.get(Transaction, transaction_id)
    assert transaction.processing_attempts == len(sources)


def test_concurrent_metadata_writes_keep_every_key(file_session_factory):
    transaction_id = _seed_dispatched(file_session_factory)
    keys = [f"annotation_{index}" for index in range(8)]
    barrier = threading.Barrier(len(keys))

    def annotate(key):
        barrier.wait()
        with file_session_factory() as db:
            merge_transaction_metadata(db, transaction_id, key, {"written_by": key})
            db.commit()

    with ThreadPoolExecutor(max_workers=len(keys)) as pool:
        list(pool.map(annotate, keys))

    with file_session_factory() as db:
        document = db.get(Transaction, transaction_id).gateway_response
    assert document["coupon_info"] == {"applied_coupons": []}
    for key in keys:
        assert document[key] == {"written_by": key}


def test_nested_metadata_key_rejected(session_factory, dispatched_transaction):
    transaction_id, _ = dispatched_transaction
    with session_factory() as db:
        with pytest.raises(ValueError):
            merge_transaction_metadata(db, transaction_id, "payplus_page.page_request_uid", "page_1")


def test_completion_after_expiry_is_flagged_for_reconciliation(
    session_factory, completion, dispatched_transaction, load
):
    transaction_id, purchase_id = dispatched_transaction
    asyncio.run(
        completion.handle_failed_transaction_with_audit(
            transaction_id, None, "polling", reason="payment window expired", terminal_status="expired"
        )
    )

    late = asyncio.run(
        completion.process_completion(
            transaction_id, {"transaction": {"uid": "gw_late", "status_code": "000"}}, "webhook"
        )
    )

    assert late.success is False
    assert late.already_processed is True
    assert late.requires_reconciliation is True
    assert late.status == "expired"
    transaction = load(Transaction, transaction_id)
    assert transaction.payment_status == "expired"
    flag = transaction.gateway_response["requires_reconciliation"]
    assert flag["reported_by"] == "webhook"
    assert flag["settled_by"] == "polling"
    assert flag["gateway_transaction_uid"] == "gw_late"
    assert load(Purchase, purchase_id).payment_status == "failed"
    with session_factory() as db:
        last = load_status_history(db, transaction_id)[-1]
    assert last.event_type.value == "completion_error"
    assert last.detail["status"] == "expired"


def test_exhausted_coupon_is_not_committed(session_factory, intents, completion, make_purchase, load):
    with session_factory() as db:
        db.add(Coupon(code="LAUNCH", usage_count=5, usage_limit=5))
        db.commit()
    purchase = make_purchase(discount_amount="10")
    intent = asyncio.run(
        intents.create_payment_intent([purchase.id], "buyer_1", applied_discounts=[{"code": "LAUNCH"}])
    )

    result = asyncio.run(completion.process_completion(intent.transaction_id, {}, "webhook"))

    assert result.success and not result.already_processed
    assert result.details["coupons_committed"] == 0
    assert any("LAUNCH" in error for error in result.details["side_effect_errors"])
    assert load(Coupon, "LAUNCH").usage_count == 5
    assert load(Purchase, purchase.id).payment_status == "completed"


def test_failure_cascade_releases_undispatched_cart_items(session_factory, completion, make_purchase, load):
    purchase = make_purchase()
    with session_factory() as db:
        db.add(
            Transaction(
                id="txn_undispatched",
                buyer_id="buyer_1",
                total_amount=Decimal("100"),
                payment_status="pending",
                expires_at=utcnow() - timedelta(minutes=1),
            )
        )
        db.get(Purchase, purchase.id).transaction_id = "txn_undispatched"
        db.commit()

    result = asyncio.run(
        completion.handle_failed_transaction_with_audit(
            "txn_undispatched", None, "polling", terminal_status="expired"
        )
    )

    assert result.status == "expired"
    released = load(Purchase, purchase.id)
    assert released.payment_status == "cart"
    assert released.transaction_id is None
