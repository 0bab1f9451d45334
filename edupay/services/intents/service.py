"""Payment intent orchestrator.

Turns a buyer's cart into one Transaction and picks how it gets paid: free
checkout, a charge against a stored token, or a hosted payment page. Calling
it again with the same cart resumes the existing Transaction instead of
creating a second one.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, or_, select, update

from edupay.common.clock import as_utc, utcnow
from edupay.common.config import settings
from edupay.common.errors import (
    CartItemLockedError,
    CartValidationError,
    GatewayDispatchError,
    GatewayError,
    InconsistentLinkError,
    PaymentInProgressError,
    TransactionNotFoundError,
)
from edupay.common.logging import logger, transaction_context
from edupay.common.metrics import payment_intents_total
from edupay.common.pricing import ZERO, calc_final_purchase_price
from edupay.common.state_machine import (
    CLAIMABLE_TRANSACTION_STATUSES,
    DISPATCHABLE_TOKEN_CHARGE_STATES,
    RETRYABLE_TRANSACTION_STATUSES,
    UNRESOLVED_TOKEN_CHARGE_STATES,
    CompletionSource,
    PurchaseStatus,
    TokenChargeState,
    TransactionStatus,
    purchase_sources_for,
)
from edupay.common.tracing import tracer
from edupay.services.completion.service import PaymentCompletionService
from edupay.services.gateway.classify import classify
from edupay.services.gateway.schemas import (
    CallbackUrls,
    CustomerInfo,
    GatewayOutcome,
    LineItem,
    RecurringConfig,
)
from edupay.services.ledger.audit import AuditEventType, AuditOutcome, record_status_event
from edupay.services.ledger.models import CustomerToken, Purchase, Transaction, new_transaction_id
from edupay.services.ledger.store import (
    get_transaction,
    linked_purchases,
    merge_transaction_metadata,
    update_purchases_where,
    update_transaction_where,
)


# Link conflicts are retried this many times before the request is rejected.
MAX_LINK_ATTEMPTS = 3
RETRY_ELIGIBLE_LINKED_STATUSES = (PurchaseStatus.PENDING.value, PurchaseStatus.FAILED.value)
RESETTABLE_PURCHASE_STATUSES = purchase_sources_for(PurchaseStatus.CART) | {PurchaseStatus.CART}
UNRESOLVED_TOKEN_STATES = [state.value for state in UNRESOLVED_TOKEN_CHARGE_STATES]
DISPATCHABLE_TOKEN_STATES = [state.value for state in DISPATCHABLE_TOKEN_CHARGE_STATES]


@dataclass
class IntentResult:
    transaction_id: str
    payment_url: str | None
    total_amount: Decimal
    status: str
    purchase_count: int
    expires_at: datetime | None
    is_free: bool
    path: str


class PaymentIntentService:
    """Creates, resumes and dispatches payment intents."""

    def __init__(
        self,
        session_factory,
        gateway,
        completion: PaymentCompletionService,
        ttl_minutes: int | None = None,
        currency: str | None = None,
        callback_url: str | None = None,
        frontend_origin: str | None = None,
        token_charge_stale_seconds: int | None = None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.completion = completion
        self.ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else settings.payment_intent_ttl_minutes)
        self.currency = currency or settings.currency
        self.callback_url = callback_url or settings.payplus_callback_url
        self.frontend_origin = frontend_origin or settings.frontend_origin
        self.token_charge_stale = timedelta(
            seconds=token_charge_stale_seconds
            if token_charge_stale_seconds is not None
            else settings.token_charge_stale_seconds
        )
        self.service_name = service_name or settings.service_name

    async def create_payment_intent(
        self,
        cart_item_ids: list[str],
        buyer_id: str,
        applied_discounts: list[Any] | None = None,
        environment: str = "production",
        frontend_origin: str | None = None,
        customer: CustomerInfo | None = None,
    ) -> IntentResult:
        """Create or resume the Transaction paying for `cart_item_ids`."""

        requested = list(dict.fromkeys(cart_item_ids or []))
        if not requested:
            raise CartValidationError("no cart items requested")
        customer = customer or CustomerInfo(buyer_id=buyer_id)
        origin = frontend_origin or self.frontend_origin

        with tracer.start_as_current_span("payments.create_intent") as span:
            span.set_attribute("buyer.id", buyer_id)
            span.set_attribute("cart.size", len(requested))
            for _ in range(MAX_LINK_ATTEMPTS):
                purchases = self._load_eligible_purchases(requested, buyer_id)
                existing = await self._reconcile_links(purchases, requested)
                if existing is not None:
                    return await self._resume(existing, customer, origin)
                if any(purchase.transaction_id for purchase in purchases):
                    # links were reset or cleared; reload the now-unlinked cart rows
                    purchases = self._load_eligible_purchases(requested, buyer_id)

                total = sum((calc_final_purchase_price(purchase) for purchase in purchases), ZERO)
                transaction = self._create_and_link(
                    purchases, buyer_id, total, environment, applied_discounts, customer
                )
                if transaction is None:
                    logger.info("purchase link conflict buyer_id=%s; reconciling again", buyer_id)
                    continue

                span.set_attribute("transaction.id", transaction.id)
                with transaction_context(transaction.id):
                    if total == ZERO:
                        return await self._complete_free(transaction, len(purchases))
                    paid = await self._try_stored_token(transaction, customer, len(purchases))
                    if paid is not None:
                        return paid
                    return await self._dispatch_hosted_page(transaction, customer, origin)
        raise CartValidationError("cart items are being checked out by another request")

    def _load_eligible_purchases(self, requested: list[str], buyer_id: str) -> list[Purchase]:
        """Re-entry guard: every requested id must be a payable purchase of this buyer."""

        with self.session_factory() as db:
            purchases = list(
                db.execute(
                    select(Purchase)
                    .where(
                        Purchase.id.in_(requested),
                        Purchase.buyer_id == buyer_id,
                        or_(
                            Purchase.payment_status == PurchaseStatus.CART.value,
                            and_(
                                Purchase.payment_status.in_(RETRY_ELIGIBLE_LINKED_STATUSES),
                                Purchase.transaction_id.is_not(None),
                            ),
                        ),
                    )
                    .order_by(Purchase.created_at.asc())
                    .execution_options(populate_existing=True)
                )
                .scalars()
                .all()
            )
        if len(purchases) != len(requested):
            found = {purchase.id for purchase in purchases}
            missing = [purchase_id for purchase_id in requested if purchase_id not in found]
            raise CartValidationError(f"cart items not found or not payable: {', '.join(missing)}")
        return purchases

    async def _reconcile_links(self, purchases: list[Purchase], requested: list[str]) -> Transaction | None:
        """Return an active Transaction to resume, or None after clearing dead links."""

        linked_ids = {purchase.transaction_id for purchase in purchases if purchase.transaction_id}
        if not linked_ids:
            return None
        if len(linked_ids) > 1:
            raise InconsistentLinkError(
                f"cart items are linked to different transactions: {', '.join(sorted(linked_ids))}"
            )
        transaction_id = next(iter(linked_ids))

        with self.session_factory() as db:
            transaction = get_transaction(db, transaction_id)
            if transaction is None:
                cleared = db.execute(
                    update(Purchase)
                    .where(
                        Purchase.transaction_id == transaction_id,
                        Purchase.id.in_(requested),
                        Purchase.payment_status.in_([status.value for status in RESETTABLE_PURCHASE_STATUSES]),
                    )
                    .values(transaction_id=None, payment_status=PurchaseStatus.CART.value, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                ).rowcount
                db.commit()
                logger.warning("stale purchase links cleared transaction_id=%s purchases=%s", transaction_id, cleared)
                return None
            other_links = db.execute(
                select(Purchase.id).where(Purchase.transaction_id == transaction_id)
            ).scalars().all()

        status = transaction.status
        if status in CLAIMABLE_TRANSACTION_STATUSES:
            if set(other_links) != set(requested):
                raise InconsistentLinkError(
                    f"transaction {transaction_id} is in flight for a different set of cart items"
                )
            if self._is_stale_undispatched(transaction):
                if not self._expire_undispatched(transaction):
                    # another request dispatched or settled it first
                    return await self._reconcile_links(purchases, requested)
                self._reset_links(transaction_id)
                return None
            return transaction
        if status in RETRYABLE_TRANSACTION_STATUSES:
            self._reset_links(transaction_id)
            return None
        raise CartItemLockedError(
            f"transaction {transaction_id} is already completed; purchases are awaiting reconciliation"
        )

    @staticmethod
    def _is_stale_undispatched(transaction: Transaction) -> bool:
        return (
            transaction.status == TransactionStatus.PENDING
            and not transaction.payment_url
            and transaction.token_charge_state not in UNRESOLVED_TOKEN_STATES
            and transaction.expires_at is not None
            and as_utc(transaction.expires_at) <= utcnow()
        )

    def _expire_undispatched(self, transaction: Transaction) -> bool:
        with self.session_factory() as db:
            expired = update_transaction_where(
                db,
                transaction.id,
                [TransactionStatus.PENDING],
                {"payment_status": TransactionStatus.EXPIRED.value},
                _token_charge_dispatchable(),
                payment_url=None,
            )
            if expired:
                record_status_event(
                    db,
                    transaction.id,
                    AuditEventType.EXPIRY,
                    from_status=TransactionStatus.PENDING,
                    to_status=TransactionStatus.EXPIRED,
                    outcome=AuditOutcome.RECORDED,
                    detail={"reason": "never_dispatched"},
                )
            db.commit()
        logger.info("undispatched transaction expired transaction_id=%s applied=%s", transaction.id, bool(expired))
        return bool(expired)

    def _reset_links(self, transaction_id: str) -> None:
        """Return purchases of a dead transaction to the cart; the transaction itself is kept."""

        with self.session_factory() as db:
            reset = update_purchases_where(
                db,
                transaction_id,
                RESETTABLE_PURCHASE_STATUSES,
                {"payment_status": PurchaseStatus.CART.value, "transaction_id": None},
            )
            record_status_event(
                db,
                transaction_id,
                AuditEventType.RETRY_RESET,
                outcome=AuditOutcome.RESET,
                detail={"purchases_reset": reset},
            )
            db.commit()
        logger.info("purchases reset for retry transaction_id=%s purchases=%s", transaction_id, reset)

    def _create_and_link(
        self,
        purchases: list[Purchase],
        buyer_id: str,
        total: Decimal,
        environment: str,
        applied_discounts: list[Any] | None,
        customer: CustomerInfo,
    ) -> Transaction | None:
        """Insert a pending Transaction and link the cart to it in one DB transaction.

        Returns None when another request linked any of the purchases first.
        """

        now = utcnow()
        purchase_ids = [purchase.id for purchase in purchases]
        with self.session_factory() as db:
            transaction = Transaction(
                id=new_transaction_id(),
                buyer_id=buyer_id,
                total_amount=total,
                currency=self.currency,
                payment_status=TransactionStatus.PENDING.value,
                payment_method="free" if total == ZERO else "payplus",
                environment=environment,
                expires_at=now + self.ttl,
                processing_attempts=0,
                gateway_response={
                    "coupon_info": _coupon_snapshot(purchases, applied_discounts),
                    "customer_info": {"buyer_id": customer.buyer_id, "email": customer.email, "name": customer.name},
                },
                created_at=now,
                updated_at=now,
            )
            db.add(transaction)
            db.flush()
            linked = db.execute(
                update(Purchase)
                .where(
                    Purchase.id.in_(purchase_ids),
                    Purchase.buyer_id == buyer_id,
                    Purchase.payment_status == PurchaseStatus.CART.value,
                    Purchase.transaction_id.is_(None),
                )
                .values(transaction_id=transaction.id, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if linked != len(purchase_ids):
                db.rollback()
                return None
            record_status_event(
                db,
                transaction.id,
                AuditEventType.CREATED,
                to_status=TransactionStatus.PENDING,
                outcome=AuditOutcome.RECORDED,
                detail={"purchase_ids": purchase_ids, "total_amount": str(total)},
            )
            db.commit()
        logger.info(
            "transaction created transaction_id=%s buyer_id=%s total=%s purchases=%s",
            transaction.id,
            buyer_id,
            total,
            len(purchase_ids),
        )
        return transaction

    def _result(self, transaction_id: str, path: str) -> IntentResult:
        with self.session_factory() as db:
            transaction = get_transaction(db, transaction_id, with_purchases=True)
        return IntentResult(
            transaction_id=transaction.id,
            payment_url=transaction.payment_url,
            total_amount=transaction.total_amount,
            status=transaction.payment_status,
            purchase_count=len(transaction.purchases),
            expires_at=transaction.expires_at,
            is_free=transaction.total_amount == ZERO,
            path=path,
        )

    async def _resume(self, transaction: Transaction, customer: CustomerInfo, origin: str) -> IntentResult:
        with transaction_context(transaction.id):
            if transaction.payment_url:
                payment_intents_total.labels(service=self.service_name, path="reused").inc()
                logger.info("intent reused transaction_id=%s", transaction.id)
                return self._result(transaction.id, "reused")
            state = transaction.token_charge_state
            if state == TokenChargeState.IN_FLIGHT.value and not self._token_charge_is_stale(transaction):
                raise PaymentInProgressError(
                    f"a stored-card charge for {transaction.id} is in progress", transaction.id
                )
            if state == TokenChargeState.APPROVED.value:
                return self._current_result(transaction.id)
            if state in UNRESOLVED_TOKEN_STATES:
                resolved = await self._resolve_ambiguous_charge(transaction)
                if resolved is not None:
                    return resolved
            return await self._dispatch_hosted_page(transaction, customer, origin)

    def _token_charge_is_stale(self, transaction: Transaction) -> bool:
        started = as_utc(transaction.token_charge_started_at)
        return started is None or started + self.token_charge_stale <= utcnow()

    def _current_result(self, transaction_id: str) -> IntentResult:
        """Report the path that already paid for or dispatched the transaction."""

        with self.session_factory() as db:
            transaction = get_transaction(db, transaction_id)
        status = transaction.status
        winner = transaction.race_condition_winner
        if status == TransactionStatus.COMPLETED:
            if winner == CompletionSource.TOKEN_CHARGE.value:
                return self._result(transaction_id, "token")
            if winner == CompletionSource.FREE.value:
                return self._result(transaction_id, "free")
            return self._result(transaction_id, "hosted")
        if status in RETRYABLE_TRANSACTION_STATUSES:
            raise GatewayDispatchError(
                f"transaction {transaction_id} was settled as {status.value} before it could be paid", transaction_id
            )
        if transaction.payment_url:
            return self._result(transaction_id, "reused")
        if transaction.token_charge_state == TokenChargeState.APPROVED.value:
            return self._result(transaction_id, "token")
        raise PaymentInProgressError(f"payment for {transaction_id} is in progress", transaction_id)

    async def _complete_free(self, transaction: Transaction, purchase_count: int) -> IntentResult:
        await self.completion.process_completion(transaction.id, {}, CompletionSource.FREE)
        payment_intents_total.labels(service=self.service_name, path="free").inc()
        logger.info("free checkout completed transaction_id=%s purchases=%s", transaction.id, purchase_count)
        return self._result(transaction.id, "free")

    def _default_token(self, buyer_id: str) -> CustomerToken | None:
        with self.session_factory() as db:
            return db.execute(
                select(CustomerToken)
                .where(CustomerToken.buyer_id == buyer_id, CustomerToken.is_active.is_(True))
                .order_by(CustomerToken.is_default.desc(), CustomerToken.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()

    def _record_token_attempt(
        self, transaction_id: str, outcome: AuditOutcome, state: TokenChargeState | str, detail: dict[str, Any]
    ) -> None:
        state = TokenChargeState(state)
        values: dict[str, Any] = {"token_charge_state": state.value}
        if state == TokenChargeState.APPROVED:
            values["payment_method"] = "payplus_token"
        with self.session_factory() as db:
            record_status_event(
                db,
                transaction_id,
                AuditEventType.TOKEN_CHARGE,
                from_status=TransactionStatus.PENDING,
                to_status=TransactionStatus.PENDING,
                source=CompletionSource.TOKEN_CHARGE,
                outcome=outcome,
                detail=detail,
            )
            db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            merge_transaction_metadata(db, transaction_id, "token_charge", {"state": state.value, **detail})
            db.commit()

    def _claim_token_charge(self, transaction_id: str, token_id: str) -> bool:
        """Mark the charge in flight; only an undispatched transaction with no prior charge qualifies."""

        with self.session_factory() as db:
            won = update_transaction_where(
                db,
                transaction_id,
                [TransactionStatus.PENDING],
                {"token_charge_state": TokenChargeState.IN_FLIGHT.value, "token_charge_started_at": utcnow()},
                payment_url=None,
                token_charge_state=None,
            )
            db.commit()
        logger.info("token charge claim transaction_id=%s token_id=%s won=%s", transaction_id, token_id, bool(won))
        return bool(won)

    async def _try_stored_token(
        self, transaction: Transaction, customer: CustomerInfo, purchase_count: int
    ) -> IntentResult | None:
        """Charge the buyer's stored token; None means fall back to a hosted page."""

        token = self._default_token(transaction.buyer_id)
        if token is None:
            return None
        if not self._claim_token_charge(transaction.id, token.id):
            return self._current_result(transaction.id)
        try:
            charge = await self.gateway.charge_stored_token(
                token.token,
                transaction.total_amount,
                customer,
                currency=transaction.currency,
                reference=transaction.id,
            )
        except GatewayError as exc:
            logger.warning("token charge outcome unknown transaction_id=%s error=%s", transaction.id, exc)
            self._record_token_attempt(
                transaction.id, AuditOutcome.AMBIGUOUS, "ambiguous", {"token_id": token.id, "error": str(exc)}
            )
            return await self._resolve_ambiguous_charge(transaction)

        if not charge.approved:
            logger.info("token charge declined transaction_id=%s reason=%s", transaction.id, charge.error)
            self._record_token_attempt(
                transaction.id, AuditOutcome.DECLINED, "declined", {"token_id": token.id, "error": charge.error}
            )
            return None

        self._record_token_attempt(
            transaction.id,
            AuditOutcome.APPROVED,
            "approved",
            {"token_id": token.id, "gateway_transaction_id": charge.gateway_transaction_id},
        )
        await self.completion.process_completion(transaction.id, charge.raw, CompletionSource.TOKEN_CHARGE)
        payment_intents_total.labels(service=self.service_name, path="token").inc()
        logger.info("token charge completed transaction_id=%s purchases=%s", transaction.id, purchase_count)
        return self._result(transaction.id, "token")

    async def _resolve_ambiguous_charge(self, transaction: Transaction) -> IntentResult | None:
        """Ask the gateway whether an interrupted token charge went through.

        Raises `GatewayDispatchError` while the answer is unknown, so no hosted
        page is ever created on top of a charge that may have succeeded.
        """

        try:
            found = await self.gateway.lookup_charge(transaction.id)
        except GatewayError as exc:
            raise GatewayDispatchError(
                f"token charge outcome for {transaction.id} is unknown: {exc}", transaction.id
            ) from exc

        if found is None:
            self._record_token_attempt(transaction.id, AuditOutcome.DECLINED, "not_found", {"lookup": "no_charge"})
            return None
        outcome = classify(found.indicators)
        if outcome == GatewayOutcome.COMPLETED:
            self._record_token_attempt(
                transaction.id, AuditOutcome.APPROVED, "approved", {"lookup": "charge_found"}
            )
            await self.completion.process_completion(transaction.id, found.raw, CompletionSource.TOKEN_CHARGE)
            payment_intents_total.labels(service=self.service_name, path="token").inc()
            return self._result(transaction.id, "token")
        if outcome == GatewayOutcome.FAILED:
            self._record_token_attempt(transaction.id, AuditOutcome.DECLINED, "declined", {"lookup": "charge_failed"})
            return None
        raise PaymentInProgressError(f"token charge for {transaction.id} is still processing", transaction.id)

    def _page_request(self, transaction_id: str, origin: str) -> tuple[list[LineItem], RecurringConfig | None, CallbackUrls]:
        with self.session_factory() as db:
            purchases = linked_purchases(db, transaction_id)
        items = [
            LineItem(
                name=(purchase.meta or {}).get("product_title") or f"{purchase.purchasable_type} {purchase.purchasable_id}",
                amount=calc_final_purchase_price(purchase),
                reference=purchase.id,
            )
            for purchase in purchases
        ]
        recurring = None
        subscriptions = [purchase for purchase in purchases if purchase.is_subscription]
        if subscriptions:
            recurring = RecurringConfig(
                billing_period=(subscriptions[0].meta or {}).get("billing_period") or "monthly"
            )
        origin = origin.rstrip("/")
        callbacks = CallbackUrls(
            success=f"{origin}/payment-result?status=success&transaction_id={transaction_id}",
            failure=f"{origin}/payment-result?status=failure&transaction_id={transaction_id}",
            callback=self.callback_url,
        )
        return items, recurring, callbacks

    async def _dispatch_hosted_page(self, transaction: Transaction, customer: CustomerInfo, origin: str) -> IntentResult:
        """Create the hosted page and move the Transaction to `in_progress`."""

        items, recurring, callbacks = self._page_request(transaction.id, origin)
        try:
            page = await self.gateway.create_hosted_payment_page(
                transaction.total_amount,
                transaction.currency,
                customer,
                items,
                callbacks,
                recurring=recurring,
                reference=transaction.id,
            )
        except GatewayError as exc:
            with self.session_factory() as db:
                record_status_event(
                    db,
                    transaction.id,
                    AuditEventType.DISPATCH,
                    from_status=TransactionStatus.PENDING,
                    to_status=TransactionStatus.PENDING,
                    outcome=AuditOutcome.GATEWAY_ERROR,
                    detail={"error": str(exc)},
                )
                db.commit()
            payment_intents_total.labels(service=self.service_name, path="dispatch_failed").inc()
            logger.error("hosted page dispatch failed transaction_id=%s error=%s", transaction.id, exc)
            raise GatewayDispatchError(f"could not create payment page: {exc}", transaction.id) from exc

        with self.session_factory() as db:
            won = update_transaction_where(
                db,
                transaction.id,
                [TransactionStatus.PENDING],
                {
                    "payment_status": TransactionStatus.IN_PROGRESS.value,
                    "payment_url": page.page_url,
                    "gateway_page_uid": page.page_reference,
                },
                _token_charge_dispatchable(),
                payment_url=None,
            )
            if won:
                update_purchases_where(
                    db, transaction.id, [PurchaseStatus.CART], {"payment_status": PurchaseStatus.PENDING.value}
                )
                merge_transaction_metadata(
                    db,
                    transaction.id,
                    "payplus_page",
                    {"page_request_uid": page.page_reference, "created_at": utcnow().isoformat()},
                )
            record_status_event(
                db,
                transaction.id,
                AuditEventType.DISPATCH,
                from_status=TransactionStatus.PENDING,
                to_status=TransactionStatus.IN_PROGRESS if won else None,
                outcome=AuditOutcome.DISPATCHED if won else AuditOutcome.LOST_RACE,
                detail={"page_request_uid": page.page_reference},
            )
            db.commit()

        if not won:
            logger.info("hosted page dispatch lost transaction_id=%s; returning current state", transaction.id)
            return self._current_result(transaction.id)
        payment_intents_total.labels(service=self.service_name, path="hosted").inc()
        logger.info("hosted page dispatched transaction_id=%s page_uid=%s", transaction.id, page.page_reference)
        return self._result(transaction.id, "hosted")

    def get_payment_status(self, transaction_id: str) -> dict[str, Any]:
        """Read-only projection of a Transaction and its purchases."""

        with self.session_factory() as db:
            db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(status_last_checked_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
            transaction = get_transaction(db, transaction_id, with_purchases=True)
            if transaction is None:
                raise TransactionNotFoundError(f"transaction {transaction_id} not found")
            return {
                "transaction_id": transaction.id,
                "buyer_id": transaction.buyer_id,
                "status": transaction.payment_status,
                "payment_url": transaction.payment_url,
                "total_amount": transaction.total_amount,
                "currency": transaction.currency,
                "payment_method": transaction.payment_method,
                "expires_at": transaction.expires_at,
                "completed_at": transaction.completed_at,
                "race_condition_winner": transaction.race_condition_winner,
                "processing_attempts": transaction.processing_attempts,
                "purchases": [
                    {
                        "id": purchase.id,
                        "purchasable_type": purchase.purchasable_type,
                        "purchasable_id": purchase.purchasable_id,
                        "payment_status": purchase.payment_status,
                        "payment_amount": calc_final_purchase_price(purchase),
                    }
                    for purchase in transaction.purchases
                ],
            }


def _coupon_snapshot(purchases: list[Purchase], applied_discounts: list[Any] | None) -> dict[str, Any]:
    """Coupons to commit once the payment completes."""

    applied = []
    for discount in applied_discounts or []:
        code = discount.get("code") if isinstance(discount, dict) else discount
        if code:
            applied.append({"code": str(code)})
    total_discount = sum(
        (purchase.discount_amount or ZERO for purchase in purchases),
        ZERO,
    )
    return {"applied_coupons": applied, "total_discount": str(total_discount)}


def _token_charge_dispatchable():
    """A hosted page may not be created while a stored-token charge could still succeed."""

    return or_(
        Transaction.token_charge_state.is_(None),
        Transaction.token_charge_state.in_(DISPATCHABLE_TOKEN_STATES),
    )
