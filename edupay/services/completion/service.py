"""Completion arbiter.

The only component that moves a transaction into a terminal status. Webhooks,
the reconciliation poller, token charges and free checkouts all call in here;
a single conditional UPDATE decides which of them wins, and only the winner
runs the purchase cascade and the side effects that follow it.
"""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select, update

from edupay.common.clock import as_utc, elapsed_ms, utcnow
from edupay.common.config import settings
from edupay.common.errors import CompletionProcessingError, TransactionNotFoundError
from edupay.common.logging import logger, transaction_context
from edupay.common.metrics import (
    completion_claims_total,
    completion_errors_total,
    failure_claims_total,
    payment_e2e_seconds,
)
from edupay.common.state_machine import (
    CLAIMABLE_TRANSACTION_STATUSES,
    FAILURE_TRANSACTION_STATUSES,
    CompletionSource,
    PurchaseStatus,
    TransactionStatus,
    purchase_status_for,
    purchase_sources_for,
    validate_transition,
)
from edupay.common.tracing import tracer
from edupay.services.completion.effects import CompletionHooks, EffectCollector
from edupay.services.ledger.audit import AuditEventType, AuditOutcome, record_status_event
from edupay.services.ledger.models import Purchase, Transaction
from edupay.services.ledger.store import (
    annotate_purchases,
    get_transaction,
    linked_purchases,
    merge_transaction_metadata,
    update_purchases_where,
    update_transaction_where,
)
from edupay.services.subscriptions.service import SubscriptionService


@dataclass
class CompletionResult:
    success: bool
    already_processed: bool
    transaction_id: str
    status: str
    processed_by: str | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    requires_reconciliation: bool = False


@dataclass
class _Claim:
    won: bool
    from_status: str
    current_status: str
    winner: str | None
    transaction: Transaction | None = None


def gateway_transaction_uid(payload: dict[str, Any] | None) -> str | None:
    if not isinstance(payload, dict):
        return None
    transaction = payload.get("transaction")
    if not isinstance(transaction, dict):
        data = payload.get("data")
        transaction = data.get("transaction") if isinstance(data, dict) else None
    if isinstance(transaction, dict) and transaction.get("uid"):
        return str(transaction["uid"])
    uid = payload.get("transaction_uid")
    return str(uid) if uid else None


def coupon_codes(gateway_response: dict[str, Any] | None) -> list[str]:
    """Codes snapshotted onto the transaction when the intent was priced."""

    coupon_info = (gateway_response or {}).get("coupon_info") or {}
    codes = []
    for applied in coupon_info.get("applied_coupons") or []:
        code = applied.get("code") if isinstance(applied, dict) else applied
        if code and code not in codes:
            codes.append(str(code))
    return codes


class PaymentCompletionService:
    """Settles transactions exactly once, whichever caller gets there first."""

    def __init__(
        self,
        session_factory,
        subscriptions: SubscriptionService | None = None,
        hooks: CompletionHooks | None = None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.subscriptions = subscriptions or SubscriptionService(session_factory)
        self.hooks = hooks or CompletionHooks(session_factory)
        self.service_name = service_name or settings.service_name

    def _observe_terminal_e2e(self, transaction: Transaction, terminal_state: str) -> None:
        if transaction.created_at is None:
            return
        elapsed = max(0.0, (utcnow() - as_utc(transaction.created_at)).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=terminal_state).observe(elapsed)

    def atomic_status_update(
        self,
        transaction_id: str,
        source: CompletionSource,
        new_status: TransactionStatus,
        gateway_payload: dict[str, Any] | None = None,
        event_type: AuditEventType = AuditEventType.CLAIM,
    ) -> _Claim:
        """Claim a non-terminal transaction for `new_status`.

        Exactly one caller sees `won=True`. Every attempt, won or lost, bumps
        `processing_attempts` and appends an audit entry.
        """

        validate_transition(TransactionStatus.PENDING, new_status)
        start = utcnow()
        with self.session_factory() as db:
            prior = get_transaction(db, transaction_id)
            if prior is None:
                raise TransactionNotFoundError(f"transaction {transaction_id} not found")
            from_status = prior.payment_status

            if source == CompletionSource.WEBHOOK:
                db.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction_id, Transaction.webhook_received_at.is_(None))
                    .values(webhook_received_at=start)
                    .execution_options(synchronize_session=False)
                )

            values: dict[str, Any] = {
                "payment_status": new_status.value,
                "race_condition_winner": source.value,
                "processing_attempts": Transaction.processing_attempts + 1,
            }
            if new_status == TransactionStatus.COMPLETED:
                values["completed_at"] = start
            gateway_uid = gateway_transaction_uid(gateway_payload)
            if gateway_uid:
                values["gateway_transaction_uid"] = gateway_uid

            won = update_transaction_where(db, transaction_id, CLAIMABLE_TRANSACTION_STATUSES, values) == 1
            if not won:
                db.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction_id)
                    .values(processing_attempts=Transaction.processing_attempts + 1)
                    .execution_options(synchronize_session=False)
                )

            current = get_transaction(db, transaction_id)
            record_status_event(
                db,
                transaction_id,
                event_type,
                from_status=from_status,
                to_status=new_status if won else current.payment_status,
                source=source,
                outcome=AuditOutcome.WON_RACE if won else AuditOutcome.LOST_RACE,
                processing_time_ms=elapsed_ms(start),
                detail={} if won else {"winner": current.race_condition_winner},
            )
            db.commit()

        return _Claim(
            won=won,
            from_status=from_status,
            current_status=current.payment_status,
            winner=current.race_condition_winner,
            transaction=current,
        )

    async def process_completion(
        self,
        transaction_id: str,
        gateway_payload: dict[str, Any] | None,
        source: CompletionSource | str,
    ) -> CompletionResult:
        """Claim the transaction as completed and, if we won, run the cascade."""

        source = CompletionSource(source)
        with transaction_context(transaction_id, source.value), tracer.start_as_current_span(
            "payments.process_completion"
        ) as span:
            span.set_attribute("transaction.id", transaction_id)
            span.set_attribute("completion.source", source.value)

            claim = self.atomic_status_update(transaction_id, source, TransactionStatus.COMPLETED, gateway_payload)
            if not claim.won:
                completion_claims_total.labels(service=self.service_name, source=source.value, outcome="lost").inc()
                span.set_attribute("completion.outcome", "lost_race")
                if claim.current_status in {status.value for status in FAILURE_TRANSACTION_STATUSES}:
                    return self._flag_for_reconciliation(transaction_id, source, claim, gateway_payload)
                logger.info(
                    "completion already processed transaction_id=%s winner=%s",
                    transaction_id,
                    claim.winner,
                )
                return CompletionResult(
                    success=True,
                    already_processed=True,
                    transaction_id=transaction_id,
                    status=claim.current_status,
                    processed_by=claim.winner,
                    message=f"already processed by {claim.winner}",
                )

            completion_claims_total.labels(service=self.service_name, source=source.value, outcome="won").inc()
            span.set_attribute("completion.outcome", "won_race")
            logger.info("completion claimed transaction_id=%s from_status=%s", transaction_id, claim.from_status)
            self._observe_terminal_e2e(claim.transaction, TransactionStatus.COMPLETED.value)

            effects = EffectCollector(self.service_name)
            purchases = self._load_purchases(transaction_id)
            buyers = {purchase.buyer_id for purchase in purchases}
            if len(buyers) == 1 and gateway_payload:
                await effects.run(
                    "token_save",
                    self.hooks.save_customer_token,
                    gateway_payload,
                    next(iter(buyers)),
                    transaction_id,
                    key=transaction_id,
                )

            try:
                purchases_updated, purchases = self._cascade_purchases(
                    transaction_id, TransactionStatus.COMPLETED, source, claim.transaction.payment_method
                )
            except Exception as exc:
                self._record_completion_error(transaction_id, source, exc)
                raise CompletionProcessingError(
                    f"purchase cascade failed after claim: {exc}", transaction_id
                ) from exc

            for purchase in purchases:
                if purchase.is_subscription and purchase.payment_status == PurchaseStatus.COMPLETED.value:
                    await effects.run(
                        "subscription",
                        self.subscriptions.activate_for_purchase,
                        purchase,
                        transaction_id,
                        source.value,
                        gateway_payload,
                        key=purchase.id,
                    )
            for code in coupon_codes(claim.transaction.gateway_response):
                await effects.run("coupon_commit", self.hooks.commit_coupon_usage, code, key=code)
            for purchase in purchases:
                if purchase.purchasable_type == "file":
                    await effects.run(
                        "download_count",
                        self.hooks.increment_file_downloads,
                        purchase.purchasable_id,
                        key=purchase.purchasable_id,
                    )

            details = {
                "purchases_updated": purchases_updated,
                "tokens_saved": sum(
                    1 for o in effects.outcomes if o.effect == "token_save" and o.ok and o.detail.get("saved")
                ),
                "subscriptions_created": effects.succeeded("subscription"),
                "coupons_committed": effects.succeeded("coupon_commit"),
                "downloads_updated": effects.succeeded("download_count"),
                "side_effect_errors": effects.errors(),
            }
            await effects.run(
                "completion_metadata",
                self._store_completion_metadata,
                transaction_id,
                source,
                details,
                effects.as_list(),
                bool(gateway_payload),
                key=transaction_id,
            )
            return CompletionResult(
                success=True,
                already_processed=False,
                transaction_id=transaction_id,
                status=TransactionStatus.COMPLETED.value,
                processed_by=source.value,
                message="completed",
                details=details,
            )

    async def handle_failed_transaction_with_audit(
        self,
        transaction_id: str,
        gateway_payload: dict[str, Any] | None,
        source: CompletionSource | str,
        reason: str | None = None,
        terminal_status: TransactionStatus = TransactionStatus.FAILED,
    ) -> CompletionResult:
        """Claim the transaction for a failure status and fail its purchases."""

        source = CompletionSource(source)
        terminal_status = TransactionStatus(terminal_status)
        if terminal_status not in FAILURE_TRANSACTION_STATUSES:
            raise ValueError(f"{terminal_status.value} is not a failure status")

        with transaction_context(transaction_id, source.value), tracer.start_as_current_span(
            "payments.handle_failure"
        ) as span:
            span.set_attribute("transaction.id", transaction_id)
            span.set_attribute("failure.status", terminal_status.value)
            claim = self.atomic_status_update(
                transaction_id, source, terminal_status, gateway_payload, event_type=AuditEventType.FAILURE
            )
            outcome = "won" if claim.won else "lost"
            failure_claims_total.labels(
                service=self.service_name,
                source=source.value,
                terminal_status=terminal_status.value,
                outcome=outcome,
            ).inc()
            if not claim.won:
                logger.info(
                    "failure already settled transaction_id=%s status=%s winner=%s",
                    transaction_id,
                    claim.current_status,
                    claim.winner,
                )
                return CompletionResult(
                    success=True,
                    already_processed=True,
                    transaction_id=transaction_id,
                    status=claim.current_status,
                    processed_by=claim.winner,
                    message=f"already processed by {claim.winner}",
                )

            logger.info(
                "failure claimed transaction_id=%s status=%s reason=%s", transaction_id, terminal_status.value, reason
            )
            self._observe_terminal_e2e(claim.transaction, terminal_status.value)
            failure_details = {
                "status": terminal_status.value,
                "source": source.value,
                "reason": reason,
                "failed_at": utcnow().isoformat(),
                "gateway_data_received": bool(gateway_payload),
            }
            try:
                purchases_updated, _ = self._cascade_purchases(
                    transaction_id, terminal_status, source, None, failure_details
                )
            except Exception as exc:
                self._record_completion_error(transaction_id, source, exc)
                raise CompletionProcessingError(
                    f"purchase cascade failed after failure claim: {exc}", transaction_id
                ) from exc

            return CompletionResult(
                success=True,
                already_processed=False,
                transaction_id=transaction_id,
                status=terminal_status.value,
                processed_by=source.value,
                message=reason,
                details={"purchases_updated": purchases_updated},
            )

    def _flag_for_reconciliation(
        self,
        transaction_id: str,
        source: CompletionSource,
        claim: _Claim,
        gateway_payload: dict[str, Any] | None,
    ) -> CompletionResult:
        """A payment was reported captured after the transaction settled as a failure."""

        completion_errors_total.labels(service=self.service_name, source=source.value).inc()
        logger.error(
            "completion reported for settled failure transaction_id=%s status=%s winner=%s",
            transaction_id,
            claim.current_status,
            claim.winner,
        )
        annotation = {
            "reason": "completion_after_failure",
            "status": claim.current_status,
            "settled_by": claim.winner,
            "reported_by": source.value,
            "gateway_transaction_uid": gateway_transaction_uid(gateway_payload),
            "reported_at": utcnow().isoformat(),
        }
        with self.session_factory() as db:
            merge_transaction_metadata(db, transaction_id, "requires_reconciliation", annotation)
            record_status_event(
                db,
                transaction_id,
                AuditEventType.COMPLETION_ERROR,
                from_status=claim.current_status,
                to_status=claim.current_status,
                source=source,
                outcome=AuditOutcome.RECORDED,
                detail=annotation,
            )
            db.commit()
        return CompletionResult(
            success=False,
            already_processed=True,
            transaction_id=transaction_id,
            status=claim.current_status,
            processed_by=claim.winner,
            message=f"payment reported captured after {claim.current_status}; requires reconciliation",
            requires_reconciliation=True,
        )

    def _load_purchases(self, transaction_id: str) -> list[Purchase]:
        with self.session_factory() as db:
            return linked_purchases(db, transaction_id)

    def _cascade_purchases(
        self,
        transaction_id: str,
        terminal_status: TransactionStatus,
        source: CompletionSource,
        payment_method: str | None,
        failure_details: dict[str, Any] | None = None,
    ) -> tuple[int, list[Purchase]]:
        """Move linked purchases to the status matching the transaction.

        Only statuses the purchase table allows into the target are moved. On a
        failure, purchases still in the cart were never dispatched and are
        unlinked instead.
        """

        target = purchase_status_for(terminal_status)
        values: dict[str, Any] = {"payment_status": target.value}
        if payment_method:
            values["payment_method"] = payment_method
        with self.session_factory() as db:
            updated = update_purchases_where(db, transaction_id, purchase_sources_for(target), values)
            released = 0
            if target == PurchaseStatus.FAILED:
                released = db.execute(
                    update(Purchase)
                    .where(
                        Purchase.transaction_id == transaction_id,
                        Purchase.payment_status == PurchaseStatus.CART.value,
                    )
                    .values(transaction_id=None, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                ).rowcount
            purchases = linked_purchases(db, transaction_id)
            settled = [purchase for purchase in purchases if purchase.payment_status == target.value]
            if target == PurchaseStatus.COMPLETED:
                annotate_purchases(
                    db,
                    settled,
                    "completion_details",
                    {"transaction_id": transaction_id, "completed_by": source.value, "completed_at": utcnow().isoformat()},
                )
            else:
                annotate_purchases(db, settled, "failure_details", failure_details or {})
                merge_transaction_metadata(db, transaction_id, "failure_details", failure_details or {})
            db.commit()

        stragglers = [purchase.id for purchase in purchases if purchase.payment_status != target.value]
        if stragglers:
            logger.warning(
                "purchases not converged transaction_id=%s target=%s purchase_ids=%s",
                transaction_id,
                target.value,
                stragglers,
            )
        logger.info(
            "purchase cascade transaction_id=%s target=%s updated=%s released=%s",
            transaction_id,
            target.value,
            updated,
            released,
        )
        return updated, purchases

    def _store_completion_metadata(
        self,
        transaction_id: str,
        source: CompletionSource,
        details: dict[str, Any],
        effects: list[dict[str, Any]],
        gateway_data_received: bool,
    ) -> None:
        with self.session_factory() as db:
            merge_transaction_metadata(
                db,
                transaction_id,
                "completion_processing",
                {
                    "processed_by": source.value,
                    "processing_timestamp": utcnow().isoformat(),
                    "gateway_data_received": gateway_data_received,
                    **{key: value for key, value in details.items() if key != "side_effect_errors"},
                    "effects": effects,
                },
            )
            db.commit()

    def _record_completion_error(self, transaction_id: str, source: CompletionSource, exc: Exception) -> None:
        """Leave a durable marker for reconciliation; the original error still propagates."""

        completion_errors_total.labels(service=self.service_name, source=source.value).inc()
        logger.exception("completion cascade failed transaction_id=%s source=%s", transaction_id, source.value)
        try:
            with self.session_factory() as db:
                current = db.execute(
                    select(Transaction.payment_status).where(Transaction.id == transaction_id)
                ).scalar_one_or_none()
                merge_transaction_metadata(
                    db,
                    transaction_id,
                    "error_during_completion",
                    {"source": source.value, "error_message": str(exc), "error_timestamp": utcnow().isoformat()},
                )
                record_status_event(
                    db,
                    transaction_id,
                    AuditEventType.COMPLETION_ERROR,
                    from_status=current,
                    to_status=current,
                    source=source,
                    outcome=AuditOutcome.RECORDED,
                    detail={"error": str(exc)},
                )
                db.commit()
        except Exception:
            logger.exception("could not record completion error transaction_id=%s", transaction_id)
