"""Reconciliation poller.

Safety net for lost or late webhooks: periodically asks the gateway about
every open hosted-page transaction and hands verdicts to the completion
arbiter, exactly as a webhook would.
"""

import asyncio
import time
from datetime import timedelta
from typing import Any

from sqlalchemy import or_, select, update

from edupay.common.clock import as_utc, utcnow
from edupay.common.config import settings
from edupay.common.errors import GatewayError, TransactionNotFoundError
from edupay.common.logging import logger, transaction_context
from edupay.common.metrics import (
    poll_cycle_duration_seconds,
    poll_cycles_total,
    poll_in_progress,
    poll_transactions_total,
)
from edupay.common.state_machine import (
    CLAIMABLE_TRANSACTION_STATUSES,
    CompletionSource,
    UNRESOLVED_TOKEN_CHARGE_STATES,
    TransactionStatus,
    is_terminal,
)
from edupay.common.tracing import tracer
from edupay.services.completion.service import PaymentCompletionService
from edupay.services.gateway.classify import classify
from edupay.services.gateway.schemas import GatewayOutcome
from edupay.services.ledger.audit import (
    AuditEventType,
    AuditOutcome,
    load_status_history,
    race_condition_summary,
    record_status_event,
)
from edupay.services.ledger.models import Transaction
from edupay.services.ledger.store import get_transaction


COUNTER_KEYS = ("checked", "completed", "already_processed", "failed", "expired", "still_pending", "errors")
_DEFAULT = object()


class PaymentPollingService:
    """Single-flight poll cycles plus a timer-driven background loop."""

    def __init__(
        self,
        session_factory,
        gateway,
        completion: PaymentCompletionService,
        batch_limit: int | None = None,
        rate_limit_delay_ms: int | None = None,
        max_age_hours: float | None = _DEFAULT,
        interval_seconds: float | None = None,
        expiry_grace_minutes: int | None = None,
        service_name: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.completion = completion
        self.batch_limit = batch_limit if batch_limit is not None else settings.polling_batch_limit
        self.rate_limit_delay_ms = (
            rate_limit_delay_ms if rate_limit_delay_ms is not None else settings.polling_rate_limit_delay_ms
        )
        self.max_age_hours = settings.polling_max_age_hours if max_age_hours is _DEFAULT else max_age_hours
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.polling_interval_seconds
        self.expiry_grace = timedelta(
            minutes=expiry_grace_minutes if expiry_grace_minutes is not None else settings.expiry_grace_minutes
        )
        self.service_name = service_name or settings.service_name
        self._cycle_running = False
        self._task: asyncio.Task | None = None
        self.cycles_run = 0
        self.last_cycle: dict[str, Any] | None = None
        self.totals = {key: 0 for key in COUNTER_KEYS}

    def _select_candidates(self, limit: int, max_age_hours: float | None) -> list[str]:
        """Open transactions with a hosted page, newest first, least recently checked next."""

        stmt = select(Transaction.id).where(
            Transaction.payment_status.in_([status.value for status in CLAIMABLE_TRANSACTION_STATUSES]),
            Transaction.gateway_page_uid.is_not(None),
        )
        if max_age_hours is not None:
            stmt = stmt.where(Transaction.created_at >= utcnow() - timedelta(hours=max_age_hours))
        stmt = stmt.order_by(
            Transaction.created_at.desc(),
            Transaction.status_last_checked_at.asc().nulls_first(),
        ).limit(limit)
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def _select_abandoned(self, limit: int) -> list[str]:
        """Pending intents that never got a hosted page and whose window has closed."""

        stmt = (
            select(Transaction.id)
            .where(
                Transaction.payment_status == TransactionStatus.PENDING.value,
                Transaction.gateway_page_uid.is_(None),
                Transaction.expires_at < utcnow(),
                or_(
                    Transaction.token_charge_state.is_(None),
                    Transaction.token_charge_state.not_in([state.value for state in UNRESOLVED_TOKEN_CHARGE_STATES]),
                ),
            )
            .order_by(Transaction.expires_at.asc())
            .limit(limit)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    async def _expire_abandoned(self, transaction_id: str) -> str:
        with transaction_context(transaction_id, CompletionSource.POLLING.value):
            result = await self.completion.handle_failed_transaction_with_audit(
                transaction_id,
                None,
                CompletionSource.POLLING,
                reason="intent abandoned before dispatch",
                terminal_status=TransactionStatus.EXPIRED,
            )
        return "already_processed" if result.already_processed else "expired"

    async def poll_all_pending_transactions(
        self,
        limit: int | None = None,
        max_age_hours: float | None = _DEFAULT,
        rate_limit_delay_ms: int | None = None,
    ) -> dict[str, Any]:
        """Run one reconciliation cycle; a no-op while another cycle is running."""

        if self._cycle_running:
            poll_cycles_total.labels(service=self.service_name, result="skipped").inc()
            logger.info("poll cycle skipped; previous cycle still running")
            return {"skipped": True}
        self._cycle_running = True
        poll_in_progress.labels(service=self.service_name).set(1)
        started = time.perf_counter()
        summary: dict[str, Any] = {"skipped": False, **{key: 0 for key in COUNTER_KEYS}}
        try:
            with tracer.start_as_current_span("payments.poll_cycle") as span:
                limit = limit if limit is not None else self.batch_limit
                max_age = self.max_age_hours if max_age_hours is _DEFAULT else max_age_hours
                delay_ms = self.rate_limit_delay_ms if rate_limit_delay_ms is None else rate_limit_delay_ms
                candidates = self._select_candidates(limit, max_age)
                span.set_attribute("poll.candidates", len(candidates))

                for index, transaction_id in enumerate(candidates):
                    if index and delay_ms:
                        await asyncio.sleep(delay_ms / 1000)
                    try:
                        classification = await self._check_transaction(transaction_id)
                    except Exception:
                        logger.exception("poll check failed transaction_id=%s", transaction_id)
                        classification = "errors"
                    summary["checked"] += 1
                    summary[classification] += 1
                    poll_transactions_total.labels(service=self.service_name, classification=classification).inc()
                for transaction_id in self._select_abandoned(limit):
                    try:
                        classification = await self._expire_abandoned(transaction_id)
                    except Exception:
                        logger.exception("abandoned intent expiry failed transaction_id=%s", transaction_id)
                        classification = "errors"
                    summary["checked"] += 1
                    summary[classification] += 1
                    poll_transactions_total.labels(service=self.service_name, classification=classification).inc()
        except Exception:
            poll_cycles_total.labels(service=self.service_name, result="error").inc()
            raise
        else:
            poll_cycles_total.labels(service=self.service_name, result="ok").inc()
        finally:
            elapsed = time.perf_counter() - started
            poll_cycle_duration_seconds.labels(service=self.service_name).observe(elapsed)
            poll_in_progress.labels(service=self.service_name).set(0)
            self._cycle_running = False

        summary["duration_ms"] = int(elapsed * 1000)
        summary["finished_at"] = utcnow().isoformat()
        self.cycles_run += 1
        self.last_cycle = summary
        for key in COUNTER_KEYS:
            self.totals[key] += summary[key]
        logger.info(
            "poll cycle finished checked=%s completed=%s already_processed=%s failed=%s expired=%s errors=%s",
            summary["checked"],
            summary["completed"],
            summary["already_processed"],
            summary["failed"],
            summary["expired"],
            summary["errors"],
        )
        return summary

    def _touch(self, transaction_id: str, outcome: AuditOutcome, status: str, detail: dict[str, Any]) -> None:
        """Poller bookkeeping for a check that changed nothing."""

        with self.session_factory() as db:
            db.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(status_last_checked_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            record_status_event(
                db,
                transaction_id,
                AuditEventType.POLL_CHECK,
                from_status=status,
                to_status=status,
                source=CompletionSource.POLLING,
                outcome=outcome,
                detail=detail,
            )
            db.commit()

    async def _check_transaction(self, transaction_id: str) -> str:
        """Query the gateway for one transaction and act on the verdict."""

        with self.session_factory() as db:
            transaction = get_transaction(db, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"transaction {transaction_id} not found")
        if is_terminal(transaction.status):
            return "already_processed"

        with transaction_context(transaction_id, CompletionSource.POLLING.value):
            try:
                status = await self.gateway.query_transaction_status(transaction.gateway_page_uid)
            except GatewayError as exc:
                logger.warning("gateway status query failed transaction_id=%s error=%s", transaction_id, exc)
                self._touch(transaction_id, AuditOutcome.GATEWAY_ERROR, transaction.payment_status, {"error": str(exc)})
                return "errors"

            outcome = classify(status.indicators)
            payload = {**status.raw, "transaction": status.transaction_data} if status.transaction_data else status.raw
            if outcome == GatewayOutcome.COMPLETED:
                result = await self.completion.process_completion(
                    transaction_id, payload, CompletionSource.POLLING
                )
                if result.requires_reconciliation:
                    return "errors"
                if result.already_processed:
                    logger.info("poll lost completion race transaction_id=%s winner=%s", transaction_id, result.processed_by)
                    return "already_processed"
                return "completed"

            if outcome == GatewayOutcome.FAILED:
                result = await self.completion.handle_failed_transaction_with_audit(
                    transaction_id,
                    payload,
                    CompletionSource.POLLING,
                    reason=f"gateway reported {status.indicators.status or status.indicators.status_code}",
                )
                return "already_processed" if result.already_processed else "failed"

            expires_at = as_utc(transaction.expires_at)
            if expires_at is not None and utcnow() > expires_at + self.expiry_grace:
                result = await self.completion.handle_failed_transaction_with_audit(
                    transaction_id,
                    payload,
                    CompletionSource.POLLING,
                    reason="payment window expired",
                    terminal_status=TransactionStatus.EXPIRED,
                )
                return "already_processed" if result.already_processed else "expired"

            self._touch(
                transaction_id,
                AuditOutcome.STILL_PENDING,
                transaction.payment_status,
                {
                    "gateway_status": status.indicators.status,
                    "status_code": status.indicators.status_code,
                    "has_transaction": status.indicators.has_transaction,
                },
            )
            return "still_pending"

    async def check_specific_transaction(self, transaction_id: str) -> dict[str, Any]:
        """Manual single-transaction check for support tooling."""

        with self.session_factory() as db:
            transaction = get_transaction(db, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"transaction {transaction_id} not found")
        if not transaction.gateway_page_uid:
            classification = "not_dispatched"
        else:
            classification = await self._check_transaction(transaction_id)
        with self.session_factory() as db:
            current = get_transaction(db, transaction_id)
        return {
            "transaction_id": transaction_id,
            "classification": classification,
            "status": current.payment_status,
            "race_condition_winner": current.race_condition_winner,
        }

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.poll_all_pending_transactions()
            except Exception:
                logger.exception("background poll cycle failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Start the background loop on the running event loop."""

        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_forever())
        logger.info("payment poller started interval_s=%s batch_limit=%s", self.interval_seconds, self.batch_limit)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("payment poller stopped")

    def get_polling_status(self) -> dict[str, Any]:
        return {
            "active": self._task is not None and not self._task.done(),
            "cycle_in_progress": self._cycle_running,
            "interval_seconds": self.interval_seconds,
            "batch_limit": self.batch_limit,
            "rate_limit_delay_ms": self.rate_limit_delay_ms,
            "cycles_run": self.cycles_run,
            "last_cycle": self.last_cycle,
            "totals": dict(self.totals),
        }

    def get_transaction_audit(self, transaction_id: str) -> dict[str, Any]:
        """Ordered audit trail and race summary for one transaction."""

        with self.session_factory() as db:
            transaction = get_transaction(db, transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(f"transaction {transaction_id} not found")
            history = load_status_history(db, transaction_id)
        return {
            "transaction_id": transaction_id,
            "status": transaction.payment_status,
            "status_history": [entry.model_dump(mode="json") for entry in history],
            "race_condition_summary": race_condition_summary(transaction, history),
        }
