"""PayPlus webhook ingress: log, authenticate, resolve the transaction, hand to the arbiter.

Every delivery gets a `webhook_logs` row before anything else happens, so a
callback that fails verification or names no transaction still leaves a record.
"""

import json
import time
from typing import Any

from sqlalchemy import func, select, update

from edupay.common.clock import utcnow
from edupay.common.errors import TransactionNotFoundError, WebhookPayloadError
from edupay.common.logging import logger, transaction_context
from edupay.common.state_machine import CompletionSource
from edupay.services.completion.service import PaymentCompletionService, gateway_transaction_uid
from edupay.services.gateway.classify import classify, indicators_from_payload
from edupay.services.gateway.schemas import GatewayOutcome
from edupay.services.gateway.signature import SIGNATURE_HEADERS, require_valid_signature
from edupay.services.ledger.audit import AuditEventType, AuditOutcome, record_status_event
from edupay.services.ledger.models import Transaction, WebhookLog


SENDER_HEADERS = ("user-agent", "x-forwarded-for", "x-real-ip", "content-type", "content-length")
MAX_RAW_BODY_CHARS = 10_000


def _references(payload: dict[str, Any]) -> tuple[str | None, str | None]:
    transaction = payload.get("transaction") if isinstance(payload.get("transaction"), dict) else {}
    more_info = transaction.get("more_info") or payload.get("more_info")
    page_uid = (
        payload.get("page_request_uid")
        or transaction.get("payment_page_request_uid")
        or transaction.get("page_request_uid")
    )
    return more_info, page_uid


def _event_data(body: bytes) -> dict[str, Any]:
    """Best-effort view of an unverified body for the log row."""

    try:
        parsed = json.loads(body or b"{}")
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    return {"raw": (body or b"").decode("utf-8", errors="replace")[:MAX_RAW_BODY_CHARS]}


def _sender_info(headers, client_ip: str | None) -> dict[str, Any]:
    info: dict[str, Any] = {"ip": client_ip}
    for name in SENDER_HEADERS:
        info[name] = headers.get(name)
    info["signature_present"] = any(headers.get(name) for name in SIGNATURE_HEADERS)
    return info


class PayPlusWebhookHandler:
    def __init__(
        self,
        session_factory,
        completion: PaymentCompletionService,
        secret: str,
        enforce_signature: bool = True,
    ) -> None:
        self.session_factory = session_factory
        self.completion = completion
        self.secret = secret
        self.enforce_signature = enforce_signature

    def resolve_transaction_id(self, payload: dict[str, Any]) -> str:
        """Our id travels in `more_info`; fall back to the hosted page reference."""

        more_info, page_uid = _references(payload)
        with self.session_factory() as db:
            if more_info:
                found = db.execute(select(Transaction.id).where(Transaction.id == more_info)).scalar_one_or_none()
                if found:
                    return found
            if page_uid:
                found = db.execute(
                    select(Transaction.id).where(Transaction.gateway_page_uid == page_uid)
                ).scalar_one_or_none()
                if found:
                    return found
        raise TransactionNotFoundError(f"no transaction for more_info={more_info} page_request_uid={page_uid}")

    def _open_log(self, body: bytes, headers, client_ip: str | None) -> int:
        event_data = _event_data(body)
        _, page_uid = _references(event_data)
        sender = _sender_info(headers, client_ip)
        with self.session_factory() as db:
            entry = WebhookLog(
                provider="payplus",
                event_type=str(event_data.get("transaction_type") or event_data.get("status") or "unknown"),
                event_data=event_data,
                sender_info=sender,
                status="received",
                page_request_uid=page_uid,
                payplus_transaction_uid=gateway_transaction_uid(event_data),
                process_log=f"{utcnow().isoformat()} received from {sender['ip']} ua={sender['user-agent']}\n",
            )
            db.add(entry)
            db.commit()
            return entry.id

    def _log_step(self, log_id: int, message: str, **values: Any) -> None:
        """Append to the delivery's process log; never masks the processing outcome."""

        try:
            with self.session_factory() as db:
                db.execute(
                    update(WebhookLog)
                    .where(WebhookLog.id == log_id)
                    .values(
                        process_log=func.coalesce(WebhookLog.process_log, "") + f"{utcnow().isoformat()} {message}\n",
                        updated_at=utcnow(),
                        **values,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.commit()
        except Exception:
            logger.exception("could not update webhook log log_id=%s", log_id)

    async def handle(self, body: bytes, headers, client_ip: str | None = None) -> dict[str, Any]:
        started = time.perf_counter()
        log_id = self._open_log(body, headers, client_ip)
        try:
            ack = await self._process(log_id, body, headers)
        except Exception as exc:
            self._log_step(
                log_id,
                f"failed: {type(exc).__name__}: {exc}",
                status="failed",
                error_message=str(exc),
                processing_duration_ms=int((time.perf_counter() - started) * 1000),
            )
            raise
        reconcile = ack.get("requires_reconciliation", False)
        self._log_step(
            log_id,
            "requires reconciliation" if reconcile else f"acknowledged classification={ack['classification']}",
            status="failed" if reconcile else "completed",
            error_message="payment reported after the transaction settled as a failure" if reconcile else None,
            response_data=ack,
            processing_duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return ack

    async def _process(self, log_id: int, body: bytes, headers) -> dict[str, Any]:
        if self.enforce_signature:
            require_valid_signature(body, headers, self.secret)
        self._log_step(
            log_id, "signature verified" if self.enforce_signature else "signature check disabled", status="processing"
        )
        try:
            payload = json.loads(body or b"{}")
        except ValueError as exc:
            raise WebhookPayloadError("webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise WebhookPayloadError("webhook body must be a JSON object")

        transaction_id = self.resolve_transaction_id(payload)
        self._log_step(log_id, f"resolved transaction {transaction_id}", transaction_id=transaction_id)
        indicators = indicators_from_payload(payload)
        outcome = classify(indicators)
        with transaction_context(transaction_id, CompletionSource.WEBHOOK.value):
            logger.info(
                "webhook received transaction_id=%s status=%s status_code=%s",
                transaction_id,
                indicators.status,
                indicators.status_code,
            )
            if outcome == GatewayOutcome.COMPLETED:
                result = await self.completion.process_completion(transaction_id, payload, CompletionSource.WEBHOOK)
                return {
                    "transaction_id": transaction_id,
                    "classification": outcome.value,
                    "already_processed": result.already_processed,
                    "requires_reconciliation": result.requires_reconciliation,
                }
            if outcome == GatewayOutcome.FAILED:
                result = await self.completion.handle_failed_transaction_with_audit(
                    transaction_id,
                    payload,
                    CompletionSource.WEBHOOK,
                    reason=f"webhook reported {indicators.status or indicators.status_code}",
                )
                return {
                    "transaction_id": transaction_id,
                    "classification": outcome.value,
                    "already_processed": result.already_processed,
                }

            with self.session_factory() as db:
                db.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction_id, Transaction.webhook_received_at.is_(None))
                    .values(webhook_received_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                current = db.execute(
                    select(Transaction.payment_status).where(Transaction.id == transaction_id)
                ).scalar_one()
                record_status_event(
                    db,
                    transaction_id,
                    AuditEventType.WEBHOOK_RECEIVED,
                    from_status=current,
                    to_status=current,
                    source=CompletionSource.WEBHOOK,
                    outcome=AuditOutcome.STILL_PENDING,
                    detail={"status": indicators.status, "status_code": indicators.status_code},
                )
                db.commit()
            return {"transaction_id": transaction_id, "classification": outcome.value, "already_processed": False}
