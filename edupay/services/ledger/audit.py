"""Typed, append-only audit trail for transactions.

Entries are inserted, never rewritten, so a webhook and a poll cycle racing on
the same transaction both leave their record behind.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from edupay.services.ledger.models import Transaction, TransactionStatusEvent


class AuditEventType(str, Enum):
    CREATED = "created"
    DISPATCH = "dispatch"
    TOKEN_CHARGE = "token_charge"
    CLAIM = "claim"
    FAILURE = "failure"
    POLL_CHECK = "poll_check"
    WEBHOOK_RECEIVED = "webhook_received"
    EXPIRY = "expiry"
    RETRY_RESET = "retry_reset"
    LINK_CLEARED = "link_cleared"
    COMPLETION_ERROR = "completion_error"


class AuditOutcome(str, Enum):
    WON_RACE = "won_race"
    LOST_RACE = "lost_race"
    STILL_PENDING = "still_pending"
    GATEWAY_ERROR = "gateway_error"
    DISPATCHED = "dispatched"
    APPROVED = "approved"
    DECLINED = "declined"
    AMBIGUOUS = "ambiguous"
    RESET = "reset"
    RECORDED = "recorded"


class StatusHistoryEntry(BaseModel):
    """One audit entry as exposed to API callers and tests."""

    seq: int
    timestamp: datetime | None = None
    event_type: AuditEventType
    from_status: str | None = None
    to_status: str | None = None
    source: str | None = None
    outcome: AuditOutcome | None = None
    processing_time_ms: int | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


def _value(item: Enum | str | None) -> str | None:
    if item is None:
        return None
    return item.value if isinstance(item, Enum) else str(item)


def record_status_event(
    db: Session,
    transaction_id: str,
    event_type: AuditEventType,
    *,
    from_status=None,
    to_status=None,
    source=None,
    outcome: AuditOutcome | None = None,
    processing_time_ms: int | None = None,
    detail: dict[str, Any] | None = None,
) -> TransactionStatusEvent:
    """Stage one audit row on `db`; the caller owns the commit."""

    event = TransactionStatusEvent(
        transaction_id=transaction_id,
        event_type=_value(event_type),
        from_status=_value(from_status),
        to_status=_value(to_status),
        source=_value(source),
        outcome=_value(outcome),
        processing_time_ms=processing_time_ms,
        detail=detail or {},
    )
    db.add(event)
    return event


def load_status_history(db: Session, transaction_id: str) -> list[StatusHistoryEntry]:
    rows = (
        db.execute(
            select(TransactionStatusEvent)
            .where(TransactionStatusEvent.transaction_id == transaction_id)
            .order_by(TransactionStatusEvent.seq.asc())
        )
        .scalars()
        .all()
    )
    return [StatusHistoryEntry(**row.as_entry()) for row in rows]


def race_condition_summary(transaction: Transaction, history: list[StatusHistoryEntry]) -> dict[str, Any]:
    """Condense claim entries into who won, who lost and how often each source tried."""

    claims = [
        entry for entry in history if entry.event_type in (AuditEventType.CLAIM, AuditEventType.FAILURE)
    ]
    attempts_by_source: dict[str, int] = {}
    for entry in claims:
        key = entry.source or "unknown"
        attempts_by_source[key] = attempts_by_source.get(key, 0) + 1
    return {
        "winner": transaction.race_condition_winner,
        "processing_attempts": transaction.processing_attempts,
        "won_count": sum(1 for entry in claims if entry.outcome == AuditOutcome.WON_RACE),
        "lost_count": sum(1 for entry in claims if entry.outcome == AuditOutcome.LOST_RACE),
        "attempts_by_source": attempts_by_source,
        "webhook_received_at": transaction.webhook_received_at.isoformat()
        if transaction.webhook_received_at
        else None,
        "had_race": len({entry.source for entry in claims}) > 1,
    }
