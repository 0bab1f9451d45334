"""Ledger database models.

This DB is the source of truth for cart line items, payment intents
(transactions), their append-only status history, and the records the
completion cascade writes (stored tokens, subscription grants, coupon and
download counters).
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from edupay.common.clock import utcnow
from edupay.common.db import Base, JSONDocument
from edupay.common.state_machine import PurchaseStatus, TransactionStatus


def new_transaction_id() -> str:
    return f"txn_{uuid4().hex}"


class Transaction(Base):
    """Payment intent: one gateway charge covering one or more purchases."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_transaction_id)
    buyer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(3), default="ILS")
    payment_status: Mapped[str] = mapped_column(String(20), index=True, default=TransactionStatus.PENDING.value)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True, default="payplus")
    environment: Mapped[str] = mapped_column(String(20), default="production")
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_page_uid: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    gateway_transaction_uid: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0)
    race_condition_winner: Mapped[str | None] = mapped_column(String(20), nullable=True)
    webhook_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    token_charge_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    token_charge_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    gateway_response: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    purchases: Mapped[list["Purchase"]] = relationship(back_populates="transaction")
    status_events: Mapped[list["TransactionStatusEvent"]] = relationship(
        order_by="TransactionStatusEvent.seq",
        viewonly=True,
    )

    @property
    def status(self) -> TransactionStatus:
        return TransactionStatus(self.payment_status)

    @property
    def status_history(self) -> list[dict]:
        """Ordered audit entries for this transaction."""

        return [event.as_entry() for event in self.status_events]


class Purchase(Base):
    """One purchasable line item and its fulfillment status."""

    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    buyer_id: Mapped[str] = mapped_column(String, index=True)
    purchasable_type: Mapped[str] = mapped_column(String(30))
    purchasable_id: Mapped[str] = mapped_column(String)
    payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    original_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    payment_status: Mapped[str] = mapped_column(String(20), index=True, default=PurchaseStatus.CART.value)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(
        ForeignKey("transactions.id"), nullable=True, index=True
    )
    meta: Mapped[dict] = mapped_column("metadata", JSONDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    transaction: Mapped[Transaction | None] = relationship(back_populates="purchases")

    @property
    def status(self) -> PurchaseStatus:
        return PurchaseStatus(self.payment_status)

    @property
    def is_subscription(self) -> bool:
        meta = self.meta or {}
        return (
            self.purchasable_type == "subscription"
            or meta.get("subscription_purchase") is True
            or meta.get("purchase_type") == "subscription"
        )


class TransactionStatusEvent(Base):
    """Append-only audit entry; rows are never updated or deleted."""

    __tablename__ = "transaction_status_events"

    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    transaction_id: Mapped[str] = mapped_column(ForeignKey("transactions.id"), index=True)
    event_type: Mapped[str] = mapped_column(String(30))
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(30), nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    detail: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    def as_entry(self) -> dict:
        return {
            "seq": self.seq,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "source": self.source,
            "outcome": self.outcome,
            "processing_time_ms": self.processing_time_ms,
            "detail": self.detail or {},
        }


class CustomerToken(Base):
    """Gateway-issued reusable charge token, scoped to one buyer."""

    __tablename__ = "customer_tokens"
    __table_args__ = (UniqueConstraint("buyer_id", "token", name="uq_customer_token_buyer"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    buyer_id: Mapped[str] = mapped_column(String, index=True)
    token: Mapped[str] = mapped_column(String)
    card_last4: Mapped[str] = mapped_column(String(4), default="0000")
    card_brand: Mapped[str] = mapped_column(String(20), default="unknown")
    card_expiry_month: Mapped[str | None] = mapped_column(String(2), nullable=True)
    card_expiry_year: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_holder_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    source_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class SubscriptionHistory(Base):
    """Subscription grant created when a subscription purchase completes."""

    __tablename__ = "subscription_history"
    __table_args__ = (UniqueConstraint("transaction_id", "purchase_id", name="uq_subscription_txn_purchase"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    buyer_id: Mapped[str] = mapped_column(String, index=True)
    subscription_plan_id: Mapped[str] = mapped_column(String)
    action_type: Mapped[str] = mapped_column(String(20), default="subscribe")
    status: Mapped[str] = mapped_column(String(20), default="active")
    billing_period: Mapped[str] = mapped_column(String(20), default="monthly")
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    purchased_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    gateway_subscription_uid: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    purchase_id: Mapped[str | None] = mapped_column(String, nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class Coupon(Base):
    """Coupon usage counter committed when a discounted payment completes."""

    __tablename__ = "coupons"

    code: Mapped[str] = mapped_column(String, primary_key=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class FileAsset(Base):
    """Download counter for file-type purchasables."""

    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    downloads_count: Mapped[int] = mapped_column(Integer, default=0)


class WebhookLog(Base):
    """Every inbound gateway callback, written before it is verified or parsed."""

    __tablename__ = "webhook_logs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    provider: Mapped[str] = mapped_column(String(20), default="payplus")
    event_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    event_data: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    sender_info: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    status: Mapped[str] = mapped_column(String(20), index=True, default="received")
    page_request_uid: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payplus_transaction_uid: Mapped[str | None] = mapped_column(String, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    process_log: Mapped[str] = mapped_column(Text, default="")
    processing_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )
