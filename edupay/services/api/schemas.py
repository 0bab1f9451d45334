"""Request/response contracts for the payments HTTP surface."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CartItemRequest(BaseModel):
    """Payload accepted by `POST /cart`."""

    purchasable_type: str = Field(min_length=1)
    purchasable_id: str = Field(min_length=1)
    original_price: Decimal = Field(ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PurchaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    purchasable_type: str
    purchasable_id: str
    payment_amount: Decimal | None = None
    original_price: Decimal
    discount_amount: Decimal
    payment_status: str
    transaction_id: str | None = None


class AppliedDiscount(BaseModel):
    code: str = Field(min_length=1)


class PaymentIntentRequest(BaseModel):
    """Payload accepted by `POST /payments/intents`."""

    cart_item_ids: list[str] = Field(min_length=1)
    applied_discounts: list[AppliedDiscount] = Field(default_factory=list)
    environment: str = Field(default="production", pattern="^(production|sandbox)$")
    frontend_origin: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None


class PaymentIntentResponse(BaseModel):
    transaction_id: str
    payment_url: str | None = None
    total_amount: Decimal
    status: str
    purchase_count: int
    expires_at: datetime | None = None
    is_free: bool
    path: str


class WebhookAck(BaseModel):
    received: bool = True
    transaction_id: str | None = None
    classification: str
    already_processed: bool = False
    requires_reconciliation: bool = False


class PollRunRequest(BaseModel):
    limit: int | None = Field(default=None, gt=0, le=500)
    max_age_hours: float | None = Field(default=None, gt=0)
    rate_limit_delay_ms: int | None = Field(default=None, ge=0)
