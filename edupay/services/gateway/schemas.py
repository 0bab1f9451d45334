"""Gateway request/response shapes used by the PayPlus client."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class GatewayOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "still_pending"


@dataclass(frozen=True)
class CustomerInfo:
    buyer_id: str
    email: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class LineItem:
    name: str
    amount: Decimal
    quantity: int = 1
    reference: str | None = None


@dataclass(frozen=True)
class CallbackUrls:
    success: str
    failure: str
    callback: str


@dataclass(frozen=True)
class RecurringConfig:
    billing_period: str = "monthly"
    interval_count: int = 1
    total_occurrences: int = 0
    trial_days: int = 0


@dataclass
class HostedPage:
    page_reference: str
    page_url: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusIndicators:
    """Fields a status response may populate; any one of them can be authoritative."""

    status: str | None = None
    status_code: str | None = None
    results_status: str | None = None
    has_transaction: bool = False


@dataclass
class GatewayStatus:
    indicators: StatusIndicators
    raw: dict[str, Any] = field(default_factory=dict)
    transaction_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenCharge:
    approved: bool
    gateway_transaction_id: str | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
