"""Payment status enums and the transition tables that govern them.

Every status write goes through the ledger store, which checks it against
these tables before issuing the conditional UPDATE. The status sets the
cascade and retry-reset paths move are derived from the same tables.
"""

from enum import Enum


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed by the transition table."""


class TransactionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PurchaseStatus(str, Enum):
    CART = "cart"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CompletionSource(str, Enum):
    """Who asked the arbiter to settle a transaction."""

    WEBHOOK = "webhook"
    POLLING = "polling"
    TOKEN_CHARGE = "token_charge"
    FREE = "free"


class TokenChargeState(str, Enum):
    """Progress of a stored-token charge against one transaction."""

    IN_FLIGHT = "in_flight"
    APPROVED = "approved"
    DECLINED = "declined"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"


TRANSACTION_TRANSITIONS: dict[TransactionStatus, set[TransactionStatus]] = {
    TransactionStatus.PENDING: {
        TransactionStatus.IN_PROGRESS,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
        TransactionStatus.EXPIRED,
    },
    TransactionStatus.IN_PROGRESS: {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
        TransactionStatus.EXPIRED,
    },
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.FAILED: set(),
    TransactionStatus.CANCELLED: set(),
    TransactionStatus.EXPIRED: set(),
}

PURCHASE_TRANSITIONS: dict[PurchaseStatus, set[PurchaseStatus]] = {
    PurchaseStatus.CART: {PurchaseStatus.PENDING, PurchaseStatus.COMPLETED},
    PurchaseStatus.PENDING: {PurchaseStatus.COMPLETED, PurchaseStatus.FAILED, PurchaseStatus.CART},
    PurchaseStatus.FAILED: {PurchaseStatus.CART},
    PurchaseStatus.COMPLETED: set(),
}

# Statuses a claim may start from. The arbiter's conditional UPDATE uses exactly this set.
CLAIMABLE_TRANSACTION_STATUSES = frozenset({TransactionStatus.PENDING, TransactionStatus.IN_PROGRESS})
TERMINAL_TRANSACTION_STATUSES = frozenset(
    status for status, targets in TRANSACTION_TRANSITIONS.items() if not targets
)
FAILURE_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.FAILED, TransactionStatus.CANCELLED, TransactionStatus.EXPIRED}
)
RETRYABLE_TRANSACTION_STATUSES = FAILURE_TRANSACTION_STATUSES
# A hosted page may only be created once the token charge is known not to have gone through.
UNRESOLVED_TOKEN_CHARGE_STATES = frozenset({TokenChargeState.IN_FLIGHT, TokenChargeState.AMBIGUOUS})
DISPATCHABLE_TOKEN_CHARGE_STATES = frozenset({TokenChargeState.DECLINED, TokenChargeState.NOT_FOUND})


def validate_transition(current: TransactionStatus | str, new: TransactionStatus | str) -> None:
    """Raise when a transaction transition is not allowed by the state machine."""

    current_status = TransactionStatus(current)
    new_status = TransactionStatus(new)
    if new_status not in TRANSACTION_TRANSITIONS[current_status]:
        raise InvalidTransitionError(f"Invalid transition: {current_status.value} -> {new_status.value}")


def validate_purchase_transition(current: PurchaseStatus | str, new: PurchaseStatus | str) -> None:
    """Raise when a purchase transition is not allowed."""

    current_status = PurchaseStatus(current)
    new_status = PurchaseStatus(new)
    if new_status not in PURCHASE_TRANSITIONS[current_status]:
        raise InvalidTransitionError(f"Invalid purchase transition: {current_status.value} -> {new_status.value}")


def purchase_status_for(transaction_status: TransactionStatus | str) -> PurchaseStatus:
    """Cascade status a linked purchase should converge to."""

    status = TransactionStatus(transaction_status)
    if status == TransactionStatus.COMPLETED:
        return PurchaseStatus.COMPLETED
    if status in FAILURE_TRANSACTION_STATUSES:
        return PurchaseStatus.FAILED
    return PurchaseStatus.PENDING


def is_terminal(status: TransactionStatus | str) -> bool:
    return TransactionStatus(status) in TERMINAL_TRANSACTION_STATUSES


def purchase_sources_for(target: PurchaseStatus | str) -> frozenset[PurchaseStatus]:
    """Purchase statuses the table allows to move into `target`."""

    target_status = PurchaseStatus(target)
    return frozenset(status for status, targets in PURCHASE_TRANSITIONS.items() if target_status in targets)
