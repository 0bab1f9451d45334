"""Exception taxonomy for the payments core.

Race-lost outcomes are not errors and never appear here; they are returned as
`already_processed=True`.
"""


class PaymentError(Exception):
    """Base class for payment-core failures surfaced to callers."""

    status_code = 500


class CartValidationError(PaymentError):
    """Requested cart items are missing, foreign, or not in a payable state."""

    status_code = 400


class CartItemLockedError(PaymentError):
    """A cart item is linked to a transaction or already settled."""

    status_code = 409


class InconsistentLinkError(PaymentError):
    """Purchases in one request point at different transactions."""

    status_code = 409


class TransactionNotFoundError(PaymentError):
    status_code = 404


class GatewayError(PaymentError):
    """Gateway HTTP or protocol failure."""

    status_code = 502

    def __init__(self, message: str, operation: str = "", retryable: bool = False, raw: dict | None = None):
        super().__init__(message)
        self.operation = operation
        self.retryable = retryable
        self.raw = raw or {}


class GatewayDispatchError(PaymentError):
    """No hosted page could be created; the transaction is left resumable."""

    status_code = 502

    def __init__(self, message: str, transaction_id: str | None = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class CompletionProcessingError(PaymentError):
    """The claim succeeded but the purchase cascade did not; needs reconciliation."""

    def __init__(self, message: str, transaction_id: str):
        super().__init__(message)
        self.transaction_id = transaction_id


class WebhookSignatureError(PaymentError):
    status_code = 401


class WebhookPayloadError(PaymentError):
    """Webhook body is not JSON or names no known transaction."""

    status_code = 400


class PaymentInProgressError(GatewayDispatchError):
    """A stored-token charge for this transaction has not resolved yet; retry later."""

    status_code = 409
