"""Async PayPlus HTTP client.

Read-only calls (status query, charge lookup) are retried with exponential
backoff on transport errors and 5xx responses. Page creation and token charges
move money or create gateway state, so they are attempted exactly once.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any

import httpx

from edupay.common.config import settings
from edupay.common.errors import GatewayError
from edupay.common.logging import logger
from edupay.common.metrics import gateway_latency_seconds, gateway_requests_total, retries_total
from edupay.services.gateway.classify import indicators_from_payload
from edupay.services.gateway.schemas import (
    CallbackUrls,
    CustomerInfo,
    GatewayStatus,
    HostedPage,
    LineItem,
    RecurringConfig,
    StatusIndicators,
    TokenCharge,
)


RECURRING_INTERVALS = {"weekly": 1, "monthly": 2, "quarterly": 3, "yearly": 4, "daily": 5}
CHARGE_IMMEDIATE = 1
CHARGE_RECURRING = 3


def _amount(value: Decimal) -> float:
    return float(Decimal(value).quantize(Decimal("0.01")))


def mask_token(token: str | None) -> str:
    if not token or len(token) <= 8:
        return "tok_****"
    return f"{token[:4]}****{token[-4:]}"


class PayPlusClient:
    """Thin async wrapper over the PayPlus REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        secret_key: str | None = None,
        payment_page_uid: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int | None = None,
        backoff_base_seconds: float | None = None,
        service_name: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.payplus_api_url).rstrip("/") + "/"
        self.api_key = api_key if api_key is not None else settings.payplus_api_key
        self.secret_key = secret_key if secret_key is not None else settings.payplus_secret_key
        self.payment_page_uid = payment_page_uid if payment_page_uid is not None else settings.payplus_payment_page_uid
        self.max_retries = max_retries if max_retries is not None else settings.gateway_max_retries
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.gateway_backoff_base_seconds
        )
        self.service_name = service_name or settings.service_name
        self._http = http_client or httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)

    async def close(self) -> None:
        await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-key": self.api_key,
            "secret-key": self.secret_key,
        }

    async def _post(self, operation: str, path: str, body: dict[str, Any], retry: bool = False) -> dict[str, Any]:
        """POST one request; return the decoded JSON body or raise `GatewayError`."""

        attempts = self.max_retries if retry else 1
        last_error: GatewayError | None = None
        for attempt in range(1, attempts + 1):
            start = time.perf_counter()
            try:
                response = await self._http.post(self.base_url + path, json=body, headers=self._headers())
            except httpx.TransportError as exc:
                last_error = GatewayError(f"{operation} transport error: {exc}", operation, retryable=True)
            else:
                if response.status_code >= 500:
                    last_error = GatewayError(
                        f"{operation} HTTP {response.status_code}", operation, retryable=True
                    )
                elif response.status_code >= 400:
                    gateway_requests_total.labels(
                        service=self.service_name, operation=operation, result="http_error"
                    ).inc()
                    raise GatewayError(f"{operation} HTTP {response.status_code}: {response.text[:200]}", operation)
                else:
                    try:
                        data = response.json()
                    except ValueError as exc:
                        gateway_requests_total.labels(
                            service=self.service_name, operation=operation, result="invalid_json"
                        ).inc()
                        raise GatewayError(f"{operation} returned invalid JSON", operation) from exc
                    gateway_requests_total.labels(service=self.service_name, operation=operation, result="ok").inc()
                    gateway_latency_seconds.labels(service=self.service_name, operation=operation).observe(
                        time.perf_counter() - start
                    )
                    return data if isinstance(data, dict) else {"data": data}

            gateway_requests_total.labels(service=self.service_name, operation=operation, result="retryable_error").inc()
            if attempt < attempts:
                backoff_seconds = self.backoff_base_seconds * (2 ** (attempt - 1))
                retries_total.labels(service=self.service_name, dependency="payplus").inc()
                logger.warning(
                    "gateway retry operation=%s attempt=%s backoff_s=%s error=%s",
                    operation,
                    attempt,
                    backoff_seconds,
                    last_error,
                )
                await asyncio.sleep(backoff_seconds)
        raise last_error

    async def create_hosted_payment_page(
        self,
        amount: Decimal,
        currency: str,
        customer: CustomerInfo,
        items: list[LineItem],
        callback_urls: CallbackUrls,
        recurring: RecurringConfig | None = None,
        reference: str | None = None,
    ) -> HostedPage:
        """Create a hosted payment page and return its reference and URL."""

        body: dict[str, Any] = {
            "payment_page_uid": self.payment_page_uid,
            "amount": _amount(amount),
            "currency_code": currency,
            "sendEmailApproval": True,
            "sendEmailFailure": True,
            "refURL_success": callback_urls.success,
            "refURL_failure": callback_urls.failure,
            "refURL_callback": callback_urls.callback,
            "charge_method": CHARGE_IMMEDIATE,
            "charge_default": 1,
            "create_token": True,
            "more_info": reference or "",
            "customer": {
                "customer_uid": customer.buyer_id,
                "email": customer.email,
                "customer_name": customer.name,
            },
            "items": [
                {
                    "name": item.name,
                    "price": _amount(item.amount),
                    "quantity": item.quantity,
                    "product_invoice_extra_details": item.reference or "",
                }
                for item in items
            ],
        }
        if recurring is not None:
            body["charge_method"] = CHARGE_RECURRING
            body["recurring_settings"] = {
                "intervalType": RECURRING_INTERVALS.get(recurring.billing_period, RECURRING_INTERVALS["monthly"]),
                "intervalCount": recurring.interval_count,
                "totalOccurrences": recurring.total_occurrences,
                "trialDays": recurring.trial_days,
            }

        data = await self._post("create_page", "PaymentPages/generateLink", body)
        page = data.get("data") if isinstance(data.get("data"), dict) else {}
        page_url = page.get("payment_page_link")
        page_reference = page.get("page_request_uid")
        if not page_url or not page_reference:
            raise GatewayError("PayPlus did not return a payment page link", "create_page", raw=data)
        return HostedPage(page_reference=page_reference, page_url=page_url, raw=data)

    async def query_transaction_status(self, page_reference: str) -> GatewayStatus:
        """Ask the gateway for the authoritative status of one hosted page."""

        data = await self._post(
            "query_status",
            "Transactions/PaymentData",
            {"page_request_uid": page_reference},
            retry=True,
        )
        transaction = (data.get("data") or {}).get("transaction") if isinstance(data.get("data"), dict) else None
        return GatewayStatus(
            indicators=indicators_from_payload(data),
            raw=data,
            transaction_data=transaction if isinstance(transaction, dict) else {},
        )

    async def charge_stored_token(
        self,
        token: str,
        amount: Decimal,
        buyer: CustomerInfo,
        currency: str | None = None,
        reference: str | None = None,
    ) -> TokenCharge:
        """Charge a stored token directly. Raises `GatewayError` when the outcome is unknown."""

        body = {
            "payment_token": token,
            "amount": _amount(amount),
            "currency": currency or settings.currency,
            "customer": {"customer_uid": buyer.buyer_id, "email": buyer.email, "name": buyer.name},
            "charge_method": CHARGE_IMMEDIATE,
            "more_info": reference or "",
        }
        logger.info("token charge requested token=%s reference=%s", mask_token(token), reference)
        data = await self._post("token_charge", "Charges/ChargeWithToken", body)
        status = str(data.get("status") or "").lower()
        gateway_transaction_id = data.get("transaction_uid") or data.get("uid")
        if data.get("success") is not False and status in {"approved", "success"}:
            return TokenCharge(approved=True, gateway_transaction_id=gateway_transaction_id, raw=data)
        return TokenCharge(
            approved=False,
            gateway_transaction_id=gateway_transaction_id,
            error=data.get("error_message") or data.get("decline_reason") or data.get("message") or "declined",
            raw=data,
        )

    async def lookup_charge(self, reference: str) -> GatewayStatus | None:
        """Find a charge by our reference; `None` when the gateway has no record of it."""

        data = await self._post(
            "lookup_charge",
            "TransactionReports/TransactionsHistory",
            {"more_info": reference},
            retry=True,
        )
        for item in data.get("transactions") or []:
            if not isinstance(item, dict) or item.get("more_info") != reference:
                continue
            information = item.get("information") or {}
            return GatewayStatus(
                indicators=StatusIndicators(
                    status=item.get("status") or information.get("status"),
                    status_code=information.get("status_code"),
                    has_transaction=True,
                ),
                raw=data,
                transaction_data=item,
            )
        return None
