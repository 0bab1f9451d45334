"""HTTP surface for the cart, payment intents, webhook ingress and reconciliation.

Buyer identity arrives in `X-Buyer-Id` from the upstream auth layer. Operator
routes (polling controls, audit) require `X-API-Key`.
"""

from contextlib import asynccontextmanager
from dataclasses import asdict
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from edupay.common.config import settings
from edupay.common.db import SessionLocal
from edupay.common.errors import PaymentError
from edupay.common.logging import configure_logging, logger, trace_id_ctx
from edupay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from edupay.common.tracing import instrument_app, setup_tracing
from edupay.services.api.ratelimit import TokenBucket
from edupay.services.api.schemas import (
    CartItemRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PollRunRequest,
    PurchaseResponse,
    WebhookAck,
)
from edupay.services.api.webhooks import PayPlusWebhookHandler
from edupay.services.cart.service import CartService
from edupay.services.completion.service import PaymentCompletionService
from edupay.services.gateway.client import PayPlusClient
from edupay.services.gateway.schemas import CustomerInfo
from edupay.services.intents.service import PaymentIntentService
from edupay.services.polling.service import PaymentPollingService
from edupay.services.subscriptions.service import SubscriptionService

configure_logging()
setup_tracing(settings.service_name)
logger.info(
    "startup config %s",
    settings.redacted(
        [
            "service_name",
            "postgres_dsn",
            "redis_url",
            "payplus_api_url",
            "payplus_api_key",
            "payplus_secret_key",
            "payments_polling_active",
            "polling_interval_seconds",
            "rate_limit_per_minute",
        ]
    ),
)


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def build_app(
    session_factory=SessionLocal,
    gateway=None,
    rate_limiter: TokenBucket | None = None,
    enable_poller: bool | None = None,
) -> FastAPI:
    """Wire services onto one FastAPI app; tests pass fakes for the gateway and limiter."""

    owns_gateway = gateway is None
    gateway = gateway or PayPlusClient()
    completion = PaymentCompletionService(session_factory, SubscriptionService(session_factory))
    intents = PaymentIntentService(session_factory, gateway, completion)
    poller = PaymentPollingService(session_factory, gateway, completion)
    cart = CartService(session_factory)
    webhooks = PayPlusWebhookHandler(
        session_factory, completion, settings.payplus_secret_key, settings.payplus_enforce_signature
    )
    if rate_limiter is None:
        rate_limiter = TokenBucket(
            redis.Redis.from_url(settings.redis_url, decode_responses=True), settings.rate_limit_per_minute
        )
    run_poller = settings.payments_polling_active if enable_poller is None else enable_poller

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the reconciliation poller with the app lifecycle."""

        if run_poller:
            poller.start()
        yield
        await poller.stop()
        if owns_gateway:
            await gateway.close()

    app = FastAPI(title="EduPay Payments", lifespan=lifespan)
    instrument_app(app)
    app.state.poller = poller

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(_: Request, exc: PaymentError):
        body = {"detail": str(exc), "error": type(exc).__name__}
        transaction_id = getattr(exc, "transaction_id", None)
        if transaction_id:
            body["transaction_id"] = transaction_id
        if exc.status_code >= 500:
            logger.error("request failed error=%s detail=%s", type(exc).__name__, exc)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.post("/cart", response_model=PurchaseResponse, status_code=201)
    def add_to_cart(req: CartItemRequest, x_buyer_id: str = Header(min_length=1)):
        """Add one line item to the buyer's cart."""

        purchase = cart.add_to_cart(
            x_buyer_id,
            req.purchasable_type,
            req.purchasable_id,
            req.original_price,
            req.discount_amount,
            req.metadata,
        )
        return PurchaseResponse.model_validate(purchase)

    @app.get("/cart", response_model=list[PurchaseResponse])
    def list_cart(x_buyer_id: str = Header(min_length=1)):
        return [PurchaseResponse.model_validate(purchase) for purchase in cart.list_cart(x_buyer_id)]

    @app.delete("/cart/{purchase_id}", status_code=204)
    def remove_from_cart(purchase_id: str, x_buyer_id: str = Header(min_length=1)):
        cart.remove_from_cart(purchase_id, x_buyer_id)

    @app.post("/payments/intents", response_model=PaymentIntentResponse)
    async def create_payment_intent(req: PaymentIntentRequest, x_buyer_id: str = Header(min_length=1)):
        """Create or resume the payment intent for a set of cart items."""

        rate_limiter.consume(x_buyer_id)
        result = await intents.create_payment_intent(
            req.cart_item_ids,
            x_buyer_id,
            applied_discounts=[discount.model_dump() for discount in req.applied_discounts],
            environment=req.environment,
            frontend_origin=req.frontend_origin,
            customer=CustomerInfo(buyer_id=x_buyer_id, email=req.customer_email, name=req.customer_name),
        )
        return PaymentIntentResponse(**asdict(result))

    @app.get("/payments/intents/{transaction_id}")
    def get_payment_status(transaction_id: str, x_buyer_id: str = Header(min_length=1)):
        status = intents.get_payment_status(transaction_id)
        if status["buyer_id"] != x_buyer_id:
            raise HTTPException(status_code=404, detail="transaction not found")
        return status

    @app.get("/payments/audit/{transaction_id}")
    def get_payment_audit(transaction_id: str, x_api_key: str | None = Header(default=None)):
        """Ordered status history plus race summary for one transaction."""

        enforce_api_key(x_api_key)
        return poller.get_transaction_audit(transaction_id)

    @app.post("/webhooks/payplus", response_model=WebhookAck)
    async def payplus_webhook(request: Request):
        """Gateway push notification; always answers 200 once authenticated and resolved."""

        body = await request.body()
        client_ip = request.client.host if request.client else None
        ack = await webhooks.handle(body, request.headers, client_ip)
        return WebhookAck(**ack)

    @app.post("/polling/run")
    async def run_poll_cycle(req: PollRunRequest | None = None, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        req = req or PollRunRequest()
        kwargs = {"limit": req.limit, "rate_limit_delay_ms": req.rate_limit_delay_ms}
        if req.max_age_hours is not None:
            kwargs["max_age_hours"] = req.max_age_hours
        return await poller.poll_all_pending_transactions(**kwargs)

    @app.post("/polling/transactions/{transaction_id}")
    async def check_transaction(transaction_id: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        return await poller.check_specific_transaction(transaction_id)

    @app.get("/polling/status")
    def polling_status(x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        return poller.get_polling_status()

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app


app = build_app()
