"""Shared fixtures: in-memory ledger, fake gateway, wired services."""

import asyncio
import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("PAYMENTS_POLLING_ACTIVE", "false")
os.environ.setdefault("PAYPLUS_SECRET_KEY", "test-webhook-secret")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from edupay.common.db import Base
from edupay.services.completion.service import PaymentCompletionService
from edupay.services.gateway.classify import indicators_from_payload
from edupay.services.gateway.schemas import GatewayStatus, HostedPage, TokenCharge
from edupay.services.intents.service import PaymentIntentService
from edupay.services.ledger.models import Purchase
from edupay.services.polling.service import PaymentPollingService
from edupay.services.subscriptions.service import SubscriptionService


class FakeGateway:
    """In-process stand-in for `PayPlusClient` that records every call."""

    def __init__(self) -> None:
        self.pages: list[dict] = []
        self.page_error: Exception | None = None
        self.before_page = None
        self.status_by_page: dict[str, dict] = {}
        self.status_errors: dict[str, Exception] = {}
        self.status_queries: list[str] = []
        self.before_query = None
        self.charges: list[dict] = []
        self.charge_delay = 0.0
        self.token_result: TokenCharge | Exception | None = None
        self.lookups: list[str] = []
        self.lookup_result: GatewayStatus | Exception | None = None

    async def create_hosted_payment_page(
        self, amount, currency, customer, items, callback_urls, recurring=None, reference=None
    ):
        await asyncio.sleep(0)
        if self.before_page is not None:
            await self.before_page(reference)
        if self.page_error is not None:
            raise self.page_error
        number = len(self.pages) + 1
        page = HostedPage(page_reference=f"page_{number}", page_url=f"https://pay.example/page_{number}")
        self.pages.append(
            {"amount": amount, "reference": reference, "items": items, "recurring": recurring, "page": page}
        )
        return page

    async def query_transaction_status(self, page_reference):
        self.status_queries.append(page_reference)
        if self.before_query is not None:
            await self.before_query(page_reference)
        if page_reference in self.status_errors:
            raise self.status_errors[page_reference]
        payload = self.status_by_page.get(page_reference, {"results": {"status": "success"}, "data": {}})
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        return GatewayStatus(
            indicators=indicators_from_payload(payload),
            raw=payload,
            transaction_data=data.get("transaction") or {},
        )

    async def charge_stored_token(self, token, amount, buyer, currency=None, reference=None):
        self.charges.append({"token": token, "amount": amount, "reference": reference})
        if self.charge_delay:
            await asyncio.sleep(self.charge_delay)
        if isinstance(self.token_result, Exception):
            raise self.token_result
        return self.token_result or TokenCharge(
            approved=True, gateway_transaction_id="gw_token_1", raw={"status": "approved", "transaction_uid": "gw_token_1"}
        )

    async def lookup_charge(self, reference):
        self.lookups.append(reference)
        if isinstance(self.lookup_result, Exception):
            raise self.lookup_result
        return self.lookup_result

    async def close(self):
        return None


def completed_status(uid: str = "gw_1", token: str | None = None) -> dict:
    transaction = {"uid": uid, "status_code": "000", "status": "approved"}
    if token:
        transaction["token"] = token
        transaction["card"] = {"four_digits": "4242", "brand": "Visa"}
    return {"results": {"status": "success"}, "data": {"transaction": transaction}}


def declined_status(uid: str = "gw_1") -> dict:
    return {"results": {"status": "success"}, "data": {"transaction": {"uid": uid, "status_code": "051", "status": "declined"}}}


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed ledger whose sessions may run on separate threads and connections."""

    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def completion(session_factory):
    return PaymentCompletionService(session_factory, SubscriptionService(session_factory))


@pytest.fixture
def intents(session_factory, gateway, completion):
    return PaymentIntentService(session_factory, gateway, completion, frontend_origin="https://app.example")


@pytest.fixture
def poller(session_factory, gateway, completion):
    return PaymentPollingService(
        session_factory,
        gateway,
        completion,
        batch_limit=50,
        rate_limit_delay_ms=0,
        max_age_hours=None,
        expiry_grace_minutes=30,
    )


@pytest.fixture
def make_purchase(session_factory):
    """Insert a cart purchase directly, bypassing CartService."""

    def _make(
        buyer_id: str = "buyer_1",
        purchasable_type: str = "workshop",
        purchasable_id: str = "item_1",
        original_price: str = "100",
        discount_amount: str = "0",
        payment_amount: str | None = None,
        payment_status: str = "cart",
        transaction_id: str | None = None,
        meta: dict | None = None,
    ) -> Purchase:
        with session_factory() as db:
            purchase = Purchase(
                buyer_id=buyer_id,
                purchasable_type=purchasable_type,
                purchasable_id=purchasable_id,
                original_price=Decimal(original_price),
                discount_amount=Decimal(discount_amount),
                payment_amount=Decimal(payment_amount) if payment_amount is not None else None,
                payment_status=payment_status,
                transaction_id=transaction_id,
                meta=meta or {},
            )
            db.add(purchase)
            db.commit()
            return purchase

    return _make


@pytest.fixture
def load(session_factory):
    """Fresh read of one row by primary key."""

    def _load(model, key):
        with session_factory() as db:
            return db.get(model, key)

    return _load


@pytest.fixture
def dispatched_transaction(intents, make_purchase):
    """A hosted-page transaction in `in_progress` with one linked purchase."""

    purchase = make_purchase()
    result = asyncio.run(intents.create_payment_intent([purchase.id], "buyer_1"))
    assert result.status == "in_progress"
    return result.transaction_id, purchase.id

