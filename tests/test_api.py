"""HTTP wiring: routes, identity headers, error mapping, webhook ingress."""

import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from conftest import FakeGateway
from edupay.common.config import settings
from edupay.services.api.main import build_app
from edupay.services.api.ratelimit import TokenBucket
from edupay.services.gateway.signature import sign
from edupay.services.ledger.models import WebhookLog


BUYER = {"X-Buyer-Id": "buyer_1"}
OPERATOR = {"X-API-Key": settings.api_key}


class InMemoryRedis:
    """Implements the three hash commands the token bucket uses."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}

    def hmget(self, key, *fields):
        values = self.hashes.get(key, {})
        return [values.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({field: str(value) for field, value in mapping.items()})

    def expire(self, key, seconds):
        return True


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    app = build_app(
        session_factory,
        gateway=gateway,
        rate_limiter=TokenBucket(InMemoryRedis(), limit_per_minute=5),
        enable_poller=False,
    )
    with TestClient(app) as test_client:
        yield test_client


def _add_item(client, price=100, discount=0, purchasable_id="ws_1"):
    resp = client.post(
        "/cart",
        headers=BUYER,
        json={
            "purchasable_type": "workshop",
            "purchasable_id": purchasable_id,
            "original_price": price,
            "discount_amount": discount,
        },
    )
    assert resp.status_code == 201
    return resp.json()


def _webhook(client, payload, secret=None):
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret is not False:
        headers["x-payplus-signature"] = sign(body, secret or settings.payplus_secret_key)
    return client.post("/webhooks/payplus", content=body, headers=headers)


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    assert "completion_claims_total" in client.get("/metrics").text


def test_cart_routes(client):
    item = _add_item(client)
    assert item["payment_status"] == "cart"

    listed = client.get("/cart", headers=BUYER).json()
    assert [row["id"] for row in listed] == [item["id"]]

    assert client.delete(f"/cart/{item['id']}", headers=BUYER).status_code == 204
    assert client.get("/cart", headers=BUYER).json() == []


def test_buyer_header_required(client):
    assert client.get("/cart").status_code == 422


def test_create_intent_and_read_status(client):
    item = _add_item(client, price=100, discount=25)

    resp = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "in_progress"
    assert body["payment_url"] == "https://pay.example/page_1"
    assert Decimal(str(body["total_amount"])) == Decimal("75")

    status = client.get(f"/payments/intents/{body['transaction_id']}", headers=BUYER)
    assert status.status_code == 200
    assert status.json()["purchases"][0]["payment_status"] == "pending"

    other = client.get(f"/payments/intents/{body['transaction_id']}", headers={"X-Buyer-Id": "buyer_2"})
    assert other.status_code == 404


def test_linked_cart_item_cannot_be_deleted(client):
    item = _add_item(client)
    client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]})

    resp = client.delete(f"/cart/{item['id']}", headers=BUYER)

    assert resp.status_code == 409
    assert resp.json()["error"] == "CartItemLockedError"


def test_unknown_cart_items_map_to_400(client):
    resp = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": ["missing"]})
    assert resp.status_code == 400
    assert resp.json()["error"] == "CartValidationError"


def test_dispatch_failure_maps_to_502_with_transaction_id(client, gateway):
    from edupay.common.errors import GatewayError

    gateway.page_error = GatewayError("down", "create_page")
    item = _add_item(client)

    resp = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]})

    assert resp.status_code == 502
    assert resp.json()["transaction_id"].startswith("txn_")


def test_intent_creation_rate_limited(client):
    item = _add_item(client)
    codes = [
        client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]}).status_code
        for _ in range(6)
    ]
    assert codes[:5] == [200] * 5
    assert codes[5] == 429


def test_signed_webhook_completes_once(client):
    item = _add_item(client)
    intent = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]}).json()
    payload = {"transaction": {"more_info": intent["transaction_id"], "status_code": "000", "uid": "gw_1"}}

    first = _webhook(client, payload)
    second = _webhook(client, payload)

    assert first.status_code == 200
    assert first.json()["classification"] == "completed"
    assert first.json()["already_processed"] is False
    assert second.json()["already_processed"] is True
    audit = client.get(f"/payments/audit/{intent['transaction_id']}", headers=OPERATOR).json()
    assert audit["status"] == "completed"
    assert audit["race_condition_summary"]["winner"] == "webhook"


def test_webhook_resolved_by_page_reference(client):
    item = _add_item(client)
    intent = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]}).json()

    resp = _webhook(client, {"page_request_uid": "page_1", "transaction": {"status": "declined"}})

    assert resp.status_code == 200
    assert resp.json()["transaction_id"] == intent["transaction_id"]
    assert resp.json()["classification"] == "failed"


def test_webhook_with_bad_signature_rejected(client):
    assert _webhook(client, {"transaction": {"more_info": "txn_x"}}, secret="wrong").status_code == 401
    assert _webhook(client, {"transaction": {"more_info": "txn_x"}}, secret=False).status_code == 401


def test_webhook_for_unknown_transaction_is_404(client):
    assert _webhook(client, {"transaction": {"more_info": "txn_unknown", "status_code": "000"}}).status_code == 404


def _webhook_logs(session_factory):
    with session_factory() as db:
        return list(db.execute(select(WebhookLog).order_by(WebhookLog.id)).scalars().all())


def test_rejected_webhook_is_still_logged(client, session_factory):
    resp = _webhook(client, {"transaction": {"more_info": "txn_x"}}, secret="wrong")

    assert resp.status_code == 401
    [entry] = _webhook_logs(session_factory)
    assert entry.status == "failed"
    assert "invalid webhook signature" in entry.error_message
    assert entry.event_data == {"transaction": {"more_info": "txn_x"}}
    assert entry.sender_info["ip"] == "testclient"
    assert entry.sender_info["signature_present"] is True
    assert entry.transaction_id is None
    assert "signature verified" not in entry.process_log


def test_unparseable_webhook_body_is_logged_raw(client, session_factory):
    body = b"status=approved&uid=1"
    headers = {"x-payplus-signature": sign(body, settings.payplus_secret_key)}

    resp = client.post("/webhooks/payplus", content=body, headers=headers)

    assert resp.status_code == 400
    [entry] = _webhook_logs(session_factory)
    assert entry.status == "failed"
    assert entry.event_data == {"raw": "status=approved&uid=1"}
    assert "not valid JSON" in entry.error_message


def test_webhook_for_unknown_transaction_is_logged(client, session_factory):
    payload = {
        "page_request_uid": "page_missing",
        "transaction": {"more_info": "txn_unknown", "status_code": "000", "uid": "gw_9"},
    }

    assert _webhook(client, payload).status_code == 404
    [entry] = _webhook_logs(session_factory)
    assert entry.status == "failed"
    assert entry.page_request_uid == "page_missing"
    assert entry.payplus_transaction_uid == "gw_9"
    assert entry.transaction_id is None
    assert "no transaction" in entry.error_message
    assert "signature verified" in entry.process_log


def test_processed_webhook_log_tracks_transaction(client, session_factory):
    item = _add_item(client)
    intent = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]}).json()

    _webhook(client, {"transaction": {"more_info": intent["transaction_id"], "status_code": "000", "uid": "gw_1"}})

    [entry] = _webhook_logs(session_factory)
    assert entry.status == "completed"
    assert entry.transaction_id == intent["transaction_id"]
    assert entry.response_data["classification"] == "completed"
    assert entry.processing_duration_ms is not None
    assert entry.error_message is None


def test_approval_after_failure_is_acknowledged_for_reconciliation(client, session_factory):
    item = _add_item(client)
    intent = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]}).json()
    transaction_id = intent["transaction_id"]
    _webhook(client, {"transaction": {"more_info": transaction_id, "status": "declined"}})

    resp = _webhook(client, {"transaction": {"more_info": transaction_id, "status_code": "000", "uid": "gw_2"}})

    assert resp.status_code == 200
    assert resp.json()["already_processed"] is True
    assert resp.json()["requires_reconciliation"] is True
    latest = _webhook_logs(session_factory)[-1]
    assert latest.status == "failed"
    assert latest.transaction_id == transaction_id


def test_operator_routes_require_api_key(client):
    assert client.get("/polling/status").status_code == 401
    assert client.get("/polling/status", headers=OPERATOR).status_code == 200
    assert client.post("/polling/run").status_code == 401


def test_manual_poll_cycle_and_single_check(client, gateway):
    item = _add_item(client)
    intent = client.post("/payments/intents", headers=BUYER, json={"cart_item_ids": [item["id"]]}).json()

    summary = client.post("/polling/run", headers=OPERATOR, json={"rate_limit_delay_ms": 0}).json()
    assert summary["checked"] == 1
    assert summary["still_pending"] == 1

    gateway.status_by_page["page_1"] = {"data": {"transaction": {"status_code": "000"}}}
    check = client.post(f"/polling/transactions/{intent['transaction_id']}", headers=OPERATOR).json()
    assert check["classification"] == "completed"
    assert check["status"] == "completed"
