import base64
import json
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from stablepay.api.http import create_app
from stablepay.application.service import build_service
from stablepay.domain.clock import ManualClock
from stablepay.infrastructure.store.memory import InMemoryRequestStore
from stablepay.settings import settings as app_settings


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def client(clock):
    cfg = replace(app_settings, SWEEP_ENABLED=False, WEBHOOK_URL=None, STORE_BACKEND="memory")
    service = build_service(cfg, store=InMemoryRequestStore(), clock=clock)
    with TestClient(create_app(service, cfg=cfg)) as cli:
        yield cli


def create(client, **body):
    body.setdefault("merchant_id", "merchant-1")
    resp = client.post("/payment-requests", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_create_get_settle_flow(client, clock):
    created = create(client, amount="12.50", currency="USDC", label="Coffee Shop")
    request = created["request"]
    assert request["status"] == "pending"
    assert request["amount"] == "12.50"
    assert request["seconds_remaining"] == 900
    assert json.loads(base64.b64decode(created["payload"]))["id"] == request["id"]

    clock.advance(seconds=60)
    view = client.get(f"/payment-requests/{request['id']}").json()
    assert view["seconds_remaining"] == 840

    resp = client.post(
        f"/payment-requests/{request['id']}/settle",
        json={"payer_ref": "wallet-7", "amount": "12.50", "currency": "USDC"},
    )
    assert resp.status_code == 200
    tx = resp.json()
    assert tx["amount"] == "12.50"
    assert tx["request_id"] == request["id"]

    paid = client.get(f"/payment-requests/{request['id']}").json()
    assert paid["status"] == "paid"
    assert paid["seconds_remaining"] == 0
    assert paid["settled_transaction_id"] == tx["id"]

    again = client.post(
        f"/payment-requests/{request['id']}/settle",
        json={"payer_ref": "wallet-8", "amount": "12.50", "currency": "USDC"},
    )
    assert again.status_code == 409
    assert again.json()["error"] == "already_settled"


def test_error_mapping(client, clock):
    bad = client.post("/payment-requests", json={"merchant_id": "m", "amount": "-5", "currency": "USDC"})
    assert bad.status_code == 400
    assert bad.json()["error"] == "validation_error"

    assert client.get("/payment-requests/REQNOPE").status_code == 404

    req = create(client, amount="5", currency="USDT")["request"]
    forbidden = client.post(f"/payment-requests/{req['id']}/cancel", json={"merchant_id": "intruder"})
    assert forbidden.status_code == 403

    clock.advance(minutes=15)
    expired = client.post(
        f"/payment-requests/{req['id']}/settle",
        json={"payer_ref": "p", "amount": "5", "currency": "USDT"},
    )
    assert expired.status_code == 410
    assert expired.json()["detail"] == "This code has expired, request a new one."

    malformed = client.post("/payloads/decode", json={"payload": "%%%"})
    assert malformed.status_code == 422
    assert malformed.json()["error"] == "malformed_payload"


def test_cancel_then_settle_is_rejected(client):
    req = create(client, amount="3", currency="USDC")["request"]

    resp = client.post(f"/payment-requests/{req['id']}/cancel", json={"merchant_id": "merchant-1"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    settle = client.post(
        f"/payment-requests/{req['id']}/settle",
        json={"payer_ref": "p", "amount": "3", "currency": "USDC"},
    )
    assert settle.status_code == 409
    assert settle.json()["error"] == "cancelled"


def test_static_request_and_payload_decode(client):
    created = client.post("/payment-requests/static", json={"merchant_id": "shop", "currency": "USDT"}).json()
    request = created["request"]
    assert request["kind"] == "static"
    assert request["amount"] is None

    payload = client.get(f"/payment-requests/{request['id']}/payload").json()["payload"]
    decoded = client.post("/payloads/decode", json={"payload": payload}).json()
    assert decoded["id"] == request["id"]
    assert decoded["amount"] is None
    assert decoded["currency"] == "USDT"


def test_events_stream_for_settled_request(client):
    req = create(client, amount="1", currency="USDC")["request"]
    client.post(
        f"/payment-requests/{req['id']}/settle",
        json={"payer_ref": "p", "amount": "1", "currency": "USDC"},
    )

    resp = client.get(f"/payment-requests/{req['id']}/events")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")
    ]
    assert [e["status"] for e in events] == ["paid"]


def test_transactions_and_stats(client):
    a = create(client, amount="10", currency="USDC")["request"]
    b = create(client, amount="2.5", currency="USDC")["request"]
    create(client, amount="1", currency="USDT", merchant_id="other")
    for req, amount in ((a, "10"), (b, "2.5")):
        client.post(
            f"/payment-requests/{req['id']}/settle",
            json={"payer_ref": "p", "amount": amount, "currency": "USDC"},
        )

    items = client.get("/transactions", params={"merchant_id": "merchant-1"}).json()["items"]
    assert [t["request_id"] for t in items] == [b["id"], a["id"]]

    stats = client.get("/stats").json()
    assert stats["requests_total"] == 3
    assert stats["requests_by_status"] == {"pending": 1, "paid": 2, "expired": 0, "cancelled": 0}
    assert stats["transactions_total"] == 2
    assert stats["volume_by_currency"] == {"USDC": "12.5"}


@pytest.mark.parametrize(
    "body",
    [
        {"merchant_id": "m", "amount": "NaN", "currency": "USDC"},
        {"amount": "1", "currency": "USDC"},
        {"merchant_id": "m", "amount": "1", "currency": 5},
    ],
)
def test_invalid_create_body_is_a_validation_error(client, body):
    resp = client.post("/payment-requests", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"
    assert isinstance(resp.json()["detail"], str)


def test_invalid_settle_body_and_query_are_validation_errors(client):
    req = create(client, amount="1", currency="USDC")["request"]

    settle = client.post(f"/payment-requests/{req['id']}/settle", json={"amount": "1", "currency": "USDC"})
    assert settle.status_code == 400
    assert "payer_ref" in settle.json()["detail"]

    listing = client.get("/transactions", params={"limit": 0})
    assert listing.status_code == 400
    assert listing.json()["error"] == "validation_error"
