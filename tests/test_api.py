"""Intake HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from settlepay.services.gateway.api import create_app
from settlepay.services.gateway.provider import ProviderResult

BODY = {
    "idempotency_key": "order-1001",
    "amount": "10.00",
    "currency": "usd",
    "merchant_id": "merchant-1",
    "customer_id": "cust-1",
    "description": "order #1001",
}


@pytest.fixture
def client(service, dispatcher):
    app = create_app(service, dispatcher, immediate_dispatch=False, run_background=False)
    with TestClient(app) as test_client:
        yield test_client


def test_create_returns_pending_payment(client):
    resp = client.post("/api/v1/payments", json=BODY)

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "PENDING"
    assert body["amount"] == "10.00"
    assert body["currency"] == "USD"
    assert body["retry_count"] == 0
    assert body["completed_at"] is None


def test_duplicate_key_returns_conflict(client):
    first = client.post("/api/v1/payments", json=BODY)
    second = client.post("/api/v1/payments", json={**BODY, "amount": "20.00"})

    assert second.status_code == 409
    assert second.json()["error_code"] == "DUPLICATE_PAYMENT"
    assert "order-1001" in second.json()["message"]
    fetched = client.get(f"/api/v1/payments/{first.json()['payment_id']}")
    assert fetched.json()["amount"] == "10.00"


def test_lookup_by_id_and_by_key(client):
    created = client.post("/api/v1/payments", json=BODY).json()

    by_id = client.get(f"/api/v1/payments/{created['payment_id']}")
    by_key = client.get("/api/v1/payments", params={"idempotency_key": "order-1001"})

    assert by_id.status_code == 200
    assert by_key.status_code == 200
    assert by_key.json()["payment_id"] == created["payment_id"]


def test_unknown_payment_returns_not_found(client):
    resp = client.get("/api/v1/payments/does-not-exist")
    by_key = client.get("/api/v1/payments", params={"idempotency_key": "nope"})

    assert resp.status_code == 404
    assert resp.json()["error_code"] == "PAYMENT_NOT_FOUND"
    assert by_key.status_code == 404


@pytest.mark.parametrize(
    "override",
    [
        {"amount": "0.00"},
        {"amount": "-5.00"},
        {"amount": "1.001"},
        {"currency": "US"},
        {"currency": "12$"},
        {"idempotency_key": ""},
        {"merchant_id": "   "},
    ],
)
def test_invalid_payload_is_rejected(client, override):
    resp = client.post("/api/v1/payments", json={**BODY, **override})

    assert resp.status_code == 422


def test_immediate_dispatch_settles_after_response(service, dispatcher, provider):
    provider.push(ProviderResult.success("MOCK_TXN_1"))
    app = create_app(service, dispatcher, immediate_dispatch=True, run_background=False)

    with TestClient(app) as client:
        created = client.post("/api/v1/payments", json=BODY).json()
        fetched = client.get(f"/api/v1/payments/{created['payment_id']}").json()

    assert created["status"] == "PENDING"
    assert fetched["status"] == "COMPLETED"
    assert fetched["provider_reference"] == "MOCK_TXN_1"
    assert fetched["completed_at"] is not None


def test_health_and_metrics(client):
    client.post("/api/v1/payments", json=BODY)

    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "payments_created_total" in metrics.text


def test_timeline_endpoint(client):
    created = client.post("/api/v1/payments", json=BODY).json()

    resp = client.get(f"/api/v1/payments/{created['payment_id']}/timeline")

    assert resp.status_code == 200
    assert [(row["from_state"], row["to_state"]) for row in resp.json()] == [(None, "PENDING")]
    assert client.get("/api/v1/payments/nope/timeline").status_code == 404


def test_manual_settle_waits_for_the_shared_limiter(client, dispatcher, monotonic, provider):
    created = client.post("/api/v1/payments", json=BODY).json()
    # The dispatcher already spent this window.
    assert dispatcher.limiter.try_acquire(2)
    started = monotonic()

    resp = client.post(f"/api/v1/payments/{created['payment_id']}/settle", params={"timeout_seconds": 5})

    assert resp.status_code == 200
    assert resp.json()["status"] == "COMPLETED"
    assert monotonic() - started >= 1.0
    assert provider.calls_for(created["payment_id"]) == 1


def test_manual_settle_gives_up_when_no_permit_comes_free(client, dispatcher, provider):
    created = client.post("/api/v1/payments", json=BODY).json()
    assert dispatcher.limiter.try_acquire(2)

    resp = client.post(f"/api/v1/payments/{created['payment_id']}/settle", params={"timeout_seconds": 0.5})

    assert resp.status_code == 429
    assert resp.json()["error_code"] == "PROVIDER_RATE_LIMITED"
    assert provider.calls == []
    assert client.get(f"/api/v1/payments/{created['payment_id']}").json()["status"] == "PENDING"


def test_manual_settle_rejects_non_pending_and_unknown(client):
    created = client.post("/api/v1/payments", json=BODY).json()
    path = f"/api/v1/payments/{created['payment_id']}/settle"
    assert client.post(path).status_code == 200

    again = client.post(path)

    assert again.status_code == 409
    assert again.json()["error_code"] == "PAYMENT_NOT_PENDING"
    assert client.post("/api/v1/payments/nope/settle").status_code == 404
