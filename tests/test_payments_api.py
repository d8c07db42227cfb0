"""HTTP contract of the payments service."""

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from cvpay.common.ratelimit import InMemoryRateLimitStore, RateLimiter
from cvpay.common.state_machine import COMPLETED, PROCESSING
from cvpay.services.gateway.schemas import PushRejected
from cvpay.services.gateway.signing import compute_digest
from cvpay.services.payments.main import client_ip, create_app


SIGNED_FIELDS = ["transid", "order_id", "reference", "resultcode", "result", "amount"]
TS = "2026-10-18T10:15:00+03:00"


@pytest.fixture
def client(service):
    limiter = RateLimiter(InMemoryRateLimitStore(), limit=3)
    return TestClient(create_app(service, limiter))


def webhook(client, order_id, resultcode="000", secret="test-secret"):
    body = {
        "result": "SUCCESS",
        "resultcode": resultcode,
        "order_id": order_id,
        "transid": "TXN123",
        "reference": "REF-1",
        "amount": "5000",
    }
    headers = {
        "Timestamp": TS,
        "Digest": compute_digest(secret, TS, body, SIGNED_FIELDS),
        "Signed-Fields": ",".join(SIGNED_FIELDS),
    }
    return client.post("/payments/webhook", json=body, headers=headers)


def test_webhook_ack_and_status_poll(client, seed_payment):
    order_id, cv_id = seed_payment(status=PROCESSING)

    resp = webhook(client, order_id)
    assert resp.status_code == 200
    assert resp.json() == {"result": "SUCCESS", "resultcode": "000", "message": "Webhook processed successfully"}

    status = client.get("/payments/status", params={"orderId": order_id})
    assert status.status_code == 200
    assert status.json() == {
        "status": COMPLETED,
        "cvId": cv_id,
        "transactionId": "TXN123",
        "message": "Payment successful! Your CV is ready for download.",
    }


def test_duplicate_webhook_is_acknowledged(client, seed_payment):
    order_id, _ = seed_payment()

    assert webhook(client, order_id).status_code == 200
    assert webhook(client, order_id).status_code == 200


def test_webhook_with_bad_signature_is_unauthorized(client, seed_payment, load_payment):
    order_id, _ = seed_payment(status=PROCESSING)

    resp = webhook(client, order_id, secret="forged")

    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid signature"}
    assert load_payment(order_id).status == PROCESSING


def test_webhook_for_unknown_order_is_acknowledged(client):
    assert webhook(client, "CV-unknown-1").status_code == 200


def test_webhook_rejects_malformed_bodies(client):
    not_json = client.post("/payments/webhook", content=b"{oops", headers={"Content-Type": "application/json"})
    assert not_json.status_code == 400

    body = {"resultcode": "000"}
    headers = {
        "Timestamp": TS,
        "Digest": compute_digest("test-secret", TS, body, ["resultcode"]),
        "Signed-Fields": "resultcode",
    }
    missing_order = client.post("/payments/webhook", json=body, headers=headers)
    assert missing_order.status_code == 400
    assert missing_order.json() == {"error": "Invalid webhook payload"}


def test_status_requires_order_id_and_known_order(client):
    assert client.get("/payments/status").status_code == 400

    missing = client.get("/payments/status", params={"orderId": "CV-nope-1"})
    assert missing.status_code == 404
    assert missing.json() == {"error": "Payment not found"}


def test_pending_status_omits_unset_fields(client, gateway, seed_payment):
    order_id, _ = seed_payment()

    body = client.get("/payments/status", params={"orderId": order_id}).json()

    assert body == {"status": "pending", "message": "Checking payment status..."}


def test_initiate_returns_camel_case_and_is_rate_limited(client):
    payload = {"templateId": "modern", "phone": "0712345678", "cvData": {"personalInfo": {"firstName": "Asha"}}}

    first = client.post("/payments/initiate", json=payload)
    assert first.status_code == 200
    body = first.json()
    assert body["success"] is True
    assert body["orderId"].startswith(f"CV-{body['cvId']}-")
    assert body["paymentGatewayUrl"] == "https://checkout.example/pay/tok-1"
    assert body["amount"] == 5000
    assert body["currency"] == "TZS"

    client.post("/payments/initiate", json=payload)
    client.post("/payments/initiate", json=payload)
    limited = client.post("/payments/initiate", json=payload)
    assert limited.status_code == 429
    assert limited.json() == {"error": "Too many requests"}


def test_initiate_with_bad_phone_is_bad_request(client):
    resp = client.post("/payments/initiate", json={"templateId": "modern", "phone": "12345"})

    assert resp.status_code == 400
    assert "Invalid phone number" in resp.json()["error"]


def test_push_ussd(client, gateway, seed_payment, load_payment):
    order_id, _ = seed_payment()

    resp = client.post("/payments/push-ussd", json={"orderId": order_id, "msisdn": "0712345678"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    assert resp.json()["reference"] == "PUSH-REF"
    assert load_payment(order_id).status == PROCESSING


def test_push_ussd_rejection_returns_result_code(client, gateway, seed_payment):
    order_id, _ = seed_payment()
    gateway.push_result = PushRejected(resultcode="403", message="Insufficient balance")

    resp = client.post("/payments/push-ussd", json={"orderId": order_id, "msisdn": "0712345678"})

    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Insufficient balance", "resultcode": "403"}


def test_download_is_gated_on_payment(client, seed_payment):
    order_id, cv_id = seed_payment()

    locked = client.get(f"/cvs/{cv_id}/download")
    assert locked.status_code == 402

    webhook(client, order_id)
    unlocked = client.get(f"/cvs/{cv_id}/download")
    assert unlocked.status_code == 200
    assert unlocked.json()["cvId"] == cv_id
    assert unlocked.json()["status"] == "downloaded"


def test_sweep_requires_api_key(client):
    assert client.post("/internal/payments/sweep").status_code == 401

    resp = client.post("/internal/payments/sweep", headers={"x-api-key": "test-api-key"})
    assert resp.status_code == 200
    assert resp.json() == {"checked": 0, "completed": 0, "failed": 0, "expired": 0, "unresolved": 0}


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    assert b"http_requests_total" in client.get("/metrics").content


def _request(peer, forwarded=None):
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "headers": headers, "client": (peer, 40000)})


def test_client_ip_ignores_forwarded_header_without_trusted_proxy():
    assert client_ip(_request("10.0.0.5", "6.6.6.6"), trusted_proxy_hops=0) == "10.0.0.5"


def test_client_ip_uses_hop_appended_by_trusted_proxy():
    request = _request("10.0.0.5", "6.6.6.6, 41.59.1.2")

    assert client_ip(request, trusted_proxy_hops=1) == "41.59.1.2"
    assert client_ip(request, trusted_proxy_hops=2) == "6.6.6.6"
    assert client_ip(_request("10.0.0.5"), trusted_proxy_hops=1) == "10.0.0.5"


def test_spoofed_forwarded_for_does_not_reset_the_limit(client):
    payload = {"templateId": "modern", "phone": "0712345678"}

    statuses = [
        client.post("/payments/initiate", json=payload, headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
        for i in range(4)
    ]

    assert statuses == [200, 200, 200, 429]
