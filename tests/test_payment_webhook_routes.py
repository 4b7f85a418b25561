import json
import logging

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import restobot.models  # noqa: F401
import restobot.services.event_handlers as event_handlers
from restobot.core import config
from restobot.core.database import Base, get_db
from restobot.main import app
from restobot.models.order import Order
from restobot.payments.mock_provider import MockPaymentGateway
from restobot.payments.service import get_payment_gateway
from restobot.payments.signature import compute_signature, verify_webhook_signature
from restobot.services import reconciliation
from restobot.services.realtime import admin_broadcaster
from tests.fixtures_data import (
    CUSTOMER_PHONE,
    NOW,
    WEBHOOK_SECRET,
    link_paid_event,
    payment_failed_event,
)


class _RecordingSender:
    def __init__(self):
        self.sent = []

    def send_text(self, db, *, to_phone, text, context=None):
        self.sent.append({"to": to_phone, "text": text, "context": context or {}})


def _build_client(monkeypatch):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    db = testing_session_local()
    db.add(
        Order(
            id=1,
            customer_id=CUSTOMER_PHONE,
            customer_name="Asha Rao",
            total_cents=25000,
            fulfillment_type="takeaway",
            status="payment_pending",
            payment_status="pending",
            payment_provider_ref="plink_1",
            payment_link_url="https://rzp.io/i/plink_1",
            created_at=NOW,
            updated_at=NOW,
        )
    )
    db.commit()

    gateway = MockPaymentGateway()

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(event_handlers, "SessionLocal", testing_session_local)
    monkeypatch.setattr(event_handlers, "whatsapp_service", _RecordingSender())
    monkeypatch.setattr(reconciliation, "PAYMENT_REDIRECT_TRUST_FALLBACK", True)
    admin_broadcaster.clear()
    return TestClient(app), db, gateway


def _signed_post(client, event, *, secret=WEBHOOK_SECRET):
    body = json.dumps(event).encode("utf-8")
    return client.post(
        "/api/webhook/razorpay",
        content=body,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": compute_signature(body, secret)},
    )


def test_signature_verification_uses_exact_bytes():
    body = b'{"event":"payment.captured"}'
    signature = compute_signature(body, WEBHOOK_SECRET)

    assert verify_webhook_signature(body, signature, WEBHOOK_SECRET)
    assert verify_webhook_signature(body, f" {signature}\n", WEBHOOK_SECRET)
    assert not verify_webhook_signature(b'{"event": "payment.captured"}', signature, WEBHOOK_SECRET)
    assert not verify_webhook_signature(body, signature, "other-secret")
    assert not verify_webhook_signature(body, None, WEBHOOK_SECRET)
    assert not verify_webhook_signature(body, signature, "")


def test_signed_link_paid_webhook_verifies_order_once(monkeypatch):
    client, db, _ = _build_client(monkeypatch)
    try:
        first = _signed_post(client, link_paid_event("plink_1", "pay_1", 1))
        replay = _signed_post(client, link_paid_event("plink_1", "pay_1", 1))
    finally:
        app.dependency_overrides.clear()

    assert first.status_code == 200
    assert first.json() == {"status": "success", "event": "payment_link.paid", "outcome": "verified"}
    assert replay.json()["outcome"] == "already_paid"
    db.expire_all()
    order = db.query(Order).filter(Order.id == 1).one()
    assert order.payment_status == "completed"
    assert order.payment_transaction_ref == "pay_1"
    assert [event["event"] for event in admin_broadcaster.recent()] == ["payment_received"]


def test_tampered_or_unsigned_webhooks_are_rejected(monkeypatch):
    client, db, _ = _build_client(monkeypatch)
    event = link_paid_event("plink_1", "pay_1", 1)
    signed_body = json.dumps(event).encode("utf-8")
    try:
        reformatted = client.post(
            "/api/webhook/razorpay",
            content=json.dumps(event, indent=2).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "X-Razorpay-Signature": compute_signature(signed_body, WEBHOOK_SECRET),
            },
        )
        unsigned = client.post("/api/webhook/razorpay", content=signed_body)
        wrong_secret = _signed_post(client, event, secret="attacker")
    finally:
        app.dependency_overrides.clear()

    for response in (reformatted, unsigned, wrong_secret):
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid signature"}
    db.expire_all()
    assert db.query(Order).filter(Order.id == 1).one().payment_status == "pending"


def test_webhooks_are_rejected_when_no_secret_is_configured(monkeypatch):
    client, _, _ = _build_client(monkeypatch)
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", "")
    try:
        response = _signed_post(client, link_paid_event("plink_1", "pay_1", 1), secret="anything")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 400


def test_webhook_for_unknown_order_returns_404(monkeypatch):
    client, _, _ = _build_client(monkeypatch)
    try:
        response = _signed_post(client, link_paid_event("plink_404", "pay_404", 404))
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 404
    assert response.json() == {"error": "Order not found"}


def test_signed_but_malformed_body_returns_400(monkeypatch):
    client, _, _ = _build_client(monkeypatch)
    body = b"[not json"
    try:
        response = client.post(
            "/api/webhook/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": compute_signature(body, WEBHOOK_SECRET)},
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 400


def test_webhook_processing_errors_return_500(monkeypatch):
    client, _, _ = _build_client(monkeypatch)

    def broken(db, *, event, gateway, now=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(reconciliation, "reconcile_webhook", broken)
    try:
        response = _signed_post(client, link_paid_event("plink_1", "pay_1", 1))
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500


def test_redirect_pages(monkeypatch):
    client, db, gateway = _build_client(monkeypatch)
    try:
        missing = client.get("/payment-success")
        unknown = client.get("/payment-success", params={"razorpay_payment_link_id": "plink_nope"})

        monkeypatch.setattr(reconciliation, "PAYMENT_REDIRECT_TRUST_FALLBACK", False)
        pending = client.get("/payment-success", params={"razorpay_payment_link_id": "plink_1"})

        gateway.record_payment("pay_ok")
        paid = client.get(
            "/payment-success",
            params={"razorpay_payment_link_id": "plink_1", "razorpay_payment_id": "pay_ok"},
        )
        again = client.get(
            "/payment-success",
            params={"razorpay_payment_link_id": "plink_1", "razorpay_payment_id": "pay_ok"},
        )
    finally:
        app.dependency_overrides.clear()

    assert missing.status_code == 400
    assert "Missing payment link ID" in missing.text
    assert unknown.status_code == 404
    assert pending.status_code == 200
    assert "Payment Processing" in pending.text
    assert paid.status_code == 200
    assert "Payment Successful" in paid.text
    assert "pay_ok" in paid.text
    assert again.status_code == 200
    assert "Payment Successful" in again.text
    assert len(admin_broadcaster.recent()) == 1


def test_redirect_after_failed_payment_shows_error(monkeypatch):
    client, _, _ = _build_client(monkeypatch)
    try:
        _signed_post(client, payment_failed_event("pay_bad", 1))
        response = client.get(
            "/payment-success",
            params={"razorpay_payment_link_id": "plink_1", "razorpay_payment_link_status": "paid"},
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert "failed" in response.text
    assert "Payment Successful" not in response.text


def test_payment_after_admin_cancel_shows_refund_page(monkeypatch):
    client, db, gateway = _build_client(monkeypatch)
    gateway.record_payment("pay_ok")
    try:
        cancelled = client.put("/api/orders/1/status", json={"status": "cancelled"})
        page = client.get(
            "/payment-success",
            params={"razorpay_payment_link_id": "plink_1", "razorpay_payment_id": "pay_ok"},
        )
        reopened = client.put("/api/orders/1/status", json={"status": "preparing"})
    finally:
        app.dependency_overrides.clear()

    assert cancelled.status_code == 200
    assert page.status_code == 200
    assert "was cancelled before your payment arrived" in page.text
    assert "Payment Successful" not in page.text
    assert reopened.status_code == 400
    order = db.query(Order).filter(Order.id == 1).one()
    assert order.status == "cancelled"
    assert order.payment_status == "completed"
    assert [event["action"] for event in admin_broadcaster.recent()] == ["status_updated", "paid_after_cancel"]


def test_request_log_carries_customer_and_order_ids(monkeypatch, caplog):
    client, _, gateway = _build_client(monkeypatch)
    gateway.record_payment("pay_ok")
    caplog.set_level(logging.INFO, logger="restobot.middleware.observability")
    try:
        response = client.get(
            "/payment-success",
            params={"razorpay_payment_link_id": "plink_1", "razorpay_payment_id": "pay_ok"},
            headers={"X-Request-ID": "req-42"},
        )
    finally:
        app.dependency_overrides.clear()

    assert response.headers["X-Request-ID"] == "req-42"
    completed = [record for record in caplog.records if record.name == "restobot.middleware.observability"]
    assert completed[-1].request_id == "req-42"
    assert completed[-1].customer_id == CUSTOMER_PHONE
    assert completed[-1].order_id == "1"
    assert completed[-1].status_code == 200
    assert completed[-1].endpoint == "/payment-success"
