import json
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import restobot.models  # noqa: F401
import restobot.routers.webhook as webhook_router
import restobot.services.conversations as conversations
import restobot.services.event_handlers as event_handlers
from restobot.core.database import Base, get_db
from restobot.core.time_utils import utcnow
from restobot.fsm import states
from restobot.main import app
from restobot.models.conversation import Conversation
from restobot.models.customer import Customer
from restobot.models.menu_item import MenuItem
from restobot.models.order import Order
from restobot.models.processed_message import ProcessedMessage
from restobot.models.whatsapp_message_log import WhatsAppMessageLog
from restobot.payments.mock_provider import MockPaymentGateway
from restobot.payments.service import get_payment_gateway
from restobot.services import reconciliation
from restobot.services.realtime import admin_broadcaster
from restobot.services.scheduler import run_due_tasks
from restobot.whatsapp.cloud_provider import CloudWhatsAppProvider
from restobot.whatsapp.service import WhatsAppService
from tests.fixtures_data import (
    CUSTOMER_PHONE,
    DELIVERY_DETAILS,
    MENU_ITEMS,
    OTHER_CUSTOMER_PHONE,
    cloud_button_reply,
    cloud_list_reply,
    cloud_text_message,
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
    for data in MENU_ITEMS:
        db.add(MenuItem(**data))
    db.commit()

    gateway = MockPaymentGateway(base_url="https://bot.example.com")
    notifications = _RecordingSender()
    offline_cloud = CloudWhatsAppProvider(access_token="", phone_number_id="")

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    monkeypatch.setattr(conversations, "whatsapp_service", WhatsAppService(cloud_provider=offline_cloud))
    monkeypatch.setattr(event_handlers, "SessionLocal", testing_session_local)
    monkeypatch.setattr(event_handlers, "whatsapp_service", notifications)
    monkeypatch.setattr(reconciliation, "PAYMENT_REDIRECT_TRUST_FALLBACK", True)
    admin_broadcaster.clear()
    return TestClient(app), db, gateway, notifications


def _simulator_message(message_id, text=None, option_id=None, phone=CUSTOMER_PHONE):
    message = {"id": message_id, "from": phone, "text": text or ""}
    if option_id:
        message["option_id"] = option_id
    return {"message": message}


def _conversation(db, phone=CUSTOMER_PHONE):
    db.expire_all()
    return db.query(Conversation).filter(Conversation.customer_id == phone).one()


def test_full_order_flow_from_greeting_to_auto_confirmation(monkeypatch):
    client, db, gateway, notifications = _build_client(monkeypatch)
    steps = [
        ({"text": "hi"}, states.MAIN_MENU),
        ({"option_id": "browse_menu"}, states.BROWSING_CATEGORY),
        ({"option_id": "cat_starters"}, states.BROWSING_ITEMS),
        ({"option_id": "item_1"}, states.VIEWING_ITEM),
        ({"option_id": "add_1_2"}, states.MAIN_MENU),
        ({"option_id": "browse_menu"}, states.BROWSING_CATEGORY),
        ({"option_id": "cat_main_course"}, states.BROWSING_ITEMS),
        ({"option_id": "item_3"}, states.VIEWING_ITEM),
        ({"text": "add"}, states.MAIN_MENU),
        ({"option_id": "checkout"}, states.AWAITING_NAME),
        ({"text": DELIVERY_DETAILS["name"]}, states.AWAITING_ORDER_TYPE),
        ({"option_id": "delivery"}, states.AWAITING_ADDRESS),
        ({"text": DELIVERY_DETAILS["address"]}, states.AWAITING_CITY),
        ({"text": DELIVERY_DETAILS["city"]}, states.AWAITING_STATE),
        ({"text": DELIVERY_DETAILS["state"]}, states.AWAITING_PINCODE),
        ({"text": DELIVERY_DETAILS["pincode"]}, states.PAYMENT_PENDING),
    ]
    try:
        for index, (message, expected_step) in enumerate(steps):
            response = client.post("/webhook", json=_simulator_message(f"wamid.{index}", **message))
            assert response.status_code == 200
            assert response.json()["status"] == "ok"
            assert _conversation(db).step == expected_step, message

        order = db.query(Order).one()
        assert order.total_cents == 2 * 25000 + 32000
        assert order.payment_provider_ref == "plink_mock_000001"
        assert order.status == "payment_pending"

        outbound = db.query(WhatsAppMessageLog).filter(WhatsAppMessageLog.direction == "out").all()
        assert outbound
        assert order.payment_link_url in json.loads(outbound[-1].payload_json)["text"]

        gateway.record_payment("pay_e2e")
        redirect = client.get(
            "/payment-success",
            params={
                "razorpay_payment_link_id": "plink_mock_000001",
                "razorpay_payment_id": "pay_e2e",
                "razorpay_payment_link_status": "paid",
            },
        )
        assert redirect.status_code == 200
        assert "Payment Successful" in redirect.text
        assert "pay_e2e" in redirect.text

        db.expire_all()
        order = db.query(Order).one()
        assert order.payment_status == "completed"
        assert order.status == "payment_verified"
        assert db.query(Customer).filter(Customer.phone == CUSTOMER_PHONE).one().total_orders == 1

        assert run_due_tasks(db, now=utcnow() + timedelta(minutes=1)) == 1

        db.expire_all()
        assert db.query(Order).one().status == "confirmed"
        conversation = _conversation(db)
        assert conversation.step == states.MAIN_MENU
        assert conversation.cart == []
        assert conversation.scratch == {}

        assert [event["event"] for event in admin_broadcaster.recent()] == [
            "new_order",
            "payment_received",
            "order_updated",
        ]
        texts = [message["text"] for message in notifications.sent]
        assert "Payment Successful" in texts[0]
        assert "Order Confirmed" in texts[1]
    finally:
        app.dependency_overrides.clear()


def test_duplicate_message_ids_are_processed_once(monkeypatch):
    client, db, _, _ = _build_client(monkeypatch)
    payload = cloud_text_message("wamid.dup", CUSTOMER_PHONE, "hi")
    try:
        first = client.post("/webhook", json=payload)
        second = client.post("/webhook", json=payload)
    finally:
        app.dependency_overrides.clear()

    assert first.json() == {"status": "ok", "replies": 1}
    assert second.json() == {"status": "duplicate"}
    assert db.query(ProcessedMessage).count() == 1
    inbound = db.query(WhatsAppMessageLog).filter(WhatsAppMessageLog.direction == "in").all()
    assert len(inbound) == 1
    assert inbound[0].to_phone == "PHONE_ID"


def test_interactive_replies_drive_the_dialogue(monkeypatch):
    client, db, _, _ = _build_client(monkeypatch)
    try:
        client.post("/webhook", json=cloud_text_message("wamid.1", CUSTOMER_PHONE, "hello"))
        client.post("/webhook", json=cloud_button_reply("wamid.2", CUSTOMER_PHONE, "browse_menu", "🍕 Browse Menu"))
        assert _conversation(db).step == states.BROWSING_CATEGORY

        client.post("/webhook", json=cloud_list_reply("wamid.3", CUSTOMER_PHONE, "cat_main_course", "Main Course"))
    finally:
        app.dependency_overrides.clear()

    conversation = _conversation(db)
    assert conversation.step == states.BROWSING_ITEMS
    assert conversation.scratch["category"] == "Main Course"

    last_out = (
        db.query(WhatsAppMessageLog)
        .filter(WhatsAppMessageLog.direction == "out")
        .order_by(WhatsAppMessageLog.id.desc())
        .first()
    )
    payload = json.loads(last_out.payload_json)
    assert payload["interactive"]["type"] == "list"
    rows = payload["interactive"]["action"]["sections"][0]["rows"]
    assert [row["id"] for row in rows] == ["item_3"]


def test_conversations_are_kept_per_customer(monkeypatch):
    client, db, _, _ = _build_client(monkeypatch)
    try:
        client.post("/webhook", json=_simulator_message("m1", text="hi"))
        client.post("/webhook", json=_simulator_message("m2", option_id="browse_menu"))
        client.post("/webhook", json=_simulator_message("m3", text="hi", phone=OTHER_CUSTOMER_PHONE))
    finally:
        app.dependency_overrides.clear()

    assert _conversation(db).step == states.BROWSING_CATEGORY
    assert _conversation(db, OTHER_CUSTOMER_PHONE).step == states.MAIN_MENU


def test_status_callbacks_and_bad_bodies(monkeypatch):
    client, _, _, _ = _build_client(monkeypatch)
    statuses_only = {"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.x", "status": "read"}]}}]}]}
    try:
        ignored = client.post("/webhook", json=statuses_only)
        invalid = client.post("/webhook", content=b"not-json", headers={"Content-Type": "application/json"})
    finally:
        app.dependency_overrides.clear()

    assert ignored.json() == {"status": "ignored"}
    assert invalid.status_code == 400


def test_webhook_verification_handshake(monkeypatch):
    monkeypatch.setattr(webhook_router, "META_WA_VERIFY_TOKEN", "verify-me")
    client = TestClient(app)

    ok = client.get("/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"})
    denied = client.get("/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"})

    assert ok.status_code == 200
    assert ok.text == "42"
    assert denied.status_code == 403
