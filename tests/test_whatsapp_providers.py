import json

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import restobot.models  # noqa: F401
import restobot.whatsapp.cloud_provider as cloud_provider
import restobot.whatsapp.service as whatsapp_service_module
from restobot.core.database import Base
from restobot.fsm.events import ListRow, SendText, buttons, single_section_list
from restobot.models.whatsapp_message_log import WhatsAppMessageLog
from restobot.services.backoff import InMemoryBackoffService
from restobot.whatsapp.cloud_provider import CloudWhatsAppProvider, parse_cloud_webhook
from restobot.whatsapp.service import WhatsAppService, build_interactive_payload
from tests.fixtures_data import CUSTOMER_PHONE, cloud_button_reply, cloud_list_reply, cloud_text_message


def _build_db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return testing_session_local()


def _cloud(handler, monkeypatch):
    monkeypatch.setattr(cloud_provider, "_backoff_service", InMemoryBackoffService())
    return CloudWhatsAppProvider(
        access_token="EAAG-test-token",
        phone_number_id="1234567890",
        transport=httpx.MockTransport(handler),
    )


def test_parse_cloud_webhook_reads_text_and_reply_ids():
    text = parse_cloud_webhook(cloud_text_message("wamid.1", CUSTOMER_PHONE, " Hi "))
    button = parse_cloud_webhook(cloud_button_reply("wamid.2", CUSTOMER_PHONE, "browse_menu", "🍕 Browse Menu"))
    row = parse_cloud_webhook(cloud_list_reply("wamid.3", CUSTOMER_PHONE, "item_3", "Butter Chicken"))

    assert text == [
        {
            "message_id": "wamid.1",
            "from_number": CUSTOMER_PHONE,
            "text": "Hi",
            "option_id": None,
            "message_type": "text",
            "phone_number_id": "PHONE_ID",
            "contact_name": "Asha",
        }
    ]
    assert (button[0]["option_id"], button[0]["text"]) == ("browse_menu", "🍕 Browse Menu")
    assert (row[0]["option_id"], row[0]["message_type"]) == ("item_3", "interactive")


def test_interactive_payloads_match_cloud_api_shape():
    button_payload = build_interactive_payload(buttons("Pick one", ("a", "Alpha"), ("b", "Beta")))
    list_payload = build_interactive_payload(
        single_section_list("Menu", "View", "Starters", [ListRow("item_1", "Paneer Tikka", "🟢 ₹250"), ListRow("item_2", "Chicken 65")])
    )

    assert button_payload == {
        "type": "button",
        "body": {"text": "Pick one"},
        "action": {
            "buttons": [
                {"type": "reply", "reply": {"id": "a", "title": "Alpha"}},
                {"type": "reply", "reply": {"id": "b", "title": "Beta"}},
            ]
        },
    }
    assert list_payload["type"] == "list"
    assert list_payload["action"]["button"] == "View"
    assert list_payload["action"]["sections"][0]["rows"] == [
        {"id": "item_1", "title": "Paneer Tikka", "description": "🟢 ₹250"},
        {"id": "item_2", "title": "Chicken 65"},
    ]


def test_cloud_send_logs_provider_message_id_and_masks_token(monkeypatch):
    db = _build_db()
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.out.1"}]})

    provider = _cloud(handler, monkeypatch)
    log_entry = provider.send_text(db, to_phone=CUSTOMER_PHONE, text="Hello", context={"token": "secret-value"})

    assert captured["url"].endswith("/1234567890/messages")
    assert captured["auth"] == "Bearer EAAG-test-token"
    assert captured["body"]["text"] == {"preview_url": False, "body": "Hello"}
    assert log_entry.status == "sent"
    assert log_entry.provider_message_id == "wamid.out.1"
    stored = json.loads(db.query(WhatsAppMessageLog).one().payload_json)
    assert stored["context"]["token"] == "****alue"


def test_cloud_send_stops_retrying_on_client_errors(monkeypatch):
    db = _build_db()
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(400, json={"error": {"message": "Invalid recipient"}})

    provider = _cloud(handler, monkeypatch)
    log_entry = provider.send_text(db, to_phone="000", text="Hello")

    assert len(attempts) == 1
    assert log_entry.status == "failed"
    assert "400" in log_entry.error


def test_cloud_send_retries_server_errors(monkeypatch):
    db = _build_db()
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json={"messages": [{"id": "wamid.out.3"}]})

    provider = _cloud(handler, monkeypatch)
    log_entry = provider.send_text(db, to_phone=CUSTOMER_PHONE, text="Hello")

    assert len(attempts) == 3
    assert log_entry.status == "sent"


def test_service_uses_mock_provider_when_cloud_is_not_configured():
    db = _build_db()
    service = WhatsAppService(cloud_provider=CloudWhatsAppProvider(access_token="", phone_number_id=""))

    log_entry = service.send_message(db, to_phone=CUSTOMER_PHONE, message=SendText("Hi there"))

    assert log_entry.status == "sent"
    assert log_entry.provider_message_id.startswith("mock-")
    assert json.loads(log_entry.payload_json)["text"] == "Hi there"


def test_service_falls_back_to_mock_in_dev_when_cloud_fails(monkeypatch):
    db = _build_db()
    provider = _cloud(lambda request: httpx.Response(401, json={}), monkeypatch)
    monkeypatch.setattr(whatsapp_service_module, "IS_DEV", True)
    service = WhatsAppService(cloud_provider=provider)

    log_entry = service.send_message(db, to_phone=CUSTOMER_PHONE, message=buttons("Pick", ("a", "Alpha")))

    statuses = [row.status for row in db.query(WhatsAppMessageLog).order_by(WhatsAppMessageLog.id).all()]
    assert statuses == ["failed", "sent"]
    assert json.loads(log_entry.payload_json)["context"]["fallback"] == "mock"
