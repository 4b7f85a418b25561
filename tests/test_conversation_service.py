from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import restobot.models  # noqa: F401
import restobot.services.event_handlers as event_handlers
from restobot.core.database import Base
from restobot.core.locks import KeyedLock
from restobot.fsm import states
from restobot.fsm.events import InboundEvent, SendButtons, SendText
from restobot.models.conversation import Conversation
from restobot.models.processed_message import ProcessedMessage
from restobot.models.reservation import Reservation
from restobot.payments.mock_provider import MockPaymentGateway
from restobot.services.conversations import (
    get_or_create_conversation,
    handle_inbound_event,
    process_inbound_message,
)
from restobot.services.realtime import admin_broadcaster
from restobot.whatsapp.cloud_provider import CloudWhatsAppProvider
from restobot.whatsapp.service import WhatsAppService
from tests.fixtures_data import CUSTOMER_PHONE, NOW


def _build_session_factory(monkeypatch):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(event_handlers, "SessionLocal", testing_session_local)
    admin_broadcaster.clear()
    return testing_session_local


class _ExplodingSender(WhatsAppService):
    def __init__(self):
        super().__init__(cloud_provider=CloudWhatsAppProvider(access_token="", phone_number_id=""))
        self.attempts = 0

    def send_message(self, db, *, to_phone, message, context=None):
        self.attempts += 1
        raise RuntimeError("graph api down")


def test_first_contact_creates_conversation_in_welcome_state(monkeypatch):
    session_factory = _build_session_factory(monkeypatch)
    db = session_factory()

    conversation = get_or_create_conversation(db, CUSTOMER_PHONE, now=NOW)
    again = get_or_create_conversation(db, CUSTOMER_PHONE, now=NOW)

    assert conversation.id == again.id
    assert conversation.step == states.WELCOME
    assert conversation.cart == []
    assert db.query(Conversation).count() == 1


def test_reservation_command_creates_pending_reservation(monkeypatch):
    session_factory = _build_session_factory(monkeypatch)
    db = session_factory()
    db.add(
        Conversation(
            customer_id=CUSTOMER_PHONE,
            step=states.RESERVATION_SPECIAL_REQUESTS,
            cart=[{"item_id": 1, "name": "Paneer Tikka", "quantity": 1, "unit_price_cents": 25000}],
            scratch={
                "reservation_name": "Asha",
                "reservation_date": "2026-03-14",
                "reservation_time": "7:30 PM",
                "party_size": 4,
            },
        )
    )
    db.commit()

    messages = handle_inbound_event(
        db,
        InboundEvent(customer_id=CUSTOMER_PHONE, text="Window seat please"),
        gateway=MockPaymentGateway(),
        now=NOW,
    )

    reservation = db.query(Reservation).one()
    assert reservation.customer_name == "Asha"
    assert reservation.date.isoformat() == "2026-03-14"
    assert reservation.party_size == 4
    assert reservation.special_requests == "Window seat please"
    assert reservation.status == "pending"

    conversation = db.query(Conversation).one()
    assert conversation.step == states.MAIN_MENU
    assert conversation.active_reservation_id == reservation.id
    assert "reservation_date" not in conversation.scratch
    assert len(conversation.cart) == 1

    assert isinstance(messages[0], SendText)
    assert "Reservation Request Received" in messages[0].body
    assert "14 Mar 2026" in messages[0].body
    assert isinstance(messages[1], SendButtons)
    assert [event["event"] for event in admin_broadcaster.recent()] == ["new_reservation"]


def test_send_failures_are_logged_and_do_not_fail_the_message(monkeypatch):
    session_factory = _build_session_factory(monkeypatch)
    db = session_factory()
    sender = _ExplodingSender()

    result = process_inbound_message(
        db,
        message_id="wamid.boom",
        from_number=CUSTOMER_PHONE,
        text="hi",
        gateway=MockPaymentGateway(),
        sender=sender,
        now=NOW,
    )

    assert result == {"status": "ok", "replies": 1}
    assert sender.attempts == 1
    assert db.query(ProcessedMessage).count() == 1
    assert db.query(Conversation).one().step == states.MAIN_MENU


def test_keyed_lock_is_reentrant_and_releases_idle_keys():
    locks = KeyedLock()

    with locks.hold(CUSTOMER_PHONE):
        with locks.hold(CUSTOMER_PHONE):
            assert locks.active_keys() == 1
        assert locks.active_keys() == 1

    assert locks.active_keys() == 0
