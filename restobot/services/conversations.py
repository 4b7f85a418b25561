from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from restobot.core.locks import customer_locks
from restobot.core.request_context import set_request_context
from restobot.core.time_utils import utcnow
from restobot.fsm import states
from restobot.fsm.engine import process_event
from restobot.fsm.events import CreateReservation, InboundEvent, OutboundMessage, StartCheckout
from restobot.models.conversation import Conversation
from restobot.models.processed_message import ProcessedMessage
from restobot.payments.base import PaymentGateway
from restobot.services.checkout import run_checkout
from restobot.services.reservations import create_reservation_from_conversation
from restobot.whatsapp.service import WhatsAppService, whatsapp_service

logger = logging.getLogger(__name__)


def get_or_create_conversation(db: Session, customer_id: str, *, now: datetime) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.customer_id == customer_id).first()
    if conversation is not None:
        return conversation

    conversation = Conversation(
        customer_id=customer_id,
        step=states.INITIAL_STATE,
        cart=[],
        scratch={},
        last_activity_at=now,
        created_at=now,
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # created by another worker in the meantime
        db.rollback()
        conversation = db.query(Conversation).filter(Conversation.customer_id == customer_id).one()
    return conversation


def _run_engine(db: Session, event: InboundEvent, *, now: datetime):
    for attempt in range(2):
        conversation = get_or_create_conversation(db, event.customer_id, now=now)
        result = process_event(db, conversation, event, now=now)
        conversation.last_activity_at = now
        try:
            db.commit()
            return conversation, result
        except StaleDataError:
            db.rollback()
            if attempt:
                raise
            logger.warning("conversation changed concurrently, retrying customer=%s", event.customer_id)


def handle_inbound_event(
    db: Session,
    event: InboundEvent,
    *,
    gateway: PaymentGateway,
    now: datetime | None = None,
) -> list[OutboundMessage]:
    """Run one customer event through the dialogue engine and carry out its commands.

    Events for the same customer are serialized; different customers run in parallel.
    """
    now = now or utcnow()
    set_request_context(customer_id=event.customer_id)
    with customer_locks.hold(event.customer_id):
        conversation, result = _run_engine(db, event, now=now)
        messages = list(result.messages)
        for command in result.commands:
            if isinstance(command, StartCheckout):
                messages.extend(run_checkout(db, conversation, gateway=gateway, now=now))
            elif isinstance(command, CreateReservation):
                messages.extend(create_reservation_from_conversation(db, conversation, now=now))
        return messages


def _mark_processed(db: Session, message_id: str, customer_id: str) -> bool:
    if db.query(ProcessedMessage).filter_by(message_id=message_id).first():
        return False
    db.add(ProcessedMessage(message_id=message_id, customer_id=customer_id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def process_inbound_message(
    db: Session,
    *,
    message_id: str,
    from_number: str,
    text: str | None,
    option_id: str | None = None,
    message_type: str = "text",
    contact_name: str | None = None,
    phone_number_id: str | None = None,
    gateway: PaymentGateway,
    sender: WhatsAppService | None = None,
    now: datetime | None = None,
) -> dict:
    sender = sender or whatsapp_service
    logger.info("WhatsApp received from=%s message_id=%s type=%s", from_number, message_id, message_type)

    if not _mark_processed(db, message_id, from_number):
        logger.info("WhatsApp duplicate ignored message_id=%s", message_id)
        return {"status": "duplicate"}

    sender.log_inbound(
        db,
        from_phone=from_number,
        to_phone=phone_number_id,
        message_type=message_type,
        payload={"text": text, "option_id": option_id, "contact_name": contact_name},
        provider_message_id=message_id,
    )

    event = InboundEvent(customer_id=from_number, text=text, selected_option_id=option_id)
    with customer_locks.hold(from_number):
        messages = handle_inbound_event(db, event, gateway=gateway, now=now)
        # replies go out under the lock so a customer sees them in order
        for message in messages:
            try:
                sender.send_message(db, to_phone=from_number, message=message)
            except Exception:
                db.rollback()
                logger.exception("WhatsApp reply failed to=%s", from_number)

    return {"status": "ok", "replies": len(messages)}
