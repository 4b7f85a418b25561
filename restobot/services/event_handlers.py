from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from restobot.core.database import SessionLocal
from restobot.services.event_bus import event_bus
from restobot.services.order_events import (
    ADMIN_EVENTS,
    ORDER_UPDATED,
    PAYMENT_RECEIVED,
    RESERVATION_UPDATED,
)
from restobot.services.realtime import admin_broadcaster
from restobot.services.whatsapp_templates import render_order_message, render_reservation_message
from restobot.whatsapp.service import whatsapp_service

logger = logging.getLogger(__name__)


def _with_session(handler):
    def wrapper(payload: dict) -> None:
        db: Session = SessionLocal()
        try:
            handler(db, payload)
        finally:
            db.close()

    wrapper.__name__ = handler.__name__
    return wrapper


def broadcast_to_admins(payload: dict) -> None:
    admin_broadcaster.publish(payload)


def _send_to_customer(db: Session, payload: dict, text: str | None) -> None:
    phone = payload.get("customer_id")
    if not text or not phone:
        return
    data = payload.get("data") or {}
    whatsapp_service.send_text(
        db,
        to_phone=phone,
        text=text,
        context={"event": payload.get("event"), "action": payload.get("action"), "record_id": data.get("id")},
    )


@_with_session
def notify_customer_about_order(db: Session, payload: dict) -> None:
    text = render_order_message(payload.get("action"), payload.get("status"), payload.get("data") or {})
    _send_to_customer(db, payload, text)


@_with_session
def notify_customer_about_reservation(db: Session, payload: dict) -> None:
    text = render_reservation_message(payload.get("action"), payload.get("status"), payload.get("data") or {})
    _send_to_customer(db, payload, text)


for _event_name in ADMIN_EVENTS:
    event_bus.subscribe(_event_name, broadcast_to_admins)
event_bus.subscribe(PAYMENT_RECEIVED, notify_customer_about_order)
event_bus.subscribe(ORDER_UPDATED, notify_customer_about_order)
event_bus.subscribe(RESERVATION_UPDATED, notify_customer_about_reservation)
