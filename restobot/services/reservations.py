from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from restobot.fsm import states
from restobot.fsm.events import OutboundMessage, SendText, buttons
from restobot.models.conversation import Conversation
from restobot.models.reservation import RESERVATION_PENDING, RESERVATION_STATUSES, Reservation
from restobot.services.order_events import emit_reservation_created, emit_reservation_updated
from restobot.services.whatsapp_templates import STATUS_CHANGE_ACTION

logger = logging.getLogger(__name__)

RESERVATION_SCRATCH_KEYS = (
    "reservation_name",
    "reservation_date",
    "reservation_time",
    "party_size",
    "special_requests",
)


class ReservationStatusError(ValueError):
    pass


def create_reservation_from_conversation(
    db: Session,
    conversation: Conversation,
    *,
    now: datetime,
) -> list[OutboundMessage]:
    scratch = dict(conversation.scratch or {})
    reservation = Reservation(
        customer_id=conversation.customer_id,
        customer_name=scratch.get("reservation_name") or "Guest",
        date=date.fromisoformat(scratch["reservation_date"]),
        time=scratch.get("reservation_time") or "",
        party_size=int(scratch.get("party_size") or 1),
        special_requests=scratch.get("special_requests") or "",
        status=RESERVATION_PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(reservation)
    db.flush()

    for key in RESERVATION_SCRATCH_KEYS:
        scratch.pop(key, None)
    conversation.scratch = scratch
    conversation.active_reservation_id = reservation.id
    conversation.step = states.MAIN_MENU
    db.commit()
    db.refresh(reservation)
    logger.info("reservation created reservation=%s customer=%s", reservation.id, reservation.customer_id)

    emit_reservation_created(reservation, now=now)

    summary = (
        "✅ *Reservation Request Received!*\n\n"
        f"📋 Reservation ID: #{reservation.id}\n"
        f"👤 Name: {reservation.customer_name}\n"
        f"📅 Date: {reservation.date.strftime('%d %b %Y')}\n"
        f"⏰ Time: {reservation.time}\n"
        f"👥 Party Size: {reservation.party_size}\n"
    )
    if reservation.special_requests:
        summary += f"📝 Requests: {reservation.special_requests}\n"
    summary += "\nWe'll confirm your table shortly."
    return [
        SendText(summary),
        buttons(
            "What would you like to do next?",
            ("browse_menu", "🍕 Browse Menu"),
            ("my_reservations", "🪑 My Reservations"),
            ("main_menu", "🏠 Main Menu"),
        ),
    ]


def update_reservation_status(
    db: Session,
    reservation: Reservation,
    *,
    status: str,
    table_assignment: str | None = None,
    now: datetime,
) -> Reservation:
    if status not in RESERVATION_STATUSES:
        raise ReservationStatusError(f"Invalid reservation status: {status}")

    previous_status = reservation.status
    changed = previous_status != status
    if table_assignment is not None and table_assignment != reservation.table_assignment:
        reservation.table_assignment = table_assignment
        changed = True
    if not changed:
        return reservation

    reservation.status = status
    reservation.updated_at = now
    db.commit()
    db.refresh(reservation)
    emit_reservation_updated(
        reservation,
        action=STATUS_CHANGE_ACTION,
        previous_status=previous_status,
        now=now,
    )
    return reservation
