from __future__ import annotations

from datetime import datetime
from typing import Any

from restobot.core.time_utils import format_local, isoformat, utcnow
from restobot.models.order import Order
from restobot.models.order_item import OrderItem
from restobot.models.reservation import Reservation
from restobot.services.event_bus import event_bus

NEW_ORDER = "new_order"
PAYMENT_RECEIVED = "payment_received"
ORDER_UPDATED = "order_updated"
NEW_RESERVATION = "new_reservation"
RESERVATION_UPDATED = "reservation_updated"
MENU_UPDATED = "menu_updated"

ADMIN_EVENTS = (
    NEW_ORDER,
    PAYMENT_RECEIVED,
    ORDER_UPDATED,
    NEW_RESERVATION,
    RESERVATION_UPDATED,
    MENU_UPDATED,
)


def order_item_to_dict(item: OrderItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "menu_item_id": item.menu_item_id,
        "name": item.name,
        "quantity": item.quantity,
        "unit_price_cents": item.unit_price_cents,
        "subtotal_cents": item.subtotal_cents,
    }


def order_to_dict(order: Order) -> dict[str, Any]:
    return {
        "id": order.id,
        "customer_id": order.customer_id,
        "customer_name": order.customer_name,
        "total_cents": int(order.total_cents or 0),
        "fulfillment_type": order.fulfillment_type,
        "delivery_address": order.delivery_address_json,
        "special_instructions": order.special_instructions,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_provider_ref": order.payment_provider_ref,
        "payment_link_url": order.payment_link_url,
        "payment_transaction_ref": order.payment_transaction_ref,
        "items": [order_item_to_dict(item) for item in order.order_items],
        "created_at": isoformat(order.created_at),
        "updated_at": isoformat(order.updated_at),
        "payment_verified_at": isoformat(order.payment_verified_at),
        "delivered_at": isoformat(order.delivered_at),
    }


def reservation_to_dict(reservation: Reservation) -> dict[str, Any]:
    return {
        "id": reservation.id,
        "customer_id": reservation.customer_id,
        "customer_name": reservation.customer_name,
        "date": reservation.date.isoformat() if reservation.date else None,
        "date_display": reservation.date.strftime("%d %b %Y") if reservation.date else None,
        "time": reservation.time,
        "party_size": reservation.party_size,
        "special_requests": reservation.special_requests,
        "status": reservation.status,
        "table_assignment": reservation.table_assignment,
        "created_at": isoformat(reservation.created_at),
        "created_at_display": format_local(reservation.created_at),
    }


def build_event_payload(
    event: str,
    *,
    action: str,
    data: dict[str, Any],
    previous_status: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    return {
        "event": event,
        "action": action,
        "data": data,
        "customer_id": data.get("customer_id"),
        "status": data.get("status"),
        "previous_status": previous_status,
        "timestamp": isoformat(now or utcnow()),
    }


def emit_order_created(order: Order, *, now: datetime | None = None) -> None:
    event_bus.emit(NEW_ORDER, build_event_payload(NEW_ORDER, action="created", data=order_to_dict(order), now=now))


def emit_payment_received(order: Order, *, now: datetime | None = None) -> None:
    payload = build_event_payload(
        PAYMENT_RECEIVED,
        action="payment_verified",
        data=order_to_dict(order),
        previous_status="payment_pending",
        now=now,
    )
    event_bus.emit(PAYMENT_RECEIVED, payload)


def emit_order_updated(
    order: Order,
    *,
    action: str,
    previous_status: str | None = None,
    now: datetime | None = None,
) -> None:
    payload = build_event_payload(
        ORDER_UPDATED,
        action=action,
        data=order_to_dict(order),
        previous_status=previous_status,
        now=now,
    )
    event_bus.emit(ORDER_UPDATED, payload)


def emit_reservation_created(reservation: Reservation, *, now: datetime | None = None) -> None:
    payload = build_event_payload(
        NEW_RESERVATION,
        action="created",
        data=reservation_to_dict(reservation),
        now=now,
    )
    event_bus.emit(NEW_RESERVATION, payload)


def emit_reservation_updated(
    reservation: Reservation,
    *,
    action: str,
    previous_status: str | None = None,
    now: datetime | None = None,
) -> None:
    payload = build_event_payload(
        RESERVATION_UPDATED,
        action=action,
        data=reservation_to_dict(reservation),
        previous_status=previous_status,
        now=now,
    )
    event_bus.emit(RESERVATION_UPDATED, payload)


def emit_menu_updated(action: str, data: dict[str, Any], *, now: datetime | None = None) -> None:
    event_bus.emit(MENU_UPDATED, build_event_payload(MENU_UPDATED, action=action, data=data, now=now))
