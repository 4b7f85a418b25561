from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from restobot.core.request_context import set_request_context
from restobot.fsm import states
from restobot.fsm.events import OutboundMessage, SendText, buttons
from restobot.models.conversation import Conversation
from restobot.models.order import ORDER_PAYMENT_PENDING, PAYMENT_PENDING, Order
from restobot.models.order_item import OrderItem
from restobot.payments.base import PaymentGateway, PaymentGatewayError
from restobot.services import catalog
from restobot.services.customers import upsert_customer
from restobot.services.order_events import emit_order_created
from restobot.services.whatsapp_templates import FULFILLMENT_LABELS, format_amount, format_item_lines

logger = logging.getLogger(__name__)


def _delivery_address(scratch: dict) -> dict | None:
    if scratch.get("order_type", "delivery") != "delivery":
        return None
    return {
        "street": scratch.get("address", ""),
        "city": scratch.get("city", ""),
        "state": scratch.get("state", ""),
        "pincode": scratch.get("pincode", ""),
    }


def _build_order(conversation: Conversation, lines: list[dict], *, now: datetime) -> Order:
    scratch = dict(conversation.scratch or {})
    order = Order(
        customer_id=conversation.customer_id,
        customer_name=scratch.get("name") or "",
        total_cents=catalog.cart_total(lines),
        fulfillment_type=scratch.get("order_type") or "delivery",
        delivery_address_json=_delivery_address(scratch),
        status=ORDER_PAYMENT_PENDING,
        payment_status=PAYMENT_PENDING,
        created_at=now,
        updated_at=now,
    )
    for line in lines:
        quantity = int(line.get("quantity") or 0)
        unit_price = int(line.get("unit_price_cents") or 0)
        order.order_items.append(
            OrderItem(
                menu_item_id=int(line["item_id"]),
                name=line.get("name") or "",
                quantity=quantity,
                unit_price_cents=unit_price,
                subtotal_cents=quantity * unit_price,
            )
        )
    return order


def _payment_message(order: Order, link_url: str) -> str:
    item_lines = format_item_lines((item.name, item.quantity, item.subtotal_cents) for item in order.order_items)
    return (
        f"🧾 *Order #{order.id} Summary*\n\n"
        f"{item_lines}\n\n"
        f"💰 Total: {format_amount(order.total_cents)}\n"
        f"🛵 Type: {FULFILLMENT_LABELS.get(order.fulfillment_type, order.fulfillment_type)}\n\n"
        f"💳 Complete your payment here:\n{link_url}\n\n"
        "Your order will be confirmed as soon as the payment goes through."
    )


def run_checkout(
    db: Session,
    conversation: Conversation,
    *,
    gateway: PaymentGateway,
    now: datetime,
) -> list[OutboundMessage]:
    """Turn the conversation cart into a pending order and hand out a payment link.

    Never marks the order paid; that only happens through reconciliation.
    """
    lines = catalog.live_cart_lines(db, conversation.cart)
    if not lines:
        conversation.step = states.MAIN_MENU
        db.commit()
        return [
            buttons(
                "🛒 Your cart is empty! Add some items before checking out.",
                ("browse_menu", "🍕 Browse Menu"),
                ("main_menu", "🏠 Main Menu"),
            )
        ]

    order = _build_order(conversation, lines, now=now)
    db.add(order)
    upsert_customer(
        db,
        phone=conversation.customer_id,
        name=order.customer_name or None,
        address=order.delivery_address_json,
    )
    db.flush()
    conversation.active_order_id = order.id
    db.commit()
    set_request_context(order_id=order.id)
    logger.info("order created order=%s customer=%s total=%s", order.id, order.customer_id, order.total_cents)

    try:
        link = gateway.create_payment_link(
            amount_cents=int(order.total_cents),
            reference_id=str(order.id),
            customer_phone=order.customer_id,
            customer_name=order.customer_name or None,
            description=f"Order #{order.id}",
        )
    except PaymentGatewayError as exc:
        logger.warning("payment link creation failed order=%s error=%s", order.id, exc)
        conversation.step = states.MAIN_MENU
        db.commit()
        emit_order_created(order, now=now)
        return [
            buttons(
                "⚠️ We couldn't create a payment link right now. Your cart is saved, please try again in a moment.",
                ("checkout", "🔁 Try Again"),
                ("view_cart", "🛒 View Cart"),
                ("main_menu", "🏠 Main Menu"),
            )
        ]

    # the provider ref is written once; a concurrent writer keeps its value
    db.query(Order).filter(Order.id == order.id, Order.payment_provider_ref.is_(None)).update(
        {
            Order.payment_provider_ref: link.id,
            Order.payment_link_url: link.short_url,
            Order.updated_at: now,
        },
        synchronize_session=False,
    )
    conversation.step = states.PAYMENT_PENDING
    db.commit()
    db.refresh(order)
    emit_order_created(order, now=now)
    return [SendText(_payment_message(order, order.payment_link_url or link.short_url))]
