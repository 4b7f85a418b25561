from __future__ import annotations

from typing import Any, Iterable, Mapping

from restobot.core.config import SUPPORT_EMAIL

STATUS_CHANGE_ACTION = "status_updated"

FULFILLMENT_LABELS: dict[str, str] = {
    "delivery": "Delivery",
    "takeaway": "Takeaway",
    "dine-in": "Dine-in",
}

ORDER_STATUS_DISPLAY: dict[str, tuple[str, str]] = {
    "payment_pending": ("⏳", "Awaiting Payment"),
    "payment_verified": ("💳", "Payment Received"),
    "confirmed": ("✅", "Confirmed"),
    "preparing": ("👨‍🍳", "Being Prepared"),
    "ready": ("🍽️", "Ready"),
    "out_for_delivery": ("🛵", "Out for Delivery"),
    "delivered": ("📦", "Delivered"),
    "cancelled": ("❌", "Cancelled"),
}

RESERVATION_STATUS_DISPLAY: dict[str, str] = {
    "pending": "Pending",
    "confirmed": "Confirmed",
    "cancelled": "Cancelled",
    "completed": "Completed",
}

# Order copy keyed by the action that caused the change; checked before status copy.
ORDER_ACTION_TEMPLATES: dict[str, str] = {
    "payment_verified": (
        "✅ *Payment Successful!*\n\n"
        "📋 Order ID: #{order_ref}\n"
        "{item_lines}\n\n"
        "💰 Amount Paid: {order_total}\n"
        "💳 Payment ID: {transaction_ref}\n"
        "🛵 Type: {fulfillment}\n\n"
        "Thank you, {customer_name}! We're confirming your order now."
    ),
    "auto_confirmed": (
        "🎉 *Order Confirmed!*\n\n"
        "Your order #{order_ref} is confirmed and our kitchen has started on it.\n"
        "⏱️ Estimated time: 20-30 minutes\n\n"
        "Type \"status\" anytime to track your order."
    ),
    "payment_failed": (
        "❌ *Payment Failed*\n\n"
        "We couldn't process the payment for order #{order_ref}, so it has been cancelled.\n"
        "Type \"menu\" to place a new order."
    ),
    "paid_after_cancel": (
        "⚠️ We received {order_total} for order #{order_ref}, but that order had already been cancelled.\n"
        "Our team will refund you. Questions? Contact us at {support_email}"
    ),
    "refunded": (
        "💸 A refund of {order_total} for order #{order_ref} has been initiated. "
        "It usually reaches your account in 5-7 working days."
    ),
}

ORDER_STATUS_TEMPLATES: dict[str, str] = {
    "confirmed": "✅ Your order #{order_ref} has been confirmed and will be prepared shortly.",
    "preparing": "👨‍🍳 Your order #{order_ref} is being prepared!",
    "ready": "🍽️ Your order #{order_ref} is ready{ready_hint}!",
    "out_for_delivery": "🛵 Your order #{order_ref} is out for delivery! It will reach you soon.",
    "delivered": "📦 Your order #{order_ref} has been delivered. Enjoy your meal! 😋",
    "cancelled": (
        "❌ Your order #{order_ref} has been cancelled.\n"
        "Questions? Contact us at {support_email}"
    ),
}

RESERVATION_STATUS_TEMPLATES: dict[str, str] = {
    "confirmed": (
        "✅ *Reservation Confirmed!*\n\n"
        "📅 Date: {date}\n"
        "⏰ Time: {time}\n"
        "👥 Party Size: {party_size}\n"
        "🪑 Table: {table}\n\n"
        "See you soon!"
    ),
    "cancelled": (
        "❌ Your reservation #{reservation_ref} for {date} at {time} has been cancelled.\n"
        "Questions? Contact us at {support_email}"
    ),
}

_READY_HINTS = {
    "delivery": " and will be out for delivery shortly",
    "takeaway": " for pickup",
    "dine-in": " to be served",
}


def format_amount(cents: int | None) -> str:
    rupees, paise = divmod(int(cents or 0), 100)
    if paise:
        return f"₹{rupees:,}.{paise:02d}"
    return f"₹{rupees:,}"


def format_item_lines(items: Iterable[tuple[str, int, int]]) -> str:
    lines = [f"• {quantity} × {name} = {format_amount(subtotal)}" for name, quantity, subtotal in items]
    return "\n".join(lines) if lines else "(no items)"


def order_status_label(status: str | None) -> str:
    emoji, label = ORDER_STATUS_DISPLAY.get(status or "", ("ℹ️", (status or "").replace("_", " ").title()))
    return f"{emoji} {label}"


def _order_variables(data: Mapping[str, Any]) -> dict[str, Any]:
    fulfillment_type = data.get("fulfillment_type") or ""
    items = data.get("items") or []
    return {
        "order_ref": data.get("id"),
        "customer_name": data.get("customer_name") or "there",
        "order_total": format_amount(data.get("total_cents")),
        "transaction_ref": data.get("payment_transaction_ref") or "-",
        "fulfillment": FULFILLMENT_LABELS.get(fulfillment_type, fulfillment_type.title()),
        "ready_hint": _READY_HINTS.get(fulfillment_type, ""),
        "item_lines": format_item_lines(
            (item.get("name", ""), int(item.get("quantity") or 0), int(item.get("subtotal_cents") or 0))
            for item in items
        ),
        "support_email": SUPPORT_EMAIL,
    }


def _reservation_variables(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "reservation_ref": data.get("id"),
        "date": data.get("date_display") or data.get("date"),
        "time": data.get("time"),
        "party_size": data.get("party_size"),
        "table": data.get("table_assignment") or "to be assigned",
        "support_email": SUPPORT_EMAIL,
    }


def render_order_message(action: str | None, status: str | None, data: Mapping[str, Any]) -> str | None:
    template = ORDER_ACTION_TEMPLATES.get(action or "")
    if template is None and action == STATUS_CHANGE_ACTION:
        template = ORDER_STATUS_TEMPLATES.get(status or "")
    if template is None:
        return None
    return template.format(**_order_variables(data))


def render_reservation_message(action: str | None, status: str | None, data: Mapping[str, Any]) -> str | None:
    if action != STATUS_CHANGE_ACTION:
        return None
    template = RESERVATION_STATUS_TEMPLATES.get(status or "")
    if template is None:
        return None
    return template.format(**_reservation_variables(data))
