from __future__ import annotations

import logging
from datetime import datetime, time

from sqlalchemy import func
from sqlalchemy.orm import Session

from restobot.core.request_context import set_request_context
from restobot.core.time_utils import DISPLAY_TZ, as_utc
from restobot.models.order import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_PAYMENT_PENDING,
    ORDER_PREPARING,
    ORDER_STATUSES,
    PAYMENT_COMPLETED,
    PAYMENT_REFUNDED,
    Order,
)
from restobot.services.order_events import emit_order_updated
from restobot.services.whatsapp_templates import STATUS_CHANGE_ACTION

logger = logging.getLogger(__name__)

# counted as "pending" on the dashboard
OPEN_ORDER_STATUSES = (ORDER_PAYMENT_PENDING, ORDER_CONFIRMED, ORDER_PREPARING)
TERMINAL_ORDER_STATUSES = (ORDER_DELIVERED, ORDER_CANCELLED)


class OrderStatusError(ValueError):
    pass


def get_order(db: Session, order_id: int) -> Order | None:
    return db.query(Order).filter(Order.id == order_id).first()


def list_orders(db: Session, *, status: str | None = None, limit: int = 50) -> list[Order]:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


def update_order_status(db: Session, order: Order, *, status: str, now: datetime) -> Order:
    """Admin-driven status change; emits one ``order_updated`` per actual change."""
    set_request_context(customer_id=order.customer_id, order_id=order.id)
    if status not in ORDER_STATUSES:
        raise OrderStatusError(f"Invalid order status: {status}")
    previous_status = order.status
    if previous_status == status:
        return order
    if previous_status in TERMINAL_ORDER_STATUSES:
        raise OrderStatusError(f"Order is already {previous_status} and cannot change")

    order.status = status
    order.updated_at = now
    if status == ORDER_DELIVERED and order.delivered_at is None:
        order.delivered_at = now
    db.commit()
    db.refresh(order)
    logger.info("order status changed order=%s %s -> %s", order.id, previous_status, status)

    emit_order_updated(order, action=STATUS_CHANGE_ACTION, previous_status=previous_status, now=now)
    return order


def refund_order(db: Session, order: Order, *, now: datetime) -> bool:
    """Mark a completed payment refunded. Returns False when nothing changed."""
    set_request_context(customer_id=order.customer_id, order_id=order.id)
    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.payment_status == PAYMENT_COMPLETED)
        .update(
            {Order.payment_status: PAYMENT_REFUNDED, Order.updated_at: now},
            synchronize_session=False,
        )
    )
    db.commit()
    if updated != 1:
        return False
    db.refresh(order)
    logger.info("order refunded order=%s", order.id)
    emit_order_updated(order, action="refunded", previous_status=order.status, now=now)
    return True


def order_stats(db: Session, *, now: datetime) -> dict:
    local_midnight = datetime.combine(as_utc(now).astimezone(DISPLAY_TZ).date(), time.min, tzinfo=DISPLAY_TZ)
    total_orders = db.query(func.count(Order.id)).scalar() or 0
    pending_orders = db.query(func.count(Order.id)).filter(Order.status.in_(OPEN_ORDER_STATUSES)).scalar() or 0
    revenue = (
        db.query(func.coalesce(func.sum(Order.total_cents), 0))
        .filter(Order.payment_status == PAYMENT_COMPLETED)
        .scalar()
    )
    today_orders = db.query(func.count(Order.id)).filter(Order.created_at >= as_utc(local_midnight)).scalar() or 0
    return {
        "total_orders": int(total_orders),
        "pending_orders": int(pending_orders),
        "total_revenue_cents": int(revenue or 0),
        "today_orders": int(today_orders),
    }
