from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from restobot.models.customer import Customer
from restobot.models.order import Order


def get_customer(db: Session, phone: str) -> Customer | None:
    if not phone:
        return None
    return db.query(Customer).filter(Customer.phone == phone).first()


def upsert_customer(
    db: Session,
    *,
    phone: str,
    name: str | None = None,
    address: dict | None = None,
) -> Customer:
    """Create or refresh the customer profile; the caller commits."""
    customer = get_customer(db, phone)
    if customer is None:
        customer = Customer(phone=phone, total_orders=0, total_spent_cents=0)
        db.add(customer)
    if name:
        customer.name = name
    if address:
        customer.address_json = dict(address)
    return customer


def record_paid_order(db: Session, order: Order, *, now: datetime) -> Customer:
    customer = upsert_customer(db, phone=order.customer_id, name=order.customer_name or None)
    customer.total_orders = int(customer.total_orders or 0) + 1
    customer.total_spent_cents = int(customer.total_spent_cents or 0) + int(order.total_cents or 0)
    customer.last_order_at = now
    return customer
