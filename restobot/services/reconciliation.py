"""Turns payment signals (customer redirect, signed provider webhook) into order state.

Both signals may arrive in any order, more than once, and concurrently. The
only write that marks an order paid is the conditional UPDATE in
``apply_payment_transition``; whoever wins it owns the side effects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from restobot.core.config import AUTO_CONFIRM_DELAY_SECONDS, PAYMENT_REDIRECT_TRUST_FALLBACK
from restobot.core.locks import customer_locks
from restobot.core.request_context import set_request_context
from restobot.core.time_utils import utcnow
from restobot.fsm import states
from restobot.models.conversation import Conversation
from restobot.models.order import (
    ORDER_CANCELLED,
    ORDER_CONFIRMED,
    ORDER_PAYMENT_VERIFIED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    Order,
)
from restobot.payments.base import PaymentGateway, PaymentGatewayError, is_settled_status
from restobot.services.customers import record_paid_order
from restobot.services.order_events import emit_order_updated, emit_payment_received
from restobot.services.scheduler import register_task_handler, schedule_task

logger = logging.getLogger(__name__)

VERIFIED = "verified"
ALREADY_PAID = "already_paid"
PENDING = "pending"
NOT_FOUND = "not_found"
FAILED = "failed"
ALREADY_FAILED = "already_failed"
PAID_AFTER_CANCEL = "paid_after_cancel"
IGNORED = "ignored"

VERIFIED_BY_LOOKUP = "gateway_lookup"
VERIFIED_BY_PROVIDER_STATUS = "provider_status"
VERIFIED_BY_REDIRECT = "redirect_callback"

AUTO_CONFIRM_TASK = "auto_confirm_order"

# Stored when the only proof of payment is the redirect itself
UNKNOWN_TRANSACTION_REF = "VERIFIED"


@dataclass
class ReconciliationResult:
    outcome: str
    order: Order | None = None
    verified_by: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.outcome in {VERIFIED, ALREADY_PAID, PAID_AFTER_CANCEL}


# --- order lookups ---------------------------------------------------------


def _by_provider_ref(db: Session, provider_ref: str | None) -> Order | None:
    if not provider_ref:
        return None
    return db.query(Order).filter(Order.payment_provider_ref == provider_ref).first()


def _by_transaction_ref(db: Session, transaction_ref: str | None) -> Order | None:
    if not transaction_ref:
        return None
    return db.query(Order).filter(Order.payment_transaction_ref == transaction_ref).first()


def _by_reference(db: Session, reference: Any) -> Order | None:
    try:
        order_id = int(str(reference).strip())
    except (TypeError, ValueError):
        return None
    return db.query(Order).filter(Order.id == order_id).first()


def _notes_order_id(entity: dict) -> Any:
    notes = entity.get("notes")
    if isinstance(notes, dict):
        return notes.get("order_id")
    return None


def _entity(payload: dict, name: str) -> dict:
    wrapper = payload.get(name)
    if not isinstance(wrapper, dict):
        return {}
    entity = wrapper.get("entity")
    return entity if isinstance(entity, dict) else {}


def _settled_outcome(order: Order) -> str | None:
    if order.payment_status in {PAYMENT_COMPLETED, PAYMENT_REFUNDED}:
        return ALREADY_PAID
    if order.payment_status == PAYMENT_FAILED:
        return ALREADY_FAILED
    return None


# --- verification ----------------------------------------------------------


def _gateway_confirms(gateway: PaymentGateway, payment_id: str | None) -> bool:
    if not payment_id:
        return False
    try:
        payment = gateway.fetch_payment(payment_id)
    except PaymentGatewayError as exc:
        logger.warning("payment lookup failed payment=%s error=%s", payment_id, exc)
        return False
    if not payment.is_settled:
        logger.info("payment lookup not settled payment=%s status=%s", payment_id, payment.status)
        return False
    return True


# --- transitions -----------------------------------------------------------


def apply_payment_transition(
    db: Session,
    order_id: int,
    *,
    transaction_ref: str,
    now: datetime,
    cancelled: bool = False,
) -> bool:
    """Mark the order paid if it is still pending. True only for the caller that did it.

    A cancelled order keeps its ``cancelled`` status; only the payment is recorded.
    """
    values = {
        Order.payment_status: PAYMENT_COMPLETED,
        Order.payment_verified_at: now,
        Order.payment_transaction_ref: transaction_ref,
        Order.updated_at: now,
    }
    query = db.query(Order).filter(Order.id == order_id, Order.payment_status == PAYMENT_PENDING)
    if cancelled:
        query = query.filter(Order.status == ORDER_CANCELLED)
    else:
        query = query.filter(Order.status != ORDER_CANCELLED)
        values[Order.status] = ORDER_PAYMENT_VERIFIED
    updated = query.update(values, synchronize_session=False)
    db.commit()
    return updated == 1


def _record_payment_for_cancelled(
    db: Session,
    order: Order,
    *,
    transaction_ref: str,
    now: datetime,
) -> ReconciliationResult:
    if not apply_payment_transition(db, order.id, transaction_ref=transaction_ref, now=now, cancelled=True):
        db.refresh(order)
        return ReconciliationResult(_settled_outcome(order) or ALREADY_PAID, order)

    db.refresh(order)
    logger.warning("payment received for cancelled order=%s ref=%s, refund required", order.id, transaction_ref)
    emit_order_updated(order, action=PAID_AFTER_CANCEL, previous_status=ORDER_CANCELLED, now=now)
    return ReconciliationResult(PAID_AFTER_CANCEL, order)


def _complete_payment(
    db: Session,
    order: Order,
    *,
    transaction_ref: str,
    verified_by: str,
    now: datetime,
) -> ReconciliationResult:
    if order.status == ORDER_CANCELLED:
        return _record_payment_for_cancelled(db, order, transaction_ref=transaction_ref, now=now)

    if not apply_payment_transition(db, order.id, transaction_ref=transaction_ref, now=now):
        db.refresh(order)
        if order.payment_status == PAYMENT_PENDING and order.status == ORDER_CANCELLED:
            # an admin cancelled it between our read and the update
            return _record_payment_for_cancelled(db, order, transaction_ref=transaction_ref, now=now)
        logger.info("payment already settled order=%s payment_status=%s", order.id, order.payment_status)
        return ReconciliationResult(_settled_outcome(order) or ALREADY_PAID, order)

    db.refresh(order)
    logger.info("payment verified order=%s via=%s ref=%s", order.id, verified_by, transaction_ref)

    record_paid_order(db, order, now=now)
    db.commit()

    emit_payment_received(order, now=now)
    schedule_task(
        db,
        kind=AUTO_CONFIRM_TASK,
        order_id=order.id,
        delay_seconds=AUTO_CONFIRM_DELAY_SECONDS,
        now=now,
    )
    return ReconciliationResult(VERIFIED, order, verified_by)


def mark_payment_failed(db: Session, order_id: int, payment_id: str | None, *, now: datetime) -> ReconciliationResult:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        return ReconciliationResult(NOT_FOUND)
    previous_status = order.status

    values = {
        Order.payment_status: PAYMENT_FAILED,
        Order.status: ORDER_CANCELLED,
        Order.updated_at: now,
    }
    if payment_id:
        values[Order.payment_transaction_ref] = payment_id
    updated = (
        db.query(Order)
        .filter(
            Order.id == order_id,
            Order.payment_status == PAYMENT_PENDING,
            Order.status != ORDER_CANCELLED,
        )
        .update(values, synchronize_session=False)
    )
    db.commit()
    db.refresh(order)
    if updated != 1:
        logger.info(
            "payment failure ignored order=%s status=%s payment_status=%s",
            order.id,
            order.status,
            order.payment_status,
        )
        return ReconciliationResult(_settled_outcome(order) or ALREADY_FAILED, order)

    logger.info("payment failed order=%s payment=%s", order.id, payment_id)
    emit_order_updated(order, action="payment_failed", previous_status=previous_status, now=now)
    return ReconciliationResult(FAILED, order)


# --- entry points ----------------------------------------------------------


def reconcile_redirect(
    db: Session,
    *,
    link_id: str | None,
    payment_id: str | None,
    link_status: str | None,
    gateway: PaymentGateway,
    reference_id: str | None = None,
    now: datetime | None = None,
) -> ReconciliationResult:
    """Handle the customer's browser coming back from the hosted payment page."""
    now = now or utcnow()
    order = _by_provider_ref(db, link_id)
    if order is None:
        logger.warning("redirect for unknown payment link link=%s", link_id)
        return ReconciliationResult(NOT_FOUND)
    set_request_context(customer_id=order.customer_id, order_id=order.id)

    settled = _settled_outcome(order)
    if settled:
        return ReconciliationResult(settled, order)

    if _gateway_confirms(gateway, payment_id):
        verified_by = VERIFIED_BY_LOOKUP
    elif (link_status or "").lower() == "paid":
        verified_by = VERIFIED_BY_PROVIDER_STATUS
    elif PAYMENT_REDIRECT_TRUST_FALLBACK:
        logger.warning("payment not independently verified, trusting redirect order=%s", order.id)
        verified_by = VERIFIED_BY_REDIRECT
    else:
        return ReconciliationResult(PENDING, order)

    transaction_ref = payment_id or reference_id or UNKNOWN_TRANSACTION_REF
    return _complete_payment(db, order, transaction_ref=transaction_ref, verified_by=verified_by, now=now)


def _reconcile_link_paid(db: Session, payload: dict, gateway: PaymentGateway, now: datetime) -> ReconciliationResult:
    link = _entity(payload, "payment_link")
    payment = _entity(payload, "payment")
    order = (
        _by_provider_ref(db, link.get("id"))
        or _by_reference(db, link.get("reference_id"))
        or _by_reference(db, _notes_order_id(link))
    )
    if order is None:
        return ReconciliationResult(NOT_FOUND)
    return _reconcile_paid_order(db, order, link_status=link.get("status"), payment=payment, gateway=gateway, now=now)


def _reconcile_captured(db: Session, payload: dict, gateway: PaymentGateway, now: datetime) -> ReconciliationResult:
    payment = _entity(payload, "payment")
    order = _by_transaction_ref(db, payment.get("id")) or _by_reference(db, _notes_order_id(payment))
    if order is None:
        return ReconciliationResult(NOT_FOUND)
    return _reconcile_paid_order(db, order, link_status=None, payment=payment, gateway=gateway, now=now)


def _reconcile_paid_order(
    db: Session,
    order: Order,
    *,
    link_status: str | None,
    payment: dict,
    gateway: PaymentGateway,
    now: datetime,
) -> ReconciliationResult:
    set_request_context(customer_id=order.customer_id, order_id=order.id)
    settled = _settled_outcome(order)
    if settled:
        return ReconciliationResult(settled, order)

    payment_id = payment.get("id")
    if _gateway_confirms(gateway, payment_id):
        verified_by = VERIFIED_BY_LOOKUP
    elif (link_status or "").lower() == "paid" or is_settled_status(payment.get("status")):
        verified_by = VERIFIED_BY_PROVIDER_STATUS
    else:
        return ReconciliationResult(PENDING, order)

    return _complete_payment(
        db,
        order,
        transaction_ref=payment_id or UNKNOWN_TRANSACTION_REF,
        verified_by=verified_by,
        now=now,
    )


def _reconcile_failed(db: Session, payload: dict, now: datetime) -> ReconciliationResult:
    payment = _entity(payload, "payment")
    order = (
        _by_transaction_ref(db, payment.get("id"))
        or _by_provider_ref(db, payment.get("order_id"))
        or _by_reference(db, _notes_order_id(payment))
    )
    if order is None:
        return ReconciliationResult(NOT_FOUND)
    set_request_context(customer_id=order.customer_id, order_id=order.id)
    return mark_payment_failed(db, order.id, payment.get("id"), now=now)


def reconcile_webhook(
    db: Session,
    *,
    event: dict,
    gateway: PaymentGateway,
    now: datetime | None = None,
) -> ReconciliationResult:
    """Apply an already signature-checked provider webhook body."""
    now = now or utcnow()
    event_name = event.get("event")
    payload = event.get("payload") if isinstance(event.get("payload"), dict) else {}

    if event_name == "payment_link.paid":
        return _reconcile_link_paid(db, payload, gateway, now)
    if event_name == "payment.captured":
        return _reconcile_captured(db, payload, gateway, now)
    if event_name == "payment.failed":
        return _reconcile_failed(db, payload, now)

    logger.info("ignoring payment webhook event=%s", event_name)
    return ReconciliationResult(IGNORED)


# --- deferred confirmation -------------------------------------------------


def _reset_conversation(db: Session, customer_id: str) -> None:
    for attempt in range(2):
        conversation = db.query(Conversation).filter(Conversation.customer_id == customer_id).first()
        if conversation is None:
            return
        conversation.cart = []
        conversation.scratch = {}
        conversation.step = states.MAIN_MENU
        try:
            db.commit()
            return
        except StaleDataError:
            # another process wrote the conversation first; reload and retry once
            db.rollback()
            if attempt:
                raise


def auto_confirm_order(db: Session, order_id: int, now: datetime | None = None) -> bool:
    """Move a paid order on to ``confirmed`` and reset the customer's conversation.

    Safe to run more than once: does nothing unless the order is still
    ``payment_verified``.
    """
    now = now or utcnow()
    updated = (
        db.query(Order)
        .filter(Order.id == order_id, Order.status == ORDER_PAYMENT_VERIFIED)
        .update({Order.status: ORDER_CONFIRMED, Order.updated_at: now}, synchronize_session=False)
    )
    db.commit()
    if updated != 1:
        logger.info("auto-confirm skipped order=%s", order_id)
        return False

    order = db.query(Order).filter(Order.id == order_id).first()
    set_request_context(customer_id=order.customer_id, order_id=order.id)

    with customer_locks.hold(order.customer_id):
        _reset_conversation(db, order.customer_id)

    logger.info("order auto-confirmed order=%s", order.id)
    emit_order_updated(order, action="auto_confirmed", previous_status=ORDER_PAYMENT_VERIFIED, now=now)
    return True


register_task_handler(AUTO_CONFIRM_TASK, auto_confirm_order)
