import json
import logging
from html import escape
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from restobot.core import config
from restobot.core.database import get_db
from restobot.models.order import ORDER_CANCELLED, Order
from restobot.payments.base import PaymentGateway
from restobot.payments.service import get_payment_gateway
from restobot.payments.signature import verify_webhook_signature
from restobot.services import reconciliation
from restobot.services.whatsapp_templates import format_amount

router = APIRouter(tags=["payments"])
logger = logging.getLogger(__name__)

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
           background: #f4f4f8; display: flex; align-items: center; justify-content: center;
           min-height: 100vh; margin: 0; padding: 20px; }}
    .card {{ background: #fff; border-radius: 16px; padding: 32px; max-width: 460px; width: 100%;
            text-align: center; box-shadow: 0 10px 40px rgba(0,0,0,0.12); }}
    .icon {{ font-size: 56px; }}
    h1 {{ color: {color}; margin: 12px 0; }}
    table {{ width: 100%; margin: 20px 0; text-align: left; border-collapse: collapse; }}
    td {{ padding: 6px 0; border-bottom: 1px solid #eee; }}
    a.button {{ display: inline-block; margin-top: 16px; padding: 12px 24px; border-radius: 24px;
               background: #25d366; color: #fff; text-decoration: none; font-weight: 600; }}
  </style>
</head>
<body>
  <div class="card">
    <div class="icon">{icon}</div>
    <h1>{title}</h1>
    <p>{message}</p>
    {details}
    {action}
  </div>
</body>
</html>"""


def _whatsapp_link(phone: str | None) -> str:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if not digits:
        return ""
    return f'<a class="button" href="https://wa.me/{digits}">Back to WhatsApp</a>'


def _order_details(order: Order, payment_ref: str | None) -> str:
    rows = [
        ("Order", f"#{order.id}"),
        ("Amount", format_amount(order.total_cents)),
        ("Payment ID", payment_ref or "-"),
        ("Status", order.status.replace("_", " ").title()),
    ]
    body = "".join(f"<tr><td>{escape(label)}</td><td>{escape(str(value))}</td></tr>" for label, value in rows)
    return f"<table>{body}</table>"


def render_success_page(order: Order, payment_ref: str | None) -> str:
    return _PAGE.format(
        title="Payment Successful",
        icon="✅",
        color="#1a9b50",
        message=escape(f"Thank you! Your payment for order #{order.id} has been received. "
                       "A confirmation has been sent to your WhatsApp."),
        details=_order_details(order, payment_ref),
        action=_whatsapp_link(order.customer_id),
    )


def render_pending_page(order: Order, payment_ref: str | None) -> str:
    return _PAGE.format(
        title="Payment Processing",
        icon="⏳",
        color="#d48806",
        message=escape("We haven't been able to confirm your payment yet. "
                       "You'll get a WhatsApp message as soon as it goes through."),
        details=_order_details(order, payment_ref),
        action=_whatsapp_link(order.customer_id),
    )


def render_error_page(message: str) -> str:
    return _PAGE.format(
        title="Something went wrong",
        icon="⚠️",
        color="#cf1322",
        message=escape(message),
        details="",
        action=escape(f"Need help? Contact {config.SUPPORT_EMAIL}"),
    )


@router.get("/payment-success", response_class=HTMLResponse)
def payment_success(
    razorpay_payment_link_id: Optional[str] = Query(None),
    razorpay_payment_id: Optional[str] = Query(None),
    razorpay_payment_link_status: Optional[str] = Query(None),
    razorpay_payment_link_reference_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    logger.info(
        "payment redirect received link=%s payment=%s status=%s",
        razorpay_payment_link_id,
        razorpay_payment_id,
        razorpay_payment_link_status,
    )
    if not razorpay_payment_link_id:
        return HTMLResponse(render_error_page("Invalid payment callback. Missing payment link ID."), status_code=400)

    try:
        result = reconciliation.reconcile_redirect(
            db,
            link_id=razorpay_payment_link_id,
            payment_id=razorpay_payment_id,
            link_status=razorpay_payment_link_status,
            reference_id=razorpay_payment_link_reference_id,
            gateway=gateway,
        )
    except Exception:
        db.rollback()
        logger.exception("payment redirect failed link=%s", razorpay_payment_link_id)
        return HTMLResponse(render_error_page("An error occurred. Please contact support."), status_code=500)

    if result.outcome == reconciliation.NOT_FOUND:
        return HTMLResponse(
            render_error_page("Order not found. Please contact support with your payment details."),
            status_code=404,
        )
    order = result.order
    if result.is_paid and order.status == ORDER_CANCELLED:
        return HTMLResponse(
            render_error_page(
                f"Order #{order.id} was cancelled before your payment arrived. "
                f"A refund of {format_amount(order.total_cents)} will be arranged."
            )
        )
    if result.is_paid:
        return HTMLResponse(render_success_page(order, order.payment_transaction_ref or razorpay_payment_id))
    if result.outcome == reconciliation.ALREADY_FAILED:
        return HTMLResponse(render_error_page(f"Payment for order #{order.id} failed. Please place a new order."))
    return HTMLResponse(render_pending_page(order, razorpay_payment_id))


@router.post("/api/webhook/razorpay")
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    if not verify_webhook_signature(body, signature, config.RAZORPAY_WEBHOOK_SECRET):
        logger.warning("razorpay webhook rejected: invalid signature")
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})

    try:
        event = json.loads(body)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
    if not isinstance(event, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    event_name = event.get("event")
    logger.info("razorpay webhook received event=%s", event_name)
    try:
        result = await run_in_threadpool(reconciliation.reconcile_webhook, db, event=event, gateway=gateway)
    except Exception:
        await run_in_threadpool(db.rollback)
        logger.exception("razorpay webhook failed event=%s", event_name)
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    if result.outcome == reconciliation.NOT_FOUND:
        return JSONResponse(status_code=404, content={"error": "Order not found"})
    return {"status": "success", "event": event_name, "outcome": result.outcome}
