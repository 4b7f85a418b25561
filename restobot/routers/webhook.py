import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from restobot.core.config import META_WA_VERIFY_TOKEN
from restobot.core.database import get_db
from restobot.payments.base import PaymentGateway
from restobot.payments.service import get_payment_gateway
from restobot.services.conversations import process_inbound_message
from restobot.whatsapp.cloud_provider import parse_cloud_webhook
from restobot.whatsapp.mock_provider import MockWhatsAppProvider

router = APIRouter()
logger = logging.getLogger(__name__)

_mock_provider = MockWhatsAppProvider()


@router.get("/webhook")
async def verify_webhook(request: Request):
    qp = request.query_params
    mode = qp.get("hub.mode")
    token = qp.get("hub.verify_token")
    challenge = qp.get("hub.challenge")

    if mode == "subscribe" and META_WA_VERIFY_TOKEN and token == META_WA_VERIFY_TOKEN:
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(challenge or "")

    raise HTTPException(status_code=403, detail="Invalid verify token")


def _extract_messages(payload: dict) -> list[dict]:
    if "entry" in payload:
        return parse_cloud_webhook(payload)
    # local simulator format: {"message": {"id", "from", "text", "option_id"}}
    return list(_mock_provider.parse_webhook(payload))


@router.post("/webhook")
async def whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    messages = _extract_messages(payload)
    if not messages:
        # delivery receipts and status callbacks carry no customer message
        return {"status": "ignored"}

    results = []
    for message in messages:
        result = await run_in_threadpool(
            process_inbound_message,
            db,
            message_id=message["message_id"],
            from_number=message["from_number"],
            text=message.get("text"),
            option_id=message.get("option_id"),
            message_type=message.get("message_type") or "text",
            contact_name=message.get("contact_name"),
            phone_number_id=message.get("phone_number_id"),
            gateway=gateway,
        )
        results.append(result)

    if len(results) == 1:
        return results[0]
    return {"status": "ok", "results": results}
