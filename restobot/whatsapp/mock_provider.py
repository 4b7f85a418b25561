from __future__ import annotations

import uuid
from typing import Any, Iterable

from sqlalchemy.orm import Session

from restobot.models.whatsapp_message_log import WhatsAppMessageLog
from restobot.whatsapp.base import WhatsAppProvider, create_message_log


class MockWhatsAppProvider(WhatsAppProvider):
    """Records outbound messages in the message log without calling Meta."""

    def send_text(
        self,
        db: Session,
        *,
        to_phone: str,
        text: str,
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        payload = {
            "type": "text",
            "to": to_phone,
            "text": text,
            "context": context or {},
        }
        return self._record(db, to_phone=to_phone, message_type="text", payload=payload)

    def send_interactive(
        self,
        db: Session,
        *,
        to_phone: str,
        payload: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        body = {
            "type": "interactive",
            "to": to_phone,
            "interactive": payload,
            "context": context or {},
        }
        return self._record(db, to_phone=to_phone, message_type="interactive", payload=body)

    def parse_webhook(self, payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
        message = payload.get("message") or {}
        if not message or not message.get("from"):
            return []
        return [
            {
                "message_id": message.get("id") or f"mock-{uuid.uuid4().hex[:8]}",
                "from_number": message.get("from"),
                "text": (message.get("text") or "").strip(),
                "option_id": message.get("option_id"),
                "message_type": message.get("type", "text"),
                "contact_name": message.get("contact_name"),
            }
        ]

    def _record(
        self,
        db: Session,
        *,
        to_phone: str,
        message_type: str,
        payload: dict[str, Any],
    ) -> WhatsAppMessageLog:
        return create_message_log(
            db,
            direction="out",
            to_phone=to_phone,
            from_phone=None,
            message_type=message_type,
            payload=payload,
            status="sent",
            provider_message_id=f"mock-{uuid.uuid4().hex[:10]}",
        )
