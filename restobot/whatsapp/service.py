from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from restobot.core.config import IS_DEV, META_WA_ACCESS_TOKEN, META_WA_PHONE_NUMBER_ID
from restobot.fsm.events import OutboundMessage, SendButtons, SendList, SendText
from restobot.models.whatsapp_message_log import WhatsAppMessageLog
from restobot.whatsapp.base import WhatsAppProvider, create_message_log
from restobot.whatsapp.cloud_provider import CloudWhatsAppProvider
from restobot.whatsapp.mock_provider import MockWhatsAppProvider

logger = logging.getLogger(__name__)


def build_interactive_payload(message: SendButtons | SendList) -> dict[str, Any]:
    """Render a button or list message as a Cloud API ``interactive`` object."""
    if isinstance(message, SendButtons):
        return {
            "type": "button",
            "body": {"text": message.body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": option.id, "title": option.title}}
                    for option in message.options
                ]
            },
        }
    sections = []
    for section in message.sections:
        rows = []
        for row in section.rows:
            rendered = {"id": row.id, "title": row.title}
            if row.description:
                rendered["description"] = row.description
            rows.append(rendered)
        sections.append({"title": section.title, "rows": rows})
    return {
        "type": "list",
        "body": {"text": message.body},
        "action": {"button": message.button_label, "sections": sections},
    }


class WhatsAppService:
    def __init__(
        self,
        *,
        cloud_provider: CloudWhatsAppProvider | None = None,
        mock_provider: MockWhatsAppProvider | None = None,
    ) -> None:
        self._mock_provider = mock_provider or MockWhatsAppProvider()
        self._cloud_provider = cloud_provider or CloudWhatsAppProvider(
            access_token=META_WA_ACCESS_TOKEN,
            phone_number_id=META_WA_PHONE_NUMBER_ID,
        )

    def _select_provider(self) -> WhatsAppProvider:
        if self._cloud_provider.is_configured:
            return self._cloud_provider
        return self._mock_provider

    def _should_fallback(self) -> bool:
        return IS_DEV

    def send_text(
        self,
        db: Session,
        *,
        to_phone: str,
        text: str,
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        provider = self._select_provider()
        log_entry = provider.send_text(db, to_phone=to_phone, text=text, context=context)
        if log_entry.status == "failed" and provider is self._cloud_provider and self._should_fallback():
            logger.warning("WhatsApp Cloud failed, falling back to mock (to=%s)", to_phone)
            return self._mock_provider.send_text(
                db,
                to_phone=to_phone,
                text=text,
                context={"fallback": "mock", **(context or {})},
            )
        return log_entry

    def send_interactive(
        self,
        db: Session,
        *,
        to_phone: str,
        payload: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        provider = self._select_provider()
        log_entry = provider.send_interactive(db, to_phone=to_phone, payload=payload, context=context)
        if log_entry.status == "failed" and provider is self._cloud_provider and self._should_fallback():
            logger.warning("WhatsApp Cloud failed, falling back to mock (to=%s)", to_phone)
            return self._mock_provider.send_interactive(
                db,
                to_phone=to_phone,
                payload=payload,
                context={"fallback": "mock", **(context or {})},
            )
        return log_entry

    def send_message(
        self,
        db: Session,
        *,
        to_phone: str,
        message: OutboundMessage,
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        if isinstance(message, SendText):
            return self.send_text(db, to_phone=to_phone, text=message.body, context=context)
        return self.send_interactive(
            db,
            to_phone=to_phone,
            payload=build_interactive_payload(message),
            context=context,
        )

    def log_inbound(
        self,
        db: Session,
        *,
        from_phone: str,
        to_phone: str | None,
        message_type: str,
        payload: dict[str, Any],
        provider_message_id: str | None = None,
    ) -> WhatsAppMessageLog:
        return create_message_log(
            db,
            direction="in",
            to_phone=to_phone,
            from_phone=from_phone,
            message_type=message_type,
            payload=payload,
            status="received",
            provider_message_id=provider_message_id,
        )


whatsapp_service = WhatsAppService()
