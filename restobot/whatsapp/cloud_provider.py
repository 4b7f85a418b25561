from __future__ import annotations

import logging
import time
from typing import Any, Iterable

import httpx
from sqlalchemy.orm import Session

from restobot.core.config import META_API_VERSION, META_WA_ACCESS_TOKEN, META_WA_PHONE_NUMBER_ID
from restobot.models.whatsapp_message_log import WhatsAppMessageLog
from restobot.services.backoff import InMemoryBackoffService
from restobot.whatsapp.base import WhatsAppProvider, create_message_log

logger = logging.getLogger(__name__)
_backoff_service = InMemoryBackoffService()


def _extract_reply(msg: dict[str, Any]) -> tuple[str, str | None]:
    """Return (text, option_id) for text, interactive and quick-reply button messages."""
    msg_type = msg.get("type") or "text"
    if msg_type == "text":
        return (((msg.get("text") or {}).get("body")) or "").strip(), None
    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return (reply.get("title") or "").strip(), reply.get("id")
    if msg_type == "button":
        button = msg.get("button") or {}
        return (button.get("text") or "").strip(), button.get("payload")
    return "", None


def parse_cloud_webhook(payload: dict[str, Any]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            phone_number_id = metadata.get("phone_number_id")

            contacts = value.get("contacts") or []
            contact_name = None
            if contacts:
                contact_name = ((contacts[0].get("profile") or {}).get("name")) or None

            for msg in value.get("messages", []) or []:
                message_id = msg.get("id")
                from_number = msg.get("from")
                if not message_id or not from_number:
                    continue
                text, option_id = _extract_reply(msg)
                messages.append(
                    {
                        "message_id": message_id,
                        "from_number": from_number,
                        "text": text,
                        "option_id": option_id,
                        "message_type": msg.get("type") or "text",
                        "phone_number_id": phone_number_id,
                        "contact_name": contact_name,
                    }
                )
    return messages


class CloudWhatsAppProvider(WhatsAppProvider):
    MAX_RETRIES = 3
    INTEGRATION_NAME = "whatsapp_cloud"

    def __init__(
        self,
        *,
        access_token: str = META_WA_ACCESS_TOKEN,
        phone_number_id: str = META_WA_PHONE_NUMBER_ID,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    def send_text(
        self,
        db: Session,
        *,
        to_phone: str,
        text: str,
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        payload = {
            "messaging_product": "whatsapp",
            "to": to_phone,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        return self._send(db, to_phone=to_phone, message_type="text", payload=payload, context=context)

    def send_interactive(
        self,
        db: Session,
        *,
        to_phone: str,
        payload: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        body = {
            "messaging_product": "whatsapp",
            "to": to_phone,
            "type": "interactive",
            "interactive": payload,
        }
        return self._send(db, to_phone=to_phone, message_type="interactive", payload=body, context=context)

    def parse_webhook(self, payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
        return parse_cloud_webhook(payload)

    def _send(
        self,
        db: Session,
        *,
        to_phone: str,
        message_type: str,
        payload: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> WhatsAppMessageLog:
        log_payload = {**payload, "context": context or {}}
        if not self.is_configured:
            return create_message_log(
                db,
                direction="out",
                to_phone=to_phone,
                from_phone=None,
                message_type=message_type,
                payload=log_payload,
                status="failed",
                error="WhatsApp Cloud credentials are incomplete",
            )

        url = f"https://graph.facebook.com/{META_API_VERSION}/{self.phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

        last_error: str | None = None

        for attempt in range(1, self.MAX_RETRIES + 1):
            decision = _backoff_service.before_request(integration=self.INTEGRATION_NAME)
            if decision.delay_seconds > 0:
                logger.warning(
                    "integration backoff activated",
                    extra={
                        "integration": self.INTEGRATION_NAME,
                        "delay_seconds": decision.delay_seconds,
                        "consecutive_failures": decision.consecutive_failures,
                    },
                )
                time.sleep(decision.delay_seconds)

            try:
                with httpx.Client(timeout=20.0, transport=self._transport) as client:
                    response = client.post(url, headers=headers, json=payload)
            except httpx.HTTPError as exc:
                last_error = str(exc)
                self._register_failure()
            else:
                if 200 <= response.status_code < 300:
                    _backoff_service.register_success(integration=self.INTEGRATION_NAME)
                    provider_id = None
                    try:
                        data = response.json()
                        provider_id = ((data.get("messages") or [{}])[0].get("id"))
                    except ValueError:
                        data = {"raw": response.text}

                    return create_message_log(
                        db,
                        direction="out",
                        to_phone=to_phone,
                        from_phone=self.phone_number_id,
                        message_type=message_type,
                        payload=log_payload,
                        status="sent",
                        provider_message_id=provider_id,
                        response_payload=data,
                    )

                last_error = f"WhatsApp error {response.status_code}: {response.text}"
                self._register_failure()
                # 4xx other than rate limiting will not succeed on retry
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    break

            if attempt >= self.MAX_RETRIES:
                break

        logger.warning("WhatsApp send failed to=%s error=%s", to_phone, last_error)
        return create_message_log(
            db,
            direction="out",
            to_phone=to_phone,
            from_phone=self.phone_number_id,
            message_type=message_type,
            payload=log_payload,
            status="failed",
            error=last_error,
        )

    def _register_failure(self) -> None:
        failures = _backoff_service.register_failure(integration=self.INTEGRATION_NAME)
        if failures == _backoff_service.threshold:
            logger.warning(
                "integration failure threshold reached",
                extra={
                    "integration": self.INTEGRATION_NAME,
                    "consecutive_failures": failures,
                },
            )
