from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from restobot.core.config import (
    MIN_PAYMENT_AMOUNT_CENTS,
    PAYMENT_CALLBACK_URL,
    PAYMENT_CURRENCY,
    RAZORPAY_API_BASE,
)
from restobot.payments.base import (
    PaymentGatewayError,
    PaymentLink,
    ProviderPayment,
    ensure_minimum_amount,
)
from restobot.services.backoff import InMemoryBackoffService

logger = logging.getLogger(__name__)
_backoff_service = InMemoryBackoffService()


def _error_description(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("description") or error.get("code") or error)
    return str(data)[:200]


class RazorpayGateway:
    """Razorpay payment links over the REST API."""

    name = "razorpay"
    INTEGRATION_NAME = "razorpay"
    MAX_LOOKUP_RETRIES = 2

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        api_base: str = RAZORPAY_API_BASE,
        callback_url: str = PAYMENT_CALLBACK_URL,
        currency: str = PAYMENT_CURRENCY,
        min_amount_cents: int = MIN_PAYMENT_AMOUNT_CENTS,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_base = api_base.rstrip("/")
        self.callback_url = callback_url
        self.currency = currency
        self.min_amount_cents = min_amount_cents
        self.timeout = timeout
        self._transport = transport

    def create_payment_link(
        self,
        *,
        amount_cents: int,
        reference_id: str,
        customer_phone: str,
        customer_name: str | None = None,
        description: str | None = None,
    ) -> PaymentLink:
        ensure_minimum_amount(amount_cents, self.min_amount_cents)
        body = {
            "amount": int(amount_cents),
            "currency": self.currency,
            "accept_partial": False,
            "reference_id": reference_id,
            "description": description or f"Order #{reference_id}",
            "customer": {"name": customer_name or "Customer", "contact": customer_phone},
            "notify": {"sms": False, "email": False},
            "reminder_enable": True,
            "notes": {"order_id": reference_id, "customer_phone": customer_phone},
            "callback_url": self.callback_url,
            "callback_method": "get",
        }
        # Not retried: the provider rejects a second link with the same reference_id
        data = self._request("POST", "/payment_links", json=body)
        link_id = data.get("id")
        short_url = data.get("short_url")
        if not link_id or not short_url:
            raise PaymentGatewayError("Razorpay response is missing the payment link id or url")
        logger.info("payment link created link_id=%s reference_id=%s", link_id, reference_id)
        return PaymentLink(
            id=link_id,
            short_url=short_url,
            amount_cents=int(data.get("amount") or amount_cents),
            status=data.get("status") or "created",
            raw=data,
        )

    def fetch_payment(self, payment_id: str) -> ProviderPayment:
        last_error: PaymentGatewayError | None = None
        for attempt in range(1, self.MAX_LOOKUP_RETRIES + 1):
            try:
                data = self._request("GET", f"/payments/{payment_id}")
                return ProviderPayment(
                    id=data.get("id") or payment_id,
                    status=(data.get("status") or "").lower(),
                    amount_cents=int(data.get("amount") or 0),
                    method=data.get("method"),
                    order_id=data.get("order_id"),
                    raw=data,
                )
            except PaymentGatewayError as exc:
                last_error = exc
                logger.warning("payment lookup failed payment_id=%s attempt=%s error=%s", payment_id, attempt, exc)
        raise last_error or PaymentGatewayError("payment lookup failed")

    def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.key_id or not self.key_secret:
            raise PaymentGatewayError("Razorpay credentials are not configured")

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
            with httpx.Client(
                base_url=self.api_base,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            _backoff_service.register_failure(integration=self.INTEGRATION_NAME)
            raise PaymentGatewayError(f"Razorpay unreachable: {exc}") from exc

        if response.status_code >= 400:
            if response.status_code >= 500:
                _backoff_service.register_failure(integration=self.INTEGRATION_NAME)
            raise PaymentGatewayError(
                f"Razorpay error {response.status_code}: {_error_description(response)}"
            )

        _backoff_service.register_success(integration=self.INTEGRATION_NAME)
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentGatewayError("Razorpay returned a non-JSON response") from exc
        if not isinstance(data, dict):
            raise PaymentGatewayError("Razorpay returned an unexpected response")
        return data
