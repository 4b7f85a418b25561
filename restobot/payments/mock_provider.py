from __future__ import annotations

import itertools
from threading import Lock

from restobot.core.config import BACKEND_URL, MIN_PAYMENT_AMOUNT_CENTS
from restobot.payments.base import (
    PaymentGatewayError,
    PaymentLink,
    ProviderPayment,
    ensure_minimum_amount,
)


class MockPaymentGateway:
    """In-memory gateway for local development and tests."""

    name = "mock"

    def __init__(
        self,
        *,
        base_url: str = BACKEND_URL,
        min_amount_cents: int = MIN_PAYMENT_AMOUNT_CENTS,
        fail_link_creation: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.min_amount_cents = min_amount_cents
        self.fail_link_creation = fail_link_creation
        self.fail_lookups = False
        self.lookup_calls: list[str] = []
        self._links: dict[str, PaymentLink] = {}
        self._payments: dict[str, ProviderPayment] = {}
        self._counter = itertools.count(1)
        self._lock = Lock()

    def create_payment_link(
        self,
        *,
        amount_cents: int,
        reference_id: str,
        customer_phone: str,
        customer_name: str | None = None,
        description: str | None = None,
    ) -> PaymentLink:
        if self.fail_link_creation:
            raise PaymentGatewayError("mock gateway unavailable")
        ensure_minimum_amount(amount_cents, self.min_amount_cents)
        with self._lock:
            link_id = f"plink_mock_{next(self._counter):06d}"
            link = PaymentLink(
                id=link_id,
                short_url=f"{self.base_url}/mock-pay/{link_id}",
                amount_cents=amount_cents,
                status="created",
                raw={
                    "reference_id": reference_id,
                    "description": description,
                    "customer": {"name": customer_name, "contact": customer_phone},
                    "notes": {"order_id": reference_id, "customer_phone": customer_phone},
                },
            )
            self._links[link_id] = link
        return link

    def record_payment(
        self,
        payment_id: str,
        *,
        status: str = "captured",
        amount_cents: int = 0,
        method: str = "upi",
        order_id: str | None = None,
    ) -> ProviderPayment:
        payment = ProviderPayment(
            id=payment_id,
            status=status,
            amount_cents=amount_cents,
            method=method,
            order_id=order_id,
        )
        with self._lock:
            self._payments[payment_id] = payment
        return payment

    def fetch_payment(self, payment_id: str) -> ProviderPayment:
        with self._lock:
            self.lookup_calls.append(payment_id)
            payment = self._payments.get(payment_id)
        if self.fail_lookups:
            raise PaymentGatewayError("mock gateway unavailable")
        if payment is None:
            raise PaymentGatewayError(f"payment {payment_id} not found")
        return payment

    def get_link(self, link_id: str) -> PaymentLink | None:
        with self._lock:
            return self._links.get(link_id)

    @property
    def links(self) -> list[PaymentLink]:
        with self._lock:
            return list(self._links.values())
