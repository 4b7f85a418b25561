from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

# Provider payment states that mean the money is secured
SETTLED_PAYMENT_STATUSES = frozenset({"captured", "authorized"})


def is_settled_status(status: str | None) -> bool:
    return (status or "").lower() in SETTLED_PAYMENT_STATUSES


class PaymentGatewayError(Exception):
    """Payment link creation or lookup failed; safe to retry later."""


@dataclass
class PaymentLink:
    id: str
    short_url: str
    amount_cents: int
    status: str = "created"
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderPayment:
    id: str
    status: str
    amount_cents: int = 0
    method: str | None = None
    order_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_settled(self) -> bool:
        return is_settled_status(self.status)


class PaymentGateway(Protocol):
    name: str

    def create_payment_link(
        self,
        *,
        amount_cents: int,
        reference_id: str,
        customer_phone: str,
        customer_name: str | None = None,
        description: str | None = None,
    ) -> PaymentLink:
        ...

    def fetch_payment(self, payment_id: str) -> ProviderPayment:
        ...


def ensure_minimum_amount(amount_cents: int, minimum_cents: int) -> None:
    if amount_cents < minimum_cents:
        raise PaymentGatewayError(
            f"Amount {amount_cents} is below the provider minimum of {minimum_cents}"
        )
