from __future__ import annotations

from contextvars import ContextVar


_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_CUSTOMER_ID_CTX: ContextVar[str | None] = ContextVar("customer_id", default=None)
_ORDER_ID_CTX: ContextVar[str | None] = ContextVar("order_id", default=None)
# Shared by reference with threadpool copies of the context, so ids set while
# handling a sync route are still visible to the middleware afterwards.
_REQUEST_FIELDS_CTX: ContextVar[dict | None] = ContextVar("request_fields", default=None)


def begin_request(request_id: str) -> dict:
    fields = {"request_id": request_id}
    _REQUEST_FIELDS_CTX.set(fields)
    _REQUEST_ID_CTX.set(request_id)
    return fields


def set_request_context(
    *, request_id: str | None = None, customer_id: str | None = None, order_id: int | str | None = None
) -> None:
    fields = _REQUEST_FIELDS_CTX.get()
    if request_id is not None:
        _REQUEST_ID_CTX.set(request_id)
    if customer_id is not None:
        _CUSTOMER_ID_CTX.set(customer_id)
        if fields is not None:
            fields["customer_id"] = customer_id
    if order_id is not None:
        _ORDER_ID_CTX.set(str(order_id))
        if fields is not None:
            fields["order_id"] = str(order_id)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def get_customer_id() -> str | None:
    return _CUSTOMER_ID_CTX.get()


def get_order_id() -> str | None:
    return _ORDER_ID_CTX.get()


def clear_request_context() -> None:
    _REQUEST_ID_CTX.set(None)
    _CUSTOMER_ID_CTX.set(None)
    _ORDER_ID_CTX.set(None)
    _REQUEST_FIELDS_CTX.set(None)
