from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from restobot.core.request_context import begin_request, clear_request_context

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """One completion line per request, tagged with the customer and order it touched."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        fields = begin_request(request_id)

        response = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            logger.log(
                logging.WARNING if status_code >= 500 else logging.INFO,
                "request completed %s %s status=%s",
                request.method,
                request.url.path,
                status_code,
                extra={
                    "request_id": request_id,
                    "customer_id": fields.get("customer_id"),
                    "order_id": fields.get("order_id"),
                    "endpoint": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            clear_request_context()
