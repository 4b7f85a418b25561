from __future__ import annotations

import logging
from functools import lru_cache

from restobot.core.config import IS_PROD, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET
from restobot.payments.base import PaymentGateway
from restobot.payments.mock_provider import MockPaymentGateway
from restobot.payments.razorpay_provider import RazorpayGateway

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _build_gateway() -> PaymentGateway:
    if RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET:
        return RazorpayGateway(key_id=RAZORPAY_KEY_ID, key_secret=RAZORPAY_KEY_SECRET)
    if IS_PROD:
        # Every call fails with PaymentGatewayError, which checkout reports as retryable
        logger.error("Razorpay credentials missing in production; payment links cannot be created")
        return RazorpayGateway(key_id="", key_secret="")
    logger.warning("Razorpay credentials missing; using mock payment gateway")
    return MockPaymentGateway()


def get_payment_gateway() -> PaymentGateway:
    return _build_gateway()
