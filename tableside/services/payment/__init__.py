"""
Payment Gateway Factory

Provides a single entry point for obtaining the adapter for a gateway id.
The router asks for a gateway by id and stays agnostic about whether it is
talking to the real provider or the development mock.

Usage:
    from tableside.services.payment import get_gateway
    from tableside.models import PaymentGateway

    gateway = get_gateway(PaymentGateway.SAFEPAY)
    handle = await gateway.create_checkout(...)

Environment Switching:
    - ENV_MODE=development → MockGateway impersonating the requested id
    - ENV_MODE=staging → StripeGateway / SafepayGateway (test keys, sandbox)
    - ENV_MODE=production → StripeGateway / SafepayGateway (live keys)

The router itself lives in ``tableside.services.payment.router``.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from functools import lru_cache
from typing import Union

from tableside.core.config import get_settings
from tableside.core.exceptions import ValidationError
from tableside.models import PaymentGateway
from tableside.services.payment.base import (
    BasePaymentGateway,
    CheckoutHandle,
    GatewayEvent,
    RefundResult,
)
from tableside.services.payment.mock import MockGateway
from tableside.services.payment.safepay import SafepayGateway
from tableside.services.payment.stripe import StripeGateway

logger = logging.getLogger(__name__)


@lru_cache()
def get_gateway(gateway_id: Union[str, PaymentGateway]) -> BasePaymentGateway:
    """
    Get the configured adapter for a gateway id.

    Instances are cached per id so the mock keeps its in-memory checkouts
    and the real adapters keep their HTTP clients.

    Raises:
        ValidationError: Unknown id, or CASH (no online gateway)
        ValueError: Real gateway requested but its keys are not configured
    """
    try:
        gateway_id = PaymentGateway(gateway_id)
    except ValueError:
        raise ValidationError(f"Unknown payment gateway {gateway_id!r}")

    if gateway_id == PaymentGateway.CASH:
        raise ValidationError("Cash payments are not handled by an online gateway")

    settings = get_settings()

    if settings.is_development:
        logger.info(f"Payment Gateway: Using MockGateway for {gateway_id.value} (development mode)")
        return MockGateway(gateway_id)

    logger.info(f"Payment Gateway: Using real {gateway_id.value} gateway ({settings.env_mode.value} mode)")
    if gateway_id == PaymentGateway.STRIPE:
        return StripeGateway()
    return SafepayGateway()


def reset_gateways() -> None:
    """
    Clear the cached gateway instances.

    Useful for testing or when configuration changes at runtime.
    """
    get_gateway.cache_clear()
    logger.debug("Payment gateway cache cleared")


__all__ = [
    "get_gateway",
    "reset_gateways",
    "BasePaymentGateway",
    "CheckoutHandle",
    "GatewayEvent",
    "RefundResult",
    "MockGateway",
    "SafepayGateway",
    "StripeGateway",
]
