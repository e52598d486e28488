"""
Mock Payment Gateway Implementation

Stands in for Stripe or Safepay in development mode (ENV_MODE=development)
so the full checkout -> webhook -> paid flow can be exercised locally:
    - Test the complete order flow without gateway accounts
    - Replay or duplicate webhooks on demand
    - Simulate declines and slow gateways

Behavior:
    - Generates gateway-like tracking ids (pi_mock_xxx, trk_mock_xxx)
    - Keeps every checkout in memory with its current state
    - Signs webhooks with HMAC-SHA256 using MOCK_WEBHOOK_SECRET
    - Optional simulated latency and failure rate (off by default)

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import hashlib
import hmac
import json
import logging
import random
import uuid
from typing import Optional, Union

from tableside.core.config import get_settings
from tableside.core.exceptions import GatewayError
from tableside.models import PaymentGateway, PaymentStatus
from tableside.services.payment.base import (
    BasePaymentGateway,
    CheckoutHandle,
    GatewayEvent,
    RefundResult,
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)


class MockGateway(BasePaymentGateway):
    """
    In-memory gateway impersonating one real gateway id.

    Attributes:
        gateway_id: The gateway this mock stands in for
        failure_rate: Probability a checkout is refused (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> gateway = MockGateway(PaymentGateway.SAFEPAY)
        >>> handle = await gateway.create_checkout(1500.0, "PKR", 1, "ORD-1", 1)
        >>> body, signature = gateway.build_webhook(handle.tracking_id, "COMPLETED")
    """

    STATE_MAP = {
        "PENDING": PaymentStatus.PENDING,
        "PROCESSING": PaymentStatus.PROCESSING,
        "COMPLETED": PaymentStatus.COMPLETED,
        "PAID": PaymentStatus.COMPLETED,
        "FAILED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.FAILED,
        "REFUNDED": PaymentStatus.REFUNDED,
    }

    # Simulated decline reasons
    DECLINE_REASONS = [
        ("card_declined", "Your card was declined."),
        ("insufficient_funds", "Your card has insufficient funds."),
        ("processing_error", "An error occurred while processing your card."),
    ]

    def __init__(
        self,
        gateway_id: Union[str, PaymentGateway] = PaymentGateway.STRIPE,
        webhook_secret: Optional[str] = None,
        failure_rate: float = 0.0,
        min_latency: float = 0.0,
        max_latency: float = 0.0,
    ):
        self.gateway_id = PaymentGateway(gateway_id)
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self._secret = webhook_secret or get_settings().mock_webhook_secret
        self.checkouts: dict[str, dict] = {}

        logger.info(
            f"MockGateway initialized as {self.gateway_id.value} "
            f"(failure_rate={failure_rate:.0%}, latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return self.gateway_id.value

    def _generate_tracking_id(self) -> str:
        prefix = "pi_mock" if self.gateway_id == PaymentGateway.STRIPE else "trk_mock"
        return f"{prefix}_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> None:
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _should_fail(self) -> bool:
        return self.failure_rate > 0 and random.random() < self.failure_rate

    async def create_checkout(
        self,
        amount: float,
        currency: str,
        order_id: int,
        order_number: str,
        restaurant_id: int,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutHandle:
        await self._simulate_latency()

        if self._should_fail():
            code, message = random.choice(self.DECLINE_REASONS)
            logger.warning(f"Mock: Checkout refused for {order_number} - {code}")
            raise GatewayError(self.gateway_id.value, message, code=code)

        tracking_id = self._generate_tracking_id()
        self.checkouts[tracking_id] = {
            "state": "PENDING",
            "amount": amount,
            "currency": currency.upper(),
            "metadata": {
                "order_id": str(order_id),
                "order_number": order_number,
                "restaurant_id": str(restaurant_id),
            },
        }

        logger.info(f"Mock: Checkout created - {tracking_id} for {order_number} ({amount:.2f} {currency})")

        return CheckoutHandle(
            gateway=self.gateway_id.value,
            tracking_id=tracking_id,
            amount=amount,
            currency=currency.upper(),
            client_secret=f"{tracking_id}_secret_mock",
            checkout_url=f"https://mock.checkout.local/{tracking_id}",
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._secret.encode(), payload, hashlib.sha256).hexdigest()

    def build_webhook(self, tracking_id: str, state: str) -> tuple[bytes, str]:
        """
        Produce a signed webhook body for a checkout, as the gateway would.

        Returns:
            (raw body, signature header value)
        """
        checkout = self.checkouts.get(tracking_id, {})
        body = json.dumps({
            "type": "payment.updated",
            "data": {
                "tracker": tracking_id,
                "state": state,
                "amount": to_minor_units(checkout.get("amount", 0.0)),
                "currency": checkout.get("currency"),
                "metadata": checkout.get("metadata", {}),
            },
        }).encode()
        return body, self.sign(body)

    def set_state(self, tracking_id: str, state: str) -> None:
        """Move a checkout to a new gateway state (what fetch_status reports)."""
        if tracking_id not in self.checkouts:
            self.checkouts[tracking_id] = {"amount": 0.0, "currency": None, "metadata": {}}
        self.checkouts[tracking_id]["state"] = state

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature.strip())

    def parse_event(self, payload: bytes) -> GatewayEvent:
        event = json.loads(payload)
        data = event.get("data") or {}
        state = data.get("state")

        return GatewayEvent(
            event_type=event.get("type") or "payment.updated",
            tracking_id=data.get("tracker"),
            state=state,
            status=self.map_status(state),
            amount=from_minor_units(data.get("amount")),
            currency=data.get("currency"),
            metadata=dict(data.get("metadata") or {}),
        )

    def map_status(self, state: Optional[str]) -> Optional[PaymentStatus]:
        return self.STATE_MAP.get((state or "").upper())

    async def fetch_status(self, tracking_id: str) -> Optional[PaymentStatus]:
        await self._simulate_latency()
        checkout = self.checkouts.get(tracking_id)
        if checkout is None:
            return None
        return self.map_status(checkout["state"])

    async def refund(
        self,
        tracking_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        await self._simulate_latency()
        checkout = self.checkouts.get(tracking_id)

        if checkout is None:
            return RefundResult(success=False, error_message=f"No such payment: {tracking_id}")

        refunded = checkout.get("refunded", 0.0) + (amount if amount is not None else checkout["amount"])
        checkout["refunded"] = refunded
        if round(refunded, 2) >= round(checkout["amount"], 2):
            checkout["state"] = "REFUNDED"
        refund_id = f"re_mock_{uuid.uuid4().hex[:24]}"
        logger.info(f"Mock: Refund processed - {refund_id} ({reason or 'no reason'})")

        return RefundResult(
            success=True,
            refund_id=refund_id,
            amount=amount if amount is not None else checkout.get("amount"),
            status="succeeded",
        )

    async def health_check(self) -> bool:
        return True
