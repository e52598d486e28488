"""
Stripe Gateway Implementation

Card payments for every currency other than the local one. Checkout is a
PaymentIntent confirmed client-side with Stripe Elements; settlement is
reported back through signed webhooks.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

Security Notes:
    - Never log full card numbers or CVCs
    - Webhooks are rejected when the secret is missing or the signature fails

Author: Khalil Bannouri
Version: 4.0.0
"""

import json
import logging
from typing import Optional

import stripe

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


class StripeGateway(BasePaymentGateway):
    """
    Production Stripe gateway.

    Example:
        >>> gateway = StripeGateway()
        >>> handle = await gateway.create_checkout(29.99, "USD", 12, "ORD-...-0012", 1)
        >>> handle.client_secret
        'pi_..._secret_...'
    """

    # Webhook event type -> internal status
    EVENT_STATUS_MAP = {
        "payment_intent.succeeded": PaymentStatus.COMPLETED,
        "payment_intent.processing": PaymentStatus.PROCESSING,
        "payment_intent.payment_failed": PaymentStatus.FAILED,
        "payment_intent.canceled": PaymentStatus.FAILED,
        "charge.refunded": PaymentStatus.REFUNDED,
    }

    # PaymentIntent.status -> internal status, for explicit verification
    INTENT_STATUS_MAP = {
        "requires_payment_method": PaymentStatus.PENDING,
        "requires_confirmation": PaymentStatus.PENDING,
        "requires_action": PaymentStatus.PENDING,
        "processing": PaymentStatus.PROCESSING,
        "requires_capture": PaymentStatus.PROCESSING,
        "succeeded": PaymentStatus.COMPLETED,
        "canceled": PaymentStatus.FAILED,
    }

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        """
        Initialize Stripe with the API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()
        secret_key = secret_key or settings.stripe_secret_key

        if not secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for the Stripe gateway. "
                "Set it in your .env file or environment variables."
            )

        stripe.api_key = secret_key
        stripe.api_version = "2023-10-16"

        self._webhook_secret = webhook_secret or settings.stripe_webhook_secret

        logger.info(f"StripeGateway initialized (api_version={stripe.api_version})")

    @property
    def provider_name(self) -> str:
        return PaymentGateway.STRIPE.value

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
        """Create a PaymentIntent for client-side confirmation."""
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency.lower(),
                automatic_payment_methods={"enabled": True},
                description=f"Order {order_number}",
                metadata={
                    "order_id": str(order_id),
                    "order_number": order_number,
                    "restaurant_id": str(restaurant_id),
                },
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe: Failed to create PaymentIntent for {order_number} - {e}")
            raise GatewayError(
                PaymentGateway.STRIPE.value,
                e.user_message or "Payment service temporarily unavailable",
                code=e.code,
            )

        logger.info(f"Stripe: PaymentIntent created - {intent.id} - status={intent.status}")

        return CheckoutHandle(
            gateway=PaymentGateway.STRIPE.value,
            tracking_id=intent.id,
            amount=from_minor_units(intent.amount),
            currency=intent.currency.upper(),
            client_secret=intent.client_secret,
        )

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Verify a Stripe-Signature header.

        SECURITY: an unconfigured webhook secret rejects everything rather
        than trusting unverified payloads.
        """
        if not self._webhook_secret:
            logger.error("Stripe: Webhook secret not configured, rejecting webhook")
            return False
        if not signature:
            return False

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
            return True
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe: Webhook signature invalid - {e}")
            return False
        except ValueError as e:
            logger.warning(f"Stripe: Webhook payload malformed - {e}")
            return False

    def parse_event(self, payload: bytes) -> GatewayEvent:
        event = json.loads(payload)
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        if obj.get("object") == "charge":
            tracking_id = obj.get("payment_intent")
        else:
            tracking_id = obj.get("id")

        error = obj.get("last_payment_error") or {}

        status = self.map_status(event_type)
        # charge.refunded also fires for partial refunds
        if event_type == "charge.refunded" and not obj.get("refunded"):
            status = None

        return GatewayEvent(
            event_type=event_type,
            tracking_id=tracking_id,
            state=obj.get("status"),
            status=status,
            amount=from_minor_units(obj.get("amount")),
            currency=(obj.get("currency") or "").upper() or None,
            failure_reason=error.get("message"),
            metadata=dict(obj.get("metadata") or {}),
        )

    def map_status(self, state: Optional[str]) -> Optional[PaymentStatus]:
        """Accepts a webhook event type or a PaymentIntent status."""
        if state in self.EVENT_STATUS_MAP:
            return self.EVENT_STATUS_MAP[state]
        return self.INTENT_STATUS_MAP.get(state)

    async def fetch_status(self, tracking_id: str) -> Optional[PaymentStatus]:
        try:
            intent = stripe.PaymentIntent.retrieve(tracking_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe: Failed to retrieve {tracking_id} - {e}")
            raise GatewayError(PaymentGateway.STRIPE.value, str(e), code=e.code)

        return self.map_status(intent.status)

    async def refund(
        self,
        tracking_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a payment through Stripe.

        Args:
            tracking_id: The PaymentIntent to refund
            amount: Partial refund amount (None = full refund)
            reason: Reason code (duplicate, fraudulent, requested_by_customer)
        """
        refund_params = {"payment_intent": tracking_id}
        if amount is not None:
            refund_params["amount"] = to_minor_units(amount)
        if reason:
            refund_params["reason"] = reason

        try:
            refund = stripe.Refund.create(**refund_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe: Refund failed - {e}")
            return RefundResult(success=False, error_message=str(e))

        logger.info(f"Stripe: Refund processed - {refund.id} - status={refund.status}")

        return RefundResult(
            success=True,
            refund_id=refund.id,
            amount=from_minor_units(refund.amount),
            status=refund.status,
        )

    async def health_check(self) -> bool:
        try:
            stripe.Account.retrieve()
            logger.debug("Stripe: Health check passed")
            return True
        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
