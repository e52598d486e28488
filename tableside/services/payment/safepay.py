"""
Safepay Gateway Implementation

Hosted checkout for the local currency (PKR). Amounts travel in paisas.
The customer is redirected to Safepay's checkout page; the outcome comes
back as a webhook signed with HMAC-SHA256 over the raw body, carried in
the ``X-SFPY-Signature`` header.

Requirements:
    - SAFEPAY_API_KEY (sent as X-SFPY-API-KEY)
    - SAFEPAY_SECRET_KEY (webhook signing secret)
    - SAFEPAY_ENVIRONMENT: sandbox | production

Author: Khalil Bannouri
Version: 4.0.0
"""

import hashlib
import hmac
import json
import logging
from typing import Optional

import httpx

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

SIGNATURE_HEADER = "X-SFPY-Signature"


def sign_payload(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body, as Safepay computes it."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class SafepayGateway(BasePaymentGateway):
    """
    Production Safepay gateway.

    Example:
        >>> gateway = SafepayGateway()
        >>> handle = await gateway.create_checkout(1500.0, "PKR", 12, "ORD-...-0012", 1)
        >>> handle.checkout_url
        'https://sandbox.api.getsafepay.com/checkout/...'
    """

    STATE_MAP = {
        "PENDING": PaymentStatus.PENDING,
        "PROCESSING": PaymentStatus.PROCESSING,
        "COMPLETED": PaymentStatus.COMPLETED,
        "PAID": PaymentStatus.COMPLETED,
        "FAILED": PaymentStatus.FAILED,
        "CANCELLED": PaymentStatus.FAILED,
        "EXPIRED": PaymentStatus.FAILED,
        "REFUNDED": PaymentStatus.REFUNDED,
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Raises:
            ValueError: If the Safepay keys are not configured
        """
        settings = get_settings()

        self._api_key = api_key or settings.safepay_api_key
        self._secret_key = secret_key or settings.safepay_secret_key

        if not self._api_key or not self._secret_key:
            raise ValueError(
                "SAFEPAY_API_KEY and SAFEPAY_SECRET_KEY are required for the Safepay gateway."
            )

        self._client = httpx.AsyncClient(
            base_url=base_url or settings.safepay_base_url,
            headers={
                "X-SFPY-API-KEY": self._api_key,
                "Content-Type": "application/json",
            },
            timeout=settings.safepay_timeout_seconds,
            transport=transport,
        )

        logger.info(f"SafepayGateway initialized ({settings.safepay_environment})")

    @property
    def provider_name(self) -> str:
        return PaymentGateway.SAFEPAY.value

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = e.response.text
            try:
                message = e.response.json().get("message", message)
            except ValueError:
                pass
            logger.error(f"Safepay: {method} {path} failed ({e.response.status_code}) - {message}")
            raise GatewayError(
                PaymentGateway.SAFEPAY.value,
                f"Safepay Error: {message}",
                code=str(e.response.status_code),
            )
        except httpx.HTTPError as e:
            logger.error(f"Safepay: {method} {path} failed - {e}")
            raise GatewayError(PaymentGateway.SAFEPAY.value, "Payment service temporarily unavailable")

        return response.json().get("data") or {}

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
        logger.info(f"Safepay: Creating checkout for order {order_number}")

        data = await self._request(
            "POST",
            "/v1/payments/checkout",
            json={
                "amount": to_minor_units(amount),
                "currency": currency.upper(),
                "order_id": str(order_id),
                "source": "custom",
                "webhooks": True,
                "redirect_url": success_url,
                "cancel_url": cancel_url,
                "metadata": {
                    "order_id": str(order_id),
                    "order_reference": order_number,
                    "restaurant_id": str(restaurant_id),
                },
            },
        )

        tracker = data.get("tracker")
        if not tracker:
            raise GatewayError(PaymentGateway.SAFEPAY.value, "Safepay did not return a tracker")

        return CheckoutHandle(
            gateway=PaymentGateway.SAFEPAY.value,
            tracking_id=tracker,
            amount=amount,
            currency=currency.upper(),
            checkout_url=data.get("checkout_url"),
            token=data.get("token"),
        )

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        expected = sign_payload(self._secret_key, payload)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("Safepay: Webhook signature invalid")
            return False
        return True

    def parse_event(self, payload: bytes) -> GatewayEvent:
        event = json.loads(payload)
        data = event.get("data") or {}
        state = data.get("state")

        return GatewayEvent(
            event_type=event.get("type") or "payment",
            tracking_id=data.get("tracker"),
            state=state,
            status=self.map_status(state),
            amount=from_minor_units(data.get("amount")),
            currency=data.get("currency"),
            failure_reason=data.get("reason"),
            metadata=dict(data.get("metadata") or {}),
        )

    def map_status(self, state: Optional[str]) -> Optional[PaymentStatus]:
        """Unknown states are treated as still pending."""
        return self.STATE_MAP.get((state or "").upper(), PaymentStatus.PENDING)

    async def fetch_status(self, tracking_id: str) -> Optional[PaymentStatus]:
        data = await self._request("GET", f"/v1/payments/{tracking_id}")
        return self.map_status(data.get("state"))

    async def refund(
        self,
        tracking_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        body = {"tracker": tracking_id, "reason": reason or "requested_by_customer"}
        if amount is not None:
            body["amount"] = to_minor_units(amount)

        try:
            data = await self._request("POST", "/v1/payments/refund", json=body)
        except GatewayError as e:
            return RefundResult(success=False, error_message=e.message)

        logger.info(f"Safepay: Refund processed for {tracking_id}")
        return RefundResult(
            success=True,
            refund_id=data.get("refund_id") or data.get("tracker"),
            amount=from_minor_units(data.get("amount")) if data.get("amount") is not None else amount,
            status=(data.get("state") or "pending").lower(),
        )

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/v1/health")
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.error(f"Safepay: Health check failed - {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
