"""
Payment Gateway Abstract Base Class

Defines the interface contract for every payment gateway adapter. The
router only ever talks to this interface; Stripe, Safepay and the
development mock each translate their own wire format and status
vocabulary into the shared types below.

Design Pattern: Strategy Pattern
    - The gateway is picked per order by ``select_gateway``
    - A gateway schema change is contained in its adapter
    - Tests and local development swap in MockGateway

Author: Khalil Bannouri
Version: 4.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from tableside.models import PaymentStatus


@dataclass
class CheckoutHandle:
    """
    What the customer's device needs to finish paying.

    Attributes:
        gateway: Gateway id (STRIPE / SAFEPAY)
        tracking_id: Gateway correlation id (PaymentIntent id, Safepay tracker)
        amount: Amount in major units (e.g. 29.99)
        currency: ISO currency code
        client_secret: Stripe Elements secret, if any
        checkout_url: Hosted checkout page, if any
        token: Gateway checkout token, if any
        payment_id: Local Payment row id, set by the router
    """
    gateway: str
    tracking_id: str
    amount: float
    currency: str
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    token: Optional[str] = None
    payment_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "gateway": self.gateway,
            "tracking_id": self.tracking_id,
            "amount": self.amount,
            "currency": self.currency,
            "client_secret": self.client_secret,
            "checkout_url": self.checkout_url,
            "token": self.token,
            "payment_id": self.payment_id,
        }


@dataclass
class GatewayEvent:
    """
    A verified webhook, already mapped to the internal vocabulary.

    status is None when the event type is not one the router acts on.
    """
    event_type: str
    tracking_id: Optional[str]
    state: Optional[str]
    status: Optional[PaymentStatus]
    amount: Optional[float] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """
    Standardized result from refund processing.

    Attributes:
        success: Whether the refund was accepted by the gateway
        refund_id: Gateway refund identifier
        amount: Amount refunded in major units
        status: Gateway refund status (pending, succeeded, failed)
        error_message: Error description if the refund failed
    """
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[float] = None
    status: str = "pending"
    error_message: Optional[str] = None


class BasePaymentGateway(ABC):
    """
    Abstract base class for payment gateways.

    Example:
        >>> gateway = get_gateway(PaymentGateway.STRIPE)
        >>> handle = await gateway.create_checkout(
        ...     amount=29.99, currency="USD", order_id=12,
        ...     order_number="ORD-1718000000000-0012", restaurant_id=1,
        ... )
        >>> if gateway.verify_signature(body, signature):
        ...     event = gateway.parse_event(body)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the gateway name."""
        pass

    @abstractmethod
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
        """
        Create the gateway-side payment object for one order.

        The order id, order number and restaurant id travel with it as
        correlation metadata.

        Raises:
            GatewayError: The gateway refused or could not be reached
        """
        pass

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Check a webhook body against its signature header.

        Args:
            payload: Raw request body, exactly as received
            signature: Signature header value

        Returns:
            bool: True only for an authentic payload
        """
        pass

    @abstractmethod
    def parse_event(self, payload: bytes) -> GatewayEvent:
        """Decode a verified webhook body."""
        pass

    @abstractmethod
    def map_status(self, state: Optional[str]) -> Optional[PaymentStatus]:
        """Translate a gateway state or event name into PaymentStatus."""
        pass

    @abstractmethod
    async def fetch_status(self, tracking_id: str) -> Optional[PaymentStatus]:
        """
        Ask the gateway for the current status of a payment.

        Raises:
            GatewayError: The gateway could not be reached
        """
        pass

    @abstractmethod
    async def refund(
        self,
        tracking_id: str,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a completed payment.

        Args:
            tracking_id: Gateway correlation id of the payment
            amount: Amount to refund (None = full refund)
            reason: Reason passed through to the gateway
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify connectivity to the gateway."""
        pass


def to_minor_units(amount: float) -> int:
    """29.99 -> 2999 (cents / paisas)."""
    return int(round(amount * 100))


def from_minor_units(value: Optional[int]) -> Optional[float]:
    if value is None:
        return None
    return value / 100.0
