"""
Payment Gateway Router & Reconciliation

Picks a gateway per order, opens checkouts, and folds webhook deliveries
from either gateway into one idempotent local update:

    webhook ──► verify signature ──► map to PaymentStatus
            ──► find Payment by tracking id (unknown: log and drop)
            ──► guarded Payment status update
            ──► COMPLETED: mark order PAID once, release table, notify

Gateways redeliver freely. Every write on this path is conditional on the
state it expects to replace, so the first COMPLETED delivery wins and the
rest are no-ops.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Callable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import get_settings
from tableside.core.exceptions import (
    AlreadyPaid,
    GatewayError,
    InvalidSignature,
    NotFoundError,
    ValidationError,
)
from tableside.models import (
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
    Restaurant,
    utcnow,
)
from tableside.services.events import (
    BasePublisher,
    Topic,
    order_key,
    restaurant_key,
    safe_publish,
)
from tableside.services.orders import OrderStateMachine
from tableside.services.payment import get_gateway
from tableside.services.payment.base import BasePaymentGateway, CheckoutHandle, RefundResult

logger = logging.getLogger(__name__)


# Payment status moves the reconciliation path will make
ALLOWED_PAYMENT_UPDATES: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED,
    }),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    # a declined attempt can still succeed on the same intent
    PaymentStatus.FAILED: frozenset({PaymentStatus.PROCESSING, PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

ONLINE_METHODS = {
    PaymentGateway.SAFEPAY: ["Card", "JazzCash", "EasyPaisa", "Bank Transfer"],
    PaymentGateway.STRIPE: ["Card", "Apple Pay", "Google Pay"],
}


# =============================================================================
# ROUTING
# =============================================================================

def select_gateway(
    currency: str,
    preferred: Optional[Union[str, PaymentGateway]] = None,
    local_currency: Optional[str] = None,
) -> PaymentGateway:
    """
    Choose the gateway for a currency.

    A Stripe preference always wins. A Safepay preference only applies to
    the local currency, which Safepay settles. Otherwise the local currency
    goes to Safepay and everything else to Stripe.
    """
    if not currency:
        raise ValidationError("Currency is required to route a payment")

    currency = currency.upper()
    local = (local_currency or get_settings().local_currency).upper()

    try:
        preferred = PaymentGateway(preferred) if preferred else None
    except ValueError:
        raise ValidationError(f"Unknown payment gateway {preferred!r}")

    if preferred == PaymentGateway.STRIPE:
        return PaymentGateway.STRIPE
    if preferred == PaymentGateway.SAFEPAY and currency == local:
        return PaymentGateway.SAFEPAY

    return PaymentGateway.SAFEPAY if currency == local else PaymentGateway.STRIPE


def available_methods(
    currency: str,
    preferred: Optional[Union[str, PaymentGateway]] = None,
    local_currency: Optional[str] = None,
) -> dict:
    gateway = select_gateway(currency, preferred, local_currency)
    return {
        "currency": currency.upper(),
        "gateway": gateway.value,
        "methods": [PaymentMethod.CASH.value, PaymentMethod.ONLINE.value],
        "online_methods": ONLINE_METHODS[gateway],
    }


@dataclass
class ReconciliationResult:
    """
    What one webhook delivery or verification poll did.

    ignored_reason is set when the delivery was accepted but changed nothing
    because of what it referred to (unknown tracker, unhandled event type).
    """
    gateway: str
    event_type: Optional[str] = None
    tracking_id: Optional[str] = None
    status: Optional[str] = None
    payment_id: Optional[int] = None
    order_id: Optional[int] = None
    payment_updated: bool = False
    order_marked_paid: bool = False
    table_released: bool = False
    ignored_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# ROUTER
# =============================================================================

class PaymentRouter:
    """
    Checkout creation and webhook reconciliation.

    Example:
        >>> router = PaymentRouter(session, publisher)
        >>> handle = await router.create_payment(order_id=12)
        >>> result = await router.reconcile("SAFEPAY", raw_body, signature)
    """

    def __init__(
        self,
        session: AsyncSession,
        publisher: BasePublisher,
        orders: Optional[OrderStateMachine] = None,
        gateway_factory: Callable[[PaymentGateway], BasePaymentGateway] = get_gateway,
    ):
        self.session = session
        self.publisher = publisher
        self.orders = orders or OrderStateMachine(session, publisher)
        self.gateway_factory = gateway_factory
        self.settings = get_settings()

    def _gateway(self, gateway_id: Union[str, PaymentGateway]) -> tuple[PaymentGateway, BasePaymentGateway]:
        try:
            if not isinstance(gateway_id, PaymentGateway):
                gateway_id = PaymentGateway(str(gateway_id).upper())
        except ValueError:
            raise ValidationError(f"Unknown payment gateway {gateway_id!r}")

        if gateway_id == PaymentGateway.CASH:
            raise ValidationError("Cash payments are not handled by an online gateway")

        return gateway_id, self.gateway_factory(gateway_id)

    async def get_payment(self, payment_id: int) -> Payment:
        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_payment(
        self,
        order_id: int,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutHandle:
        """
        Open a checkout with the gateway routed for the order's restaurant.

        A local PENDING Payment is only written after the gateway accepted
        the checkout, so a gateway failure leaves nothing behind.

        Raises:
            NotFoundError: No such order
            AlreadyPaid: The order is already settled
            ValidationError: The order was cancelled or refunded
            GatewayError: The gateway refused or could not be reached
        """
        order = await self.orders.get(order_id)

        if order.payment_status == OrderPaymentStatus.PAID:
            raise AlreadyPaid(order.order_number)
        if order.payment_status == OrderPaymentStatus.REFUNDED:
            raise ValidationError(f"Order {order.order_number} was refunded and cannot be paid again")
        if order.status == OrderStatus.CANCELLED:
            raise ValidationError(f"Order {order.order_number} was cancelled and cannot be paid")
        if order.total <= 0:
            raise ValidationError(f"Order {order.order_number} has nothing to pay")

        restaurant = await self.session.get(Restaurant, order.restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant {order.restaurant_id} not found")

        gateway_id, gateway = self._gateway(select_gateway(
            restaurant.currency,
            restaurant.payment_gateway_preference,
            self.settings.local_currency,
        ))

        logger.info(f"Using {gateway_id.value} for {order.order_number} - {order.total:.2f} {restaurant.currency}")

        handle = await gateway.create_checkout(
            amount=order.total,
            currency=restaurant.currency,
            order_id=order.id,
            order_number=order.order_number,
            restaurant_id=order.restaurant_id,
            success_url=success_url or self.settings.checkout_success_url.format(order_id=order.id),
            cancel_url=cancel_url or self.settings.checkout_cancel_url.format(order_id=order.id),
        )

        payment = Payment(
            order_id=order.id,
            restaurant_id=order.restaurant_id,
            amount=order.total,
            currency=restaurant.currency,
            gateway=gateway_id,
            tracking_id=handle.tracking_id,
            status=PaymentStatus.PENDING,
        )
        self.session.add(payment)
        await self.session.commit()

        handle.payment_id = payment.id
        return handle

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile(
        self,
        gateway_id: Union[str, PaymentGateway],
        raw_body: bytes,
        signature: Optional[str],
    ) -> ReconciliationResult:
        """
        Apply one webhook delivery.

        Raises:
            InvalidSignature: The body is not authentic; the gateway should retry
            ValidationError: Authentic but unreadable body
        """
        gateway_id, gateway = self._gateway(gateway_id)

        if not gateway.verify_signature(raw_body, signature):
            raise InvalidSignature(gateway_id.value)

        try:
            event = gateway.parse_event(raw_body)
        except ValueError as e:
            raise ValidationError(f"Malformed {gateway_id.value} webhook payload: {e}")

        result = ReconciliationResult(
            gateway=gateway_id.value,
            event_type=event.event_type,
            tracking_id=event.tracking_id,
            status=event.status.value if event.status else None,
        )

        if event.status is None:
            result.ignored_reason = f"Unhandled event type {event.event_type}"
            logger.info(f"{gateway_id.value} webhook ignored: {event.event_type}")
            return result

        if not event.tracking_id:
            result.ignored_reason = "Event carries no tracking id"
            logger.warning(f"{gateway_id.value} webhook {event.event_type} has no tracking id")
            return result

        payment = await self.session.scalar(
            select(Payment)
            .where(Payment.tracking_id == event.tracking_id)
            .execution_options(populate_existing=True)
        )
        if payment is None:
            result.ignored_reason = "No payment with this tracking id"
            logger.warning(f"{gateway_id.value} webhook for unknown tracker {event.tracking_id} dropped")
            return result

        return await self._apply(payment, event.status, event.failure_reason, result)

    async def verify_payment(self, payment_id: int) -> ReconciliationResult:
        """
        Poll the gateway for a payment's status and apply it.

        Same idempotent path as a webhook; used when a webhook is late or lost.
        """
        payment = await self.get_payment(payment_id)
        result = ReconciliationResult(
            gateway=payment.gateway.value,
            event_type="verification",
            tracking_id=payment.tracking_id,
        )

        if payment.gateway == PaymentGateway.CASH:
            result.status = payment.status.value
            result.payment_id = payment.id
            result.order_id = payment.order_id
            result.ignored_reason = "Cash payments are settled at the counter"
            return result

        _, gateway = self._gateway(payment.gateway)
        status = await gateway.fetch_status(payment.tracking_id)
        result.status = status.value if status else None

        if status is None:
            result.ignored_reason = "Gateway has no record of this payment"
            return result

        return await self._apply(payment, status, None, result)

    async def _apply(
        self,
        payment: Payment,
        status: PaymentStatus,
        failure_reason: Optional[str],
        result: ReconciliationResult,
    ) -> ReconciliationResult:
        payment_id, order_id = payment.id, payment.order_id
        result.payment_id = payment_id
        result.order_id = order_id

        result.payment_updated = await self._update_payment_status(payment, status, failure_reason)

        if status == PaymentStatus.COMPLETED:
            order = await self.orders.get(order_id)
            if order.payment_status != OrderPaymentStatus.UNPAID:
                logger.info(f"Order {order.order_number} already {order.payment_status.value}; delivery is a no-op")
                return result

            record = await self.orders.record_payment(order_id, OrderPaymentStatus.PAID, PaymentMethod.ONLINE)
            result.order_marked_paid = record.changed
            result.table_released = record.table_released

            if record.changed:
                await self._publish_paid(record.order.id, record.order.order_number,
                                         record.order.restaurant_id, payment_id)

        elif status == PaymentStatus.REFUNDED and result.payment_updated:
            await self.orders.record_payment(order_id, OrderPaymentStatus.REFUNDED)

        return result

    async def _update_payment_status(
        self,
        payment: Payment,
        status: PaymentStatus,
        failure_reason: Optional[str] = None,
        refund_id: Optional[str] = None,
    ) -> bool:
        current = payment.status
        if status == current:
            return False
        if status not in ALLOWED_PAYMENT_UPDATES[current]:
            logger.info(f"Payment {payment.id}: ignoring {current.value} -> {status.value}")
            return False

        values = {"status": status, "updated_at": utcnow()}
        if status == PaymentStatus.FAILED:
            values["failure_reason"] = failure_reason
        if refund_id:
            values["refund_id"] = refund_id

        updated = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if updated.rowcount == 1:
            logger.info(f"Payment {payment.id} ({payment.tracking_id}): {current.value} -> {status.value}")
            return True
        return False

    async def _publish_paid(self, order_id: int, order_number: str, restaurant_id: int, payment_id: int) -> None:
        payment = await self.get_payment(payment_id)

        await safe_publish(
            self.publisher,
            Topic.PAYMENT_SUCCESS,
            {"order_id": order_id, "order_number": order_number, "amount": payment.amount},
            [restaurant_key(restaurant_id)],
        )
        await safe_publish(
            self.publisher,
            Topic.PAYMENT_CONFIRMED,
            {"status": payment.status.value, "amount": payment.amount},
            [order_key(order_id)],
        )

    # =========================================================================
    # REFUNDS & QUERIES
    # =========================================================================

    async def refund_payment(
        self,
        payment_id: int,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a completed payment through the gateway that collected it.

        A full refund also flips the order's payment status to REFUNDED.
        """
        payment = await self.get_payment(payment_id)

        if payment.status != PaymentStatus.COMPLETED:
            raise ValidationError(f"Only completed payments can be refunded (payment is {payment.status.value})")
        if amount is not None and (amount <= 0 or amount > payment.amount):
            raise ValidationError(f"Refund amount must be between 0 and {payment.amount:.2f}")

        if payment.gateway == PaymentGateway.CASH:
            refund = RefundResult(
                success=True,
                refund_id=f"CASH-REFUND-{uuid.uuid4().hex[:12].upper()}",
                amount=amount if amount is not None else payment.amount,
                status="succeeded",
            )
        else:
            _, gateway = self._gateway(payment.gateway)
            refund = await gateway.refund(payment.tracking_id, amount=amount, reason=reason)
            if not refund.success:
                raise GatewayError(payment.gateway.value, refund.error_message or "Refund was refused")

        full = amount is None or amount >= payment.amount
        if full:
            await self._update_payment_status(payment, PaymentStatus.REFUNDED, refund_id=refund.refund_id)
            await self.orders.record_payment(payment.order_id, OrderPaymentStatus.REFUNDED)
        else:
            payment.refund_id = refund.refund_id
            await self.session.commit()

        return refund

    async def payment_history(self, order_id: int) -> list[Payment]:
        await self.orders.get(order_id)
        result = await self.session.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
        )
        return list(result.scalars().all())

    async def pending_payments(self, older_than: timedelta, limit: int = 100) -> list[Payment]:
        """Online payments still unresolved after ``older_than``."""
        cutoff = utcnow() - older_than
        result = await self.session.execute(
            select(Payment)
            .where(
                Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.PROCESSING]),
                Payment.gateway != PaymentGateway.CASH,
                Payment.created_at <= cutoff,
            )
            .order_by(Payment.id)
            .limit(limit)
        )
        return list(result.scalars().all())
