import hashlib
import hmac
import json
import time
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from conftest import WEBHOOK_SECRET, line
from tableside.core.exceptions import (
    AlreadyPaid,
    GatewayError,
    InvalidSignature,
    ValidationError,
)
from tableside.models import (
    OrderPaymentStatus,
    Payment,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
    TableStatus,
    utcnow,
)
from tableside.services.events import Topic, order_key, restaurant_key
from tableside.services.payment import MockGateway
from tableside.services.payment.router import PaymentRouter, available_methods, select_gateway
from tableside.services.payment.safepay import SafepayGateway, sign_payload
from tableside.services.payment.stripe import StripeGateway


# =============================================================================
# ROUTING
# =============================================================================

class TestSelectGateway:

    def test_local_currency_goes_to_safepay(self):
        assert select_gateway("PKR", local_currency="PKR") == PaymentGateway.SAFEPAY
        assert select_gateway("pkr", local_currency="PKR") == PaymentGateway.SAFEPAY

    def test_foreign_currency_goes_to_stripe(self):
        assert select_gateway("USD", local_currency="PKR") == PaymentGateway.STRIPE

    def test_stripe_preference_wins(self):
        assert select_gateway("PKR", "STRIPE", local_currency="PKR") == PaymentGateway.STRIPE

    def test_safepay_preference_only_for_local_currency(self):
        assert select_gateway("USD", PaymentGateway.SAFEPAY, local_currency="PKR") == PaymentGateway.STRIPE

    def test_currency_required(self):
        with pytest.raises(ValidationError):
            select_gateway("", local_currency="PKR")

    def test_available_methods(self):
        methods = available_methods("pkr", local_currency="PKR")
        assert methods["gateway"] == "SAFEPAY"
        assert methods["methods"] == ["CASH", "ONLINE"]
        assert "JazzCash" in methods["online_methods"]


# =============================================================================
# CHECKOUT
# =============================================================================

class TestCreatePayment:

    async def test_usd_order_uses_stripe(self, machine, router, gateways, seed):
        placed = await machine.create(seed.diner, [line(seed.fries, 2)], table_id=seed.t1)

        handle = await router.create_payment(placed.order.id)

        assert handle.gateway == "STRIPE"
        assert handle.tracking_id.startswith("pi_mock_")
        assert handle.amount == pytest.approx(placed.order.total)
        assert handle.currency == "USD"
        assert handle.tracking_id in gateways[PaymentGateway.STRIPE].checkouts

        payment = await router.get_payment(handle.payment_id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.tracking_id == handle.tracking_id
        assert payment.gateway == PaymentGateway.STRIPE

    async def test_pkr_order_uses_safepay(self, machine, router, seed):
        placed = await machine.create(seed.grill, [line(seed.karahi)], table_id=seed.p1)

        handle = await router.create_payment(placed.order.id)

        assert handle.gateway == "SAFEPAY"
        assert handle.currency == "PKR"
        # 1500 + 16% tax
        assert handle.amount == pytest.approx(1740.0)

    async def test_paid_order_rejected(self, machine, router, seed):
        placed = await machine.create(seed.diner, [line(seed.fries)])
        await machine.record_payment(placed.order.id, OrderPaymentStatus.PAID)

        with pytest.raises(AlreadyPaid):
            await router.create_payment(placed.order.id)

    async def test_cancelled_order_rejected(self, machine, router, seed):
        placed = await machine.create(seed.diner, [line(seed.fries)])
        await machine.cancel(placed.order.id)

        with pytest.raises(ValidationError):
            await router.create_payment(placed.order.id)

    async def test_gateway_failure_leaves_no_payment(self, db, publisher, machine, seed):
        refusing = MockGateway(PaymentGateway.STRIPE, webhook_secret=WEBHOOK_SECRET, failure_rate=1.0)
        router = PaymentRouter(db, publisher, orders=machine, gateway_factory=lambda _: refusing)
        placed = await machine.create(seed.diner, [line(seed.fries)])

        with pytest.raises(GatewayError):
            await router.create_payment(placed.order.id)

        assert await router.payment_history(placed.order.id) == []


# =============================================================================
# RECONCILIATION
# =============================================================================

async def _checkout(machine, router, seed, table=True):
    placed = await machine.create(seed.diner, [line(seed.fries)], table_id=seed.t1 if table else None)
    handle = await router.create_payment(placed.order.id)
    return placed, handle


class TestReconcile:

    async def test_completed_webhook_marks_order_paid(self, machine, router, tables, gateways, publisher, seed):
        placed, handle = await _checkout(machine, router, seed)
        publisher.clear()
        body, signature = gateways[PaymentGateway.STRIPE].build_webhook(handle.tracking_id, "COMPLETED")

        result = await router.reconcile("stripe", body, signature)

        assert result.payment_updated is True
        assert result.order_marked_paid is True
        assert result.table_released is True
        assert result.order_id == placed.order.id

        order = await machine.get(placed.order.id)
        assert order.payment_status == OrderPaymentStatus.PAID
        assert order.payment_method == PaymentMethod.ONLINE
        assert (await router.get_payment(handle.payment_id)).status == PaymentStatus.COMPLETED
        assert (await tables.get_table(seed.t1)).status == TableStatus.FREE

        success = publisher.for_topic(Topic.PAYMENT_SUCCESS)
        confirmed = publisher.for_topic(Topic.PAYMENT_CONFIRMED)
        assert len(success) == 1 and len(confirmed) == 1
        assert success[0].keys == (restaurant_key(seed.diner),)
        assert success[0].payload["order_number"] == placed.order.order_number
        assert confirmed[0].keys == (order_key(placed.order.id),)
        assert confirmed[0].payload["status"] == "COMPLETED"

    async def test_duplicate_delivery_is_a_no_op(self, machine, router, gateways, publisher, seed):
        placed, handle = await _checkout(machine, router, seed)
        body, signature = gateways[PaymentGateway.STRIPE].build_webhook(handle.tracking_id, "COMPLETED")

        await router.reconcile(PaymentGateway.STRIPE, body, signature)
        again = await router.reconcile(PaymentGateway.STRIPE, body, signature)

        assert again.payment_updated is False
        assert again.order_marked_paid is False
        assert len(publisher.for_topic(Topic.PAYMENT_SUCCESS)) == 1
        assert len(publisher.for_topic(Topic.ORDER_PAYMENT_UPDATED)) == 1

    async def test_bad_signature_changes_nothing(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        body, _ = gateways[PaymentGateway.STRIPE].build_webhook(handle.tracking_id, "COMPLETED")

        with pytest.raises(InvalidSignature):
            await router.reconcile(PaymentGateway.STRIPE, body, "deadbeef")
        with pytest.raises(InvalidSignature):
            await router.reconcile(PaymentGateway.STRIPE, body, None)

        assert (await router.get_payment(handle.payment_id)).status == PaymentStatus.PENDING
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.UNPAID

    async def test_unknown_tracker_is_acknowledged(self, router, gateways, seed):
        body, signature = gateways[PaymentGateway.SAFEPAY].build_webhook("trk_unknown", "PAID")

        result = await router.reconcile(PaymentGateway.SAFEPAY, body, signature)

        assert result.ignored_reason == "No payment with this tracking id"
        assert result.payment_updated is False

    async def test_unhandled_state_is_acknowledged(self, machine, router, gateways, seed):
        _, handle = await _checkout(machine, router, seed)
        body, signature = gateways[PaymentGateway.STRIPE].build_webhook(handle.tracking_id, "DISPUTED")

        result = await router.reconcile(PaymentGateway.STRIPE, body, signature)

        assert result.ignored_reason.startswith("Unhandled event type")

    async def test_cash_is_not_a_webhook_gateway(self, router, seed):
        with pytest.raises(ValidationError):
            await router.reconcile("CASH", b"{}", "sig")

    async def test_failure_then_success(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        mock = gateways[PaymentGateway.STRIPE]

        failed = await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "FAILED"))
        assert failed.payment_updated is True
        assert (await router.get_payment(handle.payment_id)).status == PaymentStatus.FAILED
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.UNPAID

        paid = await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))
        assert paid.order_marked_paid is True

    async def test_late_failure_after_success_is_ignored(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        mock = gateways[PaymentGateway.STRIPE]

        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))
        late = await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "FAILED"))

        assert late.payment_updated is False
        assert (await router.get_payment(handle.payment_id)).status == PaymentStatus.COMPLETED
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.PAID

    async def test_refund_webhook(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        mock = gateways[PaymentGateway.STRIPE]

        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))
        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "REFUNDED"))

        assert (await router.get_payment(handle.payment_id)).status == PaymentStatus.REFUNDED
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.REFUNDED

    async def test_cash_paid_order_is_not_paid_twice(self, machine, router, gateways, publisher, seed):
        """A webhook arriving after the order was settled at the counter changes only the Payment."""
        placed, handle = await _checkout(machine, router, seed, table=False)
        await machine.record_payment(placed.order.id, OrderPaymentStatus.PAID, PaymentMethod.CASH)
        publisher.clear()

        mock = gateways[PaymentGateway.STRIPE]
        result = await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))

        assert result.payment_updated is True
        assert result.order_marked_paid is False
        assert (await machine.get(placed.order.id)).payment_method == PaymentMethod.CASH
        assert publisher.events == []


class TestVerifyAndRefund:

    async def test_verify_applies_gateway_state(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        gateways[PaymentGateway.STRIPE].set_state(handle.tracking_id, "PAID")

        result = await router.verify_payment(handle.payment_id)

        assert result.event_type == "verification"
        assert result.order_marked_paid is True
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.PAID

    async def test_pending_payments_only_lists_stale_ones(self, db, machine, router, seed):
        _, old = await _checkout(machine, router, seed, table=False)
        _, fresh = await _checkout(machine, router, seed, table=False)
        await db.execute(
            update(Payment)
            .where(Payment.id == old.payment_id)
            .values(created_at=utcnow() - timedelta(minutes=30))
        )
        await db.commit()

        stale = await router.pending_payments(timedelta(minutes=10))

        assert [p.id for p in stale] == [old.payment_id]

    async def test_full_refund(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        mock = gateways[PaymentGateway.STRIPE]
        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))

        refund = await router.refund_payment(handle.payment_id, reason="requested_by_customer")

        assert refund.success is True
        assert refund.refund_id.startswith("re_mock_")
        payment = await router.get_payment(handle.payment_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_id == refund.refund_id
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.REFUNDED

    async def test_partial_refund_keeps_payment_completed(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        mock = gateways[PaymentGateway.STRIPE]
        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))

        refund = await router.refund_payment(handle.payment_id, amount=1.0)

        payment = await router.get_payment(handle.payment_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.refund_id == refund.refund_id
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.PAID

        mock.set_state(handle.tracking_id, "COMPLETED")
        result = await router.verify_payment(handle.payment_id)

        assert result.status == "COMPLETED"
        assert result.payment_updated is False
        payment = await router.get_payment(handle.payment_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.PAID

    async def test_partial_refunds_adding_up_settle_as_refunded(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        mock = gateways[PaymentGateway.STRIPE]
        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))
        mock.set_state(handle.tracking_id, "COMPLETED")
        total = (await machine.get(placed.order.id)).total

        await router.refund_payment(handle.payment_id, amount=1.0)
        await router.refund_payment(handle.payment_id, amount=round(total - 1.0, 2))
        result = await router.verify_payment(handle.payment_id)

        assert result.status == "REFUNDED"
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.REFUNDED

    async def test_refunded_order_cannot_open_new_checkout(self, machine, router, gateways, seed):
        placed, handle = await _checkout(machine, router, seed)
        mock = gateways[PaymentGateway.STRIPE]
        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))
        await router.refund_payment(handle.payment_id)

        with pytest.raises(ValidationError):
            await router.create_payment(placed.order.id)

        payments = await router.payment_history(placed.order.id)
        assert [p.id for p in payments] == [handle.payment_id]
        assert (await machine.get(placed.order.id)).payment_status == OrderPaymentStatus.REFUNDED

    async def test_refund_rules(self, machine, router, gateways, seed):
        _, handle = await _checkout(machine, router, seed)

        with pytest.raises(ValidationError):
            await router.refund_payment(handle.payment_id)

        mock = gateways[PaymentGateway.STRIPE]
        await router.reconcile(PaymentGateway.STRIPE, *mock.build_webhook(handle.tracking_id, "COMPLETED"))
        with pytest.raises(ValidationError):
            await router.refund_payment(handle.payment_id, amount=10_000.0)


# =============================================================================
# GATEWAY ADAPTERS
# =============================================================================

def _stripe_header(secret: str, payload: bytes, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestStripeGateway:

    @pytest.fixture
    def gateway(self):
        return StripeGateway(secret_key="sk_test_dummy", webhook_secret="whsec_stripe_test")

    def _event(self, event_type: str, obj: dict) -> bytes:
        return json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }).encode()

    def test_requires_secret_key(self):
        with pytest.raises(ValueError):
            StripeGateway(secret_key=None)

    def test_signature(self, gateway):
        body = self._event("payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"})

        assert gateway.verify_signature(body, _stripe_header("whsec_stripe_test", body)) is True
        assert gateway.verify_signature(body, _stripe_header("whsec_wrong", body)) is False
        assert gateway.verify_signature(body + b" ", _stripe_header("whsec_stripe_test", body)) is False
        assert gateway.verify_signature(body, None) is False

    def test_missing_webhook_secret_rejects_everything(self):
        gateway = StripeGateway(secret_key="sk_test_dummy", webhook_secret=None)
        gateway._webhook_secret = None
        body = self._event("payment_intent.succeeded", {"id": "pi_1"})

        assert gateway.verify_signature(body, _stripe_header("anything", body)) is False

    def test_parse_payment_intent_event(self, gateway):
        event = gateway.parse_event(self._event("payment_intent.succeeded", {
            "id": "pi_1",
            "object": "payment_intent",
            "status": "succeeded",
            "amount": 2995,
            "currency": "usd",
            "metadata": {"order_id": "7"},
        }))

        assert event.tracking_id == "pi_1"
        assert event.status == PaymentStatus.COMPLETED
        assert event.amount == pytest.approx(29.95)
        assert event.currency == "USD"
        assert event.metadata == {"order_id": "7"}

    def test_parse_failed_event_carries_reason(self, gateway):
        event = gateway.parse_event(self._event("payment_intent.payment_failed", {
            "id": "pi_1",
            "object": "payment_intent",
            "last_payment_error": {"message": "Your card was declined."},
        }))

        assert event.status == PaymentStatus.FAILED
        assert event.failure_reason == "Your card was declined."

    def test_full_charge_refund_maps_to_intent(self, gateway):
        event = gateway.parse_event(self._event("charge.refunded", {
            "id": "ch_1",
            "object": "charge",
            "payment_intent": "pi_1",
            "refunded": True,
            "amount": 2000,
            "amount_refunded": 2000,
        }))

        assert event.tracking_id == "pi_1"
        assert event.status == PaymentStatus.REFUNDED

    def test_partial_charge_refund_is_not_terminal(self, gateway):
        event = gateway.parse_event(self._event("charge.refunded", {
            "id": "ch_1",
            "object": "charge",
            "payment_intent": "pi_1",
            "refunded": False,
            "amount": 2000,
            "amount_refunded": 100,
        }))

        assert event.tracking_id == "pi_1"
        assert event.status is None

    def test_unhandled_event(self, gateway):
        event = gateway.parse_event(self._event("customer.created", {"id": "cus_1"}))
        assert event.status is None


class TestSafepayGateway:

    def _gateway(self, handler) -> SafepayGateway:
        return SafepayGateway(
            api_key="sfpy_key",
            secret_key="sfpy_secret",
            base_url="https://sandbox.test",
            transport=httpx.MockTransport(handler),
        )

    async def test_create_checkout(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["api_key"] = request.headers["X-SFPY-API-KEY"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"data": {
                "tracker": "trk_123",
                "token": "tok_abc",
                "checkout_url": "https://sandbox.test/checkout/trk_123",
            }})

        gateway = self._gateway(handler)
        handle = await gateway.create_checkout(1740.0, "pkr", 5, "ORD-1-0005", 2,
                                               success_url="https://x/ok", cancel_url="https://x/no")
        await gateway.close()

        assert seen["path"] == "/v1/payments/checkout"
        assert seen["api_key"] == "sfpy_key"
        assert seen["body"]["amount"] == 174000
        assert seen["body"]["currency"] == "PKR"
        assert handle.tracking_id == "trk_123"
        assert handle.checkout_url.endswith("trk_123")
        assert handle.token == "tok_abc"

    async def test_gateway_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"message": "upstream down"})

        gateway = self._gateway(handler)
        with pytest.raises(GatewayError) as exc:
            await gateway.fetch_status("trk_123")
        await gateway.close()

        assert exc.value.code == "500"
        assert "upstream down" in exc.value.message

    async def test_fetch_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/trk_123"
            return httpx.Response(200, json={"data": {"tracker": "trk_123", "state": "PAID"}})

        gateway = self._gateway(handler)
        assert await gateway.fetch_status("trk_123") == PaymentStatus.COMPLETED
        await gateway.close()

    async def test_webhook_signature_and_parse(self):
        gateway = self._gateway(lambda request: httpx.Response(200, json={}))
        body = json.dumps({
            "type": "payment.succeeded",
            "data": {"tracker": "trk_123", "state": "PAID", "amount": 174000, "currency": "PKR"},
        }).encode()

        assert gateway.verify_signature(body, sign_payload("sfpy_secret", body)) is True
        assert gateway.verify_signature(body, sign_payload("other", body)) is False

        event = gateway.parse_event(body)
        assert event.tracking_id == "trk_123"
        assert event.status == PaymentStatus.COMPLETED
        assert event.amount == pytest.approx(1740.0)
        await gateway.close()

    def test_requires_keys(self):
        with pytest.raises(ValueError):
            SafepayGateway(api_key="only-half", secret_key=None)
