from datetime import timedelta

from sqlalchemy import update

from conftest import line
from tableside.core.exceptions import GatewayError
from tableside.models import OrderPaymentStatus, Payment, PaymentGateway, utcnow
from tableside.tasks import _verify_pending, health_check, verify_pending_payments


async def _stale_checkout(db, machine, router, seed, minutes=30):
    placed = await machine.create(seed.diner, [line(seed.fries)], table_id=seed.t1)
    handle = await router.create_payment(placed.order.id)
    await db.execute(
        update(Payment)
        .where(Payment.id == handle.payment_id)
        .values(created_at=utcnow() - timedelta(minutes=minutes))
    )
    await db.commit()
    return placed.order.id, handle


class TestVerifyPending:

    async def test_paid_checkout_is_applied(self, db, session_maker, machine, router, publisher,
                                            gateway_factory, gateways, seed):
        order_id, handle = await _stale_checkout(db, machine, router, seed)
        gateways[PaymentGateway.STRIPE].set_state(handle.tracking_id, "PAID")

        summary = await _verify_pending(
            session_maker=session_maker, publisher=publisher, gateway_factory=gateway_factory,
        )

        assert summary == {"checked": 1, "updated": 1, "paid": 1, "errors": []}
        order = await machine.get(order_id)
        assert order.payment_status == OrderPaymentStatus.PAID

    async def test_still_pending_changes_nothing(self, db, session_maker, machine, router, publisher,
                                                 gateway_factory, seed):
        await _stale_checkout(db, machine, router, seed)

        summary = await _verify_pending(
            session_maker=session_maker, publisher=publisher, gateway_factory=gateway_factory,
        )

        assert summary["checked"] == 1
        assert summary["updated"] == 0
        assert summary["paid"] == 0

    async def test_recent_checkouts_are_left_to_the_webhook(self, db, session_maker, machine, router,
                                                            publisher, gateway_factory, seed):
        await _stale_checkout(db, machine, router, seed, minutes=1)

        summary = await _verify_pending(
            session_maker=session_maker, publisher=publisher, gateway_factory=gateway_factory,
        )

        assert summary["checked"] == 0

    async def test_gateway_errors_are_collected(self, db, session_maker, machine, router, publisher,
                                                gateways, seed):
        _, handle = await _stale_checkout(db, machine, router, seed)

        class Unreachable:
            async def fetch_status(self, tracking_id):
                raise GatewayError("STRIPE", "connection reset")

        summary = await _verify_pending(
            session_maker=session_maker, publisher=publisher, gateway_factory=lambda _: Unreachable(),
        )

        assert summary["checked"] == 1
        assert summary["errors"] == [
            {"payment_id": handle.payment_id, "error": "STRIPE error: connection reset"}
        ]


def test_health_check_task():
    result = health_check.run()

    assert result["status"] == "healthy"
    assert result["worker"] == "celery"


def test_verify_task_retries_on_unexpected_errors():
    assert verify_pending_payments.autoretry_for == (Exception,)
    assert verify_pending_payments.max_retries == 3
