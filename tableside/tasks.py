"""
Celery Tasks
Background tasks for payment reconciliation.

Webhooks are the primary way payments are confirmed. A gateway that never
delivers (network split, misconfigured endpoint) would otherwise leave the
order UNPAID forever, so the beat schedule polls the gateway for every
online payment that has stayed PENDING for too long and runs the result
through the same idempotent path a webhook takes.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tableside.celery_worker import celery_app
from tableside.core.config import get_settings
from tableside.core.exceptions import GatewayError
from tableside.services.events import BasePublisher, InMemoryPublisher, RedisPublisher
from tableside.services.payment import get_gateway, reset_gateways
from tableside.services.payment.router import PaymentRouter

logger = logging.getLogger(__name__)
settings = get_settings()


async def _verify_pending(
    session_maker: Optional[async_sessionmaker] = None,
    publisher: Optional[BasePublisher] = None,
    gateway_factory: Callable = get_gateway,
    older_than: Optional[timedelta] = None,
) -> dict:
    """
    Poll the gateway for each stale online payment and apply the answer.

    Each Celery run gets its own event loop, so the engine and publisher are
    built per run unless the caller hands them in.
    """
    engine = None
    if session_maker is None:
        engine = create_async_engine(settings.database_url, poolclass=NullPool)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)

    owns_publisher = publisher is None
    if owns_publisher:
        publisher = InMemoryPublisher() if settings.is_development else RedisPublisher()

    older_than = older_than or timedelta(minutes=settings.pending_payment_verify_minutes)
    summary = {"checked": 0, "updated": 0, "paid": 0, "errors": []}

    try:
        async with session_maker() as session:
            router = PaymentRouter(session, publisher, gateway_factory=gateway_factory)
            pending = await router.pending_payments(older_than)
            payment_ids = [p.id for p in pending]

            for payment_id in payment_ids:
                summary["checked"] += 1
                try:
                    result = await router.verify_payment(payment_id)
                except GatewayError as e:
                    logger.warning(f"⚠️ Verification of payment {payment_id} failed: {e.message}")
                    summary["errors"].append({"payment_id": payment_id, "error": e.message})
                    continue

                if result.payment_updated:
                    summary["updated"] += 1
                if result.order_marked_paid:
                    summary["paid"] += 1
    finally:
        if owns_publisher and isinstance(publisher, RedisPublisher):
            await publisher.close()
        if engine is not None:
            await engine.dispose()
            # cached gateway clients belong to this run's event loop
            reset_gateways()

    return summary


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    autoretry_for=(Exception,),
    retry_backoff=True,
)
def verify_pending_payments(self) -> dict:
    """
    Reconcile online payments whose webhook has not arrived.

    Returns:
        dict: Counts of checked, updated and newly paid payments
    """
    task_id = self.request.id
    logger.info(f"📋 Task {task_id}: Verifying pending payments")
    start_time = time.time()

    summary = asyncio.run(_verify_pending())

    elapsed = round(time.time() - start_time, 3)
    summary['task_id'] = task_id
    summary['processing_time_seconds'] = elapsed

    logger.info(
        f"✅ Task {task_id}: {summary['checked']} checked, {summary['updated']} updated, "
        f"{summary['paid']} paid in {elapsed}s"
    )
    return summary


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
