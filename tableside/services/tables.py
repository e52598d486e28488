"""
Table Session Coordinator

Owns table occupancy and the session identity that groups every order of
one sitting. A session is active while ``tables.session_id`` is set:

    FREE ──(first order)──► OCCUPIED ──(bill settled / reset)──► FREE

Session minting and release are compare-and-swap UPDATEs guarded on the
session id the caller observed. When two first orders race on a FREE table
only one mint lands; the loser re-reads the row and joins the winner's
session instead of creating a second one.

Author: Khalil Bannouri
Version: 4.0.0
"""

import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.exceptions import NotFoundError, SecurityViolation, ValidationError
from tableside.models import (
    Order,
    OrderPaymentStatus,
    OrderStatus,
    Payment,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
    Restaurant,
    Table,
    TableStatus,
    utcnow,
)
from tableside.services.events import (
    BasePublisher,
    Topic,
    order_key,
    restaurant_key,
    safe_publish,
)

logger = logging.getLogger(__name__)

MAX_MINT_ATTEMPTS = 3


@dataclass
class SessionResolution:
    """Which session a new order joins."""
    table_id: int
    session_id: str
    is_new_session: bool
    security_token: Optional[str] = None


def generate_session_id() -> str:
    return uuid.uuid4().hex


def generate_security_token() -> str:
    """Eight upper-case hex characters, short enough for a QR payload."""
    return secrets.token_hex(4).upper()


def tokens_match(expected: str, presented: Optional[str]) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(expected.encode(), presented.strip().upper().encode())


def _cleared_session() -> dict[str, Any]:
    return {
        "status": TableStatus.FREE,
        "session_id": None,
        "security_token": None,
        "session_started_at": None,
        "occupied_at": None,
        "session_order_id": None,
        "updated_at": utcnow(),
    }


class TableSessionCoordinator:
    """
    Table occupancy and session bookkeeping.

    Example:
        >>> tables = TableSessionCoordinator(session, publisher)
        >>> resolution = await tables.resolve_session(4, presented_token="9F2A11C0")
        >>> await tables.attach_order(4, resolution.session_id, order.id)
    """

    def __init__(self, session: AsyncSession, publisher: BasePublisher):
        self.session = session
        self.publisher = publisher

    async def get_table(self, table_id: int) -> Table:
        """Fresh read of a table row."""
        table = await self.session.get(Table, table_id, populate_existing=True)
        if table is None:
            raise NotFoundError(f"Table {table_id} not found")
        return table

    # =========================================================================
    # SESSIONS
    # =========================================================================

    async def resolve_session(
        self,
        table_id: int,
        presented_token: Optional[str] = None,
        trusted: bool = False,
    ) -> SessionResolution:
        """
        Decide which session an incoming order belongs to.

        Args:
            table_id: Table the order is placed against
            presented_token: Token from the scanned QR payload
            trusted: Staff placing the order; skips the token check

        Raises:
            NotFoundError: Table does not exist
            ValidationError: Table has been deactivated
            SecurityViolation: Active session token does not match
        """
        lost_race = False

        for _ in range(MAX_MINT_ATTEMPTS):
            table = await self.get_table(table_id)

            if not table.is_active:
                raise ValidationError(f"Table {table.name} is not accepting orders")

            if table.session_id:
                if (
                    table.security_token
                    and not trusted
                    and not lost_race
                    and not tokens_match(table.security_token, presented_token)
                ):
                    logger.warning(f"Security token mismatch on table {table.name} (#{table.id})")
                    raise SecurityViolation()

                return SessionResolution(
                    table_id=table.id,
                    session_id=table.session_id,
                    is_new_session=False,
                    security_token=table.security_token,
                )

            session_id = generate_session_id()
            # A token issued at scan time but not yet used carries into the session
            token = table.security_token or generate_security_token()

            minted = await self.session.execute(
                update(Table)
                .where(Table.id == table_id, Table.session_id.is_(None))
                .values(
                    session_id=session_id,
                    security_token=token,
                    session_started_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()

            if minted.rowcount == 1:
                logger.info(f"New session {session_id[:8]} on table {table.name}")
                return SessionResolution(
                    table_id=table.id,
                    session_id=session_id,
                    is_new_session=True,
                    security_token=token,
                )

            # The table was free when this caller observed it; join the winner
            lost_race = True
            logger.info(f"Session mint lost on table {table.name}; joining existing session")

        raise ValidationError(f"Could not open a session on table {table_id}, please retry")

    async def issue_token(self, table_id: int) -> SessionResolution:
        """
        Return the token the table's QR flow should carry.

        Mints one only when the table has none, so repeated scans during a
        sitting keep handing out the same token.
        """
        table = await self.get_table(table_id)

        if not table.security_token:
            token = generate_security_token()
            await self.session.execute(
                update(Table)
                .where(Table.id == table_id, Table.security_token.is_(None))
                .values(security_token=token, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            table = await self.get_table(table_id)

        return SessionResolution(
            table_id=table.id,
            session_id=table.session_id,
            is_new_session=False,
            security_token=table.security_token,
        )

    async def attach_order(self, table_id: int, session_id: str, order_id: int) -> bool:
        """
        Mark the table OCCUPIED and link the sitting's most recent order.

        occupied_at is only stamped by the first order; calling again for
        the same order changes nothing but the link.

        Returns:
            bool: False if the table has since moved to another session
        """
        now = utcnow()
        attached = await self.session.execute(
            update(Table)
            .where(Table.id == table_id, Table.session_id == session_id)
            .values(
                status=TableStatus.OCCUPIED,
                session_order_id=order_id,
                occupied_at=func.coalesce(Table.occupied_at, now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if attached.rowcount != 1:
            logger.warning(f"Order {order_id} not attached: table {table_id} left session {session_id[:8]}")
            return False

        table = await self.get_table(table_id)
        await self._publish_table(table)
        return True

    async def release_if_settled(self, table_id: int, order_id: int) -> bool:
        """
        Free the table once the order being settled closes out its sitting.

        The table must still be OCCUPIED by the session this order belongs
        to, and no other order of that session may still be unpaid. A table
        that has already been turned over to new guests is left alone.
        """
        table = await self.get_table(table_id)
        if table.status != TableStatus.OCCUPIED or not table.session_id:
            return False

        order = await self.session.get(Order, order_id, populate_existing=True)
        linked = table.session_order_id == order_id
        same_session = order is not None and order.session_id == table.session_id
        if not (linked or same_session):
            logger.info(f"Table {table.name} not released: order {order_id} is not in its current session")
            return False

        outstanding = await self.session.scalar(
            select(func.count(Order.id)).where(
                Order.session_id == table.session_id,
                Order.payment_status != OrderPaymentStatus.PAID,
                Order.status != OrderStatus.CANCELLED,
            )
        )
        if outstanding:
            logger.info(f"Table {table.name} kept: {outstanding} unpaid order(s) in session")
            return False

        released = await self.session.execute(
            update(Table)
            .where(
                Table.id == table_id,
                Table.status == TableStatus.OCCUPIED,
                Table.session_id == table.session_id,
            )
            .values(**_cleared_session())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        if released.rowcount != 1:
            return False

        logger.info(f"Table {table.name} released after order {order_id} was settled")
        await self._publish_table(await self.get_table(table_id))
        return True

    async def reset(self, table_id: int) -> Table:
        """
        Administrative close-out: force FREE and clear the session.

        Unpaid orders of the outgoing session are treated as settled at the
        counter: they are marked PAID by CASH and get a COMPLETED cash
        payment record unless one already exists.
        """
        table = await self.get_table(table_id)
        settled: list[Order] = []

        if table.session_id:
            result = await self.session.execute(
                select(Order).where(
                    Order.session_id == table.session_id,
                    Order.payment_status == OrderPaymentStatus.UNPAID,
                    Order.status != OrderStatus.CANCELLED,
                )
            )
            settled = list(result.scalars().all())

            for order in settled:
                await self._settle_cash(order)

        await self.session.execute(
            update(Table)
            .where(Table.id == table_id)
            .values(**_cleared_session())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        table = await self.get_table(table_id)
        logger.info(f"Table {table.name} reset ({len(settled)} order(s) settled in cash)")

        for order in settled:
            await safe_publish(
                self.publisher,
                Topic.ORDER_PAYMENT_UPDATED,
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "payment_status": OrderPaymentStatus.PAID.value,
                    "payment_method": PaymentMethod.CASH.value,
                },
                [restaurant_key(order.restaurant_id), order_key(order.id)],
            )
        await self._publish_table(table)
        return table

    async def _settle_cash(self, order: Order) -> None:
        currency = await self.session.scalar(
            select(Restaurant.currency).where(Restaurant.id == order.restaurant_id)
        )
        marked = await self.session.execute(
            update(Order)
            .where(Order.id == order.id, Order.payment_status != OrderPaymentStatus.PAID)
            .values(
                payment_status=OrderPaymentStatus.PAID,
                payment_method=PaymentMethod.CASH,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != 1:
            return

        result = await self.session.execute(
            select(Payment).where(Payment.order_id == order.id).order_by(Payment.id.desc())
        )
        payments = list(result.scalars().all())

        if any(p.status == PaymentStatus.COMPLETED for p in payments):
            return

        pending = next((p for p in payments if p.status == PaymentStatus.PENDING), None)
        if pending is not None:
            pending.status = PaymentStatus.COMPLETED
            pending.updated_at = utcnow()
            return

        self.session.add(Payment(
            order_id=order.id,
            restaurant_id=order.restaurant_id,
            amount=order.total,
            currency=currency,
            gateway=PaymentGateway.CASH,
            tracking_id=f"CASH-{uuid.uuid4().hex[:12].upper()}",
            status=PaymentStatus.COMPLETED,
        ))

    # =========================================================================
    # BILLING
    # =========================================================================

    async def session_bill(self, table_id: int) -> dict[str, Any]:
        """
        Aggregate every order of the table's current sitting.

        Cancelled orders are listed but excluded from the totals.
        """
        table = await self.get_table(table_id)
        orders: list[Order] = []

        if table.session_id:
            result = await self.session.execute(
                select(Order)
                .where(Order.session_id == table.session_id)
                .order_by(Order.id)
                .execution_options(populate_existing=True)
            )
            orders = list(result.scalars().all())

        billable = [o for o in orders if o.status != OrderStatus.CANCELLED]
        total = round(sum(o.total for o in billable), 2)
        paid = round(sum(o.total for o in billable if o.payment_status == OrderPaymentStatus.PAID), 2)

        return {
            "table": table.to_dict(),
            "session_id": table.session_id,
            "orders": [o.to_dict() for o in orders],
            "subtotal": round(sum(o.subtotal for o in billable), 2),
            "tax": round(sum(o.tax for o in billable), 2),
            "tip": round(sum(o.tip for o in billable), 2),
            "discount": round(sum(o.discount for o in billable), 2),
            "total": total,
            "amount_paid": paid,
            "outstanding": round(total - paid, 2),
        }

    async def _publish_table(self, table: Table) -> None:
        await safe_publish(
            self.publisher,
            Topic.TABLE_UPDATED,
            table.to_dict(),
            [restaurant_key(table.restaurant_id)],
        )
