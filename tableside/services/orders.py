"""
Order State Machine

Creates orders and moves them through the kitchen workflow:

    PENDING ──► ACCEPTED ──► PREPARING ──► READY ──► SERVED
       │            │            │
       └────────────┴────────────┴──► CANCELLED

PENDING, ACCEPTED and PREPARING may also jump straight to SERVED. SERVED
and CANCELLED are terminal. A served order can only be reversed through
``void``, the staff correction for a comped or returned meal.

Each status change is one conditional UPDATE guarded on the status the
caller read, so two staff members pressing different buttons at once can
never both succeed. The status change commits first; inventory and table
side effects run afterwards and a failure there is logged and reported on
the result without undoing the transition.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.config import get_settings
from tableside.core.exceptions import (
    CancellationWindowExpired,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from tableside.models import (
    MenuItem,
    Order,
    OrderPaymentStatus,
    OrderSource,
    OrderStatus,
    OrderStatusEntry,
    PaymentMethod,
    Restaurant,
    Table,
    ensure_aware,
    utcnow,
)
from tableside.services.events import (
    BasePublisher,
    Topic,
    order_key,
    restaurant_key,
    safe_publish,
)
from tableside.services.inventory import InventoryLedger, StockLine
from tableside.services.pricing import calculate_order_totals
from tableside.services.tables import SessionResolution, TableSessionCoordinator

logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.ACCEPTED, OrderStatus.PREPARING, OrderStatus.SERVED, OrderStatus.CANCELLED,
    }),
    OrderStatus.ACCEPTED: frozenset({
        OrderStatus.PREPARING, OrderStatus.SERVED, OrderStatus.CANCELLED,
    }),
    OrderStatus.PREPARING: frozenset({
        OrderStatus.READY, OrderStatus.SERVED, OrderStatus.CANCELLED,
    }),
    OrderStatus.READY: frozenset({OrderStatus.SERVED}),
    OrderStatus.SERVED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.SERVED, OrderStatus.CANCELLED})

STATUS_TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.SERVED: "served_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

ORDER_NUMBER_ATTEMPTS = 3


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in VALID_TRANSITIONS.get(current, frozenset())


def _as_status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status {value!r}")


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class PlacedOrder:
    order: Order
    session: Optional[SessionResolution] = None


@dataclass
class TransitionResult:
    """
    Outcome of a status change.

    side_effect_errors lists secondary effects (stock, events) that failed
    after the status itself was committed.
    """
    order: Order
    previous_status: OrderStatus
    side_effect_errors: list[str] = field(default_factory=list)


@dataclass
class PaymentRecordResult:
    order: Order
    changed: bool
    table_released: bool = False


# =============================================================================
# STATE MACHINE
# =============================================================================

class OrderStateMachine:
    """
    Order lifecycle service.

    Example:
        >>> machine = OrderStateMachine(session, publisher)
        >>> placed = await machine.create(restaurant_id=1, table_id=4, items=[...])
        >>> await machine.transition(placed.order.id, OrderStatus.ACCEPTED, actor="staff-7")
    """

    def __init__(
        self,
        session: AsyncSession,
        publisher: BasePublisher,
        inventory: Optional[InventoryLedger] = None,
        tables: Optional[TableSessionCoordinator] = None,
    ):
        self.session = session
        self.publisher = publisher
        self.inventory = inventory or InventoryLedger(session, publisher)
        self.tables = tables or TableSessionCoordinator(session, publisher)
        self.settings = get_settings()

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, order_id: int) -> Order:
        order = await self.session.get(Order, order_id, populate_existing=True)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def list_orders(
        self,
        restaurant_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        table_id: Optional[int] = None,
        session_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Order]:
        """Newest first."""
        query = select(Order).execution_options(populate_existing=True)

        if restaurant_id is not None:
            query = query.where(Order.restaurant_id == restaurant_id)
        if status is not None:
            query = query.where(Order.status == _as_status(status))
        if table_id is not None:
            query = query.where(Order.table_id == table_id)
        if session_id is not None:
            query = query.where(Order.session_id == session_id)

        result = await self.session.execute(query.order_by(Order.id.desc()).limit(limit))
        return list(result.scalars().all())

    async def history(self, order_id: int) -> list[OrderStatusEntry]:
        """The status trail in the order it was written."""
        await self.get(order_id)
        result = await self.session.execute(
            select(OrderStatusEntry)
            .where(OrderStatusEntry.order_id == order_id)
            .order_by(OrderStatusEntry.id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(
        self,
        restaurant_id: int,
        items: list[dict],
        table_id: Optional[int] = None,
        security_token: Optional[str] = None,
        actor: Optional[str] = None,
        tip: float = 0.0,
        promo_code: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        special_instructions: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        order_source: OrderSource = OrderSource.QR,
    ) -> PlacedOrder:
        """
        Turn a cart into a PENDING order.

        Args:
            restaurant_id: Restaurant taking the order
            items: [{"menu_item_id", "quantity", "special_instructions"?}]
            table_id: Dine-in table, None for takeaway
            security_token: Token from the table QR (customers only)
            actor: Staff id when staff place the order; skips the token check

        Returns:
            PlacedOrder: The order and the session it joined

        Raises:
            NotFoundError: Restaurant, table or menu item missing
            ValidationError: Empty cart, bad quantity, closed restaurant
            InsufficientStock: An item cannot be supplied
            SecurityViolation: Token does not match the table's session
        """
        restaurant = await self.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant {restaurant_id} not found")
        if not restaurant.is_active or not restaurant.ordering_enabled:
            raise ValidationError(f"{restaurant.name} is not accepting orders right now")

        lines = self._validate_lines(items)

        table: Optional[Table] = None
        if table_id is not None:
            table = await self.tables.get_table(table_id)
            if table.restaurant_id != restaurant_id:
                raise NotFoundError(f"Table {table_id} not found for this restaurant")

        menu = await self.inventory.check_availability(
            [StockLine(line["menu_item_id"], line["quantity"]) for line in lines],
            restaurant_id=restaurant_id,
        )

        resolution: Optional[SessionResolution] = None
        if table is not None:
            resolution = await self.tables.resolve_session(
                table.id,
                presented_token=security_token,
                trusted=actor is not None,
            )

        snapshots = [self._snapshot(menu[line["menu_item_id"]], line) for line in lines]
        totals = calculate_order_totals(
            snapshots,
            tax_rate=restaurant.tax_rate or 0.0,
            tip=tip,
            promo_code=promo_code,
        )

        currency = restaurant.currency
        table_name = table.name if table else None

        order = await self._insert_order(
            restaurant_id=restaurant_id,
            table_id=table_id,
            session_id=resolution.session_id if resolution else None,
            items=snapshots,
            subtotal=totals.subtotal,
            tax=totals.tax,
            tip=totals.tip,
            discount=totals.discount,
            promo_code=totals.promo_code,
            total=totals.total,
            customer_name=customer_name,
            customer_phone=customer_phone,
            special_instructions=special_instructions,
            payment_method=payment_method,
            order_source=order_source,
            actor=actor,
        )

        logger.info(
            f"Order {order.order_number} created: {len(snapshots)} line(s), "
            f"total {totals.total:.2f} {currency}"
        )

        order_id, order_number = order.id, order.order_number

        if resolution is not None:
            try:
                await self.tables.attach_order(table_id, resolution.session_id, order_id)
            except Exception as e:
                await self.session.rollback()
                logger.exception(f"Failed to attach order {order_number} to table {table_name}: {e}")

        order = await self.get(order_id)

        await safe_publish(
            self.publisher,
            Topic.ORDER_CREATED,
            {
                **order.to_dict(),
                "table_name": table_name,
                "message": f"New order #{order_number} from {table_name or 'Takeout'}",
            },
            [restaurant_key(restaurant_id)],
        )

        return PlacedOrder(order=order, session=resolution)

    @staticmethod
    def _validate_lines(items: list[dict]) -> list[dict]:
        if not items:
            raise ValidationError("Order must contain at least one item")

        lines = []
        for raw in items:
            menu_item_id = raw.get("menu_item_id")
            quantity = raw.get("quantity", 1)

            if menu_item_id is None:
                raise ValidationError("Each order item needs a menu_item_id")
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
                raise ValidationError(f"Invalid quantity {quantity!r} for menu item {menu_item_id}")

            lines.append({
                "menu_item_id": int(menu_item_id),
                "quantity": quantity,
                "special_instructions": raw.get("special_instructions"),
            })
        return lines

    @staticmethod
    def _snapshot(item: MenuItem, line: dict) -> dict:
        """Freeze name and price at order time."""
        return {
            "menu_item_id": item.id,
            "name": item.name,
            "price": item.price,
            "quantity": line["quantity"],
            "special_instructions": line.get("special_instructions"),
        }

    async def _next_order_number(self, restaurant_id: int) -> str:
        count = await self.session.scalar(
            select(func.count(Order.id)).where(Order.restaurant_id == restaurant_id)
        )
        return f"ORD-{int(time.time() * 1000)}-{(count or 0) + 1:04d}"

    async def _insert_order(self, actor: Optional[str], **fields) -> Order:
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order = Order(
                order_number=await self._next_order_number(fields["restaurant_id"]),
                status=OrderStatus.PENDING,
                payment_status=OrderPaymentStatus.UNPAID,
                **fields,
            )
            self.session.add(order)

            try:
                await self.session.flush()
            except IntegrityError:
                await self.session.rollback()
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.warning(f"Order number collision, retrying ({attempt}/{ORDER_NUMBER_ATTEMPTS})")
                continue

            self.session.add(OrderStatusEntry(
                order_id=order.id,
                status=OrderStatus.PENDING,
                actor=actor,
                reason="Order placed",
            ))
            await self.session.commit()
            return order

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    async def transition(
        self,
        order_id: int,
        new_status: Union[str, OrderStatus],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move an order one step along the transition table.

        Entering SERVED deducts the ordered quantities from stock.

        Raises:
            NotFoundError: No such order
            InvalidTransition: Move not allowed from the current status
        """
        new_status = _as_status(new_status)
        order = await self.get(order_id)
        previous = order.status

        if not can_transition(previous, new_status):
            raise InvalidTransition(previous, new_status)

        order = await self._apply_status(order, previous, new_status, actor, reason)
        errors: list[str] = []

        if new_status == OrderStatus.SERVED:
            await self._run_side_effect(
                errors,
                "inventory deduction",
                order,
                self.inventory.deduct(order.restaurant_id, order.items),
            )
            order = await self.get(order_id)

        await self._publish_status(order)
        return TransitionResult(order=order, previous_status=previous, side_effect_errors=errors)

    async def cancel(
        self,
        order_id: int,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Cancel an order that has not been served.

        Customers (no actor) may only cancel within the grace window after
        placing the order; staff may cancel any time before SERVED.
        """
        order = await self.get(order_id)

        if order.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                order.status,
                OrderStatus.CANCELLED,
                message=f"Order {order.order_number} is already {order.status.value} and cannot be cancelled",
            )

        if actor is None:
            window = timedelta(minutes=self.settings.customer_cancel_window_minutes)
            if utcnow() - ensure_aware(order.created_at) > window:
                raise CancellationWindowExpired(
                    f"Orders can only be cancelled within "
                    f"{self.settings.customer_cancel_window_minutes} minutes of placing them. "
                    f"Please ask a member of staff."
                )

        result = await self.transition(
            order_id,
            OrderStatus.CANCELLED,
            actor=actor,
            reason=reason or ("Cancelled by customer" if actor is None else "Cancelled by staff"),
        )
        await self._publish_cancelled(result.order)
        return result

    async def void(self, order_id: int, actor: str, reason: Optional[str] = None) -> TransitionResult:
        """
        Staff correction: reverse a SERVED order to CANCELLED.

        The stock deducted when the order was served is put back.
        """
        if not actor:
            raise ValidationError("A staff member is required to void a served order")

        order = await self.get(order_id)
        if order.status != OrderStatus.SERVED:
            raise InvalidTransition(
                order.status,
                OrderStatus.CANCELLED,
                message=f"Only served orders can be voided; order {order.order_number} is {order.status.value}",
            )

        order = await self._apply_status(
            order, OrderStatus.SERVED, OrderStatus.CANCELLED, actor, reason or "Voided by staff"
        )
        errors: list[str] = []

        await self._run_side_effect(
            errors,
            "inventory restore",
            order,
            self.inventory.restore(order.restaurant_id, order.items),
        )
        order = await self.get(order_id)

        await self._publish_status(order)
        await self._publish_cancelled(order)
        return TransitionResult(order=order, previous_status=OrderStatus.SERVED, side_effect_errors=errors)

    async def _apply_status(
        self,
        order: Order,
        expected: OrderStatus,
        new_status: OrderStatus,
        actor: Optional[str],
        reason: Optional[str],
    ) -> Order:
        order_id, order_number = order.id, order.order_number
        now = utcnow()
        values = {"status": new_status, "updated_at": now}

        timestamp_field = STATUS_TIMESTAMP_FIELDS.get(new_status)
        if timestamp_field:
            values[timestamp_field] = now
        if new_status == OrderStatus.CANCELLED:
            values["cancellation_reason"] = reason

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await self.session.rollback()
            current = await self.get(order_id)
            logger.warning(
                f"Order {order_number} changed underneath transition to {new_status.value} "
                f"(now {current.status.value})"
            )
            raise InvalidTransition(current.status, new_status)

        self.session.add(OrderStatusEntry(
            order_id=order_id,
            status=new_status,
            actor=actor,
            reason=reason,
        ))
        await self.session.commit()

        logger.info(f"Order {order_number}: {expected.value} -> {new_status.value} (by {actor or 'customer'})")
        return await self.get(order_id)

    async def _run_side_effect(self, errors: list[str], label: str, order: Order, effect) -> None:
        order_number = order.order_number
        try:
            await effect
        except Exception as e:
            await self.session.rollback()
            logger.exception(f"Order {order_number}: {label} failed: {e}")
            errors.append(f"{label} failed: {e}")

    # =========================================================================
    # PAYMENT STATUS
    # =========================================================================

    async def record_payment(
        self,
        order_id: int,
        payment_status: Union[str, OrderPaymentStatus],
        method: Optional[Union[str, PaymentMethod]] = None,
    ) -> PaymentRecordResult:
        """
        Set the order's payment fields.

        The flip to PAID only happens once no matter how many callers race
        to make it; only that first caller attempts to release the table.
        """
        try:
            payment_status = OrderPaymentStatus(payment_status)
            method = PaymentMethod(method) if method is not None else None
        except ValueError as e:
            raise ValidationError(str(e))

        order = await self.get(order_id)

        values = {"payment_status": payment_status, "updated_at": utcnow()}
        if method is not None:
            values["payment_method"] = method

        result = await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status != payment_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

        changed = result.rowcount == 1
        order = await self.get(order_id)

        if not changed:
            logger.info(f"Order {order.order_number} already {payment_status.value}; nothing to record")
            return PaymentRecordResult(order=order, changed=False)

        logger.info(f"Order {order.order_number} payment status -> {payment_status.value}")

        released = False
        if payment_status == OrderPaymentStatus.PAID and order.table_id is not None:
            order_number = order.order_number
            try:
                released = await self.tables.release_if_settled(order.table_id, order_id)
            except Exception as e:
                await self.session.rollback()
                logger.exception(f"Table release after payment of {order_number} failed: {e}")
            order = await self.get(order_id)

        await safe_publish(
            self.publisher,
            Topic.ORDER_PAYMENT_UPDATED,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "payment_status": order.payment_status.value,
                "payment_method": order.payment_method.value,
                "table_released": released,
            },
            [restaurant_key(order.restaurant_id), order_key(order.id)],
        )

        return PaymentRecordResult(order=order, changed=True, table_released=released)

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def _table_name(self, table_id: Optional[int]) -> Optional[str]:
        if table_id is None:
            return None
        return await self.session.scalar(select(Table.name).where(Table.id == table_id))

    async def _publish_status(self, order: Order) -> None:
        await safe_publish(
            self.publisher,
            Topic.ORDER_STATUS_CHANGED,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "status": order.status.value,
                "table_name": await self._table_name(order.table_id),
            },
            [restaurant_key(order.restaurant_id), order_key(order.id)],
        )

    async def _publish_cancelled(self, order: Order) -> None:
        await safe_publish(
            self.publisher,
            Topic.ORDER_CANCELLED,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "reason": order.cancellation_reason,
            },
            [restaurant_key(order.restaurant_id), order_key(order.id)],
        )
