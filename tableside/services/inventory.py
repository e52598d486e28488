"""
Inventory Ledger

Per-item stock counter driven only by order status events:
    - check_availability: read-only gate at order creation (no reservation)
    - deduct: runs when an order enters SERVED
    - restore: runs when a previously SERVED order is cancelled

Every stock change is a single conditional UPDATE evaluated by the
database against the current row, so two concurrent deductions can never
both read the same quantity and write back a stale result. Quantities are
clamped at zero and is_available is switched off at zero inside the same
statement.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import case, false, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tableside.core.exceptions import InsufficientStock, NotFoundError
from tableside.models import MenuItem, utcnow
from tableside.services.events import (
    BasePublisher,
    Topic,
    restaurant_key,
    safe_publish,
)

logger = logging.getLogger(__name__)


@dataclass
class StockLine:
    """A quantity of one menu item, as requested or as ordered."""
    menu_item_id: int
    quantity: int


@dataclass
class StockChange:
    """Outcome of one deduct/restore on one item."""
    menu_item_id: int
    name: str
    remaining: int
    is_available: bool
    is_low_stock: bool
    back_in_stock: bool = False


def merge_lines(items: Iterable) -> list[StockLine]:
    """
    Collapse lines to one quantity per menu item.

    Accepts StockLine objects or order-item snapshot dicts.
    """
    totals: dict[int, int] = {}
    for item in items:
        if isinstance(item, dict):
            item_id, quantity = int(item["menu_item_id"]), int(item["quantity"])
        else:
            item_id, quantity = item.menu_item_id, item.quantity
        totals[item_id] = totals.get(item_id, 0) + quantity
    return [StockLine(menu_item_id=k, quantity=v) for k, v in totals.items()]


class InventoryLedger:
    """
    Stock side of the order lifecycle.

    Example:
        >>> ledger = InventoryLedger(session, publisher)
        >>> await ledger.check_availability([StockLine(3, 2)])
        >>> await ledger.deduct(restaurant_id=1, items=order.items)
    """

    def __init__(self, session: AsyncSession, publisher: BasePublisher):
        self.session = session
        self.publisher = publisher

    async def check_availability(
        self,
        items: Iterable,
        restaurant_id: Optional[int] = None,
    ) -> dict[int, MenuItem]:
        """
        Verify every requested item exists, is on sale and has enough stock.

        Nothing is reserved: two carts can both pass this gate for the last
        unit, the second one is only corrected when deduction clamps at zero.

        Returns:
            dict: menu_item_id -> MenuItem for building snapshots

        Raises:
            NotFoundError: Item missing, deleted or from another restaurant
            InsufficientStock: Item unavailable or short of stock
        """
        lines = merge_lines(items)
        ids = [line.menu_item_id for line in lines]

        result = await self.session.execute(
            select(MenuItem)
            .where(MenuItem.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        found = {item.id: item for item in result.scalars().all()}

        for line in lines:
            item = found.get(line.menu_item_id)

            if item is None or item.is_deleted:
                raise NotFoundError(f"Menu item {line.menu_item_id} not found")

            if restaurant_id is not None and item.restaurant_id != restaurant_id:
                raise NotFoundError(
                    f"Menu item {line.menu_item_id} not found for this restaurant"
                )

            if not item.is_available:
                raise InsufficientStock(
                    item.name,
                    available=0,
                    message=f"{item.name} is currently unavailable",
                )

            if item.stock_quantity < line.quantity:
                raise InsufficientStock(item.name, available=item.stock_quantity)

        return found

    async def deduct(self, restaurant_id: int, items: Iterable) -> list[StockChange]:
        """
        Take ordered quantities out of stock.

        Publishes inventory.low-stock when the remainder is at or under the
        item's threshold and inventory.out-of-stock when it reaches zero.
        """
        table = MenuItem.__table__
        changes: list[StockChange] = []

        for line in merge_lines(items):
            remaining = table.c.stock_quantity - line.quantity
            stmt = (
                update(table)
                .where(table.c.id == line.menu_item_id)
                .values(
                    stock_quantity=case((remaining <= 0, 0), else_=remaining),
                    is_available=case((remaining <= 0, false()), else_=table.c.is_available),
                    is_low_stock=remaining <= table.c.low_stock_threshold,
                    updated_at=utcnow(),
                )
                .returning(
                    table.c.id,
                    table.c.name,
                    table.c.stock_quantity,
                    table.c.is_available,
                    table.c.is_low_stock,
                )
            )
            row = (await self.session.execute(stmt)).first()

            if row is None:
                logger.warning(f"Deduct skipped: menu item {line.menu_item_id} no longer exists")
                continue

            changes.append(StockChange(
                menu_item_id=row.id,
                name=row.name,
                remaining=row.stock_quantity,
                is_available=bool(row.is_available),
                is_low_stock=bool(row.is_low_stock),
            ))

        await self.session.commit()

        for change in changes:
            logger.info(f"Stock deducted: {change.name} -> {change.remaining} left")

            if change.is_low_stock:
                await safe_publish(
                    self.publisher,
                    Topic.INVENTORY_LOW_STOCK,
                    {"item_id": change.menu_item_id, "name": change.name, "remaining": change.remaining},
                    [restaurant_key(restaurant_id)],
                )
            if change.remaining == 0:
                await safe_publish(
                    self.publisher,
                    Topic.INVENTORY_OUT_OF_STOCK,
                    {"item_id": change.menu_item_id, "name": change.name, "remaining": 0},
                    [restaurant_key(restaurant_id)],
                )

        return changes

    async def restore(self, restaurant_id: int, items: Iterable) -> list[StockChange]:
        """
        Put quantities back after a served order is reversed.

        An item that was switched off and now has stock is switched back on
        and announced with inventory.back-in-stock.
        """
        table = MenuItem.__table__
        changes: list[StockChange] = []

        for line in merge_lines(items):
            restored = table.c.stock_quantity + line.quantity
            row = (await self.session.execute(
                update(table)
                .where(table.c.id == line.menu_item_id)
                .values(
                    stock_quantity=restored,
                    is_low_stock=restored <= table.c.low_stock_threshold,
                    updated_at=utcnow(),
                )
                .returning(
                    table.c.id,
                    table.c.name,
                    table.c.stock_quantity,
                    table.c.is_available,
                    table.c.is_low_stock,
                )
            )).first()

            if row is None:
                logger.warning(f"Restore skipped: menu item {line.menu_item_id} no longer exists")
                continue

            # Only the statement that flips the flag reports back-in-stock
            reenabled = await self.session.execute(
                update(table)
                .where(
                    table.c.id == line.menu_item_id,
                    table.c.is_available == false(),
                    table.c.stock_quantity > 0,
                )
                .values(is_available=True)
            )

            changes.append(StockChange(
                menu_item_id=row.id,
                name=row.name,
                remaining=row.stock_quantity,
                is_available=bool(row.is_available) or reenabled.rowcount == 1,
                is_low_stock=bool(row.is_low_stock),
                back_in_stock=reenabled.rowcount == 1,
            ))

        await self.session.commit()

        for change in changes:
            logger.info(f"Stock restored: {change.name} -> {change.remaining} left")

            if change.back_in_stock:
                await safe_publish(
                    self.publisher,
                    Topic.INVENTORY_BACK_IN_STOCK,
                    {"item_id": change.menu_item_id, "name": change.name, "remaining": change.remaining},
                    [restaurant_key(restaurant_id)],
                )

        return changes

    async def get_item(self, menu_item_id: int) -> MenuItem:
        """Fresh read of one item, bypassing the session identity map."""
        item = await self.session.get(MenuItem, menu_item_id, populate_existing=True)
        if item is None:
            raise NotFoundError(f"Menu item {menu_item_id} not found")
        return item
