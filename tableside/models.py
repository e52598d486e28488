"""
SQLAlchemy Database Models

Durable records for the order and table-session lifecycle:
- Restaurants and the stock facet of menu items
- Tables with their current seating session
- Orders with price snapshots and an append-only status history
- Payment attempts keyed by the gateway's tracking id

Author: Khalil Bannouri
Version: 4.0.0
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Text,
    Enum,
    Boolean,
    JSON,
    ForeignKey,
    UniqueConstraint,
)

from tableside.core.config import get_settings
from tableside.database import Base


def utcnow() -> datetime:
    """Timezone-aware current time used for every stored timestamp."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_aware(value)
    return value.isoformat() if value else None


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, enum.Enum):
    """Kitchen workflow status. SERVED and CANCELLED are terminal."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    CANCELLED = "CANCELLED"


class OrderPaymentStatus(str, enum.Enum):
    """Durable "is this order paid" flag on the order itself."""
    UNPAID = "UNPAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    ONLINE = "ONLINE"


class OrderSource(str, enum.Enum):
    MANUAL = "MANUAL"
    VOICE = "VOICE"
    QR = "QR"
    WHATSAPP = "WHATSAPP"


class TableStatus(str, enum.Enum):
    FREE = "FREE"
    OCCUPIED = "OCCUPIED"
    RESERVED = "RESERVED"
    CLEANING = "CLEANING"


class TableLocation(str, enum.Enum):
    INDOOR = "Indoor"
    OUTDOOR = "Outdoor"
    VIP = "VIP"
    PATIO = "Patio"
    BAR = "Bar"


class PaymentGateway(str, enum.Enum):
    """Where a payment attempt was collected."""
    STRIPE = "STRIPE"
    SAFEPAY = "SAFEPAY"
    CASH = "CASH"


class PaymentStatus(str, enum.Enum):
    """Internal status of a single payment attempt, shared by all gateways."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# =============================================================================
# RESTAURANT & MENU
# =============================================================================

class Restaurant(Base):
    """
    Read-only collaborator record.

    Only the fields the order engine consumes are modelled here; profile,
    branding and subscription data live with the restaurant CRUD service.
    """
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    tax_rate = Column(Float, nullable=False, default=0.0)  # percent, e.g. 8.5
    payment_gateway_preference = Column(Enum(PaymentGateway), nullable=True)
    ordering_enabled = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<Restaurant #{self.id} - {self.name} - {self.currency}>"


class MenuItem(Base):
    """
    Stock facet of a menu item.

    stock_quantity is only ever changed by single conditional UPDATE
    statements in the inventory ledger, never read-modify-written.
    """
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    price = Column(Float, nullable=False)

    # =========================================================================
    # STOCK MANAGEMENT
    # =========================================================================
    is_available = Column(Boolean, nullable=False, default=True)
    stock_quantity = Column(
        Integer, nullable=False, default=lambda: get_settings().default_stock_quantity
    )
    low_stock_threshold = Column(
        Integer, nullable=False, default=lambda: get_settings().default_low_stock_threshold
    )
    is_low_stock = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name} - stock={self.stock_quantity}>"


# =============================================================================
# TABLES
# =============================================================================

class Table(Base):
    """
    A physical seating unit and its current session.

    session_id is authoritative for grouping orders of one sitting. The
    security_token is the per-session secret carried by the QR payload.
    """
    __tablename__ = "tables"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "name", name="uq_table_restaurant_name"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=False, default=4)
    location = Column(Enum(TableLocation), nullable=False, default=TableLocation.INDOOR)
    status = Column(Enum(TableStatus), nullable=False, default=TableStatus.FREE, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # =========================================================================
    # CURRENT SESSION
    # =========================================================================
    session_id = Column(String(40), nullable=True, index=True)
    security_token = Column(String(32), nullable=True)
    session_started_at = Column(DateTime(timezone=True), nullable=True)
    occupied_at = Column(DateTime(timezone=True), nullable=True)
    session_order_id = Column(Integer, nullable=True)  # most recent order of the sitting

    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Public projection; the security token is never broadcast."""
        return {
            "id": self.id,
            "restaurant_id": self.restaurant_id,
            "name": self.name,
            "capacity": self.capacity,
            "location": self.location.value if self.location else None,
            "status": self.status.value,
            "session_id": self.session_id,
            "session_started_at": _iso(self.session_started_at),
            "occupied_at": _iso(self.occupied_at),
            "session_order_id": self.session_order_id,
        }

    def __repr__(self):
        return f"<Table #{self.id} - {self.name} - {self.status.value}>"


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    One customer check-in's order.

    Line items are stored as an immutable JSON snapshot of name, price and
    quantity taken at order time. Only status and payment fields evolve.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_number = Column(String(40), nullable=False, unique=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    table_id = Column(Integer, ForeignKey("tables.id"), nullable=True, index=True)
    session_id = Column(String(40), nullable=True, index=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False)  # [{menu_item_id, name, price, quantity, special_instructions}]
    special_instructions = Column(Text, nullable=True)
    customer_name = Column(String(100), nullable=True)
    customer_phone = Column(String(20), nullable=True)
    order_source = Column(Enum(OrderSource), nullable=False, default=OrderSource.QR)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False)
    tax = Column(Float, nullable=False, default=0.0)
    tip = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    promo_code = Column(String(30), nullable=True)
    total = Column(Float, nullable=False)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_status = Column(
        Enum(OrderPaymentStatus),
        nullable=False,
        default=OrderPaymentStatus.UNPAID,
        index=True
    )
    payment_method = Column(Enum(PaymentMethod), nullable=False, default=PaymentMethod.CASH)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True
    )
    cancellation_reason = Column(Text, nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    preparing_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    served_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "restaurant_id": self.restaurant_id,
            "table_id": self.table_id,
            "session_id": self.session_id,
            "items": list(self.items or []),
            "subtotal": self.subtotal,
            "tax": self.tax,
            "tip": self.tip,
            "discount": self.discount,
            "total": self.total,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method.value,
            "order_source": self.order_source.value,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Order {self.order_number} - {self.status.value} - {self.payment_status.value}>"


class OrderStatusEntry(Base):
    """
    Append-only status history.

    Rows are inserted once per successful transition and never updated or
    deleted; ordering by id gives the audit trail.
    """
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(Enum(OrderStatus), nullable=False)
    actor = Column(String(64), nullable=True)  # staff id, None for the customer or system
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<OrderStatusEntry order={self.order_id} {self.status.value}>"


# =============================================================================
# PAYMENTS
# =============================================================================

class Payment(Base):
    """
    One attempt to collect money for an order.

    The order's payment_status stays the source of truth for "is it paid";
    these rows are the reconciliation trail.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    gateway = Column(Enum(PaymentGateway), nullable=False)
    tracking_id = Column(String(120), nullable=True, unique=True, index=True)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    failure_reason = Column(Text, nullable=True)
    refund_id = Column(String(120), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Payment #{self.id} - {self.gateway.value} {self.tracking_id} - {self.status.value}>"
