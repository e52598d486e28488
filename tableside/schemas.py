"""
Pydantic Schemas for Request/Response Validation

Request bodies for the order, table and payment endpoints and the
response shapes returned to the presentation layer.

Author: Khalil Bannouri
Version: 4.0.0
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Any
from datetime import datetime
import re

from tableside.models import (
    OrderPaymentStatus,
    OrderSource,
    OrderStatus,
    PaymentGateway,
    PaymentMethod,
    PaymentStatus,
)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderItemCreate(BaseModel):
    """Single line in a cart. Name and price are taken from the menu."""
    menu_item_id: int = Field(..., ge=1, examples=[3])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    special_instructions: Optional[str] = Field(None, max_length=200)


class OrderCreate(BaseModel):
    """Request schema for placing an order."""

    restaurant_id: int = Field(..., ge=1)
    table_id: Optional[int] = Field(None, ge=1)
    security_token: Optional[str] = Field(None, max_length=32, examples=["9F2A11C0"])

    # Customer Info
    customer_name: Optional[str] = Field(None, max_length=100, examples=["John Doe"])
    customer_phone: Optional[str] = Field(None, max_length=20, examples=["555-123-4567"])

    # Order Items
    items: List[OrderItemCreate] = Field(..., min_length=1)
    special_instructions: Optional[str] = Field(None, max_length=500)

    # Pricing & Payment
    tip: float = Field(default=0.0, ge=0)
    promo_code: Optional[str] = Field(None, max_length=30, examples=["WELCOME10"])
    payment_method: PaymentMethod = Field(default=PaymentMethod.CASH)
    order_source: OrderSource = Field(default=OrderSource.QR)

    @field_validator('customer_phone')
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        cleaned = re.sub(r'[^\d]', '', v)
        if len(cleaned) < 10:
            raise ValueError('Phone number must have at least 10 digits')
        return v


class StatusUpdate(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)


class PaymentStatusUpdate(BaseModel):
    payment_status: OrderPaymentStatus
    payment_method: Optional[PaymentMethod] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class VoidRequest(BaseModel):
    reason: str = Field(..., min_length=3, max_length=500, examples=["Dish returned, comped"])


class CreatePaymentRequest(BaseModel):
    order_id: int = Field(..., ge=1)
    success_url: Optional[str] = Field(None, max_length=500)
    cancel_url: Optional[str] = Field(None, max_length=500)


class VerifyPaymentRequest(BaseModel):
    payment_id: int = Field(..., ge=1)


class RefundRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=200)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderLineResponse(BaseModel):
    menu_item_id: int
    name: str
    price: float
    quantity: int
    special_instructions: Optional[str] = None


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    order_number: str
    restaurant_id: int
    table_id: Optional[int]
    session_id: Optional[str]
    items: List[OrderLineResponse]
    special_instructions: Optional[str]
    customer_name: Optional[str]
    customer_phone: Optional[str]
    order_source: OrderSource
    subtotal: float
    tax: float
    tip: float
    discount: float
    promo_code: Optional[str]
    total: float
    payment_status: OrderPaymentStatus
    payment_method: PaymentMethod
    status: OrderStatus
    cancellation_reason: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    accepted_at: Optional[datetime]
    preparing_at: Optional[datetime]
    ready_at: Optional[datetime]
    served_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderCreateResponse(BaseModel):
    """Response after successfully creating an order."""
    success: bool
    message: str
    order: OrderResponse
    session_id: Optional[str] = None
    is_new_session: bool = False
    security_token: Optional[str] = None


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


class TransitionResponse(BaseModel):
    success: bool
    message: str
    previous_status: OrderStatus
    order: OrderResponse
    warnings: List[str] = []


class PaymentRecordResponse(BaseModel):
    success: bool
    changed: bool
    table_released: bool
    order: OrderResponse


class StatusHistoryEntry(BaseModel):
    id: int
    status: OrderStatus
    actor: Optional[str]
    reason: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class TableTokenResponse(BaseModel):
    table_id: int
    session_id: Optional[str]
    security_token: Optional[str]


class SessionBillResponse(BaseModel):
    table: dict[str, Any]
    session_id: Optional[str]
    orders: List[dict[str, Any]]
    subtotal: float
    tax: float
    tip: float
    discount: float
    total: float
    amount_paid: float
    outstanding: float


class PaymentResponse(BaseModel):
    id: int
    order_id: int
    amount: float
    currency: str
    gateway: PaymentGateway
    tracking_id: Optional[str]
    status: PaymentStatus
    failure_reason: Optional[str]
    refund_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway."""
    received: bool = True
    result: dict[str, Any]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    event_bus: str
    payment_gateways: dict[str, str]
    timestamp: datetime
