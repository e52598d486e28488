"""
FastAPI Application Entry Point

Tableside Order Engine - order and table-session lifecycle API.
Supports both Mock services (development) and Real APIs (production).

Endpoints:
    - POST /api/orders: Place an order (public, QR token checked)
    - GET /api/orders: List orders
    - PATCH /api/orders/{id}/status: Kitchen status change (staff)
    - PATCH /api/orders/{id}/payment: Record payment (staff)
    - DELETE /api/orders/{id}: Cancel (customer within grace window, or staff)
    - POST /api/orders/{id}/void: Reverse a served order (staff)
    - GET /api/tables/{id}/token | /bill, PATCH /api/tables/{id}/reset
    - POST /api/payments/create | /verify, GET /api/payments/methods
    - POST /api/payments/webhook/stripe | /safepay: Gateway webhooks
    - GET /health: System health check

Staff identity arrives in the X-Actor-Id header; requests without it are
treated as coming from a customer.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from tableside.core.config import get_settings, setup_logging
from tableside.core.exceptions import NotFoundError, OrderEngineError, ValidationError
from tableside.database import get_db, init_db, engine
from tableside.models import OrderStatus, PaymentGateway, Restaurant
from tableside.schemas import (
    CancelRequest,
    CreatePaymentRequest,
    ErrorResponse,
    HealthResponse,
    OrderCreate,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    PaymentRecordResponse,
    PaymentResponse,
    PaymentStatusUpdate,
    RefundRequest,
    SessionBillResponse,
    StatusHistoryEntry,
    StatusUpdate,
    TableTokenResponse,
    TransitionResponse,
    VerifyPaymentRequest,
    VoidRequest,
    WebhookResponse,
)
from tableside.services.events import BasePublisher, get_publisher
from tableside.services.orders import OrderStateMachine, TransitionResult
from tableside.services.payment import BasePaymentGateway, get_gateway
from tableside.services.payment.router import PaymentRouter, available_methods
from tableside.services.tables import TableSessionCoordinator

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("✅ Database initialized")

    publisher = get_publisher()
    logger.info(f"✅ Event Publisher: {publisher.provider_name}")

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    close = getattr(publisher, "close", None)
    if close is not None:
        await close()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order and table-session lifecycle engine: QR ordering, kitchen "
        "status workflow, inventory side effects and Stripe/Safepay reconciliation."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_event_publisher() -> BasePublisher:
    return get_publisher()


def get_gateway_factory() -> Callable[[PaymentGateway], BasePaymentGateway]:
    return get_gateway


def get_actor(x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id")) -> Optional[str]:
    """Staff id from the auth layer; None means a customer."""
    if x_actor_id is None or not x_actor_id.strip():
        return None
    return x_actor_id.strip()


def require_actor(actor: Optional[str] = Depends(get_actor)) -> str:
    if actor is None:
        raise ValidationError("This action is restricted to staff (X-Actor-Id header missing)")
    return actor


def order_machine(
    db: AsyncSession = Depends(get_db),
    publisher: BasePublisher = Depends(get_event_publisher),
) -> OrderStateMachine:
    return OrderStateMachine(db, publisher)


def table_coordinator(
    db: AsyncSession = Depends(get_db),
    publisher: BasePublisher = Depends(get_event_publisher),
) -> TableSessionCoordinator:
    return TableSessionCoordinator(db, publisher)


def payment_router(
    db: AsyncSession = Depends(get_db),
    publisher: BasePublisher = Depends(get_event_publisher),
    gateway_factory: Callable = Depends(get_gateway_factory),
) -> PaymentRouter:
    return PaymentRouter(db, publisher, gateway_factory=gateway_factory)


def _transition_response(result: TransitionResult, message: str) -> TransitionResponse:
    return TransitionResponse(
        success=True,
        message=message,
        previous_status=result.previous_status,
        order=OrderResponse.model_validate(result.order),
        warnings=result.side_effect_errors,
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    publisher: BasePublisher = Depends(get_event_publisher),
    gateway_factory: Callable = Depends(get_gateway_factory),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check event bus
    bus_status = "healthy" if await publisher.health_check() else "unhealthy"

    # Check payment gateways
    gateways: dict[str, str] = {}
    for gateway_id in (PaymentGateway.STRIPE, PaymentGateway.SAFEPAY):
        try:
            gateway = gateway_factory(gateway_id)
            gateways[gateway_id.value] = "healthy" if await gateway.health_check() else "unhealthy"
        except ValueError as e:
            gateways[gateway_id.value] = f"unconfigured: {e}"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, bus_status, *gateways.values()]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        event_bus=bus_status,
        payment_gateways=gateways,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderCreateResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    order_data: OrderCreate,
    actor: Optional[str] = Depends(get_actor),
    orders: OrderStateMachine = Depends(order_machine),
) -> OrderCreateResponse:
    """
    Place an order from the QR menu or a staff terminal.

    Customers ordering against a table with an active session must present
    the security token from the table's QR code.
    """
    placed = await orders.create(
        restaurant_id=order_data.restaurant_id,
        items=[item.model_dump() for item in order_data.items],
        table_id=order_data.table_id,
        security_token=order_data.security_token,
        actor=actor,
        tip=order_data.tip,
        promo_code=order_data.promo_code,
        customer_name=order_data.customer_name,
        customer_phone=order_data.customer_phone,
        special_instructions=order_data.special_instructions,
        payment_method=order_data.payment_method,
        order_source=order_data.order_source,
    )

    return OrderCreateResponse(
        success=True,
        message="Order created successfully",
        order=OrderResponse.model_validate(placed.order),
        session_id=placed.session.session_id if placed.session else None,
        is_new_session=placed.session.is_new_session if placed.session else False,
        security_token=placed.session.security_token if placed.session else None,
    )


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    restaurant_id: Optional[int] = Query(None, ge=1),
    status: Optional[OrderStatus] = Query(None),
    table_id: Optional[int] = Query(None, ge=1),
    session_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    orders: OrderStateMachine = Depends(order_machine),
) -> OrderListResponse:
    """Retrieve orders, newest first."""
    found = await orders.list_orders(
        restaurant_id=restaurant_id,
        status=status,
        table_id=table_id,
        session_id=session_id,
        limit=limit,
    )
    return OrderListResponse(
        total=len(found),
        orders=[OrderResponse.model_validate(order) for order in found],
    )


@app.get("/api/orders/{order_id}", response_model=OrderResponse, tags=["Orders"])
async def get_order(
    order_id: int,
    orders: OrderStateMachine = Depends(order_machine),
) -> OrderResponse:
    """Get a specific order by ID."""
    return OrderResponse.model_validate(await orders.get(order_id))


@app.get("/api/orders/{order_id}/history", response_model=list[StatusHistoryEntry], tags=["Orders"])
async def get_order_history(
    order_id: int,
    orders: OrderStateMachine = Depends(order_machine),
) -> list[StatusHistoryEntry]:
    return [StatusHistoryEntry.model_validate(entry) for entry in await orders.history(order_id)]


@app.patch(
    "/api/orders/{order_id}/status",
    response_model=TransitionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Change Order Status",
)
async def update_order_status(
    order_id: int,
    update: StatusUpdate,
    actor: str = Depends(require_actor),
    orders: OrderStateMachine = Depends(order_machine),
) -> TransitionResponse:
    result = await orders.transition(order_id, update.status, actor=actor, reason=update.reason)
    return _transition_response(result, f"Order status updated to {result.order.status.value}")


@app.patch(
    "/api/orders/{order_id}/payment",
    response_model=PaymentRecordResponse,
    tags=["Orders"],
    summary="Record Payment",
)
async def update_payment_status(
    order_id: int,
    update: PaymentStatusUpdate,
    actor: str = Depends(require_actor),
    orders: OrderStateMachine = Depends(order_machine),
) -> PaymentRecordResponse:
    logger.info(f"Payment status for order {order_id} set to {update.payment_status.value} by {actor}")
    result = await orders.record_payment(order_id, update.payment_status, update.payment_method)
    return PaymentRecordResponse(
        success=True,
        changed=result.changed,
        table_released=result.table_released,
        order=OrderResponse.model_validate(result.order),
    )


@app.delete(
    "/api/orders/{order_id}",
    response_model=TransitionResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Cancel Order",
)
async def cancel_order(
    order_id: int,
    body: Optional[CancelRequest] = None,
    actor: Optional[str] = Depends(get_actor),
    orders: OrderStateMachine = Depends(order_machine),
) -> TransitionResponse:
    result = await orders.cancel(order_id, actor=actor, reason=body.reason if body else None)
    return _transition_response(result, "Order cancelled")


@app.post(
    "/api/orders/{order_id}/void",
    response_model=TransitionResponse,
    tags=["Orders"],
    summary="Void Served Order",
)
async def void_order(
    order_id: int,
    body: VoidRequest,
    actor: str = Depends(require_actor),
    orders: OrderStateMachine = Depends(order_machine),
) -> TransitionResponse:
    result = await orders.void(order_id, actor=actor, reason=body.reason)
    return _transition_response(result, "Served order voided and stock restored")


# =============================================================================
# TABLE ENDPOINTS
# =============================================================================

@app.get("/api/tables/{table_id}/token", response_model=TableTokenResponse, tags=["Tables"])
async def get_table_token(
    table_id: int,
    tables: TableSessionCoordinator = Depends(table_coordinator),
) -> TableTokenResponse:
    """Token embedded in the table's QR payload."""
    resolution = await tables.issue_token(table_id)
    return TableTokenResponse(
        table_id=resolution.table_id,
        session_id=resolution.session_id,
        security_token=resolution.security_token,
    )


@app.get("/api/tables/{table_id}/bill", response_model=SessionBillResponse, tags=["Tables"])
async def get_session_bill(
    table_id: int,
    tables: TableSessionCoordinator = Depends(table_coordinator),
) -> SessionBillResponse:
    """All orders of the table's current sitting with the outstanding balance."""
    return SessionBillResponse(**await tables.session_bill(table_id))


@app.patch("/api/tables/{table_id}/reset", tags=["Tables"])
async def reset_table(
    table_id: int,
    actor: str = Depends(require_actor),
    tables: TableSessionCoordinator = Depends(table_coordinator),
) -> dict[str, Any]:
    logger.info(f"Table {table_id} reset requested by {actor}")
    table = await tables.reset(table_id)
    return {"success": True, "message": "Table reset", "table": table.to_dict()}


# =============================================================================
# PAYMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/payments/create",
    responses={409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    tags=["Payments"],
    summary="Create Payment Checkout",
)
async def create_payment(
    request_data: CreatePaymentRequest,
    router: PaymentRouter = Depends(payment_router),
) -> dict[str, Any]:
    handle = await router.create_payment(
        request_data.order_id,
        success_url=request_data.success_url,
        cancel_url=request_data.cancel_url,
    )
    return {"success": True, "data": handle.to_dict()}


@app.post("/api/payments/verify", tags=["Payments"], summary="Verify Payment With Gateway")
async def verify_payment(
    request_data: VerifyPaymentRequest,
    router: PaymentRouter = Depends(payment_router),
) -> dict[str, Any]:
    result = await router.verify_payment(request_data.payment_id)
    return {"success": True, "data": result.to_dict()}


@app.get("/api/payments/methods", tags=["Payments"])
async def get_payment_methods(
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    restaurant_id: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Gateway and methods offered for a currency or a restaurant."""
    preferred = None
    if restaurant_id is not None:
        restaurant = await db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant {restaurant_id} not found")
        currency = currency or restaurant.currency
        preferred = restaurant.payment_gateway_preference

    if not currency:
        raise ValidationError("Provide a currency or a restaurant_id")

    return {
        "success": True,
        "data": available_methods(currency, preferred, settings.local_currency),
    }


@app.get("/api/payments/order/{order_id}", response_model=list[PaymentResponse], tags=["Payments"])
async def get_order_payments(
    order_id: int,
    router: PaymentRouter = Depends(payment_router),
) -> list[PaymentResponse]:
    return [PaymentResponse.model_validate(p) for p in await router.payment_history(order_id)]


@app.post("/api/payments/{payment_id}/refund", tags=["Payments"], summary="Refund Payment")
async def refund_payment(
    payment_id: int,
    body: RefundRequest,
    actor: str = Depends(require_actor),
    router: PaymentRouter = Depends(payment_router),
) -> dict[str, Any]:
    logger.info(f"Refund of payment {payment_id} requested by {actor}")
    refund = await router.refund_payment(payment_id, amount=body.amount, reason=body.reason)
    return {
        "success": True,
        "data": {
            "refund_id": refund.refund_id,
            "amount": refund.amount,
            "status": refund.status,
        },
    }


# =============================================================================
# GATEWAY WEBHOOKS
# =============================================================================

@app.post(
    "/api/payments/webhook/stripe",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Webhooks"],
    summary="Stripe Webhook",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    router: PaymentRouter = Depends(payment_router),
) -> WebhookResponse:
    """
    Handle Stripe events.

    The raw body is verified before anything is parsed; an invalid
    signature answers 400 so Stripe retries delivery.
    """
    body = await request.body()
    result = await router.reconcile(PaymentGateway.STRIPE, body, stripe_signature)
    return WebhookResponse(result=result.to_dict())


@app.post(
    "/api/payments/webhook/safepay",
    response_model=WebhookResponse,
    responses={400: {"model": ErrorResponse}},
    tags=["Webhooks"],
    summary="Safepay Webhook",
)
async def safepay_webhook(
    request: Request,
    x_sfpy_signature: Optional[str] = Header(None, alias="X-SFPY-Signature"),
    router: PaymentRouter = Depends(payment_router),
) -> WebhookResponse:
    body = await request.body()
    result = await router.reconcile(PaymentGateway.SAFEPAY, body, x_sfpy_signature)
    return WebhookResponse(result=result.to_dict())


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderEngineError)
async def order_engine_exception_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    """Domain errors carry their own status code and user-facing message."""
    if exc.status_code >= 500:
        logger.error(f"{exc.error} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.error, detail=exc.message).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
