"""
Order Engine Error Taxonomy

Every failure the core reports to a caller is one of these classes. Each
carries the HTTP status the API layer answers with, so route handlers never
translate errors by hand; the FastAPI exception handler in ``tableside.main``
turns them into the standard ``ErrorResponse`` body.

Author: Khalil Bannouri
Version: 4.0.0
"""

from typing import Optional


class OrderEngineError(Exception):
    """Base class for all user-visible order engine failures."""

    status_code: int = 400
    error: str = "Bad Request"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderEngineError):
    """Missing or malformed input. User-correctable."""

    status_code = 400
    error = "Validation Error"


class NotFoundError(OrderEngineError):
    """Order, table, restaurant, payment or menu item does not exist."""

    status_code = 404
    error = "Not Found"


class InvalidTransition(OrderEngineError):
    """The order status machine does not allow the requested move."""

    status_code = 409
    error = "Invalid Transition"

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        self.current = getattr(current, "value", current)
        self.attempted = getattr(attempted, "value", attempted)
        super().__init__(
            message or f"Cannot transition from {self.current} to {self.attempted}"
        )


class SecurityViolation(OrderEngineError):
    """Session token presented on a public order does not match the table."""

    status_code = 403
    error = "Security Violation"

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "This table's session has changed. Please re-scan the QR code on your table."
        )


class CancellationWindowExpired(OrderEngineError):
    status_code = 403
    error = "Cancellation Window Expired"


class InsufficientStock(OrderEngineError):
    """A requested item cannot be supplied in the requested quantity."""

    status_code = 409
    error = "Insufficient Stock"

    def __init__(self, item_name: str, available: int, message: Optional[str] = None):
        self.item_name = item_name
        self.available = available
        super().__init__(
            message or f"Insufficient stock for {item_name}. Only {available} left."
        )


class AlreadyPaid(OrderEngineError):
    status_code = 409
    error = "Already Paid"

    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order {order_number} is already paid")


class InvalidSignature(OrderEngineError):
    """
    Webhook authenticity check failed.

    Answered with a 4xx so the gateway keeps the event in its own retry queue.
    """

    status_code = 400
    error = "Invalid Signature"

    def __init__(self, gateway: str):
        self.gateway = gateway
        super().__init__(f"Webhook signature verification failed for {gateway}")


class GatewayError(OrderEngineError):
    """The upstream payment provider rejected or failed a request."""

    status_code = 502
    error = "Payment Gateway Error"

    def __init__(self, gateway: str, message: str, code: Optional[str] = None):
        self.gateway = gateway
        self.code = code
        super().__init__(f"{gateway} error: {message}")
