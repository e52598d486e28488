"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from tableside.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from tableside.core.exceptions import (
    OrderEngineError,
    ValidationError,
    NotFoundError,
    InvalidTransition,
    SecurityViolation,
    CancellationWindowExpired,
    InsufficientStock,
    AlreadyPaid,
    InvalidSignature,
    GatewayError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "OrderEngineError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransition",
    "SecurityViolation",
    "CancellationWindowExpired",
    "InsufficientStock",
    "AlreadyPaid",
    "InvalidSignature",
    "GatewayError",
]
