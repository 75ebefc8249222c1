# src/shared/models/__init__.py
"""
DTO и Pydantic-модели HTTP API.
"""

from src.shared.models.common import ErrorResponse, HealthStatus
from src.shared.models.discount import (
    AgentStatusResponse,
    CheckAmountResponse,
    ConfirmDiscountRequest,
    DiscountEventDTO,
    DiscountRequest,
    PendingDiscountDTO,
    PendingDiscountsResponse,
    RegisterAmountRequest,
)

__all__ = [
    "ErrorResponse",
    "HealthStatus",
    "AgentStatusResponse",
    "CheckAmountResponse",
    "ConfirmDiscountRequest",
    "DiscountEventDTO",
    "DiscountRequest",
    "PendingDiscountDTO",
    "PendingDiscountsResponse",
    "RegisterAmountRequest",
]
