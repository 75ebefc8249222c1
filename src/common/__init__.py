# src/common/__init__.py
"""
Общие утилиты: константы, ошибки и логгер.
"""

from src.common.logger import get_logger, log_info, log_error, log_warning, log_debug
from src.common.constants import TypeMsg, DiscountStatus, DiscountOutcome, TransactionType
from src.common.errors import (
    LoyaltyError,
    ValidationError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    TerminalTimeoutError,
)

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
    "DiscountStatus",
    "DiscountOutcome",
    "TransactionType",
    "LoyaltyError",
    "ValidationError",
    "ConflictError",
    "InsufficientBalanceError",
    "NotFoundError",
    "TerminalTimeoutError",
]
