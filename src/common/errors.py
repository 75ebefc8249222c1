# src/common/errors.py
"""
Иерархия доменных ошибок.
Каждая ошибка знает свой код и HTTP-статус для ответа API.
"""

from __future__ import annotations

from typing import Any


class LoyaltyError(Exception):
    """Базовая ошибка программы лояльности."""

    error_code: str = "loyalty_error"
    http_status: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LoyaltyError):
    """Некорректные входные данные."""
    error_code = "validation_error"
    http_status = 400


class ConflictError(LoyaltyError):
    """Недопустимый переход статуса или конкурентная коллизия."""
    error_code = "conflict"
    http_status = 409


class InsufficientBalanceError(LoyaltyError):
    """Недостаточно баллов на момент списания."""
    error_code = "insufficient_balance"
    http_status = 400


class NotFoundError(LoyaltyError):
    """Сущность не найдена (скидка, счёт, сумма чека)."""
    error_code = "not_found"
    http_status = 404


class TerminalTimeoutError(LoyaltyError):
    """Терминал 1С недоступен или не ответил вовремя."""
    error_code = "terminal_timeout"
    http_status = 504


class AuthError(LoyaltyError):
    """Неверный или отсутствующий API-ключ магазина."""
    error_code = "unauthorized"
    http_status = 401


class ConfigurationError(LoyaltyError):
    """Ошибка конфигурации сервера (например, не задан ключ магазина)."""
    error_code = "configuration_error"
    http_status = 500
