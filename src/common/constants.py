# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class DiscountStatus(str, Enum):
    """Статусы отложенной скидки."""
    PENDING = "pending"        # Создана кассиром, ждёт 1С
    PROCESSING = "processing"  # Забрана терминалом 1С
    APPLIED = "applied"        # Применена на кассе
    FAILED = "failed"          # 1С не смогла применить
    EXPIRED = "expired"        # Истёк срок ожидания

    @property
    def is_terminal(self) -> bool:
        """Конечный ли статус."""
        return self in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        """Ожидает ли скидка применения (удерживает баллы)."""
        return self in OPEN_STATUSES


TERMINAL_STATUSES = frozenset({DiscountStatus.APPLIED, DiscountStatus.FAILED, DiscountStatus.EXPIRED})
OPEN_STATUSES = frozenset({DiscountStatus.PENDING, DiscountStatus.PROCESSING})


class DiscountOutcome(str, Enum):
    """Результат применения скидки, присылаемый 1С."""
    APPLIED = "applied"
    FAILED = "failed"


class TransactionType(str, Enum):
    """Типы записей в журнале баллов."""
    EARN = "earn"
    REDEEM = "redeem"


class TransitionActor(str, Enum):
    """Кто инициировал смену статуса скидки."""
    CASHIER = "cashier"
    TERMINAL = "terminal"
    REAPER = "reaper"
    FORCE_CONFIRM = "force_confirm"
