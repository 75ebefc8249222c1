# src/core/discounts/__init__.py
"""
Домен отложенных скидок.
Модель, машина состояний и хранилище скидок, ожидающих применения на кассе.
"""

from src.core.discounts.models import PendingDiscount, DiscountEvent
from src.core.discounts.state_machine import DiscountStateMachine
from src.core.discounts.repository import PendingDiscountStore

__all__ = [
    "PendingDiscount",
    "DiscountEvent",
    "DiscountStateMachine",
    "PendingDiscountStore",
]
