# src/core/ledger/__init__.py
"""
Домен журнала баллов.
Единственная точка изменения баланса счёта лояльности.
"""

from src.core.ledger.models import LoyaltyAccount, LedgerTransaction
from src.core.ledger.gateway import LedgerGateway

__all__ = [
    "LoyaltyAccount",
    "LedgerTransaction",
    "LedgerGateway",
]
