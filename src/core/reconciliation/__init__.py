# src/core/reconciliation/__init__.py
"""
Сверка скидок с терминалами 1С.
"""

from src.core.reconciliation.check_amounts import AgentStatus, CheckAmount, CheckAmountRegistry
from src.core.reconciliation.onec_client import OneCClient
from src.core.reconciliation.service import ReconciliationPolicy, ReconciliationService

__all__ = [
    "AgentStatus",
    "CheckAmount",
    "CheckAmountRegistry",
    "OneCClient",
    "ReconciliationPolicy",
    "ReconciliationService",
]
