# src/core/ledger/models.py
"""
Модели счёта лояльности и записей журнала баллов.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.common.constants import TransactionType


class LoyaltyAccount(BaseModel):
    """Счёт лояльности клиента."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    card_number: Optional[str] = None
    current_balance: Decimal = Field(Decimal("0"), ge=0, description="Текущий баланс баллов")
    total_earned: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    total_purchases: int = 0
    total_saved: Decimal = Decimal("0")
    last_activity_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LoyaltyAccount:
        return cls(
            id=row["id"],
            card_number=row["card_number"],
            current_balance=row["current_balance"],
            total_earned=row["total_earned"],
            total_spent=row["total_spent"],
            total_purchases=row["total_purchases"],
            total_saved=row["total_saved"],
            last_activity_at=row["last_activity_at"],
        )


class LedgerTransaction(BaseModel):
    """Запись журнала баллов. После создания не изменяется."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    store_id: int
    type: TransactionType
    points_amount: Decimal
    purchase_amount: Decimal = Decimal("0")
    external_reference: Optional[str] = None
    pending_discount_id: Optional[int] = None
    # False для скидок, подтверждённых кассиром без ответа 1С
    reconciled: bool = True
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LedgerTransaction:
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            store_id=row["store_id"],
            type=TransactionType(row["type"]),
            points_amount=row["points_amount"],
            purchase_amount=row["purchase_amount"],
            external_reference=row["external_reference"],
            pending_discount_id=row["pending_discount_id"],
            reconciled=row["reconciled"],
            created_at=row["created_at"],
        )
