# src/core/discounts/models.py
"""
Модели данных отложенных скидок.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.common.constants import DiscountStatus, TransitionActor


class PendingDiscount(BaseModel):
    """Скидка, ожидающая применения на кассе 1С."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="ID скидки")
    store_id: int = Field(..., description="ID магазина")
    account_id: int = Field(..., description="ID счёта лояльности")
    transaction_id: str = Field(..., description="Ссылка на покупку/чек")
    customer_card_number: Optional[str] = Field(None, description="Номер карты клиента")

    check_amount: Decimal = Field(..., gt=0, description="Сумма покупки")
    discount_amount: Decimal = Field(..., gt=0, description="Сумма скидки в баллах")

    status: DiscountStatus = Field(DiscountStatus.PENDING, description="Статус")
    error_message: Optional[str] = Field(None, description="Причина отказа 1С")

    # Временные метки
    created_at: datetime
    expires_at: datetime
    processing_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_overdue(self, now: datetime) -> bool:
        """Истёк ли срок ожидания скидки."""
        return self.expires_at < now

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PendingDiscount:
        """Конвертирует строку БД в модель."""
        return cls(
            id=row["id"],
            store_id=row["store_id"],
            account_id=row["account_id"],
            transaction_id=row["transaction_id"],
            customer_card_number=row["customer_card_number"],
            check_amount=row["check_amount"],
            discount_amount=row["discount_amount"],
            status=DiscountStatus(row["status"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            processing_at=row["processing_at"],
            applied_at=row["applied_at"],
            updated_at=row["updated_at"],
        )


class DiscountEvent(BaseModel):
    """Запись журнала переходов статуса скидки."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    pending_discount_id: int
    from_status: Optional[DiscountStatus] = None
    to_status: DiscountStatus
    actor: TransitionActor
    error_message: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> DiscountEvent:
        return cls(
            id=row["id"],
            pending_discount_id=row["pending_discount_id"],
            from_status=DiscountStatus(row["from_status"]) if row["from_status"] else None,
            to_status=DiscountStatus(row["to_status"]),
            actor=TransitionActor(row["actor"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
        )
