# src/shared/models/discount.py
"""
DTO запросов и ответов API кассы и агента 1С.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.common.constants import DiscountOutcome, DiscountStatus, TransitionActor
from src.core.discounts.models import DiscountEvent, PendingDiscount
from src.core.reconciliation.check_amounts import AgentStatus, CheckAmount


# === ЗАПРОСЫ ===

class RegisterAmountRequest(BaseModel):
    """Сумма чека от агента магазина или кассира."""
    store_id: int = Field(..., gt=0)
    amount: float = Field(..., gt=0)
    timestamp: Optional[datetime] = None


class DiscountRequest(BaseModel):
    """Запрос кассира на списание баллов."""
    store_id: int = Field(..., gt=0)
    account_id: int = Field(..., gt=0)
    transaction_id: str = Field(..., min_length=1, max_length=128, description="Номер чека / покупки")
    purchase_amount: float = Field(..., gt=0)
    points_to_redeem: float = Field(..., gt=0)
    customer_card_number: Optional[str] = Field(None, max_length=64)


class ConfirmDiscountRequest(BaseModel):
    """Результат применения скидки от 1С."""
    id: int = Field(..., gt=0, description="ID скидки")
    store_id: int = Field(..., gt=0)
    status: DiscountOutcome
    error_message: Optional[str] = Field(None, max_length=1000)


# === ОТВЕТЫ ===

class PendingDiscountDTO(BaseModel):
    """Скидка в ответах API."""
    id: int
    store_id: int
    account_id: int
    transaction_id: str
    customer_card_number: Optional[str] = None
    check_amount: float
    discount_amount: float
    status: DiscountStatus
    error_message: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    processing_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, discount: PendingDiscount) -> PendingDiscountDTO:
        return cls(
            id=discount.id,
            store_id=discount.store_id,
            account_id=discount.account_id,
            transaction_id=discount.transaction_id,
            customer_card_number=discount.customer_card_number,
            check_amount=float(discount.check_amount),
            discount_amount=float(discount.discount_amount),
            status=discount.status,
            error_message=discount.error_message,
            created_at=discount.created_at,
            expires_at=discount.expires_at,
            processing_at=discount.processing_at,
            applied_at=discount.applied_at,
        )


class PendingDiscountsResponse(BaseModel):
    """Скидки, выданные терминалу 1С за один опрос."""
    store_id: int
    discounts: list[PendingDiscountDTO]


class CheckAmountResponse(BaseModel):
    store_id: int
    amount: float
    registered_at: datetime

    @classmethod
    def from_entry(cls, entry: CheckAmount) -> CheckAmountResponse:
        return cls(store_id=entry.store_id, amount=float(entry.amount), registered_at=entry.registered_at)


class AgentStatusResponse(BaseModel):
    store_id: int
    connected: bool
    last_seen: Optional[datetime] = None
    seconds_ago: Optional[int] = None

    @classmethod
    def from_status(cls, status: AgentStatus) -> AgentStatusResponse:
        return cls(
            store_id=status.store_id,
            connected=status.connected,
            last_seen=status.last_seen,
            seconds_ago=int(status.seconds_ago) if status.seconds_ago is not None else None,
        )


class DiscountEventDTO(BaseModel):
    id: int
    from_status: Optional[DiscountStatus] = None
    to_status: DiscountStatus
    actor: TransitionActor
    error_message: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, event: DiscountEvent) -> DiscountEventDTO:
        return cls(
            id=event.id,
            from_status=event.from_status,
            to_status=event.to_status,
            actor=event.actor,
            error_message=event.error_message,
            created_at=event.created_at,
        )
