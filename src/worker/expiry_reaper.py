# src/worker/expiry_reaper.py
"""
Фоновая очистка просроченных скидок.

Скидки в pending/processing с истёкшим expires_at переводятся в expired.
Незавершённые скидки никогда не несут списания, поэтому это чистая смена
статуса без компенсирующих проводок. Для processing дополнительно
проверяется, что в журнале нет списания по скидке.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from src.common.constants import DiscountStatus, TypeMsg
from src.common.errors import ConflictError
from src.common.logger import log_error, log_info, log_warning
from src.core.discounts.repository import PendingDiscountStore
from src.core.ledger.gateway import LedgerGateway
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.worker.base import BaseWorker


@dataclass
class ReaperStats:
    """Итоги одного прохода."""
    scanned: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0
    needs_audit: list[int] = field(default_factory=list)


class ExpiryReaper(BaseWorker):
    """Переводит просроченные скидки в expired."""

    def __init__(
        self,
        store: PendingDiscountStore,
        ledger: LedgerGateway,
        event_bus: Optional[EventBus] = None,
        interval_seconds: float = 60,
        batch_size: int = 200,
    ) -> None:
        super().__init__(interval_seconds)
        self.store = store
        self.ledger = ledger
        self.event_bus = event_bus
        self.batch_size = batch_size

    @property
    def name(self) -> str:
        return "ExpiryReaper"

    async def run_once(self) -> ReaperStats:
        return await self.sweep()

    async def sweep(self, now: Optional[datetime] = None) -> ReaperStats:
        """
        Один проход очистки. Ошибка на отдельной скидке не прерывает проход.
        """
        now = now or datetime.now(timezone.utc)
        stats = ReaperStats()

        overdue = await self.store.list_overdue(now, limit=self.batch_size)
        stats.scanned = len(overdue)

        for discount in overdue:
            try:
                if discount.status == DiscountStatus.PROCESSING and await self.ledger.has_redemption_for(discount.id):
                    # Списание есть, а статус не applied: оставляем для ручной сверки
                    stats.needs_audit.append(discount.id)
                    await log_error(
                        f"Скидка #{discount.id} в processing уже имеет списание, истечение пропущено",
                        extra={"discount_id": discount.id, "store_id": discount.store_id},
                    )
                    continue

                expired = await self.store.mark_expired(discount.id)
            except ConflictError:
                # Скидку завершили параллельно (confirm / force confirm)
                stats.skipped += 1
                continue
            except Exception as e:
                stats.errors += 1
                await log_error(f"Не удалось обработать скидку #{discount.id}: {e}", exc_info=True)
                continue

            stats.expired += 1
            if self.event_bus is not None:
                await self.event_bus.publish(DomainEvent(
                    event_type=EventTypes.DISCOUNT_EXPIRED,
                    payload={
                        "discount_id": expired.id,
                        "store_id": expired.store_id,
                        "account_id": expired.account_id,
                        "discount_amount": str(expired.discount_amount),
                    },
                ))

        if stats.scanned:
            await log_info(
                f"Очистка скидок: найдено {stats.scanned}, истекло {stats.expired}, "
                f"пропущено {stats.skipped}, ошибок {stats.errors}",
                type_msg=TypeMsg.INFO,
            )
        if stats.scanned == self.batch_size:
            await log_warning(f"Очистка скидок упёрлась в лимит {self.batch_size}, остаток в следующем проходе")
        return stats
