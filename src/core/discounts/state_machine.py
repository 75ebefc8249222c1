# src/core/discounts/state_machine.py
"""
Машина состояний отложенной скидки.

    pending --poll--> processing --confirm applied--> applied
                      processing --confirm failed---> failed
    pending | processing --timeout--> expired

applied, failed и expired конечные: из них переходов нет.
"""

from __future__ import annotations

from typing import Iterable, Optional

from src.common.constants import DiscountStatus
from src.common.errors import ConflictError


class DiscountStateMachine:
    ALLOWED_TRANSITIONS: dict[DiscountStatus, tuple[DiscountStatus, ...]] = {
        DiscountStatus.PENDING: (DiscountStatus.PROCESSING, DiscountStatus.EXPIRED),
        DiscountStatus.PROCESSING: (DiscountStatus.APPLIED, DiscountStatus.FAILED, DiscountStatus.EXPIRED),
        DiscountStatus.APPLIED: (),
        DiscountStatus.FAILED: (),
        DiscountStatus.EXPIRED: (),
    }

    @staticmethod
    def can_transition(current_status: str, new_status: str) -> bool:
        try:
            curr = DiscountStatus(current_status)
            new = DiscountStatus(new_status)
        except ValueError:
            return False
        return new in DiscountStateMachine.ALLOWED_TRANSITIONS[curr]

    @classmethod
    def sources_for(cls, target: DiscountStatus) -> tuple[DiscountStatus, ...]:
        """Статусы, из которых допустим переход в target."""
        return tuple(
            status for status, targets in cls.ALLOWED_TRANSITIONS.items()
            if target in targets
        )

    @classmethod
    def ensure_transition(cls, current_status: DiscountStatus, new_status: DiscountStatus) -> None:
        """Выбрасывает ConflictError, если переход недопустим."""
        if not cls.can_transition(current_status, new_status):
            raise ConflictError(
                f"Недопустимый переход статуса скидки: {DiscountStatus(current_status).value} -> "
                f"{DiscountStatus(new_status).value}",
                details={"from": DiscountStatus(current_status).value, "to": DiscountStatus(new_status).value},
            )

    @classmethod
    def is_valid_history(cls, statuses: Iterable[Optional[DiscountStatus]]) -> bool:
        """
        Проверяет, что последовательность статусов из журнала является путём
        по машине состояний, начинающимся с pending.
        """
        path = [DiscountStatus(s) for s in statuses if s is not None]
        if not path or path[0] != DiscountStatus.PENDING:
            return False
        return all(cls.can_transition(a, b) for a, b in zip(path, path[1:]))
