# src/core/reconciliation/check_amounts.py
"""
Реестр сумм чека, которые агент магазина видит на кассе.

Хранится только в памяти процесса: один слот на магазин, последняя запись
побеждает, после перезапуска реестр пуст и кассир вводит сумму вручную.
Запись старше TTL считается отсутствующей.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from src.common.errors import NotFoundError


@dataclass(frozen=True)
class CheckAmount:
    store_id: int
    amount: Decimal
    registered_at: datetime  # время по часам агента (или сервера, если агент не прислал)
    received_at: datetime


@dataclass(frozen=True)
class AgentStatus:
    store_id: int
    connected: bool
    last_seen: Optional[datetime]
    seconds_ago: Optional[float]


class CheckAmountRegistry:
    """Потокобезопасный (в пределах event loop) реестр сумм чека по магазинам."""

    def __init__(self, ttl_seconds: int = 60) -> None:
        self._ttl_seconds = ttl_seconds
        self._slots: dict[int, CheckAmount] = {}
        self._last_seen: dict[int, datetime] = {}
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    async def register(
        self,
        store_id: int,
        amount: Decimal,
        registered_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> CheckAmount:
        """Перезаписывает слот магазина."""
        now = now or datetime.now(timezone.utc)
        entry = CheckAmount(
            store_id=store_id,
            amount=amount,
            registered_at=registered_at or now,
            received_at=now,
        )
        async with self._lock:
            self._slots[store_id] = entry
            self._last_seen[store_id] = now
        return entry

    async def get(self, store_id: int, now: Optional[datetime] = None) -> CheckAmount:
        """
        Raises:
            NotFoundError: сумма не регистрировалась или устарела
        """
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            entry = self._slots.get(store_id)

        if entry is None:
            raise NotFoundError(
                f"Нет суммы чека для магазина {store_id}, введите сумму вручную",
                details={"store_id": store_id},
            )
        age = (now - entry.received_at).total_seconds()
        if age > self._ttl_seconds:
            raise NotFoundError(
                f"Сумма чека магазина {store_id} устарела ({int(age)} с), введите сумму вручную",
                details={"store_id": store_id, "age_seconds": int(age)},
            )
        return entry

    def touch(self, store_id: int, now: Optional[datetime] = None) -> None:
        """Отмечает, что агент магазина выходил на связь."""
        self._last_seen[store_id] = now or datetime.now(timezone.utc)

    def agent_status(self, store_id: int, now: Optional[datetime] = None) -> AgentStatus:
        now = now or datetime.now(timezone.utc)
        last_seen = self._last_seen.get(store_id)
        if last_seen is None:
            return AgentStatus(store_id=store_id, connected=False, last_seen=None, seconds_ago=None)

        seconds_ago = (now - last_seen).total_seconds()
        return AgentStatus(
            store_id=store_id,
            connected=seconds_ago <= self._ttl_seconds,
            last_seen=last_seen,
            seconds_ago=seconds_ago,
        )

    def registered_stores(self) -> list[int]:
        return sorted(self._slots)

    def clear(self) -> None:
        self._slots.clear()
        self._last_seen.clear()
