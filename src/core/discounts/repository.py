# src/core/discounts/repository.py
"""
Хранилище отложенных скидок (PostgreSQL).

Все переходы статуса выполняются одним UPDATE с проверкой текущего статуса
(compare-and-swap), поэтому из нескольких конкурентных вызовов выигрывает
ровно один. Каждый переход дописывается в pending_discount_events
в той же транзакции.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import asyncpg
from asyncpg import Connection

from src.common.constants import DiscountStatus, OPEN_STATUSES, TransitionActor, TypeMsg
from src.common.errors import ConflictError, NotFoundError, ValidationError
from src.common.logger import log_info
from src.core.discounts.models import DiscountEvent, PendingDiscount
from src.core.discounts.state_machine import DiscountStateMachine
from src.infra.database import DatabaseManager


_COLUMNS = """
    id, store_id, account_id, transaction_id, customer_card_number,
    check_amount, discount_amount, status, error_message,
    created_at, expires_at, processing_at, applied_at, updated_at
"""

_OPEN = [s.value for s in OPEN_STATUSES]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingDiscountStore:
    """Репозиторий отложенных скидок и их журнала переходов."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    # =========================================================================
    # СОЗДАНИЕ
    # =========================================================================

    async def create(
        self,
        store_id: int,
        transaction_id: str,
        discount_amount: Decimal,
        ttl: int,
        *,
        account_id: int,
        check_amount: Decimal,
        customer_card_number: Optional[str] = None,
        actor: TransitionActor = TransitionActor.CASHIER,
        conn: Optional[Connection] = None,
    ) -> PendingDiscount:
        """
        Создаёт скидку в статусе pending.

        Args:
            store_id: ID магазина
            transaction_id: Ссылка на покупку/чек
            discount_amount: Сумма скидки (> 0)
            ttl: Время ожидания применения в секундах (> 0)
            account_id: Счёт, с которого будут списаны баллы
            check_amount: Сумма покупки
            customer_card_number: Номер карты клиента
            conn: Соединение вызывающей транзакции

        Raises:
            ValidationError: сумма или TTL некорректны
            NotFoundError: магазин или счёт не существует
        """
        if discount_amount is None or discount_amount <= 0:
            raise ValidationError("Сумма скидки должна быть больше нуля")
        if ttl <= 0:
            raise ValidationError("Время ожидания скидки должно быть больше нуля")
        if check_amount is None or check_amount <= 0:
            raise ValidationError("Сумма покупки должна быть больше нуля")
        if not transaction_id:
            raise ValidationError("Не указана ссылка на покупку")

        now = utcnow()
        expires_at = now + timedelta(seconds=ttl)

        try:
            async with self._db.transaction(conn) as tx:
                row = await tx.fetchrow(
                    f"""
                    INSERT INTO pending_discounts (
                        store_id, account_id, transaction_id, customer_card_number,
                        check_amount, discount_amount, status,
                        created_at, updated_at, expires_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $8, $9)
                    RETURNING {_COLUMNS}
                    """,
                    store_id,
                    account_id,
                    transaction_id,
                    customer_card_number,
                    check_amount,
                    discount_amount,
                    DiscountStatus.PENDING.value,
                    now,
                    expires_at,
                )
                discount = PendingDiscount.from_row(row)
                await self._append_event(tx, discount.id, None, DiscountStatus.PENDING, actor, None, now)
        except asyncpg.ForeignKeyViolationError as e:
            raise NotFoundError(
                f"Магазин {store_id} или счёт {account_id} не найден",
                details={"store_id": store_id, "account_id": account_id},
            ) from e

        await log_info(
            f"Создана скидка #{discount.id}: магазин {store_id}, {discount_amount} баллов, "
            f"истекает {expires_at.isoformat()}",
            type_msg=TypeMsg.INFO,
        )
        return discount

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get(
        self,
        discount_id: int,
        *,
        for_update: bool = False,
        conn: Optional[Connection] = None,
    ) -> PendingDiscount:
        """
        Возвращает скидку по ID.

        Args:
            for_update: Заблокировать строку до конца транзакции (нужен conn)

        Raises:
            NotFoundError: скидки нет
        """
        query = f"SELECT {_COLUMNS} FROM pending_discounts WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"

        row = await self._fetchrow(conn, query, discount_id)
        if row is None:
            raise NotFoundError(f"Скидка #{discount_id} не найдена", details={"id": discount_id})
        return PendingDiscount.from_row(row)

    async def list_pending(
        self,
        store_id: int,
        conn: Optional[Connection] = None,
    ) -> list[PendingDiscount]:
        """Ожидающие и обрабатываемые скидки магазина, старые первыми (FIFO)."""
        rows = await self._fetch(
            conn,
            f"""
            SELECT {_COLUMNS}
            FROM pending_discounts
            WHERE store_id = $1
              AND status = ANY($2::text[])
            ORDER BY created_at ASC, id ASC
            """,
            store_id,
            _OPEN,
        )
        return [PendingDiscount.from_row(row) for row in rows]

    async def list_overdue(
        self,
        now: datetime,
        limit: int = 200,
        conn: Optional[Connection] = None,
    ) -> list[PendingDiscount]:
        """Незавершённые скидки с истёкшим сроком, старые первыми."""
        rows = await self._fetch(
            conn,
            f"""
            SELECT {_COLUMNS}
            FROM pending_discounts
            WHERE status = ANY($1::text[])
              AND expires_at < $2
            ORDER BY expires_at ASC, id ASC
            LIMIT $3
            """,
            _OPEN,
            now,
            limit,
        )
        return [PendingDiscount.from_row(row) for row in rows]

    async def ensure_store_active(self, store_id: int, conn: Optional[Connection] = None) -> None:
        """
        Raises:
            NotFoundError: магазина нет или он отключён
        """
        is_active = await self._fetchval(
            conn,
            "SELECT is_active FROM stores WHERE id = $1",
            store_id,
        )
        if not is_active:
            raise NotFoundError(
                f"Магазин {store_id} не найден или отключён",
                details={"store_id": store_id},
            )

    async def sum_open_for_account(
        self,
        account_id: int,
        conn: Optional[Connection] = None,
    ) -> Decimal:
        """Сумма баллов, удерживаемых незавершёнными скидками счёта."""
        value = await self._fetchval(
            conn,
            """
            SELECT COALESCE(SUM(discount_amount), 0)
            FROM pending_discounts
            WHERE account_id = $1
              AND status = ANY($2::text[])
            """,
            account_id,
            _OPEN,
        )
        return Decimal(value or 0)

    async def list_history(
        self,
        store_id: Optional[int] = None,
        status: Optional[DiscountStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PendingDiscount]:
        """История скидок для админ-панели, новые первыми."""
        rows = await self._db.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM pending_discounts
            WHERE ($1::int IS NULL OR store_id = $1)
              AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC, id DESC
            LIMIT $3 OFFSET $4
            """,
            store_id,
            status.value if status else None,
            limit,
            offset,
        )
        return [PendingDiscount.from_row(row) for row in rows]

    async def list_events(self, discount_id: int) -> list[DiscountEvent]:
        """Журнал переходов скидки в порядке записи."""
        rows = await self._db.fetch(
            """
            SELECT id, pending_discount_id, from_status, to_status, actor, error_message, created_at
            FROM pending_discount_events
            WHERE pending_discount_id = $1
            ORDER BY id ASC
            """,
            discount_id,
        )
        return [DiscountEvent.from_row(row) for row in rows]

    async def count_by_status(self, store_id: Optional[int] = None) -> dict[str, int]:
        """Количество скидок по статусам (для health-check)."""
        rows = await self._db.fetch(
            """
            SELECT status, COUNT(*) AS count
            FROM pending_discounts
            WHERE ($1::int IS NULL OR store_id = $1)
            GROUP BY status
            """,
            store_id,
        )
        counts = {status.value: 0 for status in DiscountStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    # =========================================================================
    # ПЕРЕХОДЫ СТАТУСА
    # =========================================================================

    async def mark_processing(
        self,
        discount_id: int,
        *,
        actor: TransitionActor = TransitionActor.TERMINAL,
        conn: Optional[Connection] = None,
    ) -> PendingDiscount:
        """
        pending -> processing.

        Raises:
            ConflictError: скидка уже забрана другим опросом или завершена
        """
        return await self._transition(discount_id, DiscountStatus.PROCESSING, actor, conn=conn)

    async def mark_applied(
        self,
        discount_id: int,
        *,
        actor: TransitionActor = TransitionActor.TERMINAL,
        conn: Optional[Connection] = None,
    ) -> PendingDiscount:
        """processing -> applied; повторный вызов для applied ничего не меняет."""
        return await self._transition(
            discount_id, DiscountStatus.APPLIED, actor, conn=conn, idempotent=True,
        )

    async def mark_failed(
        self,
        discount_id: int,
        error_message: Optional[str] = None,
        *,
        actor: TransitionActor = TransitionActor.TERMINAL,
        conn: Optional[Connection] = None,
    ) -> PendingDiscount:
        """processing -> failed; повторный вызов для failed ничего не меняет."""
        return await self._transition(
            discount_id, DiscountStatus.FAILED, actor,
            conn=conn, error_message=error_message, idempotent=True,
        )

    async def mark_expired(
        self,
        discount_id: int,
        *,
        conn: Optional[Connection] = None,
    ) -> PendingDiscount:
        """pending|processing -> expired. Вызывается только фоновой очисткой."""
        return await self._transition(
            discount_id, DiscountStatus.EXPIRED, TransitionActor.REAPER,
            conn=conn, error_message="Истёк срок ожидания применения скидки",
        )

    async def _transition(
        self,
        discount_id: int,
        target: DiscountStatus,
        actor: TransitionActor,
        *,
        conn: Optional[Connection] = None,
        error_message: Optional[str] = None,
        idempotent: bool = False,
    ) -> PendingDiscount:
        sources = [s.value for s in DiscountStateMachine.sources_for(target)]
        now = utcnow()

        async with self._db.transaction(conn) as tx:
            row = await tx.fetchrow(
                f"""
                WITH prev AS (
                    SELECT id, status
                    FROM pending_discounts
                    WHERE id = $1
                    FOR UPDATE
                )
                UPDATE pending_discounts AS p
                SET status = $2::text,
                    error_message = COALESCE($4::text, p.error_message),
                    processing_at = CASE WHEN $2::text = 'processing' THEN $5 ELSE p.processing_at END,
                    applied_at = CASE WHEN $2::text = 'applied' THEN $5 ELSE p.applied_at END,
                    updated_at = $5
                FROM prev
                WHERE p.id = prev.id
                  AND prev.status = ANY($3::text[])
                RETURNING {", ".join(f"p.{c.strip()}" for c in _COLUMNS.split(","))},
                          prev.status AS previous_status
                """,
                discount_id,
                target.value,
                sources,
                error_message,
                now,
            )

            if row is None:
                current = await self.get(discount_id, conn=tx)
                if idempotent and current.status == target:
                    await log_info(
                        f"Скидка #{discount_id} уже в статусе {target.value}, повтор проигнорирован",
                        type_msg=TypeMsg.DEBUG,
                    )
                    return current
                DiscountStateMachine.ensure_transition(current.status, target)
                # Статус сменился между чтением и проверкой
                raise ConflictError(
                    f"Скидка #{discount_id} изменена параллельно",
                    details={"id": discount_id, "status": current.status.value},
                )

            discount = PendingDiscount.from_row(row)
            previous = DiscountStatus(row["previous_status"])
            await self._append_event(tx, discount_id, previous, target, actor, error_message, now)

        await log_info(
            f"Скидка #{discount_id}: {previous.value} -> {target.value} ({actor.value})",
            type_msg=TypeMsg.INFO,
        )
        return discount

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _append_event(
        self,
        conn: Connection,
        discount_id: int,
        from_status: Optional[DiscountStatus],
        to_status: DiscountStatus,
        actor: TransitionActor,
        error_message: Optional[str],
        created_at: datetime,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO pending_discount_events (
                pending_discount_id, from_status, to_status, actor, error_message, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            discount_id,
            from_status.value if from_status else None,
            to_status.value,
            actor.value,
            error_message,
            created_at,
        )

    async def _fetch(self, conn: Optional[Connection], query: str, *args):
        if conn is not None:
            return await conn.fetch(query, *args)
        return await self._db.fetch(query, *args)

    async def _fetchrow(self, conn: Optional[Connection], query: str, *args):
        if conn is not None:
            return await conn.fetchrow(query, *args)
        return await self._db.fetchrow(query, *args)

    async def _fetchval(self, conn: Optional[Connection], query: str, *args):
        if conn is not None:
            return await conn.fetchval(query, *args)
        return await self._db.fetchval(query, *args)
