# tests/core/test_discount_repository.py
"""
Тесты для репозитория отложенных скидок (PendingDiscountStore).
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.common.constants import DiscountStatus, TransitionActor
from src.common.errors import ConflictError, NotFoundError, ValidationError
from src.core.discounts.repository import PendingDiscountStore


@pytest.fixture
def store(mock_db: MagicMock) -> PendingDiscountStore:
    return PendingDiscountStore(mock_db)


def with_status(row: dict[str, Any], status: str, previous: str | None = None) -> dict[str, Any]:
    updated = {**row, "status": status}
    if previous is not None:
        updated["previous_status"] = previous
    return updated


def event_args(conn: AsyncMock) -> list[tuple]:
    """Аргументы INSERT в pending_discount_events."""
    return [
        c.args[1:] for c in conn.execute.call_args_list
        if "pending_discount_events" in c.args[0]
    ]


class TestCreate:
    """Тесты создания скидки."""

    @pytest.mark.asyncio
    async def test_create_pending(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        mock_conn.fetchrow.return_value = discount_row

        discount = await store.create(
            1, "CHK-0007", Decimal("100.00"), 90,
            account_id=10, check_amount=Decimal("1000.00"),
        )

        assert discount.id == 7
        assert discount.status == DiscountStatus.PENDING

        args = mock_conn.fetchrow.call_args.args
        assert "INSERT INTO pending_discounts" in args[0]
        assert args[1:8] == (1, 10, "CHK-0007", None, Decimal("1000.00"), Decimal("100.00"), "pending")
        created_at, expires_at = args[8], args[9]
        assert (expires_at - created_at).total_seconds() == 90

        assert event_args(mock_conn) == [(7, None, "pending", "cashier", None, created_at)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount,ttl,check",
        [
            (Decimal("0"), 90, Decimal("100")),
            (Decimal("-5"), 90, Decimal("100")),
            (Decimal("10"), 0, Decimal("100")),
            (Decimal("10"), 90, Decimal("0")),
        ],
    )
    async def test_create_rejects_invalid(
        self,
        store: PendingDiscountStore,
        mock_conn: AsyncMock,
        amount: Decimal,
        ttl: int,
        check: Decimal,
    ) -> None:
        with pytest.raises(ValidationError):
            await store.create(1, "CHK-1", amount, ttl, account_id=10, check_amount=check)

        mock_conn.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_uses_caller_connection(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        caller_conn = AsyncMock()
        caller_conn.fetchrow.return_value = discount_row

        await store.create(1, "CHK-0007", Decimal("100"), 90, account_id=10, check_amount=Decimal("1000"), conn=caller_conn)

        caller_conn.fetchrow.assert_called_once()
        caller_conn.execute.assert_called_once()
        mock_conn.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_unknown_store_is_not_found(self, store: PendingDiscountStore, mock_conn: AsyncMock) -> None:
        mock_conn.fetchrow.side_effect = asyncpg.ForeignKeyViolationError("pending_discounts_store_id_fkey")

        with pytest.raises(NotFoundError) as exc_info:
            await store.create(99, "CHK-1", Decimal("10"), 90, account_id=10, check_amount=Decimal("100"))

        assert exc_info.value.details == {"store_id": 99, "account_id": 10}
        assert event_args(mock_conn) == []

    @pytest.mark.asyncio
    async def test_ensure_store_active(self, store: PendingDiscountStore, mock_conn: AsyncMock) -> None:
        mock_conn.fetchval.return_value = True

        await store.ensure_store_active(1, conn=mock_conn)

        query, store_id = mock_conn.fetchval.call_args.args
        assert "FROM stores" in query
        assert store_id == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("is_active", [None, False])
    async def test_ensure_store_active_rejects(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, is_active
    ) -> None:
        mock_conn.fetchval.return_value = is_active

        with pytest.raises(NotFoundError):
            await store.ensure_store_active(5, conn=mock_conn)


class TestRead:
    """Тесты чтения."""

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, store: PendingDiscountStore, mock_db: MagicMock) -> None:
        mock_db.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await store.get(404)

    @pytest.mark.asyncio
    async def test_get_for_update(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        mock_conn.fetchrow.return_value = discount_row

        discount = await store.get(7, for_update=True, conn=mock_conn)

        assert discount.transaction_id == "CHK-0007"
        assert mock_conn.fetchrow.call_args.args[0].rstrip().endswith("FOR UPDATE")

    @pytest.mark.asyncio
    async def test_list_pending_is_fifo_and_open_only(
        self, store: PendingDiscountStore, mock_db: MagicMock, discount_row: dict[str, Any]
    ) -> None:
        mock_db.fetch.return_value = [discount_row, {**discount_row, "id": 8}]

        result = await store.list_pending(1)

        assert [d.id for d in result] == [7, 8]
        query, store_id, statuses = mock_db.fetch.call_args.args
        assert "ORDER BY created_at ASC" in query
        assert store_id == 1
        assert set(statuses) == {"pending", "processing"}

    @pytest.mark.asyncio
    async def test_sum_open_for_account(self, store: PendingDiscountStore, mock_db: MagicMock) -> None:
        mock_db.fetchval.return_value = Decimal("140.00")

        assert await store.sum_open_for_account(10) == Decimal("140.00")

    @pytest.mark.asyncio
    async def test_sum_open_for_account_empty(self, store: PendingDiscountStore, mock_db: MagicMock) -> None:
        mock_db.fetchval.return_value = None

        assert await store.sum_open_for_account(10) == Decimal("0")

    @pytest.mark.asyncio
    async def test_count_by_status_fills_missing(self, store: PendingDiscountStore, mock_db: MagicMock) -> None:
        mock_db.fetch.return_value = [{"status": "pending", "count": 3}, {"status": "applied", "count": 5}]

        counts = await store.count_by_status()

        assert counts == {"pending": 3, "processing": 0, "applied": 5, "failed": 0, "expired": 0}

    @pytest.mark.asyncio
    async def test_list_events(self, store: PendingDiscountStore, mock_db: MagicMock) -> None:
        now = datetime.now(timezone.utc)
        mock_db.fetch.return_value = [
            {"id": 1, "pending_discount_id": 7, "from_status": None, "to_status": "pending",
             "actor": "cashier", "error_message": None, "created_at": now},
            {"id": 2, "pending_discount_id": 7, "from_status": "pending", "to_status": "processing",
             "actor": "terminal", "error_message": None, "created_at": now},
        ]

        events = await store.list_events(7)

        assert [e.to_status for e in events] == [DiscountStatus.PENDING, DiscountStatus.PROCESSING]
        assert events[0].from_status is None
        assert events[1].actor == TransitionActor.TERMINAL


class TestTransitions:
    """Тесты переходов статуса (compare-and-swap)."""

    @pytest.mark.asyncio
    async def test_mark_processing(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        mock_conn.fetchrow.return_value = with_status(discount_row, "processing", previous="pending")

        discount = await store.mark_processing(7)

        assert discount.status == DiscountStatus.PROCESSING
        query, discount_id, target, sources = mock_conn.fetchrow.call_args.args[:4]
        assert "FOR UPDATE" in query
        assert discount_id == 7
        assert target == "processing"
        assert sources == ["pending"]

        [event] = event_args(mock_conn)
        assert event[:5] == (7, "pending", "processing", "terminal", None)

    @pytest.mark.asyncio
    async def test_mark_processing_lost_race(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        # CAS не сработал: скидку уже забрал другой опрос
        mock_conn.fetchrow.side_effect = [None, with_status(discount_row, "processing")]

        with pytest.raises(ConflictError):
            await store.mark_processing(7)

        assert event_args(mock_conn) == []

    @pytest.mark.asyncio
    async def test_mark_applied_idempotent(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        mock_conn.fetchrow.side_effect = [None, with_status(discount_row, "applied")]

        discount = await store.mark_applied(7)

        assert discount.status == DiscountStatus.APPLIED
        assert event_args(mock_conn) == []

    @pytest.mark.asyncio
    async def test_mark_failed_keeps_message(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        row = {**with_status(discount_row, "failed", previous="processing"), "error_message": "Чек закрыт"}
        mock_conn.fetchrow.return_value = row

        discount = await store.mark_failed(7, "Чек закрыт")

        assert discount.error_message == "Чек закрыт"
        assert mock_conn.fetchrow.call_args.args[4] == "Чек закрыт"

    @pytest.mark.asyncio
    async def test_mark_applied_from_expired_conflicts(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        mock_conn.fetchrow.side_effect = [None, with_status(discount_row, "expired")]

        with pytest.raises(ConflictError) as exc_info:
            await store.mark_applied(7)

        assert exc_info.value.details == {"from": "expired", "to": "applied"}

    @pytest.mark.asyncio
    async def test_mark_expired_from_applied_conflicts(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        mock_conn.fetchrow.side_effect = [None, with_status(discount_row, "applied")]

        with pytest.raises(ConflictError):
            await store.mark_expired(7)

    @pytest.mark.asyncio
    async def test_mark_expired_records_reaper(
        self, store: PendingDiscountStore, mock_conn: AsyncMock, discount_row: dict[str, Any]
    ) -> None:
        mock_conn.fetchrow.return_value = with_status(discount_row, "expired", previous="processing")

        await store.mark_expired(7)

        assert set(mock_conn.fetchrow.call_args.args[3]) == {"pending", "processing"}
        [event] = event_args(mock_conn)
        assert event[1:4] == ("processing", "expired", "reaper")

    @pytest.mark.asyncio
    async def test_transition_missing_discount(self, store: PendingDiscountStore, mock_conn: AsyncMock) -> None:
        mock_conn.fetchrow.side_effect = [None, None]

        with pytest.raises(NotFoundError):
            await store.mark_processing(999)
