# tests/infra/test_database.py
"""
Тесты для менеджера базы данных.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.infra.database import DatabaseManager, retry_on_connection_error


@pytest.fixture
def db() -> DatabaseManager:
    """Менеджер с подменённым пулом."""
    DatabaseManager._instance = None
    manager = DatabaseManager()
    yield manager
    manager._pool = None
    DatabaseManager._instance = None


def fake_pool(conn: AsyncMock) -> MagicMock:
    @asynccontextmanager
    async def acquire():
        yield conn

    @asynccontextmanager
    async def transaction():
        yield

    conn.transaction = MagicMock(side_effect=transaction)
    pool = MagicMock()
    pool.acquire = acquire
    return pool


class TestRetryOnConnectionError:
    """Тесты для декоратора retry_on_connection_error."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self) -> None:
        @retry_on_connection_error(max_attempts=3, delay=0.01)
        async def successful_func():
            return "success"

        assert await successful_func() == "success"

    @pytest.mark.asyncio
    async def test_retry_on_connection_error(self) -> None:
        call_count = 0

        @retry_on_connection_error(max_attempts=3, delay=0.01)
        async def failing_then_success():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionRefusedError("Connection refused")
            return "success"

        assert await failing_then_success() == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_max_attempts_exceeded(self) -> None:
        @retry_on_connection_error(max_attempts=2, delay=0.01)
        async def always_failing():
            raise ConnectionRefusedError("Connection refused")

        with pytest.raises(ConnectionRefusedError):
            await always_failing()

    @pytest.mark.asyncio
    async def test_sql_errors_not_retried(self) -> None:
        call_count = 0

        @retry_on_connection_error(max_attempts=3, delay=0.01)
        async def unique_violation():
            nonlocal call_count
            call_count += 1
            raise asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(asyncpg.UniqueViolationError):
            await unique_violation()
        assert call_count == 1


class TestDatabaseManager:
    def test_singleton(self, db: DatabaseManager) -> None:
        assert DatabaseManager() is db

    def test_pool_before_connect(self, db: DatabaseManager) -> None:
        assert db.is_connected is False
        with pytest.raises(RuntimeError):
            _ = db.pool

    @pytest.mark.asyncio
    async def test_transaction_opens_own(self, db: DatabaseManager) -> None:
        conn = AsyncMock()
        db._pool = fake_pool(conn)

        async with db.transaction() as tx:
            assert tx is conn

        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_transaction_reuses_caller_connection(self, db: DatabaseManager) -> None:
        outer = AsyncMock()
        db._pool = fake_pool(AsyncMock())

        async with db.transaction(outer) as tx:
            assert tx is outer

        outer.transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetchval(self, db: DatabaseManager) -> None:
        conn = AsyncMock()
        conn.fetchval.return_value = 42
        db._pool = fake_pool(conn)

        assert await db.fetchval("SELECT 42") == 42

    @pytest.mark.asyncio
    async def test_health_check_without_pool(self, db: DatabaseManager) -> None:
        assert await db.health_check() is False
