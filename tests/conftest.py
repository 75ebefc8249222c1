# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import asyncio
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("RABBITMQ_PASSWORD", "guest")

from src.common.constants import DiscountStatus, OPEN_STATUSES, TransactionType, TransitionActor
from src.common.errors import ConflictError, InsufficientBalanceError, NotFoundError, ValidationError
from src.core.discounts.models import DiscountEvent, PendingDiscount
from src.core.discounts.state_machine import DiscountStateMachine
from src.core.ledger.models import LedgerTransaction, LoyaltyAccount


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Тестовая конфигурация",
        "PROJECT_NAME": "loyalty_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "COMPONENT_MODE": "api",
        "CASHIER_SERVICE_HOST": "127.0.0.1",
        "CASHIER_SERVICE_PORT": 9000,
        "LOG_LEVEL": "DEBUG",
        "LOG_TO_FILE": False,
        "LOG_FORMAT": "colored",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "loyalty_test",
        "DB_USER": "postgres",
        "DB_MIN_POOL_SIZE": 1,
        "DB_MAX_POOL_SIZE": 5,
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_NAMESPACE": "loyalty_test",
        "RABBITMQ_HOST": "localhost",
        "RABBITMQ_EXCHANGE": "loyalty.test",
        "EARNING_PERCENT": 5.0,
        "MAX_DISCOUNT_PERCENT": 30.0,
        "PENDING_DISCOUNT_TTL_SECONDS": 120,
        "FORCE_CONFIRM_AFTER_SECONDS": 15,
        "CHECK_AMOUNT_TTL_SECONDS": 45,
        "ONEC_BASE_URL": "http://1c.local",
        "ONEC_TIMEOUT_SECONDS": 2.5,
        "REAPER_INTERVAL_SECONDS": 30,
        "REAPER_BATCH_SIZE": 50,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2), encoding="utf-8")
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_conn() -> AsyncMock:
    """Мок соединения asyncpg внутри транзакции."""
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    return conn


@pytest.fixture
def mock_db(mock_conn: AsyncMock) -> MagicMock:
    """Мок менеджера базы данных; transaction() отдаёт mock_conn."""
    db = MagicMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    db.health_check = AsyncMock(return_value=True)

    @asynccontextmanager
    async def transaction(conn=None):
        yield conn if conn is not None else mock_conn

    db.transaction = transaction
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.exists = AsyncMock(return_value=False)
    redis.health_check = AsyncMock(return_value=True)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=True)
    event_bus.health_check = AsyncMock(return_value=True)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# IN-MEMORY РЕАЛИЗАЦИИ ХРАНИЛИЩ
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FakeDb:
    """
    Транзакции сериализуются одним asyncio.Lock, как если бы все они
    блокировали одну и ту же строку.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self, conn: Any = None) -> AsyncGenerator[Any, None]:
        if conn is not None:
            yield conn
            return
        async with self._lock:
            self.transactions += 1
            yield object()

    async def health_check(self) -> bool:
        return True


class FakeDiscountStore:
    """PendingDiscountStore в памяти с настоящим compare-and-swap."""

    def __init__(self) -> None:
        self.rows: dict[int, PendingDiscount] = {}
        self.events: list[DiscountEvent] = []
        self.inactive_stores: set[int] = set()
        self._next_id = 1

    def seed(
        self,
        store_id: int = 1,
        account_id: int = 10,
        discount_amount: str = "100",
        check_amount: str = "1000",
        status: DiscountStatus = DiscountStatus.PENDING,
        age_seconds: float = 0,
        ttl: int = 90,
    ) -> PendingDiscount:
        created = utcnow() - timedelta(seconds=age_seconds)
        discount = PendingDiscount(
            id=self._next_id,
            store_id=store_id,
            account_id=account_id,
            transaction_id=f"CHK-{self._next_id}",
            check_amount=Decimal(check_amount),
            discount_amount=Decimal(discount_amount),
            status=status,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl),
            updated_at=created,
        )
        self.rows[discount.id] = discount
        self._record(discount.id, None, DiscountStatus.PENDING, TransitionActor.CASHIER, None)
        self._next_id += 1
        return discount

    def backdate(self, discount_id: int, seconds: float) -> None:
        row = self.rows[discount_id]
        shift = timedelta(seconds=seconds)
        self.rows[discount_id] = row.model_copy(update={
            "created_at": row.created_at - shift,
            "expires_at": row.expires_at - shift,
        })

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
        conn: Any = None,
    ) -> PendingDiscount:
        if discount_amount <= 0 or ttl <= 0:
            raise ValidationError("Некорректная скидка")
        now = utcnow()
        discount = PendingDiscount(
            id=self._next_id,
            store_id=store_id,
            account_id=account_id,
            transaction_id=transaction_id,
            customer_card_number=customer_card_number,
            check_amount=check_amount,
            discount_amount=discount_amount,
            status=DiscountStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            updated_at=now,
        )
        self.rows[discount.id] = discount
        self._record(discount.id, None, DiscountStatus.PENDING, actor, None)
        self._next_id += 1
        return discount

    async def get(self, discount_id: int, *, for_update: bool = False, conn: Any = None) -> PendingDiscount:
        if discount_id not in self.rows:
            raise NotFoundError(f"Скидка #{discount_id} не найдена")
        return self.rows[discount_id]

    async def list_pending(self, store_id: int, conn: Any = None) -> list[PendingDiscount]:
        rows = [d for d in self.rows.values() if d.store_id == store_id and d.status in OPEN_STATUSES]
        return sorted(rows, key=lambda d: (d.created_at, d.id))

    async def list_overdue(self, now: datetime, limit: int = 200, conn: Any = None) -> list[PendingDiscount]:
        rows = [d for d in self.rows.values() if d.status in OPEN_STATUSES and d.expires_at < now]
        return sorted(rows, key=lambda d: (d.expires_at, d.id))[:limit]

    async def ensure_store_active(self, store_id: int, conn: Any = None) -> None:
        if store_id in self.inactive_stores:
            raise NotFoundError(f"Магазин {store_id} не найден или отключён", details={"store_id": store_id})

    async def sum_open_for_account(self, account_id: int, conn: Any = None) -> Decimal:
        return sum(
            (d.discount_amount for d in self.rows.values()
             if d.account_id == account_id and d.status in OPEN_STATUSES),
            Decimal("0"),
        )

    async def list_history(self, store_id=None, status=None, limit=50, offset=0) -> list[PendingDiscount]:
        rows = [
            d for d in self.rows.values()
            if (store_id is None or d.store_id == store_id) and (status is None or d.status == status)
        ]
        rows.sort(key=lambda d: (d.created_at, d.id), reverse=True)
        return rows[offset:offset + limit]

    async def list_events(self, discount_id: int) -> list[DiscountEvent]:
        return [e for e in self.events if e.pending_discount_id == discount_id]

    async def count_by_status(self, store_id: Optional[int] = None) -> dict[str, int]:
        counts = {s.value: 0 for s in DiscountStatus}
        for d in self.rows.values():
            if store_id is None or d.store_id == store_id:
                counts[d.status.value] += 1
        return counts

    async def mark_processing(self, discount_id, *, actor=TransitionActor.TERMINAL, conn=None):
        return await self._transition(discount_id, DiscountStatus.PROCESSING, actor)

    async def mark_applied(self, discount_id, *, actor=TransitionActor.TERMINAL, conn=None):
        return await self._transition(discount_id, DiscountStatus.APPLIED, actor, idempotent=True)

    async def mark_failed(self, discount_id, error_message=None, *, actor=TransitionActor.TERMINAL, conn=None):
        return await self._transition(
            discount_id, DiscountStatus.FAILED, actor, error_message=error_message, idempotent=True,
        )

    async def mark_expired(self, discount_id, *, conn=None):
        return await self._transition(
            discount_id, DiscountStatus.EXPIRED, TransitionActor.REAPER, error_message="Истёк срок",
        )

    async def _transition(self, discount_id, target, actor, error_message=None, idempotent=False):
        # Отдаём управление, чтобы конкурентные вызовы перемешивались
        await asyncio.sleep(0)
        current = await self.get(discount_id)

        if current.status not in DiscountStateMachine.sources_for(target):
            if idempotent and current.status == target:
                return current
            DiscountStateMachine.ensure_transition(current.status, target)
            raise ConflictError("Изменена параллельно")

        now = utcnow()
        update: dict[str, Any] = {"status": target, "updated_at": now}
        if error_message is not None:
            update["error_message"] = error_message
        if target == DiscountStatus.PROCESSING:
            update["processing_at"] = now
        if target == DiscountStatus.APPLIED:
            update["applied_at"] = now

        updated = current.model_copy(update=update)
        self.rows[discount_id] = updated
        self._record(discount_id, current.status, target, actor, error_message)
        return updated

    def _record(self, discount_id, from_status, to_status, actor, error_message) -> None:
        self.events.append(DiscountEvent(
            id=len(self.events) + 1,
            pending_discount_id=discount_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor,
            error_message=error_message,
            created_at=utcnow(),
        ))

    def history_of(self, discount_id: int) -> list[DiscountStatus]:
        events = [e for e in self.events if e.pending_discount_id == discount_id]
        return [events[0].from_status, *[e.to_status for e in events]] if events else []


class FakeLedger:
    """LedgerGateway в памяти: условное списание и журнал."""

    def __init__(self) -> None:
        self.accounts: dict[int, LoyaltyAccount] = {}
        self.transactions: list[LedgerTransaction] = []

    def add_account(self, account_id: int = 10, balance: str = "500") -> LoyaltyAccount:
        account = LoyaltyAccount(id=account_id, current_balance=Decimal(balance))
        self.accounts[account_id] = account
        return account

    def balance(self, account_id: int = 10) -> Decimal:
        return self.accounts[account_id].current_balance

    async def get_account(self, account_id: int, conn: Any = None) -> LoyaltyAccount:
        if account_id not in self.accounts:
            raise NotFoundError(f"Счёт {account_id} не найден")
        return self.accounts[account_id]

    async def lock_account(self, account_id: int, conn: Any) -> LoyaltyAccount:
        return await self.get_account(account_id)

    async def apply_redemption(
        self,
        account_id,
        store_id,
        discount_amount,
        transaction_id,
        *,
        pending_discount_id=None,
        purchase_amount=Decimal("0"),
        reconciled=True,
        conn=None,
    ) -> Decimal:
        account = await self.get_account(account_id)
        if account.current_balance < discount_amount:
            raise InsufficientBalanceError(
                f"Недостаточно баллов: на счёте {account.current_balance}, требуется {discount_amount}"
            )
        if pending_discount_id is not None and await self.has_redemption_for(pending_discount_id):
            raise ConflictError("Списание уже есть")

        self.accounts[account_id] = account.model_copy(update={
            "current_balance": account.current_balance - discount_amount,
            "total_spent": account.total_spent + discount_amount,
            "total_saved": account.total_saved + discount_amount,
        })
        self._write(account_id, store_id, TransactionType.REDEEM, discount_amount, purchase_amount,
                    transaction_id, pending_discount_id, reconciled)
        return self.accounts[account_id].current_balance

    async def apply_earn(
        self,
        account_id,
        store_id,
        purchase_amount,
        earned_points,
        *,
        transaction_id=None,
        pending_discount_id=None,
        reconciled=True,
        conn=None,
    ) -> Decimal:
        account = await self.get_account(account_id)
        self.accounts[account_id] = account.model_copy(update={
            "current_balance": account.current_balance + earned_points,
            "total_earned": account.total_earned + earned_points,
            "total_purchases": account.total_purchases + 1,
        })
        self._write(account_id, store_id, TransactionType.EARN, earned_points, purchase_amount,
                    transaction_id, pending_discount_id, reconciled)
        return self.accounts[account_id].current_balance

    async def has_redemption_for(self, pending_discount_id: int, conn: Any = None) -> bool:
        return any(
            t.pending_discount_id == pending_discount_id and t.type == TransactionType.REDEEM
            for t in self.transactions
        )

    async def list_transactions(self, account_id: int, limit: int = 50) -> list[LedgerTransaction]:
        return [t for t in reversed(self.transactions) if t.account_id == account_id][:limit]

    def redemptions(self, pending_discount_id: Optional[int] = None) -> list[LedgerTransaction]:
        return [
            t for t in self.transactions
            if t.type == TransactionType.REDEEM
            and (pending_discount_id is None or t.pending_discount_id == pending_discount_id)
        ]

    def _write(self, account_id, store_id, type_, points, purchase, reference, discount_id, reconciled) -> None:
        self.transactions.append(LedgerTransaction(
            id=len(self.transactions) + 1,
            account_id=account_id,
            store_id=store_id,
            type=type_,
            points_amount=points,
            purchase_amount=purchase,
            external_reference=reference,
            pending_discount_id=discount_id,
            reconciled=reconciled,
            created_at=utcnow(),
        ))


@pytest.fixture
def fake_db() -> FakeDb:
    return FakeDb()


@pytest.fixture
def fake_store() -> FakeDiscountStore:
    return FakeDiscountStore()


@pytest.fixture
def fake_ledger() -> FakeLedger:
    ledger = FakeLedger()
    ledger.add_account(10, "500")
    return ledger


# =============================================================================
# ПРИМЕРЫ ДАННЫХ
# =============================================================================

@pytest.fixture
def discount_row() -> dict[str, Any]:
    """Строка pending_discounts, как её возвращает asyncpg."""
    now = utcnow()
    return {
        "id": 7,
        "store_id": 1,
        "account_id": 10,
        "transaction_id": "CHK-0007",
        "customer_card_number": "2000000000017",
        "check_amount": Decimal("1000.00"),
        "discount_amount": Decimal("100.00"),
        "status": "pending",
        "error_message": None,
        "created_at": now,
        "expires_at": now + timedelta(seconds=90),
        "processing_at": None,
        "applied_at": None,
        "updated_at": now,
    }


@pytest.fixture
def account_row() -> dict[str, Any]:
    """Строка loyalty_accounts."""
    return {
        "id": 10,
        "card_number": "2000000000017",
        "current_balance": Decimal("500.00"),
        "total_earned": Decimal("800.00"),
        "total_spent": Decimal("300.00"),
        "total_purchases": 12,
        "total_saved": Decimal("300.00"),
        "last_activity_at": None,
    }
