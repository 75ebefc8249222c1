# src/core/ledger/gateway.py
"""
Шлюз журнала баллов.

Единственный код, который меняет loyalty_accounts.current_balance и пишет
ledger_transactions. Изменение баланса и запись журнала всегда выполняются
в одной транзакции.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import asyncpg
from asyncpg import Connection

from src.common.constants import TransactionType, TypeMsg
from src.common.errors import ConflictError, InsufficientBalanceError, NotFoundError, ValidationError
from src.common.logger import log_info, log_warning
from src.core.ledger.models import LedgerTransaction, LoyaltyAccount
from src.infra.database import DatabaseManager


_ACCOUNT_COLUMNS = """
    id, card_number, current_balance, total_earned, total_spent,
    total_purchases, total_saved, last_activity_at
"""


class LedgerGateway:
    """Атомарные начисления и списания баллов."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    # =========================================================================
    # СЧЕТА
    # =========================================================================

    async def get_account(self, account_id: int, conn: Optional[Connection] = None) -> LoyaltyAccount:
        """
        Raises:
            NotFoundError: счёта нет
        """
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM loyalty_accounts WHERE id = $1"
        if conn is not None:
            row = await conn.fetchrow(query, account_id)
        else:
            row = await self._db.fetchrow(query, account_id)

        if row is None:
            raise NotFoundError(f"Счёт лояльности {account_id} не найден", details={"account_id": account_id})
        return LoyaltyAccount.from_row(row)

    async def lock_account(self, account_id: int, conn: Connection) -> LoyaltyAccount:
        """
        Читает счёт с блокировкой строки до конца транзакции conn.
        Сериализует параллельные запросы скидок одного клиента.
        """
        row = await conn.fetchrow(
            f"SELECT {_ACCOUNT_COLUMNS} FROM loyalty_accounts WHERE id = $1 FOR UPDATE",
            account_id,
        )
        if row is None:
            raise NotFoundError(f"Счёт лояльности {account_id} не найден", details={"account_id": account_id})
        return LoyaltyAccount.from_row(row)

    # =========================================================================
    # СПИСАНИЕ И НАЧИСЛЕНИЕ
    # =========================================================================

    async def apply_redemption(
        self,
        account_id: int,
        store_id: int,
        discount_amount: Decimal,
        transaction_id: str,
        *,
        pending_discount_id: Optional[int] = None,
        purchase_amount: Decimal = Decimal("0"),
        reconciled: bool = True,
        conn: Optional[Connection] = None,
    ) -> Decimal:
        """
        Списывает баллы и пишет запись redeem.

        Баланс проверяется и уменьшается одним условным UPDATE, поэтому
        параллельные списания не могут увести его в минус.

        Returns:
            Новый баланс

        Raises:
            InsufficientBalanceError: баллов меньше, чем discount_amount
            NotFoundError: счёта нет
            ConflictError: по этой скидке уже есть списание
        """
        if discount_amount <= 0:
            raise ValidationError("Сумма списания должна быть больше нуля")

        now = datetime.now(timezone.utc)

        async with self._db.transaction(conn) as tx:
            new_balance = await tx.fetchval(
                """
                UPDATE loyalty_accounts
                SET current_balance = current_balance - $2,
                    total_spent = total_spent + $2,
                    total_saved = total_saved + $2,
                    last_activity_at = $3
                WHERE id = $1
                  AND current_balance >= $2
                RETURNING current_balance
                """,
                account_id,
                discount_amount,
                now,
            )

            if new_balance is None:
                balance = await tx.fetchval(
                    "SELECT current_balance FROM loyalty_accounts WHERE id = $1",
                    account_id,
                )
                if balance is None:
                    raise NotFoundError(
                        f"Счёт лояльности {account_id} не найден",
                        details={"account_id": account_id},
                    )
                await log_warning(
                    f"Недостаточно баллов на счёте {account_id}: {balance} < {discount_amount}"
                )
                raise InsufficientBalanceError(
                    f"Недостаточно баллов: на счёте {balance}, требуется {discount_amount}",
                    details={"balance": str(balance), "required": str(discount_amount)},
                )

            await self._insert_transaction(
                tx,
                account_id=account_id,
                store_id=store_id,
                type_=TransactionType.REDEEM,
                points_amount=discount_amount,
                purchase_amount=purchase_amount,
                external_reference=transaction_id,
                pending_discount_id=pending_discount_id,
                reconciled=reconciled,
                created_at=now,
            )

        await log_info(
            f"Списано {discount_amount} баллов со счёта {account_id} (магазин {store_id}), "
            f"баланс {new_balance}" + ("" if reconciled else " [без подтверждения 1С]"),
            type_msg=TypeMsg.INFO,
        )
        return Decimal(new_balance)

    async def apply_earn(
        self,
        account_id: int,
        store_id: int,
        purchase_amount: Decimal,
        earned_points: Decimal,
        *,
        transaction_id: Optional[str] = None,
        pending_discount_id: Optional[int] = None,
        reconciled: bool = True,
        conn: Optional[Connection] = None,
    ) -> Decimal:
        """
        Начисляет кэшбэк и пишет запись earn.

        Returns:
            Новый баланс
        """
        if earned_points <= 0:
            raise ValidationError("Сумма начисления должна быть больше нуля")

        now = datetime.now(timezone.utc)

        async with self._db.transaction(conn) as tx:
            new_balance = await tx.fetchval(
                """
                UPDATE loyalty_accounts
                SET current_balance = current_balance + $2,
                    total_earned = total_earned + $2,
                    total_purchases = total_purchases + 1,
                    last_activity_at = $3
                WHERE id = $1
                RETURNING current_balance
                """,
                account_id,
                earned_points,
                now,
            )
            if new_balance is None:
                raise NotFoundError(f"Счёт лояльности {account_id} не найден", details={"account_id": account_id})

            await self._insert_transaction(
                tx,
                account_id=account_id,
                store_id=store_id,
                type_=TransactionType.EARN,
                points_amount=earned_points,
                purchase_amount=purchase_amount,
                external_reference=transaction_id,
                pending_discount_id=pending_discount_id,
                reconciled=reconciled,
                created_at=now,
            )

        await log_info(
            f"Начислено {earned_points} баллов на счёт {account_id} за покупку {purchase_amount}, баланс {new_balance}",
            type_msg=TypeMsg.INFO,
        )
        return Decimal(new_balance)

    # =========================================================================
    # ЖУРНАЛ
    # =========================================================================

    async def has_redemption_for(
        self,
        pending_discount_id: int,
        conn: Optional[Connection] = None,
    ) -> bool:
        """Есть ли уже списание по этой скидке."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM ledger_transactions
                WHERE pending_discount_id = $1 AND type = $2
            )
        """
        if conn is not None:
            return bool(await conn.fetchval(query, pending_discount_id, TransactionType.REDEEM.value))
        return bool(await self._db.fetchval(query, pending_discount_id, TransactionType.REDEEM.value))

    async def list_transactions(self, account_id: int, limit: int = 50) -> list[LedgerTransaction]:
        rows = await self._db.fetch(
            """
            SELECT id, account_id, store_id, type, points_amount, purchase_amount,
                   external_reference, pending_discount_id, reconciled, created_at
            FROM ledger_transactions
            WHERE account_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2
            """,
            account_id,
            limit,
        )
        return [LedgerTransaction.from_row(row) for row in rows]

    async def _insert_transaction(
        self,
        conn: Connection,
        *,
        account_id: int,
        store_id: int,
        type_: TransactionType,
        points_amount: Decimal,
        purchase_amount: Decimal,
        external_reference: Optional[str],
        pending_discount_id: Optional[int],
        reconciled: bool,
        created_at: datetime,
    ) -> None:
        try:
            await conn.execute(
                """
                INSERT INTO ledger_transactions (
                    account_id, store_id, type, points_amount, purchase_amount,
                    external_reference, pending_discount_id, reconciled, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                account_id,
                store_id,
                type_.value,
                points_amount,
                purchase_amount,
                external_reference,
                pending_discount_id,
                reconciled,
                created_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise ConflictError(
                f"Запись {type_.value} по скидке #{pending_discount_id} уже существует",
                details={"pending_discount_id": pending_discount_id},
            ) from e
