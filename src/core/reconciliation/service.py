# src/core/reconciliation/service.py
"""
Сервис сверки скидок между кассой, программой лояльности и терминалом 1С.

Поток:
    агент магазина -> register_check_amount
    кассир         -> request_discount (баллы только резервируются)
    терминал 1С    -> poll_pending (pending -> processing)
    терминал 1С    -> confirm (списание баллов и кэшбэк, processing -> applied)
    кассир         -> force_confirm, если 1С молчит дольше порога

Баланс клиента меняется только внутри confirm/force_confirm, в одной
транзакции со сменой статуса скидки.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from src.common.constants import DiscountOutcome, DiscountStatus, TransitionActor, TypeMsg
from src.common.errors import (
    ConfigurationError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from src.common.logger import log_error, log_info, log_warning
from src.core.discounts.models import DiscountEvent, PendingDiscount
from src.core.discounts.repository import PendingDiscountStore
from src.core.ledger.gateway import LedgerGateway
from src.core.reconciliation.check_amounts import AgentStatus, CheckAmount, CheckAmountRegistry
from src.core.reconciliation.onec_client import OneCClient
from src.infra.database import DatabaseManager
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.infra.redis_client import RedisClient


CENT = Decimal("0.01")


def to_points(value: Any) -> Decimal:
    """Приводит сумму к Decimal с точностью до копейки."""
    try:
        amount = Decimal(str(value))
        if amount.is_finite():
            return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Некорректная сумма: {value!r}") from e
    # NaN и Infinity
    raise ValidationError(f"Некорректная сумма: {value!r}")


@dataclass(frozen=True)
class ReconciliationPolicy:
    """Бизнес-правила программы лояльности."""
    earning_percent: Decimal = Decimal("4.0")
    max_discount_percent: Decimal = Decimal("20.0")
    min_redemption_amount: Decimal = Decimal("1.0")
    max_purchase_amount: Decimal = Decimal("1000000")
    pending_ttl_seconds: int = 90
    force_confirm_after_seconds: int = 30
    idempotency_ttl_seconds: int = 10

    @classmethod
    def from_settings(cls, loyalty: Any) -> ReconciliationPolicy:
        return cls(
            earning_percent=Decimal(str(loyalty.EARNING_PERCENT)),
            max_discount_percent=Decimal(str(loyalty.MAX_DISCOUNT_PERCENT)),
            min_redemption_amount=Decimal(str(loyalty.MIN_REDEMPTION_AMOUNT)),
            max_purchase_amount=Decimal(str(loyalty.MAX_PURCHASE_AMOUNT)),
            pending_ttl_seconds=loyalty.PENDING_DISCOUNT_TTL_SECONDS,
            force_confirm_after_seconds=loyalty.FORCE_CONFIRM_AFTER_SECONDS,
            idempotency_ttl_seconds=loyalty.IDEMPOTENCY_TTL_SECONDS,
        )

    def max_discount_for(self, purchase_amount: Decimal) -> Decimal:
        """Максимальная скидка для суммы покупки."""
        return (purchase_amount * self.max_discount_percent / 100).quantize(CENT, rounding=ROUND_HALF_UP)

    def cashback_for(self, check_amount: Decimal, discount_amount: Decimal) -> Decimal:
        """Кэшбэк начисляется на оплаченную деньгами часть чека."""
        paid = max(check_amount - discount_amount, Decimal("0"))
        return (paid * self.earning_percent / 100).quantize(CENT, rounding=ROUND_HALF_UP)


class ReconciliationService:
    """Оркестратор обмена касса <-> лояльность <-> 1С."""

    def __init__(
        self,
        db: DatabaseManager,
        store: PendingDiscountStore,
        ledger: LedgerGateway,
        check_amounts: CheckAmountRegistry,
        event_bus: Optional[EventBus] = None,
        redis: Optional[RedisClient] = None,
        onec: Optional[OneCClient] = None,
        policy: Optional[ReconciliationPolicy] = None,
    ) -> None:
        self.db = db
        self.store = store
        self.ledger = ledger
        self.check_amounts = check_amounts
        self.event_bus = event_bus
        self.redis = redis
        self.onec = onec
        self.policy = policy or ReconciliationPolicy()

    # =========================================================================
    # СУММА ЧЕКА
    # =========================================================================

    async def register_check_amount(
        self,
        store_id: int,
        amount: Any,
        timestamp: Optional[datetime] = None,
    ) -> CheckAmount:
        """Агент магазина сообщает сумму, которую сейчас показывает касса."""
        value = self._validate_purchase_amount(amount)
        entry = await self.check_amounts.register(store_id, value, registered_at=timestamp)
        await log_info(f"Магазин {store_id}: зарегистрирована сумма чека {value}", type_msg=TypeMsg.DEBUG)
        return entry

    async def get_check_amount(self, store_id: int) -> CheckAmount:
        """
        Raises:
            NotFoundError: агент не присылал сумму или она устарела
        """
        return await self.check_amounts.get(store_id)

    async def fetch_terminal_amount(self, store_id: int) -> CheckAmount:
        """
        Один запрос суммы чека напрямую в 1С.

        Raises:
            TerminalTimeoutError: 1С недоступна
            NotFoundError: активного чека нет
        """
        if self.onec is None:
            raise ConfigurationError("Интеграция с 1С не настроена", details={"store_id": store_id})
        amount = await self.onec.get_current_check_amount(store_id)
        return await self.register_check_amount(store_id, amount)

    def agent_status(self, store_id: int) -> AgentStatus:
        return self.check_amounts.agent_status(store_id)

    # =========================================================================
    # ЗАПРОС СКИДКИ
    # =========================================================================

    async def request_discount(
        self,
        store_id: int,
        transaction_id: str,
        points_to_redeem: Any,
        *,
        account_id: int,
        purchase_amount: Any,
        customer_card_number: Optional[str] = None,
    ) -> PendingDiscount:
        """
        Создаёт отложенную скидку. Баланс не списывается, баллы лишь
        резервируются до подтверждения 1С.

        Raises:
            ValidationError: сумма вне допустимых границ
            InsufficientBalanceError: доступных баллов меньше запрошенного
            ConflictError: повторная отправка той же формы
            NotFoundError: счёт или магазин не найден
        """
        points = to_points(points_to_redeem)
        purchase = self._validate_purchase_amount(purchase_amount)

        if points <= 0:
            raise ValidationError("Количество баллов должно быть больше нуля")
        if points < self.policy.min_redemption_amount:
            raise ValidationError(f"Минимальное списание: {self.policy.min_redemption_amount} баллов")

        max_discount = self.policy.max_discount_for(purchase)
        if points > max_discount:
            raise ValidationError(
                f"Максимальная скидка {self.policy.max_discount_percent}% от покупки: {max_discount} баллов",
                details={"max_discount": str(max_discount)},
            )

        guard_key = f"discount_request:{store_id}:{account_id}:{purchase}:{points}"
        await self._acquire_submit_guard(guard_key)

        try:
            async with self.db.transaction() as conn:
                await self.store.ensure_store_active(store_id, conn=conn)
                account = await self.ledger.lock_account(account_id, conn)
                held = await self.store.sum_open_for_account(account_id, conn=conn)
                available = account.current_balance - held

                if points > available:
                    raise InsufficientBalanceError(
                        f"Недостаточно баллов: доступно {available}, запрошено {points}",
                        details={"available": str(available), "balance": str(account.current_balance)},
                    )

                discount = await self.store.create(
                    store_id,
                    transaction_id,
                    points,
                    self.policy.pending_ttl_seconds,
                    account_id=account_id,
                    check_amount=purchase,
                    customer_card_number=customer_card_number,
                    conn=conn,
                )
        except Exception:
            await self._release_submit_guard(guard_key)
            raise

        await self._publish(EventTypes.DISCOUNT_REQUESTED, discount)
        return discount

    # =========================================================================
    # ТЕРМИНАЛ 1С
    # =========================================================================

    async def poll_pending(self, store_id: int) -> list[PendingDiscount]:
        """
        Выдаёт терминалу 1С скидки магазина в порядке создания.

        Каждая скидка переводится в processing compare-and-swap'ом, поэтому
        параллельные опросы никогда не получают одну и ту же скидку.
        Скидки с истёкшим сроком не выдаются: их закроет фоновая очистка.
        """
        self.check_amounts.touch(store_id)
        now = datetime.now(timezone.utc)

        served: list[PendingDiscount] = []
        for discount in await self.store.list_pending(store_id):
            if discount.status != DiscountStatus.PENDING or discount.is_overdue(now):
                continue
            try:
                taken = await self.store.mark_processing(discount.id, actor=TransitionActor.TERMINAL)
            except ConflictError:
                # Забрана параллельным опросом
                continue
            served.append(taken)
            await self._publish(EventTypes.DISCOUNT_PROCESSING, taken)

        if served:
            await log_info(
                f"Магазин {store_id}: 1С получила {len(served)} скидок",
                type_msg=TypeMsg.INFO,
            )
        return served

    async def confirm(
        self,
        discount_id: int,
        outcome: DiscountOutcome,
        error_message: Optional[str] = None,
        store_id: Optional[int] = None,
    ) -> PendingDiscount:
        """
        Результат применения скидки от 1С.

        Повторное подтверждение завершённой скидки принимается и игнорируется:
        первый конечный статус окончательный.

        Raises:
            ConflictError: скидка ещё не выдана терминалу
            NotFoundError: скидки нет (или она принадлежит другому магазину)
        """
        outcome = DiscountOutcome(outcome)
        event_type: Optional[str] = None

        async with self.db.transaction() as conn:
            discount = await self.store.get(discount_id, for_update=True, conn=conn)
            self._check_store(discount, store_id)

            if discount.is_terminal:
                await self._log_repeated_confirm(discount, outcome)
                return discount

            if discount.status != DiscountStatus.PROCESSING:
                raise ConflictError(
                    f"Скидка #{discount_id} ещё не получена терминалом (статус {discount.status.value})",
                    details={"id": discount_id, "status": discount.status.value},
                )

            if outcome == DiscountOutcome.FAILED:
                result = await self.store.mark_failed(
                    discount_id, error_message or "1С не смогла применить скидку", conn=conn,
                )
                event_type = EventTypes.DISCOUNT_FAILED
            else:
                result = await self._settle(discount, conn, actor=TransitionActor.TERMINAL, reconciled=True)
                event_type = (
                    EventTypes.DISCOUNT_APPLIED
                    if result.status == DiscountStatus.APPLIED
                    else EventTypes.DISCOUNT_FAILED
                )

        await self._publish(event_type, result)
        return result

    async def force_confirm(self, discount_id: int, store_id: Optional[int] = None) -> PendingDiscount:
        """
        Применяет скидку без подтверждения 1С (касса не может ждать терминал).
        Записи журнала помечаются reconciled=False для ручной сверки.

        Raises:
            ValidationError: порог ожидания ещё не прошёл
            ConflictError: скидка уже отклонена или истекла
        """
        now = datetime.now(timezone.utc)

        async with self.db.transaction() as conn:
            discount = await self.store.get(discount_id, for_update=True, conn=conn)
            self._check_store(discount, store_id)

            if discount.status == DiscountStatus.APPLIED:
                await log_info(f"Скидка #{discount_id} уже применена, принудительное подтверждение пропущено")
                return discount
            if discount.is_terminal:
                raise ConflictError(
                    f"Скидка #{discount_id} уже завершена со статусом {discount.status.value}",
                    details={"id": discount_id, "status": discount.status.value},
                )

            waited = discount.age_seconds(now)
            if waited < self.policy.force_confirm_after_seconds:
                raise ValidationError(
                    f"Принудительное подтверждение доступно через "
                    f"{int(self.policy.force_confirm_after_seconds - waited)} с",
                    details={"retry_after": int(self.policy.force_confirm_after_seconds - waited)},
                )

            if discount.status == DiscountStatus.PENDING:
                discount = await self.store.mark_processing(
                    discount_id, actor=TransitionActor.FORCE_CONFIRM, conn=conn,
                )

            result = await self._settle(discount, conn, actor=TransitionActor.FORCE_CONFIRM, reconciled=False)

        await log_warning(
            f"Скидка #{discount_id} подтверждена кассиром без ответа 1С, статус {result.status.value}"
        )
        await self._publish(
            EventTypes.DISCOUNT_FORCE_CONFIRMED
            if result.status == DiscountStatus.APPLIED
            else EventTypes.DISCOUNT_FAILED,
            result,
        )
        return result

    async def _settle(
        self,
        discount: PendingDiscount,
        conn: Any,
        *,
        actor: TransitionActor,
        reconciled: bool,
    ) -> PendingDiscount:
        """Списание баллов, кэшбэк и processing -> applied в транзакции conn."""
        try:
            await self.ledger.apply_redemption(
                discount.account_id,
                discount.store_id,
                discount.discount_amount,
                discount.transaction_id,
                pending_discount_id=discount.id,
                purchase_amount=discount.check_amount,
                reconciled=reconciled,
                conn=conn,
            )
        except InsufficientBalanceError as e:
            # Клиент потратил баллы между запросом и подтверждением
            return await self.store.mark_failed(discount.id, e.message, actor=actor, conn=conn)

        cashback = self.policy.cashback_for(discount.check_amount, discount.discount_amount)
        if cashback > 0:
            await self.ledger.apply_earn(
                discount.account_id,
                discount.store_id,
                discount.check_amount,
                cashback,
                transaction_id=discount.transaction_id,
                pending_discount_id=discount.id,
                reconciled=reconciled,
                conn=conn,
            )

        return await self.store.mark_applied(discount.id, actor=actor, conn=conn)

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_discount(self, discount_id: int) -> PendingDiscount:
        return await self.store.get(discount_id)

    async def history(
        self,
        store_id: Optional[int] = None,
        status: Optional[DiscountStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PendingDiscount]:
        return await self.store.list_history(store_id=store_id, status=status, limit=limit, offset=offset)

    async def discount_events(self, discount_id: int) -> list[DiscountEvent]:
        await self.store.get(discount_id)
        return await self.store.list_events(discount_id)

    async def health(self, store_id: Optional[int] = None) -> dict[str, Any]:
        counts = await self.store.count_by_status(store_id)
        return {
            "discounts": counts,
            "registered_check_amounts": self.check_amounts.registered_stores(),
        }

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    def _validate_purchase_amount(self, amount: Any) -> Decimal:
        value = to_points(amount)
        if value <= 0:
            raise ValidationError("Сумма покупки должна быть больше нуля")
        if value > self.policy.max_purchase_amount:
            raise ValidationError(f"Сумма покупки не может превышать {self.policy.max_purchase_amount}")
        return value

    @staticmethod
    def _check_store(discount: PendingDiscount, store_id: Optional[int]) -> None:
        if store_id is not None and discount.store_id != store_id:
            raise NotFoundError(
                f"Скидка #{discount.id} не найдена в магазине {store_id}",
                details={"id": discount.id, "store_id": store_id},
            )

    async def _log_repeated_confirm(self, discount: PendingDiscount, outcome: DiscountOutcome) -> None:
        if discount.status.value == outcome.value:
            await log_info(
                f"Повторное подтверждение скидки #{discount.id} ({outcome.value}) проигнорировано",
                type_msg=TypeMsg.DEBUG,
            )
        elif discount.status == DiscountStatus.EXPIRED and outcome == DiscountOutcome.APPLIED:
            # Касса дала скидку, а баллы не списаны: нужна ручная сверка
            await log_error(
                f"1С применила скидку #{discount.id} после её истечения, баллы не списаны",
                extra={"discount_id": discount.id, "store_id": discount.store_id},
            )
        else:
            await log_warning(
                f"Противоречивое подтверждение скидки #{discount.id}: статус {discount.status.value}, "
                f"получено {outcome.value}; оставлен первый результат"
            )

    async def _acquire_submit_guard(self, key: str) -> None:
        if self.redis is None:
            return
        acquired = await self.redis.set(key, "1", ttl=self.policy.idempotency_ttl_seconds, nx=True)
        if not acquired:
            raise ConflictError(
                "Такой запрос скидки уже отправлен, дождитесь результата",
                details={"retry_after": self.policy.idempotency_ttl_seconds},
            )

    async def _release_submit_guard(self, key: str) -> None:
        if self.redis is not None:
            await self.redis.delete(key)

    async def _publish(self, event_type: Optional[str], discount: PendingDiscount) -> None:
        if self.event_bus is None or event_type is None:
            return
        await self.event_bus.publish(DomainEvent(
            event_type=event_type,
            payload={
                "discount_id": discount.id,
                "store_id": discount.store_id,
                "account_id": discount.account_id,
                "transaction_id": discount.transaction_id,
                "discount_amount": str(discount.discount_amount),
                "status": discount.status.value,
                "error_message": discount.error_message,
            },
        ))
