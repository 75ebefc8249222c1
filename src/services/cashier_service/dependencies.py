# src/services/cashier_service/dependencies.py
"""
Dependency Injection для Cashier Service.
"""

from __future__ import annotations

import hmac
from typing import TYPE_CHECKING

from src.common.errors import AuthError, ConfigurationError

if TYPE_CHECKING:
    from src.infra.database import DatabaseManager
    from src.infra.redis_client import RedisClient
    from src.infra.event_bus import EventBus
    from src.core.reconciliation import CheckAmountRegistry, ReconciliationService


# Синглтоны для инфраструктуры
_db: "DatabaseManager | None" = None
_redis: "RedisClient | None" = None
_event_bus: "EventBus | None" = None

# Синглтоны для сервисов
_check_amounts: "CheckAmountRegistry | None" = None
_reconciliation_service: "ReconciliationService | None" = None


async def init_dependencies(
    db: "DatabaseManager",
    redis: "RedisClient | None",
    event_bus: "EventBus | None",
) -> None:
    """Инициализировать зависимости при старте приложения."""
    global _db, _redis, _event_bus
    _db = db
    _redis = redis
    _event_bus = event_bus


def get_db() -> "DatabaseManager":
    """Получить менеджер базы данных."""
    if _db is None:
        raise RuntimeError("База данных не инициализирована. Вызовите init_dependencies()")
    return _db


def get_check_amounts() -> "CheckAmountRegistry":
    """Реестр сумм чеков живёт в памяти процесса."""
    global _check_amounts

    if _check_amounts is None:
        from src.config import settings
        from src.core.reconciliation import CheckAmountRegistry
        _check_amounts = CheckAmountRegistry(ttl_seconds=settings.check_amount.CHECK_AMOUNT_TTL_SECONDS)

    return _check_amounts


def get_reconciliation_service() -> "ReconciliationService":
    """Получить сервис сверки скидок."""
    global _reconciliation_service

    if _reconciliation_service is None:
        from src.config import settings
        from src.core.discounts import PendingDiscountStore
        from src.core.ledger import LedgerGateway
        from src.core.reconciliation import OneCClient, ReconciliationPolicy, ReconciliationService

        db = get_db()
        _reconciliation_service = ReconciliationService(
            db=db,
            store=PendingDiscountStore(db),
            ledger=LedgerGateway(db),
            check_amounts=get_check_amounts(),
            event_bus=_event_bus,
            redis=_redis,
            onec=OneCClient(
                base_url=settings.onec.ONEC_BASE_URL,
                username=settings.onec.ONEC_USER,
                password=settings.onec.ONEC_PASSWORD,
                timeout=settings.onec.ONEC_TIMEOUT_SECONDS,
            ),
            policy=ReconciliationPolicy.from_settings(settings.loyalty),
        )

    return _reconciliation_service


def check_store_api_key(store_id: int, api_key: str | None) -> None:
    """
    Проверяет ключ агента магазина.

    Raises:
        ConfigurationError: ключ магазина не задан в окружении
        AuthError: ключ не передан или не совпадает
    """
    from src.config import get_store_api_key

    expected = get_store_api_key(store_id)
    if expected is None:
        raise ConfigurationError(
            f"API-ключ магазина {store_id} не настроен",
            details={"store_id": store_id},
        )
    if not api_key or not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Неверный API-ключ магазина", details={"store_id": store_id})


async def cleanup_dependencies() -> None:
    """Очистить ресурсы при остановке приложения."""
    global _check_amounts, _reconciliation_service, _db, _redis, _event_bus
    _check_amounts = None
    _reconciliation_service = None
    _db = None
    _redis = None
    _event_bus = None
