# src/worker/runner.py
"""
Запускалка фоновых воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from src.worker.base import BaseWorker
from src.worker.expiry_reaper import ExpiryReaper
from src.core.discounts.repository import PendingDiscountStore
from src.core.ledger.gateway import LedgerGateway
from src.infra.database import init_db, close_db, get_db
from src.infra.event_bus import init_event_bus, close_event_bus, get_event_bus
from src.common.logger import log_info, log_error
from src.common.constants import TypeMsg
from src.config import settings


def build_workers() -> List[BaseWorker]:
    """Создаёт воркеры поверх уже подключённой инфраструктуры."""
    db = get_db()
    return [
        ExpiryReaper(
            store=PendingDiscountStore(db),
            ledger=LedgerGateway(db),
            event_bus=get_event_bus(),
            interval_seconds=settings.reaper.REAPER_INTERVAL_SECONDS,
            batch_size=settings.reaper.REAPER_BATCH_SIZE,
        ),
    ]


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает фоновые воркеры и работает до отмены.

    Args:
        init_infra: Если True, подключает PostgreSQL и RabbitMQ сам.
                    При запуске всех компонентов в одном процессе
                    инфраструктура уже подключена и передаётся False.
    """
    if init_infra:
        await init_db()
        await init_event_bus()

    workers = build_workers()

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено воркеров: {len(workers)}", type_msg=TypeMsg.INFO)

        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки воркеров", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка воркеров: {e}", exc_info=True)
        raise
    finally:
        for worker in workers:
            await worker.stop()

        if init_infra:
            await close_event_bus()
            await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
