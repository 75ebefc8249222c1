#!/usr/bin/env python3
# main.py
"""
Главная точка входа сервиса лояльности.
Запускает HTTP API кассы, фоновую очистку скидок или всё вместе.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db
from src.infra.redis_client import init_redis, close_redis
from src.infra.event_bus import init_event_bus, close_event_bus


VALID_MODES = ("api", "reaper", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def init_infrastructure() -> None:
    """Инициализирует все подключения к инфраструктуре."""
    await log_info("Инициализация инфраструктуры...", type_msg=TypeMsg.INFO)

    await init_db()
    await init_redis()
    await init_event_bus()

    await log_info("Инфраструктура инициализирована", type_msg=TypeMsg.INFO)


async def close_infrastructure() -> None:
    """Закрывает все подключения."""
    await log_info("Закрытие подключений...", type_msg=TypeMsg.INFO)

    await close_event_bus()
    await close_redis()
    await close_db()

    await log_info("Подключения закрыты", type_msg=TypeMsg.INFO)


async def run_cashier_service() -> None:
    """Запускает HTTP API кассы и агента 1С."""
    import uvicorn

    await log_info(
        f"Запуск Cashier Service на порту {settings.deployment.CASHIER_SERVICE_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "src.services.cashier_service.app:app",
        host=settings.deployment.CASHIER_SERVICE_HOST,
        port=settings.deployment.CASHIER_SERVICE_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Cashier Service: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_reaper() -> None:
    """Запускает фоновую очистку просроченных скидок."""
    from src.worker.runner import run_workers

    await run_workers(init_infra=False)


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (api, reaper, all).
              Если None, берётся COMPONENT_MODE из настроек.
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    if mode is None:
        mode = settings.system.COMPONENT_MODE
    if mode not in VALID_MODES:
        await log_error(f"Неизвестный режим запуска '{mode}', допустимы: {', '.join(VALID_MODES)}")
        sys.exit(1)

    await log_info(
        f"Loyalty v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    try:
        await init_infrastructure()

        if mode == "api":
            _running_tasks = [asyncio.create_task(run_cashier_service())]
        elif mode == "reaper":
            _running_tasks = [asyncio.create_task(run_reaper())]
        else:
            _running_tasks = [
                asyncio.create_task(run_cashier_service()),
                asyncio.create_task(run_reaper()),
            ]

        await asyncio.gather(*_running_tasks, return_exceptions=True)

    except asyncio.CancelledError:
        await log_info("Отмена всех задач...", type_msg=TypeMsg.INFO)
        for task in _running_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*_running_tasks, return_exceptions=True)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        await close_infrastructure()


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Использование: python main.py [режим]

Режимы:
    api       HTTP API кассы, агента 1С и администратора
    reaper    Фоновая очистка просроченных скидок
    all       API и очистка в одном процессе (по умолчанию)

Без аргумента режим берётся из COMPONENT_MODE (config.json или окружение).
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
