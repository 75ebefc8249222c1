# src/worker/base.py
"""
Базовый класс для периодических воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, List

from src.common.logger import log_info, log_error
from src.common.constants import TypeMsg


class BaseWorker(ABC):
    """
    Базовый класс фоновых воркеров.
    Вызывает run_once() с фиксированным интервалом до остановки.
    """

    def __init__(self, interval_seconds: float) -> None:
        """
        Args:
            interval_seconds: Пауза между запусками run_once
        """
        self.interval_seconds = interval_seconds
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @abstractmethod
    async def run_once(self) -> Any:
        """Один проход работы воркера."""

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает цикл воркера в отдельной задаче."""
        if self._running:
            return

        self._running = True
        self._tasks.append(asyncio.create_task(self._loop(), name=f"worker:{self.name}"))
        await log_info(
            f"Воркер {self.name} запущен (интервал {self.interval_seconds} с)",
            type_msg=TypeMsg.INFO,
        )

    async def stop(self) -> None:
        """Останавливает воркер и дожидается завершения задач."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Ошибка в воркере {self.name}: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)
