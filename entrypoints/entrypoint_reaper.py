#!/usr/bin/env python3
# entrypoint_reaper.py
"""
Точка входа для запуска очистки просроченных скидок в отдельном контейнере.

Запуск:
    python -m entrypoints.entrypoint_reaper
"""

from __future__ import annotations

from src.common.logger import setup_logging
from src.worker.runner import main


if __name__ == "__main__":
    setup_logging()
    main()
