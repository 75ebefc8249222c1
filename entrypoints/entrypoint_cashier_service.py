#!/usr/bin/env python3
"""
Entrypoint для Cashier Service.

Запуск:
    python -m entrypoints.entrypoint_cashier_service

Порт по умолчанию: 8095
"""

import uvicorn

from src.config import settings


def main() -> None:
    """Запустить Cashier Service."""
    uvicorn.run(
        "src.services.cashier_service.app:app",
        host=settings.deployment.CASHIER_SERVICE_HOST,
        port=settings.deployment.CASHIER_SERVICE_PORT,
        reload=settings.system.DEBUG,
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
