# src/services/cashier_service/app.py
"""
FastAPI приложение для Cashier Service.

Маршруты подключаются из routes.py под префиксом /api/v1.
Бизнес-ошибки (LoyaltyError) превращаются в ErrorResponse
с HTTP-статусом, заданным в классе ошибки.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.common.constants import TypeMsg
from src.common.errors import LoyaltyError
from src.common.logger import log_error, log_info, log_warning, setup_logging
from src.config import settings
from src.infra.database import close_db, get_db, init_db
from src.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
from src.infra.redis_client import close_redis, get_redis, init_redis
from src.services.cashier_service.dependencies import (
    cleanup_dependencies,
    get_reconciliation_service,
    init_dependencies,
)
from src.services.cashier_service.routes import admin_router, cashier_router, onec_router
from src.shared.models.common import ErrorResponse, HealthStatus


SERVICE_NAME = "cashier_service"
_started_at = time.monotonic()


# === LIFESPAN ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    # Startup
    setup_logging()
    await log_info("Запуск Cashier Service...", type_msg=TypeMsg.INFO)

    db = await init_db()
    redis = await init_redis()
    event_bus = await init_event_bus()
    await init_dependencies(db, redis, event_bus)

    yield

    # Shutdown
    await log_info("Остановка Cashier Service...", type_msg=TypeMsg.INFO)
    await cleanup_dependencies()
    await close_event_bus()
    await close_redis()
    await close_db()


# === APP ===

app = FastAPI(
    title="Cashier Service",
    description="Списание баллов лояльности и сверка скидок с терминалами 1С.",
    version=settings.system.VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.exception_handler(LoyaltyError)
async def loyalty_error_handler(request: Request, exc: LoyaltyError) -> JSONResponse:
    if exc.http_status >= 500:
        await log_error(f"{request.method} {request.url.path}: {exc.message}", extra={"details": exc.details})
    else:
        await log_warning(f"{request.method} {request.url.path}: {exc.error_code} {exc.message}")

    body = ErrorResponse(error_code=exc.error_code, message=exc.message, details=exc.details or None)
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(mode="json"))


app.include_router(cashier_router, prefix="/api/v1")
app.include_router(onec_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


# === HEALTH CHECK ===

@app.get("/health", response_model=HealthStatus, tags=["Health"])
async def health_check() -> HealthStatus:
    """Проверка здоровья сервиса и его зависимостей."""
    dependencies = {
        "postgres": "ok" if await get_db().health_check() else "unavailable",
        "redis": "ok" if await get_redis().health_check() else "unavailable",
        "rabbitmq": "ok" if await get_event_bus().health_check() else "unavailable",
    }

    discounts: dict[str, int] = {}
    registered: list[int] = []
    if dependencies["postgres"] == "ok":
        report = await get_reconciliation_service().health()
        discounts = report["discounts"]
        registered = report["registered_check_amounts"]

    return HealthStatus(
        service=SERVICE_NAME,
        status="healthy" if all(v == "ok" for v in dependencies.values()) else "degraded",
        version=settings.system.VERSION,
        uptime_seconds=round(time.monotonic() - _started_at, 1),
        dependencies=dependencies,
        discounts=discounts,
        registered_check_amounts=registered,
    )
