# src/services/cashier_service/routes.py
"""
Маршруты Cashier Service.

Кассир:
- POST /cashier/check-amount - зарегистрировать сумму чека
- GET /cashier/check-amount/{store_id} - текущая сумма чека
- POST /cashier/check-amount/{store_id}/fetch - запросить сумму у 1С
- POST /cashier/discounts - запросить скидку
- GET /cashier/discounts/{id} - статус скидки
- POST /cashier/discounts/{id}/force-confirm - подтвердить без 1С

Агент 1С (заголовок x-store-api-key):
- POST /1c/register-amount
- GET /1c/pending-discounts?store_id=
- POST /1c/confirm-discount
- GET /1c/agent-status/{store_id}

Администратор:
- GET /admin/discounts
- GET /admin/discounts/{id}/events
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query

from src.common.constants import DiscountStatus
from src.core.reconciliation import ReconciliationService
from src.services.cashier_service.dependencies import check_store_api_key, get_reconciliation_service
from src.shared.models.common import ErrorResponse
from src.shared.models.discount import (
    AgentStatusResponse,
    CheckAmountResponse,
    ConfirmDiscountRequest,
    DiscountEventDTO,
    DiscountRequest,
    PendingDiscountDTO,
    PendingDiscountsResponse,
    RegisterAmountRequest,
)


Service = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
StoreApiKey = Annotated[Optional[str], Header(alias="x-store-api-key")]

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


cashier_router = APIRouter(prefix="/cashier", tags=["Cashier"], responses=ERROR_RESPONSES)
onec_router = APIRouter(prefix="/1c", tags=["1C"], responses={401: {"model": ErrorResponse}, **ERROR_RESPONSES})
admin_router = APIRouter(prefix="/admin", tags=["Admin"])


# === КАССИР ===

@cashier_router.post("/check-amount", response_model=CheckAmountResponse, summary="Зарегистрировать сумму чека")
async def register_check_amount(request: RegisterAmountRequest, service: Service) -> CheckAmountResponse:
    entry = await service.register_check_amount(request.store_id, request.amount, request.timestamp)
    return CheckAmountResponse.from_entry(entry)


@cashier_router.get("/check-amount/{store_id}", response_model=CheckAmountResponse)
async def get_check_amount(store_id: int, service: Service) -> CheckAmountResponse:
    """Сумма чека, которую последней прислал агент магазина (404, если нет или устарела)."""
    return CheckAmountResponse.from_entry(await service.get_check_amount(store_id))


@cashier_router.post(
    "/check-amount/{store_id}/fetch",
    response_model=CheckAmountResponse,
    responses={504: {"model": ErrorResponse}},
    summary="Запросить сумму чека у 1С",
)
async def fetch_check_amount(store_id: int, service: Service) -> CheckAmountResponse:
    """Один запрос к 1С. При 504 кассир вводит сумму вручную."""
    return CheckAmountResponse.from_entry(await service.fetch_terminal_amount(store_id))


@cashier_router.post("/discounts", response_model=PendingDiscountDTO, summary="Запросить скидку")
async def request_discount(request: DiscountRequest, service: Service) -> PendingDiscountDTO:
    """
    Создать отложенную скидку. Баллы списываются только после
    подтверждения 1С или принудительного подтверждения кассиром.
    """
    discount = await service.request_discount(
        request.store_id,
        request.transaction_id,
        request.points_to_redeem,
        account_id=request.account_id,
        purchase_amount=request.purchase_amount,
        customer_card_number=request.customer_card_number,
    )
    return PendingDiscountDTO.from_model(discount)


@cashier_router.get("/discounts/{discount_id}", response_model=PendingDiscountDTO)
async def get_discount(discount_id: int, service: Service) -> PendingDiscountDTO:
    return PendingDiscountDTO.from_model(await service.get_discount(discount_id))


@cashier_router.post(
    "/discounts/{discount_id}/force-confirm",
    response_model=PendingDiscountDTO,
    summary="Подтвердить скидку без ответа 1С",
)
async def force_confirm(
    discount_id: int,
    service: Service,
    store_id: Optional[int] = Query(None, gt=0),
) -> PendingDiscountDTO:
    return PendingDiscountDTO.from_model(await service.force_confirm(discount_id, store_id=store_id))


# === АГЕНТ 1С ===

@onec_router.post("/register-amount", response_model=CheckAmountResponse)
async def onec_register_amount(
    request: RegisterAmountRequest,
    service: Service,
    api_key: StoreApiKey = None,
) -> CheckAmountResponse:
    check_store_api_key(request.store_id, api_key)
    entry = await service.register_check_amount(request.store_id, request.amount, request.timestamp)
    return CheckAmountResponse.from_entry(entry)


@onec_router.get("/pending-discounts", response_model=PendingDiscountsResponse)
async def onec_pending_discounts(
    service: Service,
    store_id: int = Query(..., gt=0),
    api_key: StoreApiKey = None,
) -> PendingDiscountsResponse:
    """Выданные скидки сразу переходят в processing и больше не выдаются."""
    check_store_api_key(store_id, api_key)
    discounts = await service.poll_pending(store_id)
    return PendingDiscountsResponse(
        store_id=store_id,
        discounts=[PendingDiscountDTO.from_model(d) for d in discounts],
    )


@onec_router.post("/confirm-discount", response_model=PendingDiscountDTO)
async def onec_confirm_discount(
    request: ConfirmDiscountRequest,
    service: Service,
    api_key: StoreApiKey = None,
) -> PendingDiscountDTO:
    check_store_api_key(request.store_id, api_key)
    discount = await service.confirm(
        request.id,
        request.status,
        error_message=request.error_message,
        store_id=request.store_id,
    )
    return PendingDiscountDTO.from_model(discount)


@onec_router.get("/agent-status/{store_id}", response_model=AgentStatusResponse)
async def onec_agent_status(store_id: int, service: Service, api_key: StoreApiKey = None) -> AgentStatusResponse:
    check_store_api_key(store_id, api_key)
    return AgentStatusResponse.from_status(service.agent_status(store_id))


# === АДМИНИСТРАТОР ===

@admin_router.get("/discounts", response_model=list[PendingDiscountDTO])
async def admin_discounts(
    service: Service,
    store_id: Optional[int] = Query(None, gt=0),
    status: Optional[DiscountStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> list[PendingDiscountDTO]:
    discounts = await service.history(store_id=store_id, status=status, limit=limit, offset=offset)
    return [PendingDiscountDTO.from_model(d) for d in discounts]


@admin_router.get("/discounts/{discount_id}/events", response_model=list[DiscountEventDTO])
async def admin_discount_events(discount_id: int, service: Service) -> list[DiscountEventDTO]:
    return [DiscountEventDTO.from_model(e) for e in await service.discount_events(discount_id)]
