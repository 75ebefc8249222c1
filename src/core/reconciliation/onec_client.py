# src/core/reconciliation/onec_client.py
"""
HTTP-клиент OData-интерфейса 1С.

Каждый вызов это одна попытка с коротким таймаутом: при недоступности
терминала кассир сразу переходит к ручному вводу суммы.
"""

from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from src.common.errors import NotFoundError, TerminalTimeoutError
from src.common.logger import log_debug, log_warning


TRANSACTIONS_ENDPOINT = "/odata/standard.odata/Catalog_Transactions"


class OneCClient:
    """Клиент для чтения активного чека из 1С."""

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(username, password) if username else None
        self._timeout = timeout
        self._transport = transport

    def base_url_for(self, store_id: int) -> str:
        """URL 1С магазина: STORE_<id>_ONEC_URL переопределяет общий адрес."""
        override = os.getenv(f"STORE_{store_id}_ONEC_URL")
        return (override or self._base_url).rstrip("/")

    async def get_current_check_amount(self, store_id: int) -> Decimal:
        """
        Возвращает сумму последнего активного чека магазина.

        Raises:
            TerminalTimeoutError: 1С не ответила за timeout или вернула ошибку
            NotFoundError: активного чека нет
        """
        base_url = self.base_url_for(store_id)
        if not base_url:
            raise TerminalTimeoutError("Адрес 1С не настроен", details={"store_id": store_id})

        params = {
            "$filter": f"StoreId eq {store_id} and Status eq 'Active'",
            "$orderby": "CreatedAt desc",
            "$top": "1",
        }

        try:
            async with httpx.AsyncClient(
                base_url=base_url,
                auth=self._auth,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            ) as client:
                response = await client.get(TRANSACTIONS_ENDPOINT, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            await log_warning(f"1С магазина {store_id} не ответила за {self._timeout} с")
            raise TerminalTimeoutError(
                f"1С не ответила за {self._timeout} с, введите сумму вручную",
                details={"store_id": store_id},
            ) from e
        except httpx.HTTPStatusError as e:
            await log_warning(f"1С магазина {store_id} вернула HTTP {e.response.status_code}")
            raise TerminalTimeoutError(
                f"1С вернула ошибку {e.response.status_code}",
                details={"store_id": store_id, "status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            await log_warning(f"Ошибка запроса к 1С магазина {store_id}: {e}")
            raise TerminalTimeoutError(
                "1С недоступна, введите сумму вручную",
                details={"store_id": store_id},
            ) from e

        items = data.get("value") if isinstance(data, dict) else None
        if not items or not isinstance(items, list):
            raise NotFoundError(f"В 1С нет активного чека магазина {store_id}", details={"store_id": store_id})

        item = items[0]
        if not isinstance(item, dict):
            raise NotFoundError("1С вернула некорректный чек", details={"store_id": store_id})

        try:
            amount = Decimal(str(item.get("Amount")))
        except (InvalidOperation, TypeError) as e:
            raise NotFoundError("1С вернула некорректную сумму чека", details={"store_id": store_id}) from e

        if not amount.is_finite() or amount <= 0:
            raise NotFoundError("1С вернула некорректную сумму чека", details={"store_id": store_id})

        await log_debug(f"1С магазина {store_id}: активный чек {item.get('Ref_Key')} на {amount}")
        return amount
