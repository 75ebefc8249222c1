# src/services/__init__.py
"""
Сервисы приложения.

Архитектура:
- Каждый сервис: независимое FastAPI-приложение
- Общая PostgreSQL (скидки, счета, журнал баллов)
- RabbitMQ для доменных событий, Redis для защиты от повторов

Сервисы:
- cashier_service: API кассира, терминалов 1С и администратора
"""

__all__: list[str] = []
