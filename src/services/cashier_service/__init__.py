# src/services/cashier_service/__init__.py
"""
HTTP API кассы, агента 1С и администратора программы лояльности.
"""
