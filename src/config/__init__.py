# src/config/__init__.py
"""
Модуль конфигурации.
Экспортирует настройки приложения.
"""

from src.config.loader import Settings, get_settings, get_store_api_key, settings

__all__ = ["Settings", "get_settings", "get_store_api_key", "settings"]
