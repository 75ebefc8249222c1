# src/shared/__init__.py
"""
Общий код HTTP-слоя: DTO запросов и ответов.
"""

__all__: list[str] = []
