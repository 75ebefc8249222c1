# src/core/__init__.py
"""
Доменный слой.
Отложенные скидки, журнал баллов и сверка с терминалами 1С.
"""
