# src/worker/__init__.py
"""
Фоновые воркеры.
"""

from src.worker.base import BaseWorker
from src.worker.expiry_reaper import ExpiryReaper, ReaperStats

__all__ = ["BaseWorker", "ExpiryReaper", "ReaperStats"]
