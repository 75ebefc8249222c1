# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины: config/config.json.
Секретные данные и адреса переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json(path: Path | None = None) -> dict[str, Any]:
    """Загружает config.json и возвращает словарь без ключей-комментариев."""
    config_path = path or get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "loyalty_cashier"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"


class DeploymentSettings(BaseModel):
    """Настройки развертывания компонентов."""
    CASHIER_SERVICE_HOST: str = "0.0.0.0"
    CASHIER_SERVICE_PORT: int = 8095


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_FORMAT: str = "colored"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "loyalty"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 2
    DB_MAX_POOL_SIZE: int = 10
    DB_COMMAND_TIMEOUT: int = 30
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "loyalty"
    REDIS_MAX_CONNECTIONS: int = 20

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "loyalty.events"

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Пароль из окружения имеет приоритет над config.json."""
        return os.getenv("RABBITMQ_PASSWORD", "") or v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class LoyaltySettings(BaseModel):
    """Бизнес-правила начисления и списания баллов."""
    EARNING_PERCENT: float = Field(4.0, ge=0, le=100)
    MAX_DISCOUNT_PERCENT: float = Field(20.0, gt=0, le=100)
    MIN_REDEMPTION_AMOUNT: float = Field(1.0, ge=0)
    MAX_PURCHASE_AMOUNT: float = Field(1_000_000, gt=0)
    PENDING_DISCOUNT_TTL_SECONDS: int = Field(90, gt=0)
    FORCE_CONFIRM_AFTER_SECONDS: int = Field(30, ge=0)
    IDEMPOTENCY_TTL_SECONDS: int = Field(10, gt=0)
    POINTS_NAME: str = "Мурзи-коины"


class CheckAmountSettings(BaseModel):
    """Настройки регистрации суммы чека агентом магазина."""
    CHECK_AMOUNT_TTL_SECONDS: int = Field(60, gt=0)


class OneCSettings(BaseModel):
    """Настройки HTTP-интеграции с 1С."""
    ONEC_BASE_URL: str = ""
    ONEC_USER: str = ""
    ONEC_PASSWORD: str = ""
    ONEC_TIMEOUT_SECONDS: float = Field(3.0, gt=0)

    @field_validator("ONEC_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль 1С из переменных окружения."""
        if not v:
            return os.getenv("ONEC_PASSWORD", "")
        return v


class ReaperSettings(BaseModel):
    """Настройки фоновой очистки просроченных скидок."""
    REAPER_INTERVAL_SECONDS: int = Field(60, gt=0)
    REAPER_BATCH_SIZE: int = Field(200, gt=0)


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    loyalty: LoyaltySettings = Field(default_factory=LoyaltySettings)
    check_amount: CheckAmountSettings = Field(default_factory=CheckAmountSettings)
    onec: OneCSettings = Field(default_factory=OneCSettings)
    reaper: ReaperSettings = Field(default_factory=ReaperSettings)

    @classmethod
    def from_config_json(cls, path: Path | None = None) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Каждая секция берёт из плоского словаря только свои ключи,
        секреты и адреса переопределяются из переменных окружения.
        """
        data = load_config_json(path)

        def section(model: type[BaseModel], env_keys: tuple[str, ...] = ()) -> dict[str, Any]:
            values = {name: data[name] for name in model.model_fields if name in data}
            for key in env_keys:
                if os.getenv(key):
                    values[key] = os.environ[key]
            return values

        return cls(
            system=SystemSettings(**section(SystemSettings, ("COMPONENT_MODE", "ENVIRONMENT"))),
            deployment=DeploymentSettings(**section(DeploymentSettings, ("CASHIER_SERVICE_PORT",))),
            logging=LoggingSettings(**section(LoggingSettings, ("LOG_LEVEL",))),
            database=DatabaseSettings(**section(DatabaseSettings, ("DB_HOST", "DB_PORT", "DB_NAME", "DB_USER"))),
            redis=RedisSettings(**section(RedisSettings, ("REDIS_HOST", "REDIS_PORT"))),
            rabbitmq=RabbitMQSettings(**section(RabbitMQSettings, ("RABBITMQ_HOST", "RABBITMQ_PORT", "RABBITMQ_USER"))),
            loyalty=LoyaltySettings(**section(LoyaltySettings, ("PENDING_DISCOUNT_TTL_SECONDS",))),
            check_amount=CheckAmountSettings(**section(CheckAmountSettings)),
            onec=OneCSettings(**section(OneCSettings, ("ONEC_BASE_URL", "ONEC_USER"))),
            reaper=ReaperSettings(**section(ReaperSettings)),
        )


def get_store_api_key(store_id: int) -> str | None:
    """
    Возвращает API-ключ агента магазина.
    Ключи хранятся только в окружении: STORE_<id>_API_KEY.
    """
    return os.getenv(f"STORE_{store_id}_API_KEY") or None


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
