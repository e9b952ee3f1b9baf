# gig_rides/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины — config/config.json.
Переопределения берутся из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации (можно переопределить через GIG_RIDES_CONFIG)."""
    override = os.getenv("GIG_RIDES_CONFIG")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "gig_rides"
    VERSION: str = "0.3.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    RUN_DEV_MODE: bool = True
    COMPONENT_MODE: str = "simulate"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760

    @field_validator("LOG_FORMAT")
    @classmethod
    def check_format(cls, v: str) -> str:
        """Допустимы только json и colored."""
        if v not in ("json", "colored"):
            raise ValueError(f"Неизвестный формат логов: {v}")
        return v


class RelaySettings(BaseModel):
    """Настройки подключения к релеям."""
    RELAY_URLS: list[str] = Field(default_factory=lambda: [
        "wss://nos.lol",
        "wss://nostr.mom",
        "wss://relay.damus.io",
    ])

    @field_validator("RELAY_URLS", mode="before")
    @classmethod
    def split_urls(cls, v: Any) -> Any:
        """Разрешает задавать список релеев строкой через запятую (из env)."""
        if isinstance(v, str):
            return [url.strip() for url in v.split(",") if url.strip()]
        return v


class MatchingSettings(BaseModel):
    """Параметры протокола матчинга."""
    REQUEST_TTL_SECS: int = 60
    HEARTBEAT_INTERVAL_SECS: int = 45
    MIN_VIABLE_TTL_SECS: int = 15
    LOOKBACK_SECS: int = 300
    GEOHASH_PRECISION: int = 6
    EVENT_KIND: int = 30078
    SESSION_CHECK_TIMEOUT_SECS: float = 3.0

    @field_validator("GEOHASH_PRECISION")
    @classmethod
    def check_precision(cls, v: int) -> int:
        """Точность geohash от 1 до 12 символов."""
        if not 1 <= v <= 12:
            raise ValueError("GEOHASH_PRECISION должна быть в диапазоне 1..12")
        return v

    @model_validator(mode="after")
    def check_heartbeat(self) -> "MatchingSettings":
        """Heartbeat обязан срабатывать раньше, чем истечёт TTL."""
        if self.HEARTBEAT_INTERVAL_SECS >= self.REQUEST_TTL_SECS:
            raise ValueError("HEARTBEAT_INTERVAL_SECS должен быть меньше REQUEST_TTL_SECS")
        if self.MIN_VIABLE_TTL_SECS >= self.REQUEST_TTL_SECS:
            raise ValueError("MIN_VIABLE_TTL_SECS должен быть меньше REQUEST_TTL_SECS")
        return self

    @property
    def heartbeat_lead_secs(self) -> int:
        """За сколько секунд до истечения срабатывает heartbeat."""
        return self.REQUEST_TTL_SECS - self.HEARTBEAT_INTERVAL_SECS


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Отдельные значения переопределяются из переменных окружения.
        """
        config_data = load_config_json()

        # Фильтруем комментарии (ключи, начинающиеся с _comment_)
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "gig_rides"),
                VERSION=data.get("VERSION", "0.3.0"),
                DEBUG=data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                RUN_DEV_MODE=data.get("RUN_DEV_MODE", True),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "simulate")),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=os.getenv("LOG_LEVEL", data.get("LOG_LEVEL", "DEBUG")),
                LOG_TO_FILE=data.get("LOG_TO_FILE", False),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=data.get("LOG_FORMAT", "colored"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
            ),
            relay=RelaySettings(
                RELAY_URLS=os.getenv("RELAY_URLS", data.get("RELAY_URLS", RelaySettings().RELAY_URLS)),
            ),
            matching=MatchingSettings(
                REQUEST_TTL_SECS=data.get("REQUEST_TTL_SECS", 60),
                HEARTBEAT_INTERVAL_SECS=data.get("HEARTBEAT_INTERVAL_SECS", 45),
                MIN_VIABLE_TTL_SECS=data.get("MIN_VIABLE_TTL_SECS", 15),
                LOOKBACK_SECS=data.get("LOOKBACK_SECS", 300),
                GEOHASH_PRECISION=data.get("GEOHASH_PRECISION", 6),
                EVENT_KIND=data.get("EVENT_KIND", 30078),
                SESSION_CHECK_TIMEOUT_SECS=data.get("SESSION_CHECK_TIMEOUT_SECS", 3.0),
            ),
        )


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
