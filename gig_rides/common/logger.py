# gig_rides/common/logger.py
"""
Модуль структурированного логирования.
Поддерживает JSON и цветной текстовый формат, ротацию файлов по размеру.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from gig_rides.common.constants import TypeMsg


DEFAULT_LOGGER_NAME = "gig_rides"

# Глобальный файловый хендлер (один для всех логгеров)
_GLOBAL_FILE_HANDLER: logging.Handler | None = None
# Глобальный хендлер ошибок
_GLOBAL_ERROR_HANDLER: logging.Handler | None = None

# Флаг инициализации (предотвращает повторную настройку)
_LOGGING_INITIALIZED: bool = False


# =============================================================================
# ФОРМАТТЕРЫ
# =============================================================================

class JsonFormatter(logging.Formatter):
    """Форматтер для JSON логов."""

    def format(self, record: logging.LogRecord) -> str:
        """Форматирует запись лога в JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Цветной форматтер для консоли (разработка)."""

    COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }
    RESET = "\033[0m"
    GRAY = "\033[90m"

    def format(self, record: logging.LogRecord) -> str:
        """Форматирует запись лога с цветом."""
        color = self.COLORS.get(record.levelname, self.GRAY)
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        caller_info = ""
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            caller_func = extra_data.get("caller_function")
            if caller_func:
                caller_info = (
                    f" {self.GRAY}[{extra_data.get('caller_module')}.{caller_func}() "
                    f"{extra_data.get('caller_file')}:{extra_data.get('caller_line')}]{self.RESET}"
                )

        message = f"{timestamp} {color}[{record.levelname}]{self.RESET}{caller_info} {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


class SizeRotatingFileHandler(RotatingFileHandler):
    """
    Хендлер для ротации логов.
    Пишет в фиксированный файл (например, gig_rides.log).
    При превышении размера переименовывает текущий файл, добавляя дату и время.
    """

    def __init__(self, log_dir: str, max_bytes: int, logger_name: str = "app", encoding: str = "utf-8"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.logger_name = logger_name

        super().__init__(
            filename=str(self.log_dir / f"{logger_name}.log"),
            maxBytes=max_bytes,
            backupCount=0,  # архивы именуются по времени, а не по номеру
            encoding=encoding,
        )

    def doRollover(self) -> None:
        """Переименовывает текущий файл в архивный и открывает новый."""
        if self.stream:
            self.stream.close()
            self.stream = None

        timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        archive_filename = self.log_dir / f"{self.logger_name}_{timestamp}.log"

        if os.path.exists(self.baseFilename):
            try:
                os.rename(self.baseFilename, archive_filename)
            except OSError:
                # Файл занят — продолжаем писать в тот же
                pass

        self.stream = self._open()


# =============================================================================
# ЛОГГЕР
# =============================================================================

_loggers: dict[str, logging.Logger] = {}


def _read_logging_settings() -> dict[str, Any]:
    """Читает параметры логирования из конфига (с запасными значениями)."""
    defaults: dict[str, Any] = {
        "level": "DEBUG",
        "format": "colored",
        "to_file": False,
        "file_path": "logs/app.log",
        "max_bytes": 10485760,
    }
    try:
        from gig_rides.config import settings
    except Exception:
        return defaults

    log_settings = getattr(settings, "logging", None)
    if log_settings is None:
        return defaults

    level = getattr(log_settings, "LOG_LEVEL", defaults["level"])
    log_format = getattr(log_settings, "LOG_FORMAT", defaults["format"])
    file_path = getattr(log_settings, "LOG_FILE_PATH", defaults["file_path"])
    max_bytes = getattr(log_settings, "LOG_MAX_BYTES", defaults["max_bytes"])
    to_file = getattr(log_settings, "LOG_TO_FILE", defaults["to_file"])

    # Защита от MagicMock в тестах
    return {
        "level": level if isinstance(level, str) else defaults["level"],
        "format": log_format if isinstance(log_format, str) else defaults["format"],
        "to_file": to_file if isinstance(to_file, bool) else defaults["to_file"],
        "file_path": file_path if isinstance(file_path, str) else defaults["file_path"],
        "max_bytes": max_bytes if isinstance(max_bytes, int) else defaults["max_bytes"],
    }


def setup_logging() -> None:
    """
    Инициализирует систему логирования.
    Может безопасно вызываться многократно (идемпотентна).
    """
    global _LOGGING_INITIALIZED

    if _LOGGING_INITIALIZED:
        return

    _LOGGING_INITIALIZED = True

    get_logger(DEFAULT_LOGGER_NAME)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return ColoredFormatter()


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """
    Возвращает настроенный логгер.
    Использует кэширование для избежания дублирования хендлеров.

    Args:
        name: Имя логгера

    Returns:
        Настроенный логгер
    """
    global _GLOBAL_FILE_HANDLER, _GLOBAL_ERROR_HANDLER

    if name in _loggers:
        return _loggers[name]

    cfg = _read_logging_settings()

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, cfg["level"].upper(), logging.DEBUG))

    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(_make_formatter(cfg["format"]))
    logger.addHandler(console_handler)

    if cfg["to_file"]:
        log_path = Path(cfg["file_path"])
        log_dir = log_path.parent

        if _GLOBAL_FILE_HANDLER is None:
            log_name = log_path.stem
            # Имя процесса (rider / driver) попадает в имя файла
            service_name = os.getenv("SERVICE_NAME")
            if service_name:
                log_name = f"{log_name}_{service_name}"

            _GLOBAL_FILE_HANDLER = SizeRotatingFileHandler(
                log_dir=str(log_dir),
                max_bytes=cfg["max_bytes"],
                logger_name=log_name,
            )
            _GLOBAL_FILE_HANDLER.setFormatter(_make_formatter(cfg["format"]))
        logger.addHandler(_GLOBAL_FILE_HANDLER)

        if _GLOBAL_ERROR_HANDLER is None:
            _GLOBAL_ERROR_HANDLER = SizeRotatingFileHandler(
                log_dir=str(log_dir),
                max_bytes=cfg["max_bytes"],
                logger_name="error",
            )
            _GLOBAL_ERROR_HANDLER.setLevel(logging.ERROR)
            _GLOBAL_ERROR_HANDLER.setFormatter(_make_formatter(cfg["format"]))
        logger.addHandler(_GLOBAL_ERROR_HANDLER)

    logger.propagate = False

    _loggers[name] = logger
    return logger


# =============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ ЛОГИРОВАНИЯ
# =============================================================================

def _get_caller_info() -> dict[str, Any]:
    """
    Получает информацию о вызывающей функции.

    Returns:
        Словарь с ключами caller_function, caller_module, caller_file, caller_line
    """
    frame = inspect.currentframe()
    try:
        # [0] _get_caller_info, [1] log_*, [2] реальный вызывающий код
        caller_frame = frame.f_back.f_back if frame and frame.f_back else None
        if caller_frame is None:
            return {}

        caller_module = inspect.getmodule(caller_frame)
        filename = caller_frame.f_code.co_filename

        return {
            "caller_function": caller_frame.f_code.co_name,
            "caller_module": caller_module.__name__ if caller_module else "unknown",
            "caller_file": Path(filename).name if filename else "unknown",
            "caller_line": caller_frame.f_lineno,
        }
    except Exception:
        return {}
    finally:
        # Освобождаем ссылки на фреймы
        del frame


async def log_info(
    message: str,
    *,
    type_msg: TypeMsg = TypeMsg.INFO,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Асинхронная функция логирования.

    Args:
        message: Сообщение для логирования
        type_msg: Уровень сообщения
        logger_name: Имя логгера
        extra: Дополнительные данные
    """
    logger = get_logger(logger_name)
    record_extra = {"extra_data": {**_get_caller_info(), **(extra or {})}}

    match type_msg:
        case TypeMsg.DEBUG:
            logger.debug(message, extra=record_extra)
        case TypeMsg.WARNING:
            logger.warning(message, extra=record_extra)
        case TypeMsg.ERROR:
            logger.error(message, extra=record_extra)
        case TypeMsg.CRITICAL:
            logger.critical(message, extra=record_extra)
        case _:
            logger.info(message, extra=record_extra)


async def log_debug(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование DEBUG уровня."""
    await log_info(message, type_msg=TypeMsg.DEBUG, logger_name=logger_name, extra=extra)


async def log_warning(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
) -> None:
    """Логирование WARNING уровня."""
    await log_info(message, type_msg=TypeMsg.WARNING, logger_name=logger_name, extra=extra)


async def log_error(
    message: str,
    logger_name: str = DEFAULT_LOGGER_NAME,
    extra: dict[str, Any] | None = None,
    exc_info: bool = False,
) -> None:
    """
    Логирование ERROR уровня.

    Args:
        message: Сообщение об ошибке
        logger_name: Имя логгера
        extra: Дополнительные данные
        exc_info: Включать ли трейсбек исключения
    """
    logger = get_logger(logger_name)
    record_extra = {"extra_data": {**_get_caller_info(), **(extra or {})}}
    logger.error(message, extra=record_extra, exc_info=exc_info)
