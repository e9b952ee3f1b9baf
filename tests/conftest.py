# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from gig_rides.config.loader import MatchingSettings  # noqa: E402
from gig_rides.core.matching.service import MatchingCallbacks, RideMatchingService  # noqa: E402
from gig_rides.infra.memory_relay import InMemoryRelay, InMemoryRelayClient  # noqa: E402
from gig_rides.infra.relay_client import RelayEvent, build_tags  # noqa: E402
from gig_rides.shared.models import Location, RideRequest  # noqa: E402


START_TIME = 1_700_000_000.0

# Ячейка для сценариев (точность 5)
TEST_CELL = "w21z4"


# =============================================================================
# УПРАВЛЯЕМОЕ ВРЕМЯ
# =============================================================================

async def settle(rounds: int = 20) -> None:
    """Даёт отработать всем готовым задачам цикла событий."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """
    Часы для тестов: время двигается только через advance() / jump().

    sleep() ждёт, пока часы не дойдут до дедлайна, поэтому таймеры
    сервиса срабатывают строго в порядке своих дедлайнов.
    """

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start
        self._sleepers: list[tuple[float, asyncio.Future]] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + delay, future))
        await future

    def jump(self, seconds: float) -> None:
        """Сдвигает время без пробуждения спящих (процесс был приостановлен)."""
        self.now += seconds

    @property
    def pending(self) -> int:
        return sum(1 for _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        """Сдвигает время, по очереди пробуждая всех, чей дедлайн наступил."""
        target = self.now + seconds
        while True:
            await settle()
            self._sleepers = [item for item in self._sleepers if not item[1].done()]
            due = [item for item in self._sleepers if item[0] <= target]
            if not due:
                break
            deadline, future = min(due, key=lambda item: item[0])
            self.now = max(self.now, deadline)
            self._sleepers.remove((deadline, future))
            future.set_result(None)
        self.now = target
        await settle()


@pytest.fixture
def clock() -> FakeClock:
    """Управляемые часы."""
    return FakeClock()


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "gig_rides_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "RUN_DEV_MODE": False,
        "COMPONENT_MODE": "simulate",
        "LOG_LEVEL": "DEBUG",
        "LOG_TO_FILE": False,
        "LOG_FILE_PATH": "logs/test.log",
        "LOG_FORMAT": "json",
        "LOG_MAX_BYTES": 1024,
        "RELAY_URLS": ["wss://relay.test", "wss://relay2.test"],
        "REQUEST_TTL_SECS": 30,
        "HEARTBEAT_INTERVAL_SECS": 20,
        "MIN_VIABLE_TTL_SECS": 5,
        "LOOKBACK_SECS": 120,
        "GEOHASH_PRECISION": 5,
        "EVENT_KIND": 30078,
        "SESSION_CHECK_TIMEOUT_SECS": 1.5,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


@pytest.fixture
def matching_settings() -> MatchingSettings:
    """Параметры протокола по умолчанию: TTL 60, heartbeat 45, look-back 300."""
    return MatchingSettings()


# =============================================================================
# ФИКСТУРЫ РЕЛЕЕВ
# =============================================================================

@pytest.fixture
def network(clock: FakeClock) -> InMemoryRelay:
    """Внутрипроцессная сеть релеев на управляемых часах."""
    return InMemoryRelay(relay_urls=["wss://relay-a.test", "wss://relay-b.test"], clock=clock)


@pytest.fixture
def make_callbacks():
    """Фабрика набора колбэков-моков."""
    def _make() -> MatchingCallbacks:
        return MatchingCallbacks(
            on_relay_status=AsyncMock(),
            on_ride_request=AsyncMock(),
            on_ride_request_gone=AsyncMock(),
            on_driver_accepted=AsyncMock(),
            on_driver_count=AsyncMock(),
            on_own_request_expired=AsyncMock(),
            on_own_avail_expired=AsyncMock(),
        )
    return _make


@pytest.fixture
def make_service(network: InMemoryRelay, clock: FakeClock, matching_settings: MatchingSettings, make_callbacks):
    """Фабрика сервисов матчинга, подключённых к общей сети."""
    def _make(callbacks: MatchingCallbacks | None = None, pubkey: str | None = None) -> RideMatchingService:
        return RideMatchingService(
            InMemoryRelayClient(network, pubkey=pubkey),
            callbacks if callbacks is not None else make_callbacks(),
            matching_settings=matching_settings,
            clock=clock,
            sleep=clock.sleep,
        )
    return _make


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

@pytest.fixture
def sample_location() -> Location:
    """Точка в центре тестовой ячейки."""
    return Location(latitude=52.2297, longitude=21.0122)


@pytest.fixture
def ride_request() -> RideRequest:
    """Открытый запрос r1."""
    return RideRequest(id="r1", geohash=TEST_CELL)


def _make_event(
    content: str,
    *,
    pubkey: str = "a" * 64,
    d: str = "r1",
    topic: str = "ride-request",
    cell: str = TEST_CELL,
    expiration: int | None = None,
    created_at: int = int(START_TIME),
) -> RelayEvent:
    """Собирает событие релея для тестов классификатора."""
    tags = [["d", d], ["g", cell], ["t", topic]]
    if expiration is not None:
        tags = [["d", d], *build_tags(cell, topic, expiration)]
    return RelayEvent(
        id=f"ev-{d}-{created_at}",
        pubkey=pubkey,
        created_at=created_at,
        tags=tags,
        content=content,
    )


@pytest.fixture
def event_factory():
    """Фабрика событий релея для тестов классификатора."""
    return _make_event


@pytest.fixture
def cell() -> str:
    """Ячейка тестовых сценариев."""
    return TEST_CELL
