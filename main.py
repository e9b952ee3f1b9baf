#!/usr/bin/env python3
# main.py
"""
Главная точка входа gig_rides.
Запускает локальную симуляцию протокола матчинга на внутрипроцессной
релейной сети или unit тесты.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from gig_rides.config import settings
from gig_rides.common.logger import setup_logging, log_info, log_error
from gig_rides.common.constants import TypeMsg
from gig_rides.core.geo import encode
from gig_rides.core.matching import MatchingCallbacks, RideMatchingService, has_active_session
from gig_rides.infra.memory_relay import InMemoryRelay, InMemoryRelayClient
from gig_rides.shared.models import Location, RideRequest


# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []

VALID_MODES = ("simulate", "expire", "tests")

# Точка старта симуляции (центр Варшавы) и число водителей
SIM_LATITUDE = 52.2297
SIM_LONGITUDE = 21.0122
SIM_DRIVERS = 3


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


def get_project_root():
    """Возвращает корневую директорию проекта."""
    from pathlib import Path
    return Path(__file__).parent


async def run_tests() -> bool:
    """
    Запускает все unit тесты.

    Returns:
        True если все тесты прошли, False иначе
    """
    import subprocess

    await log_info("Запуск unit тестов...", type_msg=TypeMsg.INFO)

    try:
        result = subprocess.run(
            [sys.executable, "-m", "pytest", "tests/", "-v", "--tb=short"],
            cwd=str(get_project_root()),
            capture_output=True,
            text=True,
            timeout=300,
        )
        if result.returncode == 0:
            await log_info("✅ Все тесты прошли успешно", type_msg=TypeMsg.INFO)
            return True
        await log_error(f"❌ Тесты завершились с ошибками:\n{result.stdout}\n{result.stderr}")
        return False

    except subprocess.TimeoutExpired:
        await log_error("❌ Превышено время ожидания выполнения тестов (5 мин)")
        return False


async def run_simulation() -> None:
    """
    Один пассажир и несколько водителей в одной ячейке.

    Все водители соглашаются, пассажир подтверждает первого,
    остальные видят, что запрос ушёл к другому.
    """
    network = InMemoryRelay(relay_urls=settings.relay.RELAY_URLS)
    cell = encode(SIM_LATITUDE, SIM_LONGITUDE, settings.matching.GEOHASH_PRECISION)
    matched = asyncio.Event()

    drivers: list[RideMatchingService] = []
    for index in range(SIM_DRIVERS):
        client = InMemoryRelayClient(network)

        async def on_ride_request(request: RideRequest, client=client) -> None:
            await log_info(f"Водитель {client.pubkey[:8]}: новый запрос {request.id}", type_msg=TypeMsg.INFO)
            service = next(d for d in drivers if d.pubkey == client.pubkey)
            await service.accept_request(request.pubkey, request.id)

        async def on_ride_request_gone(request_id: str, winner: str | None, client=client) -> None:
            outcome = "выбран" if winner == client.pubkey else "не выбран"
            await log_info(f"Водитель {client.pubkey[:8]}: запрос {request_id} закрыт, {outcome}", type_msg=TypeMsg.INFO)

        driver = RideMatchingService(client, MatchingCallbacks(
            on_ride_request=on_ride_request,
            on_ride_request_gone=on_ride_request_gone,
        ))
        offset = 0.001 * (index + 1)
        await driver.start_as_driver(cell, Location(latitude=SIM_LATITUDE + offset, longitude=SIM_LONGITUDE))
        drivers.append(driver)

    rider_client = InMemoryRelayClient(network)
    rider: RideMatchingService | None = None

    async def on_driver_accepted(driver_pubkey: str, request_id: str) -> None:
        if matched.is_set():
            await log_info(f"Пассажир: согласие {driver_pubkey[:8]} запоздало", type_msg=TypeMsg.DEBUG)
            return
        matched.set()
        await rider.confirm_match(rider.current_request, driver_pubkey)

    async def on_driver_count(count: int) -> None:
        await log_info(f"Пассажир: водителей рядом {count}", type_msg=TypeMsg.INFO)

    async def on_relay_status(connected: int, total: int) -> None:
        await log_info(f"Пассажир: релеи {connected}/{total}", type_msg=TypeMsg.DEBUG)

    rider = RideMatchingService(rider_client, MatchingCallbacks(
        on_driver_accepted=on_driver_accepted,
        on_driver_count=on_driver_count,
        on_relay_status=on_relay_status,
    ))

    try:
        await rider.start_as_rider(cell, RideRequest(
            geohash=cell,
            start_location=Location(latitude=SIM_LATITUDE, longitude=SIM_LONGITUDE),
        ))

        active = await has_active_session(rider_client, timeout=1.0)
        await log_info(f"Активная сессия пассажира: {active}", type_msg=TypeMsg.DEBUG)

        waiter = asyncio.create_task(matched.wait())
        _running_tasks.append(waiter)
        await asyncio.wait_for(waiter, timeout=10)

        await log_info(f"✅ Симуляция завершена: событий в сети {len(network.history)}", type_msg=TypeMsg.INFO)

    except (asyncio.CancelledError, asyncio.TimeoutError):
        await log_info("Симуляция прервана", type_msg=TypeMsg.WARNING)
    finally:
        await rider.stop()
        for driver in drivers:
            await driver.stop()


async def run_expire_demo() -> None:
    """
    Пассажир без водителей: запрос живёт на heartbeat'ах до сигнала остановки.
    Наблюдатель видит только появление запроса, heartbeat для него незаметен.
    """
    network = InMemoryRelay(relay_urls=settings.relay.RELAY_URLS)
    cell = encode(SIM_LATITUDE, SIM_LONGITUDE, settings.matching.GEOHASH_PRECISION)

    async def on_ride_request(request: RideRequest) -> None:
        await log_info(f"Наблюдатель: запрос {request.id} появился", type_msg=TypeMsg.INFO)

    async def on_ride_request_gone(request_id: str, winner: str | None) -> None:
        await log_info(f"Наблюдатель: запрос {request_id} исчез", type_msg=TypeMsg.INFO)

    observer = RideMatchingService(InMemoryRelayClient(network), MatchingCallbacks(
        on_ride_request=on_ride_request,
        on_ride_request_gone=on_ride_request_gone,
    ))
    rider = RideMatchingService(InMemoryRelayClient(network))

    await observer.start_as_driver(cell, Location(latitude=SIM_LATITUDE, longitude=SIM_LONGITUDE))
    await rider.start_as_rider(cell, RideRequest(geohash=cell))

    try:
        if _shutdown_event:
            await _shutdown_event.wait()
    except asyncio.CancelledError:
        await log_info("Демо: получен сигнал остановки", type_msg=TypeMsg.DEBUG)
    finally:
        await rider.stop()
        await observer.stop()


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (simulate, expire, tests).
              Если None, берётся COMPONENT_MODE из настроек.
    """
    setup_logging()
    setup_signal_handlers()

    if mode is None:
        mode = settings.system.COMPONENT_MODE
        if mode not in VALID_MODES:
            await log_error(f"Неизвестный COMPONENT_MODE '{mode}', используется simulate")
            mode = "simulate"

    await log_info(
        f"🚀 {settings.system.PROJECT_NAME} v{settings.system.VERSION}, режим '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    if mode == "tests":
        ok = await run_tests()
        if not ok:
            sys.exit(1)
    elif mode == "expire":
        await run_expire_demo()
    else:
        await run_simulation()


def print_usage() -> None:
    """Выводит справку по использованию."""
    print(f"""
gig_rides v{settings.system.VERSION} — подбор поездок без центрального сервера

Использование:
    python main.py [mode]

Режимы:
    simulate               — пассажир и {SIM_DRIVERS} водителя на локальной сети релеев
    expire                 — пассажир с heartbeat'ом и наблюдатель (до Ctrl+C)
    tests                  — запустить unit тесты

Примеры:
    python main.py                       # Режим из COMPONENT_MODE
    python main.py simulate              # Симуляция матчинга
""")


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
