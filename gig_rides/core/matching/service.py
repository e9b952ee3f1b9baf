# gig_rides/core/matching/service.py
"""
Сервис матчинга поездок поверх релейной сети.

Один экземпляр сервиса обслуживает одну сессию в одной роли:
- пассажир публикует запрос, поддерживает его heartbeat'ом, принимает
  согласия водителей и единолично фиксирует исход (taken / cancelled);
- водитель публикует доступность, наблюдает запросы в своей ячейке
  и отправляет согласие личным сообщением.

Живость выражается только через TTL событий: процесс, переставший
слать heartbeat, для всех наблюдателей выглядит как отменивший запрос.
Локальные таймеры истечения дублируют TTL релеев, поэтому «тишина после
дедлайна» превращается в gone независимо от поведения релеев.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from gig_rides.common.constants import DRIVER_AVAIL_KEY, EventTopic, TagName, TypeMsg
from gig_rides.common.logger import log_debug, log_error, log_info, log_warning
from gig_rides.config import settings
from gig_rides.config.loader import MatchingSettings
from gig_rides.core.matching.classifier import (
    AvailabilityChange,
    IgnoreReason,
    classify_availability_event,
    classify_request_event,
)
from gig_rides.core.matching.exceptions import (
    InvalidRequestError,
    InvalidRoleError,
    NoActiveRequestError,
    SessionAlreadyActiveError,
)
from gig_rides.core.matching.state_machine import RideRequestStateMachine
from gig_rides.infra.relay_client import RelayClient, RelayEvent, RelayFilter, build_tags
from gig_rides.shared.models.enums import GigRole, RequestPhase, RequestTransition, RideStatus
from gig_rides.shared.models.ride import AcceptDM, DriverAvailability, Location, RideRequest

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Событие живо до expiration включительно: таймеры срабатывают строго после
EXPIRY_GRACE_SECS = 0.5


@dataclass
class MatchingCallbacks:
    """
    Обработчики событий сервиса. Любой может быть None.

    Исключение внутри обработчика логируется и не ломает обработку
    следующих событий.
    """
    on_relay_status: Callable[[int, int], Awaitable[None]] | None = None
    on_ride_request: Callable[[RideRequest], Awaitable[None]] | None = None
    on_ride_request_gone: Callable[[str, str | None], Awaitable[None]] | None = None
    on_driver_accepted: Callable[[str, str], Awaitable[None]] | None = None
    on_driver_count: Callable[[int], Awaitable[None]] | None = None
    on_own_request_expired: Callable[[], Awaitable[None]] | None = None
    on_own_avail_expired: Callable[[], Awaitable[None]] | None = None


class RideMatchingService:
    """Протокол матчинга для одной сессии пассажира или водителя."""

    def __init__(
        self,
        relay: RelayClient,
        callbacks: MatchingCallbacks | None = None,
        matching_settings: MatchingSettings | None = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._relay = relay
        self._callbacks = callbacks or MatchingCallbacks()
        self._settings = matching_settings or settings.matching
        self._clock = clock
        self._sleep = sleep

        self._running = False
        self._role: GigRole | None = None
        self._cell: str | None = None

        # Пассажир
        self._request: RideRequest | None = None
        self._state_machine: RideRequestStateMachine | None = None

        # Водитель
        self._availability: DriverAvailability | None = None

        self._known_requests: set[str] = set()
        self._known_drivers: set[str] = set()
        self._expiration_timers: dict[str, asyncio.Task] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._own_expiration: int | None = None
        # Идёт публикация исхода: heartbeat и эхо не трогают запрос
        self._outcome_in_flight = False

    # =========================================================================
    # СОСТОЯНИЕ
    # =========================================================================

    @property
    def pubkey(self) -> str:
        return self._relay.pubkey

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def role(self) -> GigRole | None:
        return self._role

    @property
    def cell(self) -> str | None:
        return self._cell

    @property
    def current_request(self) -> RideRequest | None:
        return self._request

    @property
    def request_phase(self) -> RequestPhase:
        if self._state_machine is None:
            return RequestPhase.IDLE
        return self._state_machine.phase

    @property
    def driver_count(self) -> int:
        return len(self._known_drivers)

    @property
    def known_request_ids(self) -> frozenset[str]:
        return frozenset(self._known_requests)

    @property
    def own_expiration(self) -> int | None:
        """Срок жизни собственного опубликованного события (unix-секунды)."""
        return self._own_expiration

    # =========================================================================
    # ПАССАЖИР
    # =========================================================================

    async def start_as_rider(self, cell: str, request: RideRequest) -> RideRequest:
        """
        Публикует запрос на поездку в ячейке и начинает сессию пассажира.

        Args:
            cell: Geohash ячейки
            request: Запрос в статусе open

        Returns:
            Опубликованный запрос (pubkey и geohash проставлены)

        Raises:
            SessionAlreadyActiveError: Сессия уже запущена
            InvalidRequestError: Запрос не в статусе open
        """
        self._ensure_not_running()
        if request.status is not RideStatus.OPEN:
            raise InvalidRequestError(
                f"Запрос {request.id} в статусе {request.status}, ожидается open"
            )

        self._role = GigRole.RIDER
        self._cell = cell
        self._request = request.model_copy(update={"pubkey": self.pubkey, "geohash": cell})
        self._state_machine = RideRequestStateMachine(self._request.id)
        self._state_machine.transition(RequestPhase.OPEN)
        self._running = True

        self._relay.on_relay_count_change(self._on_relay_count)
        self._relay.connect_in_background()

        # Согласия могут прийти сразу после публикации, подписка нужна до неё
        await self._relay.subscribe_dms(self._on_direct_message)
        await self._relay.subscribe(
            f"drivers-{cell}",
            RelayFilter(
                kinds=[self._settings.EVENT_KIND],
                g=[cell],
                t=[EventTopic.DRIVER_AVAIL.value],
                since=int(self._clock()) - self._settings.REQUEST_TTL_SECS,
            ),
            self._on_availability_event,
        )
        await self._relay.subscribe(
            f"own-{self._request.id}",
            RelayFilter(
                kinds=[self._settings.EVENT_KIND],
                authors=[self.pubkey],
                d=[self._request.id],
            ),
            self._on_own_echo,
        )

        await self._publish_own()

        await log_info(
            f"Запрос {self._request.id} опубликован в ячейке {cell}",
            type_msg=TypeMsg.INFO,
            extra={"role": str(self._role), "pubkey": self.pubkey[:8]},
        )
        return self._request

    async def refresh_request(self, request: RideRequest | None = None) -> str:
        """
        Переопубликовывает текущий запрос с новым TTL.

        Вызывается heartbeat'ом автоматически; ручной вызов тоже допустим.

        Returns:
            Идентификатор опубликованного события
        """
        current = self._require_rider_request(request)
        if self.request_phase is not RequestPhase.OPEN:
            raise NoActiveRequestError(
                f"Запрос {current.id} не активен (фаза {self.request_phase})"
            )
        return await self._publish_own()

    async def confirm_match(self, request: RideRequest, driver_pubkey: str) -> RideRequest:
        """
        Фиксирует водителя: публикует запрос со статусом taken.

        Единственная точка сериализации протокола: исход поездки
        публикует только пассажир.

        Raises:
            NoActiveRequestError: Нет сессии пассажира
            InvalidRequestError: Чужой id запроса или пустой pubkey водителя
            InvalidTransitionError: Запрос уже завершён
        """
        current = self._require_rider_request(request)
        if not driver_pubkey:
            raise InvalidRequestError("Не указан pubkey водителя")

        updated = await self._publish_outcome(
            RequestPhase.TAKEN, current.with_status(RideStatus.TAKEN, driver_pubkey)
        )

        await log_info(
            f"Запрос {current.id}: водитель {driver_pubkey[:8]} подтверждён",
            type_msg=TypeMsg.INFO,
        )
        return updated

    async def cancel_request(self, request: RideRequest) -> RideRequest:
        """
        Отменяет запрос: публикует его со статусом cancelled.

        Raises:
            NoActiveRequestError: Нет сессии пассажира
            InvalidRequestError: Чужой id запроса
            InvalidTransitionError: Запрос уже завершён
        """
        current = self._require_rider_request(request)

        updated = await self._publish_outcome(
            RequestPhase.CANCELLED, current.with_status(RideStatus.CANCELLED)
        )

        await log_info(f"Запрос {current.id} отменён", type_msg=TypeMsg.INFO)
        return updated

    async def _publish_outcome(self, phase: RequestPhase, updated: RideRequest) -> RideRequest:
        """
        Публикует исход запроса.

        Локальное состояние меняется только после успешной публикации:
        при сбое транспорта запрос остаётся открытым, heartbeat
        возобновляется, и вызывающий может повторить операцию.
        """
        self._state_machine.ensure_can_transition(phase)
        await self._cancel_heartbeat()

        self._outcome_in_flight = True
        try:
            await self._publish_request(request=updated)
        except Exception as e:
            await log_error(f"Исход запроса {updated.id} ({phase}) не опубликован: {e}")
            if self._running and self._own_expiration is not None:
                await self._schedule_heartbeat(self._own_expiration)
            raise
        finally:
            self._outcome_in_flight = False

        if self._state_machine is not None:
            # Сессию могли остановить, пока шла публикация
            self._state_machine.transition(phase)
            self._request = updated
        await self._cancel_heartbeat()
        return updated

    def _require_rider_request(self, request: RideRequest | None) -> RideRequest:
        if self._role is not GigRole.RIDER or self._request is None:
            raise NoActiveRequestError("Нет активной сессии пассажира")
        if request is not None and request.id != self._request.id:
            raise InvalidRequestError(
                f"Запрос {request.id} не является текущим ({self._request.id})"
            )
        return self._request

    async def _on_direct_message(self, from_pubkey: str, payload: Any) -> None:
        if self._role is not GigRole.RIDER or self._request is None:
            return

        try:
            accept = AcceptDM.model_validate(payload)
        except ValidationError as e:
            await log_warning(
                f"Некорректное личное сообщение от {from_pubkey[:8]}: {e.error_count()} ошибок"
            )
            return

        if accept.request_id != self._request.id:
            await log_debug(f"Согласие на чужой запрос {accept.request_id} отброшено")
            return
        if self.request_phase is not RequestPhase.OPEN:
            await log_debug(f"Согласие на завершённый запрос {accept.request_id} отброшено")
            return

        # Водитель определяется отправителем сообщения, а не полем payload
        await self._notify("on_driver_accepted", from_pubkey, accept.request_id)

    async def _on_availability_event(self, event: RelayEvent) -> None:
        if not self._running:
            return

        result = classify_availability_event(event, self._known_drivers, self._clock())

        match result.change:
            case AvailabilityChange.ADDED:
                self._known_drivers.add(result.pubkey)
                if result.expiration is not None:
                    self._arm_timer(f"drv:{result.pubkey}", result.expiration,
                                    self._expire_driver, result.pubkey)
                await self._notify("on_driver_count", len(self._known_drivers))
            case AvailabilityChange.REFRESHED:
                if result.expiration is not None:
                    self._arm_timer(f"drv:{result.pubkey}", result.expiration,
                                    self._expire_driver, result.pubkey)
            case AvailabilityChange.REMOVED:
                self._known_drivers.discard(result.pubkey)
                self._cancel_timer(f"drv:{result.pubkey}")
                await self._notify("on_driver_count", len(self._known_drivers))
            case _:
                pass

    async def _expire_driver(self, pubkey: str) -> None:
        if pubkey not in self._known_drivers:
            return
        self._known_drivers.discard(pubkey)
        await log_debug(f"Водитель {pubkey[:8]} пропал по таймеру")
        await self._notify("on_driver_count", len(self._known_drivers))

    # =========================================================================
    # ВОДИТЕЛЬ
    # =========================================================================

    async def start_as_driver(self, cell: str, location: Location) -> DriverAvailability:
        """
        Публикует доступность водителя и подписывается на запросы в ячейке.

        История запросов ограничена окном LOOKBACK_SECS.

        Raises:
            SessionAlreadyActiveError: Сессия уже запущена
        """
        self._ensure_not_running()

        self._role = GigRole.DRIVER
        self._cell = cell
        self._availability = DriverAvailability(pubkey=self.pubkey, geohash=cell, location=location)
        self._running = True

        self._relay.on_relay_count_change(self._on_relay_count)
        self._relay.connect_in_background()

        await self._publish_own()

        await self._relay.subscribe(
            "own-avail",
            RelayFilter(
                kinds=[self._settings.EVENT_KIND],
                authors=[self.pubkey],
                d=[DRIVER_AVAIL_KEY],
            ),
            self._on_own_echo,
        )
        await self._relay.subscribe(
            f"requests-{cell}",
            RelayFilter(
                kinds=[self._settings.EVENT_KIND],
                g=[cell],
                t=[EventTopic.RIDE_REQUEST.value],
                since=int(self._clock()) - self._settings.LOOKBACK_SECS,
            ),
            self._on_request_event,
        )

        await log_info(
            f"Водитель {self.pubkey[:8]} доступен в ячейке {cell}",
            type_msg=TypeMsg.INFO,
            extra={"role": str(self._role)},
        )
        return self._availability

    async def accept_request(self, rider_pubkey: str, request_id: str) -> bool:
        """
        Отправляет пассажиру согласие на запрос.

        Returns:
            False только при сбое доставки; повтор решает вызывающий

        Raises:
            InvalidRoleError: Сервис запущен не в роли водителя
            InvalidRequestError: Пустой идентификатор запроса
        """
        if self._role is not GigRole.DRIVER:
            raise InvalidRoleError("Согласие на запрос может отправить только водитель")

        try:
            accept = AcceptDM(request_id=request_id, driver_pubkey=self.pubkey)
        except ValidationError as e:
            raise InvalidRequestError(f"Некорректный идентификатор запроса: {request_id!r}") from e

        try:
            await self._relay.send_dm(rider_pubkey, accept.to_payload())
        except Exception as e:
            await log_error(
                f"Не удалось отправить согласие на запрос {request_id}: {e}",
                extra={"rider": rider_pubkey[:8]},
            )
            return False

        await log_info(f"Согласие на запрос {request_id} отправлено", type_msg=TypeMsg.INFO)
        return True

    async def _on_request_event(self, event: RelayEvent) -> None:
        if not self._running:
            return

        result = classify_request_event(event, self._known_requests, self._clock())

        match result.transition:
            case RequestTransition.APPEARED:
                self._known_requests.add(result.request_id)
                if result.expiration is not None:
                    self._arm_timer(f"req:{result.request_id}", result.expiration,
                                    self._expire_request, result.request_id)
                await self._notify("on_ride_request", result.request)
            case RequestTransition.HEARTBEAT:
                self._arm_timer(f"req:{result.request_id}", result.expiration,
                                self._expire_request, result.request_id)
            case RequestTransition.GONE:
                self._known_requests.discard(result.request_id)
                self._cancel_timer(f"req:{result.request_id}")
                await self._notify("on_ride_request_gone", result.request_id,
                                   result.matched_driver_pubkey)
            case _:
                if result.reason == IgnoreReason.MALFORMED:
                    await log_warning(
                        f"Некорректный запрос от {event.pubkey[:8]} отброшен: {result.error}"
                    )
                elif result.reason != IgnoreReason.EMPTY:
                    await log_debug(f"Событие {event.id[:8]} проигнорировано: {result.reason}")

    async def _expire_request(self, request_id: str) -> None:
        if request_id not in self._known_requests:
            return
        self._known_requests.discard(request_id)
        await log_debug(f"Запрос {request_id} истёк по локальному таймеру")
        await self._notify("on_ride_request_gone", request_id, None)

    # =========================================================================
    # HEARTBEAT И СОБСТВЕННЫЕ СОБЫТИЯ
    # =========================================================================

    async def _publish_request(
        self,
        expiration: int | None = None,
        request: RideRequest | None = None,
    ) -> str:
        request = request or self._request
        if expiration is None:
            expiration = int(self._clock()) + self._settings.REQUEST_TTL_SECS
        tags = build_tags(self._cell, EventTopic.RIDE_REQUEST.value, expiration)
        event_id = await self._relay.publish_replaceable(request.id, tags, request.to_content())
        await log_debug(f"Запрос {request.id} ({request.status}) до {expiration}")
        return event_id

    async def _publish_availability(self, expiration: int) -> str:
        tags = build_tags(self._cell, EventTopic.DRIVER_AVAIL.value, expiration)
        return await self._relay.publish_replaceable(
            DRIVER_AVAIL_KEY, tags, self._availability.to_content()
        )

    async def _publish_own(self) -> str:
        """Публикует своё событие с новым TTL и перепланирует heartbeat."""
        expiration = int(self._clock()) + self._settings.REQUEST_TTL_SECS

        if self._role is GigRole.RIDER:
            event_id = await self._publish_request(expiration)
        else:
            event_id = await self._publish_availability(expiration)

        if not self._running:
            return event_id
        self._own_expiration = expiration
        if self._role is GigRole.RIDER and self.request_phase is not RequestPhase.OPEN:
            # Исход зафиксирован, пока шла публикация
            return event_id

        await self._schedule_heartbeat(expiration)
        return event_id

    async def _schedule_heartbeat(self, expiration: int) -> None:
        await self._cancel_heartbeat()

        remaining = expiration - self._clock()
        if remaining < self._settings.MIN_VIABLE_TTL_SECS:
            await self._handle_own_expired()
            return

        delay = max(0.0, remaining - self._settings.heartbeat_lead_secs)
        self._heartbeat_task = asyncio.get_running_loop().create_task(
            self._heartbeat_after(delay)
        )

    async def _heartbeat_after(self, delay: float) -> None:
        # Ссылка на задачу сохраняется на время публикации, чтобы stop() её дождался
        await self._sleep(delay)

        if not self._running or self._outcome_in_flight:
            return
        if self._own_expiration is not None and self._clock() > self._own_expiration:
            # Процесс спал дольше TTL: наблюдатели уже считают событие истёкшим
            await self._handle_own_expired()
            return

        try:
            await self._publish_own()
        except Exception as e:
            await log_error(f"Heartbeat не опубликован: {e}", exc_info=True)
            if self._own_expiration is not None:
                self._heartbeat_task = asyncio.get_running_loop().create_task(
                    self._expire_own_after(self._own_expiration)
                )

    async def _expire_own_after(self, expiration: int) -> None:
        await self._sleep_past(expiration)
        if self._running:
            await self._handle_own_expired()

    async def _on_own_echo(self, event: RelayEvent) -> None:
        """Сверяет heartbeat с тем, что реально видят релеи."""
        if not self._running or not event.content or self._outcome_in_flight:
            return
        if self._role is GigRole.RIDER and self.request_phase is not RequestPhase.OPEN:
            return

        expiration = event.expiration
        if expiration is None:
            return
        if self._own_expiration is not None and expiration < self._own_expiration:
            # Запоздавшее эхо старой публикации
            return

        self._own_expiration = expiration
        await self._schedule_heartbeat(expiration)

    async def _handle_own_expired(self) -> None:
        await self._cancel_heartbeat()
        self._own_expiration = None

        if self._role is GigRole.RIDER:
            if self.request_phase is not RequestPhase.OPEN:
                return
            self._state_machine.transition(RequestPhase.EXPIRED)
            await log_warning(f"Запрос {self._request.id} истёк до очередного heartbeat")
            await self._notify("on_own_request_expired")
        elif self._role is GigRole.DRIVER:
            await log_warning(f"Доступность водителя {self.pubkey[:8]} истекла")
            await self._notify("on_own_avail_expired")

    async def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # =========================================================================
    # ТАЙМЕРЫ ИСТЕЧЕНИЯ
    # =========================================================================

    def _arm_timer(
        self,
        key: str,
        expiration: int,
        on_expire: Callable[[str], Awaitable[None]],
        item_id: str,
    ) -> None:
        """Ставит (или переставляет) таймер истечения на новый дедлайн."""
        self._cancel_timer(key)
        self._expiration_timers[key] = asyncio.get_running_loop().create_task(
            self._run_timer(key, expiration, on_expire, item_id)
        )

    async def _run_timer(
        self,
        key: str,
        expiration: int,
        on_expire: Callable[[str], Awaitable[None]],
        item_id: str,
    ) -> None:
        await self._sleep_past(expiration)
        if self._expiration_timers.get(key) is asyncio.current_task():
            del self._expiration_timers[key]
        await on_expire(item_id)

    async def _sleep_past(self, expiration: float) -> None:
        """Спит, пока не станет now > expiration."""
        while self._clock() <= expiration:
            await self._sleep(expiration - self._clock() + EXPIRY_GRACE_SECS)

    def _cancel_timer(self, key: str) -> None:
        task = self._expiration_timers.pop(key, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # =========================================================================
    # ОБЩЕЕ
    # =========================================================================

    def _ensure_not_running(self) -> None:
        if self._running:
            raise SessionAlreadyActiveError(
                f"Сессия {self._role} уже запущена, сначала вызовите stop()"
            )

    async def _on_relay_count(self, connected: int, total: int) -> None:
        await log_debug(f"Подключено релеев: {connected}/{total}")
        await self._notify("on_relay_status", connected, total)

    async def _notify(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception as e:
            await log_error(f"Ошибка в обработчике {name}: {e}", exc_info=True)

    async def stop(self) -> None:
        """
        Завершает сессию.

        Снимает heartbeat и все таймеры, очищает известные множества
        и отключается от релеев. Опубликованные события не удаляются:
        они истекут сами по TTL.
        """
        was_running = self._running
        self._running = False

        tasks = list(self._expiration_timers.values())
        if self._heartbeat_task is not None:
            tasks.append(self._heartbeat_task)
        self._expiration_timers.clear()
        self._heartbeat_task = None

        current = asyncio.current_task()
        tasks = [task for task in tasks if task is not current and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._known_requests.clear()
        self._known_drivers.clear()
        self._own_expiration = None

        role = self._role
        self._role = None
        self._cell = None
        self._request = None
        self._state_machine = None
        self._availability = None

        await self._relay.close_subscriptions()
        await self._relay.disconnect()

        if was_running:
            await log_info(f"Сессия {role} остановлена", type_msg=TypeMsg.INFO)


async def has_active_session(
    relay: RelayClient,
    matching_settings: MatchingSettings | None = None,
    timeout: float | None = None,
    clock: Clock = time.time,
) -> bool:
    """
    Проверяет, опубликовано ли от текущей идентичности живое событие
    протокола (открытый запрос или доступность) за последний TTL.

    Нужно для восстановления сессии после перезапуска приложения.
    """
    matching = matching_settings or settings.matching
    timeout = matching.SESSION_CHECK_TIMEOUT_SECS if timeout is None else timeout

    found = False
    done = asyncio.Event()

    async def on_event(event: RelayEvent) -> None:
        nonlocal found
        if not event.content or event.is_expired(clock()):
            return
        if event.get_tag(TagName.TOPIC.value) == EventTopic.RIDE_REQUEST.value:
            try:
                request = RideRequest.from_content(event.content)
            except ValidationError:
                return
            if request.status is not RideStatus.OPEN:
                return
        found = True
        done.set()

    async def on_eose() -> None:
        done.set()

    sub_id = f"session-check-{relay.pubkey[:8]}"
    await relay.subscribe(
        sub_id,
        RelayFilter(
            kinds=[matching.EVENT_KIND],
            authors=[relay.pubkey],
            t=[EventTopic.RIDE_REQUEST.value, EventTopic.DRIVER_AVAIL.value],
            since=int(clock()) - matching.REQUEST_TTL_SECS,
        ),
        on_event,
        on_eose,
    )
    try:
        await asyncio.wait_for(done.wait(), timeout)
    except asyncio.TimeoutError:
        await log_debug("Проверка активной сессии завершена по таймауту")
    finally:
        await relay.unsubscribe(sub_id)

    return found
