# gig_rides/infra/memory_relay.py
"""
Внутрипроцессная релейная сеть.

Повторяет семантику публичных релеев, на которую опирается протокол:
- заменяемые события хранятся по ключу (pubkey, kind, d-тег), новое
  вытесняет старое;
- события с прошедшим тегом expiration не отдаются и не принимаются;
- подписка сначала получает сохранённые события (с учётом since),
  затем EOSE, затем живой поток;
- личные сообщения доставляются по публичному ключу получателя.

Используется для локальной симуляции и в тестах.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

from gig_rides.common.constants import REPLACEABLE_KIND, TagName
from gig_rides.common.logger import log_debug, log_error
from gig_rides.infra.relay_client import (
    DMCallback,
    EoseCallback,
    EventCallback,
    RelayClient,
    RelayCountCallback,
    RelayError,
    RelayEvent,
    RelayFilter,
)


def compute_event_id(event: RelayEvent) -> str:
    """Идентификатор события: sha256 от канонической сериализации (NIP-01)."""
    serialized = json.dumps(
        [0, event.pubkey, event.created_at, event.kind, event.tags, event.content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@dataclass
class _Subscription:
    owner: str
    sub_id: str
    event_filter: RelayFilter
    on_event: EventCallback


class InMemoryRelay:
    """Общая для всех клиентов «сеть» релеев."""

    def __init__(
        self,
        relay_urls: list[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.relay_urls = list(relay_urls or ["memory://local"])
        self._clock = clock
        self._events: dict[tuple[str, int, str], RelayEvent] = {}
        self._subscriptions: dict[tuple[str, str], _Subscription] = {}
        self._dm_handlers: dict[str, list[DMCallback]] = {}
        self.history: list[RelayEvent] = []

    def now(self) -> float:
        return self._clock()

    def stored_events(self, event_filter: RelayFilter) -> list[RelayEvent]:
        """Сохранённые неистёкшие события под фильтром, от старых к новым."""
        now = self.now()
        matched = [
            event for event in self._events.values()
            if not event.is_expired(now) and event_filter.matches(event)
        ]
        return sorted(matched, key=lambda e: e.created_at)

    async def publish(self, event: RelayEvent) -> bool:
        """
        Принимает событие и рассылает его подписчикам.

        Returns:
            False, если событие отклонено (уже истекло или устарело)
        """
        if event.is_expired(self.now()):
            await log_debug(f"Релей отклонил истёкшее событие {event.id[:8]}")
            return False

        key = (event.pubkey, event.kind, event.d_tag or "")
        existing = self._events.get(key)
        if existing is not None and existing.created_at > event.created_at:
            return False

        self._events[key] = event
        self.history.append(event)

        for subscription in list(self._subscriptions.values()):
            if not subscription.event_filter.matches(event):
                continue
            try:
                await subscription.on_event(event)
            except Exception as e:
                await log_error(
                    f"Ошибка в обработчике подписки {subscription.sub_id}: {e}",
                    extra={"owner": subscription.owner[:8]},
                    exc_info=True,
                )
        return True

    def add_subscription(self, subscription: _Subscription) -> None:
        self._subscriptions[(subscription.owner, subscription.sub_id)] = subscription

    def remove_subscription(self, owner: str, sub_id: str) -> None:
        self._subscriptions.pop((owner, sub_id), None)

    def remove_owner(self, owner: str) -> None:
        for key in [k for k in self._subscriptions if k[0] == owner]:
            del self._subscriptions[key]
        self._dm_handlers.pop(owner, None)

    def subscription_ids(self, owner: str) -> set[str]:
        return {sub_id for o, sub_id in self._subscriptions if o == owner}

    def add_dm_handler(self, pubkey: str, handler: DMCallback) -> None:
        self._dm_handlers.setdefault(pubkey, []).append(handler)

    async def deliver_dm(self, from_pubkey: str, to_pubkey: str, payload: Any) -> None:
        handlers = list(self._dm_handlers.get(to_pubkey, []))
        if not handlers:
            await log_debug(f"Нет получателя для личного сообщения {to_pubkey[:8]}")
            return
        for handler in handlers:
            try:
                await handler(from_pubkey, payload)
            except Exception as e:
                await log_error(f"Ошибка в обработчике личных сообщений: {e}", exc_info=True)


class InMemoryRelayClient(RelayClient):
    """Клиент поверх InMemoryRelay с собственной идентичностью."""

    def __init__(self, network: InMemoryRelay, pubkey: str | None = None) -> None:
        self._network = network
        self._pubkey = pubkey or secrets.token_hex(32)
        self._connected = 0
        self._closed = False
        self._count_callbacks: list[RelayCountCallback] = []
        self._connect_task: asyncio.Task | None = None

    @property
    def pubkey(self) -> str:
        return self._pubkey

    @property
    def connected_relay_count(self) -> int:
        return self._connected

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise RelayError("Клиент отключён от релеев")

    async def publish_replaceable(self, d_tag: str, tags: list[list[str]], content: str) -> str:
        self._ensure_open()

        if not any(tag and tag[0] == TagName.D.value for tag in tags):
            tags = [[TagName.D.value, d_tag], *tags]

        event = RelayEvent(
            pubkey=self._pubkey,
            kind=REPLACEABLE_KIND,
            created_at=int(self._network.now()),
            tags=tags,
            content=content,
        )
        event.id = compute_event_id(event)

        await self._network.publish(event)
        return event.id

    async def subscribe(
        self,
        sub_id: str,
        event_filter: RelayFilter,
        on_event: EventCallback,
        on_eose: EoseCallback | None = None,
    ) -> None:
        self._ensure_open()

        self._network.add_subscription(_Subscription(
            owner=self._pubkey,
            sub_id=sub_id,
            event_filter=event_filter,
            on_event=on_event,
        ))

        for event in self._network.stored_events(event_filter):
            await on_event(event)

        if on_eose is not None:
            await on_eose()

    async def unsubscribe(self, sub_id: str) -> None:
        self._network.remove_subscription(self._pubkey, sub_id)

    async def close_subscriptions(self) -> None:
        for sub_id in self._network.subscription_ids(self._pubkey):
            self._network.remove_subscription(self._pubkey, sub_id)

    async def subscribe_dms(self, on_message: DMCallback, since_secs: int = 60) -> None:
        # Личные сообщения эфемерны: истории нет, since_secs не используется
        self._ensure_open()
        self._network.add_dm_handler(self._pubkey, on_message)

    async def send_dm(self, to_pubkey: str, payload: dict[str, Any]) -> None:
        self._ensure_open()
        # Сериализация на проводе: получатель видит копию, а не исходный объект
        wire_payload = json.loads(json.dumps(payload))
        await self._network.deliver_dm(self._pubkey, to_pubkey, wire_payload)

    def on_relay_count_change(self, callback: RelayCountCallback) -> None:
        self._count_callbacks.append(callback)

    def connect_in_background(self) -> None:
        self._ensure_open()
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.get_running_loop().create_task(self._connect_all())

    async def _connect_all(self) -> None:
        for _ in self._network.relay_urls:
            if self._closed:
                return
            self._connected += 1
            await self._notify_count()

    async def _notify_count(self) -> None:
        total = len(self._network.relay_urls)
        for callback in list(self._count_callbacks):
            try:
                await callback(self._connected, total)
            except Exception as e:
                await log_error(f"Ошибка в обработчике количества релеев: {e}")

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._connect_task is not None and not self._connect_task.done():
            if self._connect_task is not asyncio.current_task():
                self._connect_task.cancel()

        self._network.remove_owner(self._pubkey)

        if self._connected:
            self._connected = 0
            await self._notify_count()
        self._count_callbacks.clear()
