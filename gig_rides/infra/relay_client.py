# gig_rides/infra/relay_client.py
"""
Контракт клиента релейной сети событий.

Сам клиент (подключения, подпись, шифрование личных сообщений) — внешний
компонент. Здесь описано только то, что использует протокол матчинга:
публикация заменяемых событий, подписки по фильтру, личные сообщения
и состояние подключения к релеям.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from gig_rides.common.constants import REPLACEABLE_KIND, TagName


class RelayError(Exception):
    """Сбой транспорта: клиент отключён или релеи не приняли сообщение."""
    pass


class RelayEvent(BaseModel):
    """Подписанное событие в том виде, в каком его отдаёт релей."""

    id: str = ""
    pubkey: str
    kind: int = REPLACEABLE_KIND
    created_at: int = 0
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""

    def get_tag(self, name: str) -> str | None:
        """Значение первого тега с указанным именем."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    @property
    def d_tag(self) -> str | None:
        return self.get_tag(TagName.D.value)

    @property
    def expiration(self) -> int | None:
        """Время истечения (NIP-40, unix-секунды) или None."""
        raw = self.get_tag(TagName.EXPIRATION.value)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def is_expired(self, now: float) -> bool:
        expiration = self.expiration
        return expiration is not None and now > expiration


class RelayFilter(BaseModel):
    """Фильтр подписки. Пустое поле — без ограничения."""

    kinds: list[int] | None = None
    authors: list[str] | None = None
    d: list[str] | None = Field(default=None, alias="#d")
    g: list[str] | None = Field(default=None, alias="#g")
    t: list[str] | None = Field(default=None, alias="#t")
    since: int | None = None

    class Config:
        populate_by_name = True

    def matches(self, event: RelayEvent) -> bool:
        """Проверяет, подходит ли событие под фильтр."""
        if self.kinds is not None and event.kind not in self.kinds:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        for name, allowed in (("d", self.d), ("g", self.g), ("t", self.t)):
            if allowed is None:
                continue
            values = {tag[1] for tag in event.tags if len(tag) >= 2 and tag[0] == name}
            if not values.intersection(allowed):
                return False
        return True

    def to_wire(self) -> dict[str, Any]:
        """Фильтр в формате REQ-сообщения релея."""
        return self.model_dump(by_alias=True, exclude_none=True)


# Типы обработчиков
EventCallback = Callable[[RelayEvent], Awaitable[None]]
EoseCallback = Callable[[], Awaitable[None]]
DMCallback = Callable[[str, Any], Awaitable[None]]
RelayCountCallback = Callable[[int, int], Awaitable[None]]


class RelayClient(ABC):
    """
    Абстрактный клиент релейной сети.

    Реализации обязаны:
    - дедуплицировать одно и то же событие, пришедшее с нескольких релеев;
    - доставлять личные сообщения расшифрованными, с проверенным отправителем;
    - не отдавать в подписки события, чей тег expiration уже прошёл.
    """

    @property
    @abstractmethod
    def pubkey(self) -> str:
        """Публичный ключ текущей идентичности."""

    @property
    @abstractmethod
    def connected_relay_count(self) -> int:
        """Количество подключённых релеев."""

    @abstractmethod
    async def publish_replaceable(self, d_tag: str, tags: list[list[str]], content: str) -> str:
        """
        Публикует заменяемое событие под ключом d_tag.

        Returns:
            Идентификатор события
        """

    @abstractmethod
    async def subscribe(
        self,
        sub_id: str,
        event_filter: RelayFilter,
        on_event: EventCallback,
        on_eose: EoseCallback | None = None,
    ) -> None:
        """Открывает подписку (повторный sub_id заменяет прежнюю)."""

    @abstractmethod
    async def unsubscribe(self, sub_id: str) -> None:
        """Закрывает подписку."""

    @abstractmethod
    async def close_subscriptions(self) -> None:
        """Закрывает все подписки."""

    @abstractmethod
    async def subscribe_dms(self, on_message: DMCallback, since_secs: int = 60) -> None:
        """Подписывается на личные сообщения, адресованные текущей идентичности."""

    @abstractmethod
    async def send_dm(self, to_pubkey: str, payload: dict[str, Any]) -> None:
        """Отправляет зашифрованное личное сообщение (исключение при сбое транспорта)."""

    @abstractmethod
    def on_relay_count_change(self, callback: RelayCountCallback) -> None:
        """Регистрирует обработчик изменения количества подключённых релеев."""

    @abstractmethod
    def connect_in_background(self) -> None:
        """Начинает подключение к релеям, не блокируя вызывающего."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Закрывает все соединения."""


def build_tags(geohash: str, topic: str, expiration: int) -> list[list[str]]:
    """Стандартный набор тегов события протокола (d-тег добавляет клиент)."""
    return [
        [TagName.GEOHASH.value, geohash],
        [TagName.TOPIC.value, topic],
        [TagName.EXPIRATION.value, str(expiration)],
    ]
