# gig_rides/core/matching/classifier.py
"""
Классификация входящих событий.

Чистые функции без побочных эффектов: по событию, множеству уже известных
идентификаторов и текущему времени решают, что произошло. Применяет
результат (таймеры, колбэки) сервис матчинга.

Поток событий с релеев может приходить с повторами, не по порядку
и с историей, поэтому классификация идемпотентна: повтор события
с тем же статусом даёт наблюдаемый эффект не более одного раза.
"""

from __future__ import annotations

from collections.abc import Set
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from gig_rides.infra.relay_client import RelayEvent
from gig_rides.shared.models.enums import RequestTransition, RideStatus
from gig_rides.shared.models.ride import RideRequest


class IgnoreReason:
    """Причины, по которым событие не дало наблюдаемого перехода."""
    EMPTY = "empty"
    MALFORMED = "malformed"
    EXPIRED_UNKNOWN = "expired_unknown"
    HISTORICAL = "historical"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class RequestClassification:
    """Результат классификации события запроса на поездку."""
    transition: RequestTransition
    request_id: str | None = None
    request: RideRequest | None = None
    matched_driver_pubkey: str | None = None
    expiration: int | None = None
    reason: str | None = None
    error: str | None = None


def parse_request_event(event: RelayEvent) -> RideRequest:
    """
    Разбирает content события в RideRequest.

    pubkey всегда берётся из подписи события, а не из content.

    Raises:
        ValidationError: content не является корректным запросом
    """
    request = RideRequest.from_content(event.content)
    request.pubkey = event.pubkey
    return request


def classify_request_event(
    event: RelayEvent,
    known_ids: Set[str],
    now: float,
) -> RequestClassification:
    """
    Определяет переход для события запроса на поездку.

    Args:
        event: Событие с релея
        known_ids: Идентификаторы запросов, уже показанных как appeared
        now: Текущее время (unix-секунды)
    """
    if not event.content:
        return RequestClassification(RequestTransition.IGNORED, reason=IgnoreReason.EMPTY)

    try:
        request = parse_request_event(event)
    except ValidationError as e:
        return RequestClassification(
            RequestTransition.IGNORED,
            reason=IgnoreReason.MALFORMED,
            error=f"{e.error_count()} ошибок валидации",
        )

    expiration = event.expiration
    known = request.id in known_ids

    if expiration is not None and now > expiration:
        if known:
            # Истёкший известный запрос — то же самое, что отмена
            return RequestClassification(
                RequestTransition.GONE,
                request_id=request.id,
                request=request,
                matched_driver_pubkey=None,
                expiration=expiration,
            )
        return RequestClassification(
            RequestTransition.IGNORED,
            request_id=request.id,
            reason=IgnoreReason.EXPIRED_UNKNOWN,
        )

    if known:
        if request.status.is_terminal:
            return RequestClassification(
                RequestTransition.GONE,
                request_id=request.id,
                request=request,
                matched_driver_pubkey=request.matched_driver_pubkey,
                expiration=expiration,
            )
        if expiration is not None:
            return RequestClassification(
                RequestTransition.HEARTBEAT,
                request_id=request.id,
                request=request,
                expiration=expiration,
            )
        return RequestClassification(
            RequestTransition.IGNORED,
            request_id=request.id,
            reason=IgnoreReason.DUPLICATE,
        )

    if request.status is RideStatus.OPEN:
        return RequestClassification(
            RequestTransition.APPEARED,
            request_id=request.id,
            request=request,
            expiration=expiration,
        )

    # Завершённый запрос, который мы не видели открытым
    return RequestClassification(
        RequestTransition.IGNORED,
        request_id=request.id,
        reason=IgnoreReason.HISTORICAL,
    )


# =============================================================================
# ДОСТУПНОСТЬ ВОДИТЕЛЕЙ
# =============================================================================

class AvailabilityChange(str, Enum):
    """Изменение множества известных водителей."""
    ADDED = "added"
    REMOVED = "removed"
    REFRESHED = "refreshed"
    IGNORED = "ignored"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AvailabilityClassification:
    """Результат классификации события доступности водителя."""
    change: AvailabilityChange
    pubkey: str
    expiration: int | None = None


def classify_availability_event(
    event: RelayEvent,
    known_drivers: Set[str],
    now: float,
) -> AvailabilityClassification:
    """
    Определяет изменение множества водителей в ячейке.

    Пустой content — водитель ушёл офлайн; истёкшее событие трактуется так же.
    """
    pubkey = event.pubkey
    known = pubkey in known_drivers

    if not event.content or event.is_expired(now):
        change = AvailabilityChange.REMOVED if known else AvailabilityChange.IGNORED
        return AvailabilityClassification(change, pubkey)

    if not known:
        return AvailabilityClassification(AvailabilityChange.ADDED, pubkey, event.expiration)
    return AvailabilityClassification(AvailabilityChange.REFRESHED, pubkey, event.expiration)
