# gig_rides/shared/models/ride.py
"""
Модели сообщений протокола матчинга.

Все модели сериализуются в camelCase (формат на проводе) и принимают
как алиасы, так и имена полей. Неизвестные ключи игнорируются.
"""

from __future__ import annotations

from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationInfo, model_validator

from gig_rides.common.constants import ACCEPT_DM_TYPE
from gig_rides.shared.models.enums import RideStatus, RideType

# Поля content, без которых запрос с провода не принимается
WIRE_REQUIRED_KEYS = ("id", "status")


class Location(BaseModel):
    """Координаты точки."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class RideRequest(BaseModel):
    """
    Запрос на поездку — публичное авторитетное состояние поездки.

    Публиковать изменения статуса может только автор запроса (пассажир).
    `pubkey` при получении всегда перезаписывается подписантом события.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    pubkey: str = ""
    geohash: str
    status: RideStatus = RideStatus.OPEN
    matched_driver_pubkey: str | None = Field(default=None, alias="matchedDriverPubkey")
    ride_type: RideType = Field(default=RideType.PERSON, alias="rideType")
    start_location: Location | None = Field(default=None, alias="startLocation")
    destination: Location | None = None
    details: dict[str, str] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    @model_validator(mode="before")
    @classmethod
    def require_wire_keys(cls, data: Any, info: ValidationInfo) -> Any:
        """С провода id и status обязательны: значения по умолчанию только для локального создания."""
        if info.context and info.context.get("from_wire") and isinstance(data, dict):
            missing = [key for key in WIRE_REQUIRED_KEYS if not data.get(key)]
            if missing:
                raise ValueError(f"В content нет обязательных полей: {', '.join(missing)}")
        return data

    def to_content(self) -> str:
        """Сериализует запрос в content события."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_content(cls, content: str) -> "RideRequest":
        """Разбирает content события (ValidationError при мусоре)."""
        return cls.model_validate_json(content, context={"from_wire": True})

    def with_status(
        self,
        status: RideStatus,
        matched_driver_pubkey: str | None = None,
    ) -> "RideRequest":
        """Возвращает копию запроса с новым статусом."""
        return self.model_copy(update={
            "status": status,
            "matched_driver_pubkey": matched_driver_pubkey,
        })


class DriverAvailability(BaseModel):
    """Доступность водителя в ячейке."""

    pubkey: str = ""
    geohash: str = ""
    location: Location

    class Config:
        populate_by_name = True

    def to_content(self) -> str:
        # pubkey берётся из подписи события, в content не дублируется
        return self.model_dump_json(by_alias=True, exclude={"pubkey"})

    @classmethod
    def from_content(cls, content: str, pubkey: str) -> "DriverAvailability":
        availability = cls.model_validate_json(content)
        availability.pubkey = pubkey
        return availability


class AcceptDM(BaseModel):
    """Единственное личное сообщение протокола: водитель → пассажир."""

    type: Literal["accept"] = ACCEPT_DM_TYPE
    request_id: str = Field(alias="requestId", min_length=1)
    driver_pubkey: str = Field(alias="driverPubkey")

    class Config:
        populate_by_name = True

    def to_payload(self) -> dict[str, Any]:
        """Полезная нагрузка для send_dm."""
        return self.model_dump(by_alias=True)
