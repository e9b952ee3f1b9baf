# gig_rides/core/geo/geohash.py
"""
Geohash: кодирование координат в строковый ключ ячейки.

Используется для пространственной привязки подписок: водитель и пассажир
видят друг друга только внутри одной ячейки.
Точность 6 ≈ 1.2 км × 0.6 км.
"""

from __future__ import annotations

from dataclasses import dataclass

from gig_rides.common.constants import GEOHASH_PRECISION_MATCHING


BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

_BASE32_INDEX = {ch: idx for idx, ch in enumerate(BASE32)}


@dataclass(frozen=True)
class BoundingBox:
    """Границы ячейки."""
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, latitude: float, longitude: float) -> bool:
        """Проверяет, лежит ли точка внутри ячейки (границы включительно)."""
        return (
            self.min_lat <= latitude <= self.max_lat
            and self.min_lon <= longitude <= self.max_lon
        )

    @property
    def center(self) -> GeoPoint:
        """Центр ячейки."""
        return GeoPoint(
            latitude=(self.min_lat + self.max_lat) / 2,
            longitude=(self.min_lon + self.max_lon) / 2,
        )


@dataclass(frozen=True)
class GeoPoint:
    """Точка на сфере."""
    latitude: float
    longitude: float


def encode(latitude: float, longitude: float, precision: int = GEOHASH_PRECISION_MATCHING) -> str:
    """
    Кодирует пару широта/долгота в geohash.

    Диапазоны долготы и широты делятся пополам по очереди, начиная с долготы;
    каждые 5 бит дают один символ алфавита base32.

    Args:
        latitude: Широта WGS-84 (−90 … 90)
        longitude: Долгота WGS-84 (−180 … 180)
        precision: Количество символов

    Returns:
        Строка geohash длиной precision
    """
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    chars: list[str] = []
    bit = 0
    ch = 0
    is_lon = True

    while len(chars) < precision:
        rng = lon_range if is_lon else lat_range
        value = longitude if is_lon else latitude
        mid = (rng[0] + rng[1]) / 2

        if value >= mid:
            ch |= 1 << (4 - bit)
            rng[0] = mid
        else:
            rng[1] = mid

        if bit < 4:
            bit += 1
        else:
            chars.append(BASE32[ch])
            bit = 0
            ch = 0
        is_lon = not is_lon

    return "".join(chars)


def decode_bbox(geohash: str) -> BoundingBox:
    """
    Декодирует geohash в границы ячейки.
    Неизвестные символы пропускаются.
    """
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    is_lon = True

    for c in geohash:
        idx = _BASE32_INDEX.get(c)
        if idx is None:
            continue
        for bit in range(4, -1, -1):
            rng = lon_range if is_lon else lat_range
            mid = (rng[0] + rng[1]) / 2
            if idx & (1 << bit):
                rng[0] = mid
            else:
                rng[1] = mid
            is_lon = not is_lon

    return BoundingBox(
        min_lat=lat_range[0],
        max_lat=lat_range[1],
        min_lon=lon_range[0],
        max_lon=lon_range[1],
    )


def decode(geohash: str) -> GeoPoint:
    """Декодирует geohash в центр ячейки."""
    return decode_bbox(geohash).center
