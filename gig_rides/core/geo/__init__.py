# gig_rides/core/geo/__init__.py
"""
Гео-домен: ячейки geohash для привязки подписок к району.
"""

from gig_rides.core.geo.geohash import BoundingBox, GeoPoint, decode, decode_bbox, encode

__all__ = [
    "BoundingBox",
    "GeoPoint",
    "decode",
    "decode_bbox",
    "encode",
]
