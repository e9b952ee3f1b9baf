# gig_rides/shared/models/__init__.py
"""
Модели, общие для ролей пассажира и водителя.
"""

from gig_rides.shared.models.enums import GigRole, RequestPhase, RequestTransition, RideStatus, RideType
from gig_rides.shared.models.ride import AcceptDM, DriverAvailability, Location, RideRequest

__all__ = [
    "AcceptDM",
    "DriverAvailability",
    "GigRole",
    "Location",
    "RequestPhase",
    "RequestTransition",
    "RideRequest",
    "RideStatus",
    "RideType",
]
