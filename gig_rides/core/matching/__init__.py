# gig_rides/core/matching/__init__.py
"""
Протокол матчинга: классификация событий, фазы запроса, сервис сессии.
"""

from gig_rides.core.matching.classifier import (
    AvailabilityChange,
    classify_availability_event,
    classify_request_event,
)
from gig_rides.core.matching.exceptions import (
    InvalidRequestError,
    InvalidRoleError,
    InvalidTransitionError,
    MatchingError,
    NoActiveRequestError,
    SessionAlreadyActiveError,
)
from gig_rides.core.matching.service import MatchingCallbacks, RideMatchingService, has_active_session
from gig_rides.core.matching.state_machine import RideRequestStateMachine

__all__ = [
    "AvailabilityChange",
    "classify_availability_event",
    "classify_request_event",
    "InvalidRequestError",
    "InvalidRoleError",
    "InvalidTransitionError",
    "MatchingError",
    "NoActiveRequestError",
    "SessionAlreadyActiveError",
    "MatchingCallbacks",
    "RideMatchingService",
    "has_active_session",
    "RideRequestStateMachine",
]
