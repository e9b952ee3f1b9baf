# gig_rides/core/__init__.py
"""
Доменный слой: гео-ячейки и протокол матчинга.
Не зависит от конкретного клиента релеев.
"""

from gig_rides.core.matching import MatchingCallbacks, RideMatchingService

__all__ = [
    "MatchingCallbacks",
    "RideMatchingService",
]
