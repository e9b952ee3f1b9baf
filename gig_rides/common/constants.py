# gig_rides/common/constants.py
"""
Общие константы и перечисления протокола.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class EventTopic(str, Enum):
    """Значения тега `t`, по которым фильтруются события протокола."""
    RIDE_REQUEST = "ride-request"
    DRIVER_AVAIL = "driver-avail"

    def __str__(self) -> str:
        return self.value


class TagName(str, Enum):
    """Имена тегов события."""
    D = "d"
    GEOHASH = "g"
    TOPIC = "t"
    EXPIRATION = "expiration"

    def __str__(self) -> str:
        return self.value


# Параметризованное заменяемое событие (NIP-33)
REPLACEABLE_KIND = 30078

# Ключ (d-тег) события доступности водителя — одно на идентичность
DRIVER_AVAIL_KEY = "driver-avail"

# Единственный тип личного сообщения в протоколе
ACCEPT_DM_TYPE = "accept"

# Точность geohash для матчинга (~1.2 км × 0.6 км)
GEOHASH_PRECISION_MATCHING = 6
