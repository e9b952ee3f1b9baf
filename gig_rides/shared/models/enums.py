from enum import Enum


class RideStatus(str, Enum):
    """Публикуемый статус запроса на поездку."""
    OPEN = "open"
    TAKEN = "taken"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self is not RideStatus.OPEN


class RequestPhase(str, Enum):
    """Локальная фаза запроса у пассажира (включает локальное истечение)."""
    IDLE = "idle"
    OPEN = "open"
    TAKEN = "taken"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    def __str__(self) -> str:
        return self.value


class GigRole(str, Enum):
    """Роль участника сессии."""
    RIDER = "rider"
    DRIVER = "driver"

    def __str__(self) -> str:
        return self.value


class RideType(str, Enum):
    """Тип поездки."""
    PERSON = "person"
    DELIVERY = "delivery"

    def __str__(self) -> str:
        return self.value


class RequestTransition(str, Enum):
    """Наблюдаемый результат классификации события запроса."""
    APPEARED = "appeared"
    GONE = "gone"
    HEARTBEAT = "heartbeat"
    IGNORED = "ignored"

    def __str__(self) -> str:
        return self.value
