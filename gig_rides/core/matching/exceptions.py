"""Исключения протокола матчинга."""


class MatchingError(Exception):
    """Базовая ошибка протокола матчинга."""
    pass


class InvalidRequestError(MatchingError):
    """Запрос на поездку не подходит для операции (не open, чужой id)."""
    pass


class NoActiveRequestError(MatchingError):
    """Операция пассажира вызвана без активного запроса."""
    pass


class InvalidTransitionError(MatchingError):
    """Недопустимый переход статуса запроса."""
    pass


class SessionAlreadyActiveError(MatchingError):
    """Сессия уже запущена, нужен stop() перед новым стартом."""
    pass


class InvalidRoleError(MatchingError):
    """Операция недоступна в текущей роли."""
    pass
