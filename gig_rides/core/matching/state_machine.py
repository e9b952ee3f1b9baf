from gig_rides.core.matching.exceptions import InvalidTransitionError
from gig_rides.shared.models.enums import RequestPhase


class RideRequestStateMachine:
    """Фазы одного запроса у пассажира: idle → open → taken | cancelled | expired."""

    ALLOWED_TRANSITIONS = {
        RequestPhase.IDLE: [RequestPhase.OPEN],
        RequestPhase.OPEN: [RequestPhase.TAKEN, RequestPhase.CANCELLED, RequestPhase.EXPIRED],
        RequestPhase.TAKEN: [],
        RequestPhase.CANCELLED: [],
        RequestPhase.EXPIRED: [],
    }

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.phase = RequestPhase.IDLE

    @staticmethod
    def can_transition(current_phase: str, new_phase: str) -> bool:
        try:
            curr = RequestPhase(current_phase)
            new = RequestPhase(new_phase)
            return new in RideRequestStateMachine.ALLOWED_TRANSITIONS.get(curr, [])
        except ValueError:
            return False

    @property
    def is_terminal(self) -> bool:
        return not self.ALLOWED_TRANSITIONS[self.phase]

    def ensure_can_transition(self, new_phase: RequestPhase) -> None:
        """Проверяет переход, не меняя фазу (InvalidTransitionError, если нельзя)."""
        if not self.can_transition(self.phase, new_phase):
            raise InvalidTransitionError(
                f"Запрос {self.request_id}: переход {self.phase} → {new_phase} недопустим"
            )

    def transition(self, new_phase: RequestPhase) -> None:
        self.ensure_can_transition(new_phase)
        self.phase = new_phase
