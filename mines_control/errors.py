class MinesControlError(Exception):
    """Base class for engine errors."""


class ConfigError(MinesControlError):
    """Raised when an engine configuration cannot be loaded or validated."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class InvalidTransition(MinesControlError):
    """An action was attempted in a round state that forbids it.

    Raised inside the state machine and caught at the controller boundary,
    where it is logged and ignored.
    """

    def __init__(self, action: str, state) -> None:
        self.action = action
        self.state = state
        super().__init__(f"{action} not allowed in state {getattr(state, 'value', state)}")


class MalformedEnvelope(MinesControlError):
    """Settlement message missing or carrying unusable fields."""

    def __init__(self, msg_type: str, reason: str) -> None:
        self.msg_type = msg_type
        self.reason = reason
        super().__init__(f"{msg_type}: {reason}")
