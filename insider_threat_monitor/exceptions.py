class InvalidEventError(ValueError):
    """Raised when an inbound event fails boundary validation."""


class LoginBlockedError(Exception):
    """Raised when location verification refuses a login."""

    def __init__(self, employee_id: str, reason: str):
        super().__init__(f"Login blocked for {employee_id}: {reason}")
        self.employee_id = employee_id
        self.reason = reason
