"""
Exception taxonomy of the scheduling core.

Validation failures are not exceptions: they come back as ValidationResult.
The API layer maps these classes to HTTP status codes in one place
(api/dependencies.py::scheduling_http_error).
"""


class SchedulingError(Exception):
    """Base class for all scheduling errors."""


class PreconditionError(SchedulingError):
    """Inputs the request depends on are missing or malformed."""


class EmployeeNotFoundError(PreconditionError):
    def __init__(self, employee_id: int):
        self.employee_id = employee_id
        super().__init__(f"Mitarbeiter {employee_id} nicht gefunden")


class ConfigUnavailableError(PreconditionError):
    def __init__(self, period):
        self.period = period
        super().__init__(f"Keine Konfiguration für {period} verfügbar")


class InvalidOffDatesError(PreconditionError):
    def __init__(self, message: str, dates=None):
        self.dates = list(dates or [])
        super().__init__(message)


class SystemClosedError(SchedulingError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SystemBusyError(SchedulingError):
    def __init__(self, holder_name: str, holder_id: int, remaining_seconds: int):
        self.holder_name = holder_name
        self.holder_id = holder_id
        self.remaining_seconds = remaining_seconds
        minutes, seconds = divmod(max(0, remaining_seconds), 60)
        super().__init__(
            f"{holder_name} plant gerade ({minutes:02d}:{seconds:02d} verbleibend)"
        )


class SessionError(SchedulingError):
    def __init__(self, session_id: int, message: str):
        self.session_id = session_id
        super().__init__(message)


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: int):
        super().__init__(session_id, f"Sitzung {session_id} nicht gefunden")


class SessionExpiredError(SessionError):
    def __init__(self, session_id: int, status: str = 'expired'):
        self.status = status
        super().__init__(session_id, f"Sitzung {session_id} ist nicht mehr aktiv ({status})")


class SessionOwnershipError(SessionError):
    def __init__(self, session_id: int, employee_id: int):
        self.employee_id = employee_id
        super().__init__(
            session_id, f"Sitzung {session_id} gehört nicht zu Mitarbeiter {employee_id}"
        )
