from __future__ import annotations


class MonitorError(Exception):
    code = "monitor_error"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.code)
        if code:
            self.code = code


class NotFound(MonitorError):
    code = "not_found"


class DuplicateHost(MonitorError):
    code = "duplicate_host"


class ValidationError(MonitorError):
    code = "validation_error"


class ProtectedFieldError(ValidationError):
    """Raised when an administrative update targets probe-owned fields."""

    code = "protected_field"

    def __init__(self, fields: list[str]) -> None:
        self.fields = sorted(fields)
        super().__init__(f"fields cannot be updated directly: {', '.join(self.fields)}")


class TransportError(MonitorError):
    """
    A probe could not be carried out (binary missing, DNS failure, socket error).
    Never escapes the orchestrator: it is collapsed into an offline observation.
    """

    code = "transport_error"
