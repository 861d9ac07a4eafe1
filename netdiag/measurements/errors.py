"""Error taxonomy shared by the measurement engines."""

from __future__ import annotations

from typing import Optional


class DiagnosticError(Exception):
    """Base class for failures surfaced by a measurement run."""

    kind = "unknown"

    def __init__(self, message: str = "", *, cause: Optional[BaseException] = None):
        super().__init__(message or self.kind)
        self.cause = cause


class ConnectionFailure(DiagnosticError):
    kind = "connection"


class ProtocolFailure(DiagnosticError):
    """Unexpected status code or malformed body."""

    kind = "protocol"


class HostUnresolvable(DiagnosticError):
    kind = "unresolvable"


class ProbeTimeout(DiagnosticError):
    kind = "timeout"


class Cancelled(DiagnosticError):
    kind = "cancelled"


class UnknownFailure(DiagnosticError):
    kind = "unknown"


class TierUnavailable(DiagnosticError):
    """A tracing tier cannot run on this host; the next tier should be tried."""

    kind = "unavailable"


_MESSAGES = {
    "connection": "Could not connect to the test server: {detail}",
    "protocol": "The test server sent an unexpected response: {detail}",
    "unresolvable": "Could not resolve host {detail}",
    "timeout": "The operation timed out: {detail}",
    "cancelled": "The measurement was cancelled",
    "unavailable": "Route tracing is unavailable: {detail}",
    "unknown": "Measurement failed: {detail}",
}


def describe_error(exc: BaseException) -> str:
    """Short human-readable message for the presentation layer."""
    if isinstance(exc, DiagnosticError):
        template = _MESSAGES.get(exc.kind, _MESSAGES["unknown"])
        detail = str(exc) if str(exc) != exc.kind else "no details"
        return template.format(detail=detail)
    return _MESSAGES["unknown"].format(detail=str(exc) or exc.__class__.__name__)
