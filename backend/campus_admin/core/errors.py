"""Console error taxonomy.

Every failure the Action Dispatcher can end in is one of five kinds. The
exceptions below are raised by collaborators (or by the dispatcher's own
validation) and are always converted into an ``ActionResult`` before they
reach the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import httpx


class ErrorKind(str, Enum):
    VALIDATION = "ValidationError"
    PERMISSION = "PermissionError"
    NETWORK = "NetworkError"
    SERVER = "ServerError"
    EXPORT = "ExportError"


class ConsoleError(Exception):
    kind: ErrorKind = ErrorKind.SERVER

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


class ActionValidationError(ConsoleError):
    """Malformed or out-of-range input. Never reaches the network."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class ActionPermissionError(ConsoleError):
    """Capability check failed. Rendered as a blocking security notice."""

    kind = ErrorKind.PERMISSION

    def __init__(self, message: str, *, capability: Optional[str] = None) -> None:
        super().__init__(message)
        self.capability = capability

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["capability"] = self.capability
        data["security"] = True
        return data


class NetworkError(ConsoleError):
    """Timeout or unreachable upstream. Retried manually, never by the core."""

    kind = ErrorKind.NETWORK
    retryable = True

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data


class ServerError(ConsoleError):
    kind = ErrorKind.SERVER

    def __init__(self, message: str, *, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def reauthenticate(self) -> bool:
        return self.status_code == 401

    @property
    def security(self) -> bool:
        return self.status_code == 403

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "status_code": self.status_code,
                "reauthenticate": self.reauthenticate,
                "security": self.security,
            }
        )
        return data


class ExportError(ConsoleError):
    """Empty input set or workbook serialization failure."""

    kind = ErrorKind.EXPORT


SERVER_STATUS_MESSAGES: dict[int, str] = {
    400: "The request was rejected by the server",
    401: "Please sign in again",
    403: "You do not have permission to access this data",
    404: "The requested record was not found",
    409: "The record was changed by someone else",
    429: "Too many requests, please wait a moment and try again",
}

GENERIC_SERVER_MESSAGE = "An unexpected server error occurred"
TIMEOUT_MESSAGE = "The connection timed out, please try again"
UNREACHABLE_MESSAGE = "Unable to reach the server"


def _upstream_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def server_error_for_status(status_code: int, upstream_message: Optional[str] = None) -> ServerError:
    message = SERVER_STATUS_MESSAGES.get(status_code)
    if message is None:
        message = upstream_message or GENERIC_SERVER_MESSAGE
    return ServerError(message, status_code=status_code)


def classify_error(exc: BaseException) -> ConsoleError:
    """Map an exception raised by a collaborator onto the console taxonomy."""
    if isinstance(exc, ConsoleError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(TIMEOUT_MESSAGE)
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        return server_error_for_status(response.status_code, _upstream_message(response))
    if isinstance(exc, httpx.TransportError):
        return NetworkError(UNREACHABLE_MESSAGE)
    return ServerError(GENERIC_SERVER_MESSAGE, status_code=500)


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PERMISSION: 403,
    ErrorKind.NETWORK: 503,
    ErrorKind.EXPORT: 422,
}


def http_status_for(error: ConsoleError) -> int:
    if isinstance(error, ServerError):
        return error.status_code
    return HTTP_STATUS_BY_KIND.get(error.kind, 500)
