"""Error kinds shared by every fetch, client and loop in NTM.

Each fetch surfaces at most one NtmError. The kind decides how the refresh
orchestrator reacts (silent, placeholder, keep last-known-good, suspend).
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorKind(str, Enum):
    """Closed set of error categories."""

    TRANSPORT = "transport"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    SESSION_NOT_FOUND = "session_not_found"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class NtmError(Exception):
    """Error wrapped with its operation name and upstream status.

    Attributes:
        kind: Error category
        operation: Operation that failed (e.g. "list_panes", "send_message")
        message: Human readable message (upstream text carried through)
        status_code: Upstream HTTP or JSON-RPC status, if any
        detail: Optional structured payload (conflict record for CONFLICT)
    """

    def __init__(
        self,
        kind: ErrorKind,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
        detail: object = None,
    ) -> None:
        self.kind = kind
        self.operation = operation
        self.message = message
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{operation}: {message}")

    @property
    def is_canceled(self) -> bool:
        return self.kind == ErrorKind.CANCELED

    @property
    def is_retryable(self) -> bool:
        return self.kind in (ErrorKind.TRANSPORT, ErrorKind.TIMEOUT)


class ConflictError(NtmError):
    """Reservation clash; `detail` carries the conflict record."""

    def __init__(self, operation: str, message: str, detail: object = None) -> None:
        super().__init__(ErrorKind.CONFLICT, operation, message, detail=detail)


def wrap_error(operation: str, exc: BaseException) -> NtmError:
    """Map an arbitrary exception to an NtmError.

    Args:
        operation: Name of the failing operation
        exc: The raised exception

    Returns:
        The exception itself when it already is an NtmError, otherwise a new one
    """
    if isinstance(exc, NtmError):
        return exc
    if isinstance(exc, asyncio.CancelledError):
        return NtmError(ErrorKind.CANCELED, operation, "canceled")
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return NtmError(ErrorKind.TIMEOUT, operation, "deadline exceeded")
    if isinstance(exc, httpx.HTTPStatusError):
        return from_http_status(operation, exc.response.status_code, exc.response.text)
    if isinstance(exc, httpx.TransportError):
        return NtmError(ErrorKind.TRANSPORT, operation, str(exc) or type(exc).__name__)
    if isinstance(exc, FileNotFoundError):
        return NtmError(ErrorKind.UNAVAILABLE, operation, f"executable file not found: {exc.filename or exc}")
    if isinstance(exc, (ValueError, TypeError)):
        return NtmError(ErrorKind.VALIDATION, operation, str(exc))
    return NtmError(ErrorKind.UNKNOWN, operation, str(exc) or type(exc).__name__)


def from_http_status(operation: str, status_code: int, body: str = "") -> NtmError:
    """Build an NtmError from an HTTP status code."""
    detail = body.strip()[:200] or f"HTTP {status_code}"
    if status_code in (401, 403):
        return NtmError(ErrorKind.UNAUTHORIZED, operation, detail, status_code=status_code)
    if status_code == 404:
        return NtmError(ErrorKind.NOT_FOUND, operation, detail, status_code=status_code)
    if status_code == 409:
        return ConflictError(operation, detail)
    if status_code in (408, 504):
        return NtmError(ErrorKind.TIMEOUT, operation, detail, status_code=status_code)
    if status_code >= 500:
        return NtmError(ErrorKind.TRANSPORT, operation, detail, status_code=status_code)
    return NtmError(ErrorKind.UNKNOWN, operation, detail, status_code=status_code)


def is_canceled(err: Optional[BaseException]) -> bool:
    if err is None:
        return False
    if isinstance(err, asyncio.CancelledError):
        return True
    return isinstance(err, NtmError) and err.is_canceled


__all__ = ["ErrorKind", "NtmError", "ConflictError", "wrap_error", "from_http_status", "is_canceled"]
