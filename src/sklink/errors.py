"""
Error taxonomy for device sync.

Low layers raise narrow, typed errors (``InvalidKey``,
``AuthenticationFailed``, ``ApiError``). Everything that crosses the
coordinator boundary is normalized into one tagged ``SyncError`` so
the UI can decide between "try again" and "close" without ever
seeing a raw exception.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

import httpx

logger = logging.getLogger("sklink.errors")


class CryptoError(Exception):
    """Base class for cryptographic failures."""


class InvalidKey(CryptoError):
    """Key material is malformed, the wrong length, or low-order."""


class AuthenticationFailed(CryptoError):
    """An AEAD tag, signature, or SAS check did not match."""


class ApiError(Exception):
    """A rejection from the sync server (or the in-process relay).

    Attributes:
        status_code: HTTP status code.
        code: Machine-readable error code from the response body.
        message: Human-readable detail.
    """

    def __init__(self, status_code: int, code: str, message: str = "") -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message

    def to_body(self) -> dict[str, Any]:
        """Render as a JSON error body."""
        return {"code": self.code, "message": self.message}


class SyncErrorCode(str, Enum):
    """Tagged error kinds surfaced to the UI."""

    SESSION_INVALID = "SESSION_INVALID"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_CANCELED = "SESSION_CANCELED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    SAS_MISMATCH = "SAS_MISMATCH"
    INVALID_KEY = "INVALID_KEY"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    NO_ACCESS_TOKEN = "NO_ACCESS_TOKEN"
    DEVICE_NOT_FOUND = "DEVICE_NOT_FOUND"
    LAST_TRUSTED_DEVICE = "LAST_TRUSTED_DEVICE"
    NO_DEVICE = "NO_DEVICE"
    ROOT_KEY_NOT_FOUND = "ROOT_KEY_NOT_FOUND"
    PAIRING_IN_PROGRESS = "PAIRING_IN_PROGRESS"
    INVALID_STATE = "INVALID_STATE"
    INVALID_CODE = "INVALID_CODE"
    ENVELOPE_MISSING = "ENVELOPE_MISSING"
    SERVER_ERROR = "SERVER_ERROR"


class TerminalAction(str, Enum):
    """What a terminal error screen offers the user."""

    RETRY = "retry"
    CLOSE = "close"


SECURITY_CODES = frozenset({
    SyncErrorCode.AUTHENTICATION_FAILED,
    SyncErrorCode.SAS_MISMATCH,
})

_RETRYABLE = frozenset({
    SyncErrorCode.NETWORK_ERROR,
    SyncErrorCode.TIMEOUT,
    SyncErrorCode.SERVER_ERROR,
})

_CLOSE_ONLY = SECURITY_CODES | {SyncErrorCode.SESSION_CANCELED}

# Server error codes map 1:1 onto ours where names agree.
_API_CODES = {code.value: code for code in SyncErrorCode}


class SyncError(Exception):
    """The single error type the service layer raises.

    Args:
        code: Tagged error kind.
        message: Human-readable detail (never contains key material).
        retryable: Whether the same operation may simply be retried.
            Defaults from the code.
    """

    def __init__(
        self,
        code: SyncErrorCode,
        message: str = "",
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(f"{code.value}: {message}" if message else code.value)
        self.code = code
        self.message = message or code.value
        self.retryable = code in _RETRYABLE if retryable is None else retryable

    @property
    def is_security_event(self) -> bool:
        """True for failures that indicate tampering or an active MITM."""
        return self.code in SECURITY_CODES

    @property
    def terminal_action(self) -> TerminalAction:
        """Whether the UI offers a fresh attempt or only a close button."""
        if self.code in _CLOSE_ONLY:
            return TerminalAction.CLOSE
        return TerminalAction.RETRY

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SyncError):
            return NotImplemented
        return (self.code, self.message) == (other.code, other.message)

    def __hash__(self) -> int:
        return hash((self.code, self.message))


def _from_api_error(exc: ApiError) -> SyncError:
    if exc.status_code == 401:
        return SyncError(SyncErrorCode.NO_ACCESS_TOKEN, exc.message or "Not signed in")
    code = _API_CODES.get(exc.code)
    if code is not None:
        return SyncError(code, exc.message)
    if exc.status_code == 404:
        return SyncError(SyncErrorCode.SESSION_INVALID, exc.message or "Not found")
    if exc.status_code >= 500:
        return SyncError(SyncErrorCode.SERVER_ERROR, exc.message)
    return SyncError(SyncErrorCode.INVALID_STATE, exc.message or exc.code)


def normalize_error(exc: BaseException) -> SyncError:
    """Convert any crypto, transport, or server failure into a SyncError.

    Args:
        exc: The exception raised below the coordinator boundary.

    Returns:
        SyncError: Tagged equivalent. Unknown exceptions become
        ``SERVER_ERROR`` with the type name only, so no internals leak.
    """
    if isinstance(exc, SyncError):
        return exc
    if isinstance(exc, AuthenticationFailed):
        return SyncError(SyncErrorCode.AUTHENTICATION_FAILED, str(exc) or "Verification failed")
    if isinstance(exc, InvalidKey):
        return SyncError(SyncErrorCode.INVALID_KEY, str(exc) or "Invalid key")
    if isinstance(exc, ApiError):
        return _from_api_error(exc)
    if isinstance(exc, httpx.TimeoutException):
        return SyncError(SyncErrorCode.TIMEOUT, "Request timed out")
    if isinstance(exc, httpx.TransportError):
        return SyncError(SyncErrorCode.NETWORK_ERROR, f"Network error: {type(exc).__name__}")
    if isinstance(exc, TimeoutError):
        return SyncError(SyncErrorCode.TIMEOUT, "Operation timed out")
    logger.warning("Unexpected error normalized: %s", type(exc).__name__)
    return SyncError(SyncErrorCode.SERVER_ERROR, f"Unexpected error: {type(exc).__name__}")
