"""Tests for sklink.errors — normalization into SyncError."""

from __future__ import annotations

import httpx
import pytest

from sklink.errors import (
    ApiError,
    AuthenticationFailed,
    InvalidKey,
    SyncError,
    SyncErrorCode,
    TerminalAction,
    normalize_error,
)


class TestNormalizeError:
    """Every failure below the service becomes one tagged error."""

    def test_sync_error_passes_through(self) -> None:
        error = SyncError(SyncErrorCode.SAS_MISMATCH)
        assert normalize_error(error) is error

    def test_crypto_errors(self) -> None:
        assert normalize_error(AuthenticationFailed("x")).code == SyncErrorCode.AUTHENTICATION_FAILED
        assert normalize_error(InvalidKey("x")).code == SyncErrorCode.INVALID_KEY

    @pytest.mark.parametrize("status,code,expected", [
        (401, "UNAUTHENTICATED", SyncErrorCode.NO_ACCESS_TOKEN),
        (410, "SESSION_EXPIRED", SyncErrorCode.SESSION_EXPIRED),
        (409, "LAST_TRUSTED_DEVICE", SyncErrorCode.LAST_TRUSTED_DEVICE),
        (404, "NOT_FOUND", SyncErrorCode.SESSION_INVALID),
        (503, "UNAVAILABLE", SyncErrorCode.SERVER_ERROR),
        (403, "DEVICE_NOT_TRUSTED", SyncErrorCode.INVALID_STATE),
    ])
    def test_api_errors(self, status, code, expected) -> None:
        assert normalize_error(ApiError(status, code, "detail")).code == expected

    def test_timeout(self) -> None:
        error = normalize_error(httpx.ReadTimeout("slow"))
        assert error.code == SyncErrorCode.TIMEOUT
        assert error.retryable

    def test_network(self) -> None:
        error = normalize_error(httpx.ConnectError("refused"))
        assert error.code == SyncErrorCode.NETWORK_ERROR
        assert error.retryable

    def test_unknown_hides_details(self) -> None:
        error = normalize_error(RuntimeError("secret internals"))
        assert error.code == SyncErrorCode.SERVER_ERROR
        assert "secret internals" not in error.message


class TestSyncError:
    """Classification helpers."""

    def test_security_events(self) -> None:
        assert SyncError(SyncErrorCode.SAS_MISMATCH).is_security_event
        assert SyncError(SyncErrorCode.AUTHENTICATION_FAILED).is_security_event
        assert not SyncError(SyncErrorCode.SESSION_EXPIRED).is_security_event

    def test_terminal_actions(self) -> None:
        assert SyncError(SyncErrorCode.SAS_MISMATCH).terminal_action == TerminalAction.CLOSE
        assert SyncError(SyncErrorCode.SESSION_CANCELED).terminal_action == TerminalAction.CLOSE
        assert SyncError(SyncErrorCode.SESSION_EXPIRED).terminal_action == TerminalAction.RETRY
        assert SyncError(SyncErrorCode.NETWORK_ERROR).terminal_action == TerminalAction.RETRY

    def test_message_defaults_to_code(self) -> None:
        assert SyncError(SyncErrorCode.NO_DEVICE).message == "NO_DEVICE"

    def test_equality(self) -> None:
        assert SyncError(SyncErrorCode.TIMEOUT, "x") == SyncError(SyncErrorCode.TIMEOUT, "x")
        assert SyncError(SyncErrorCode.TIMEOUT, "x") != SyncError(SyncErrorCode.TIMEOUT, "y")
