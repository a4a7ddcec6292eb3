from __future__ import annotations

import pytest

from portalgate.exceptions import (
    AuthError,
    AuthErrorKind,
    ChallengeError,
    ProviderError,
    Result,
    auth_error_from,
    classify,
)


@pytest.mark.parametrize(
    ("code", "message", "status", "kind"),
    [
        ("invalid_credentials", "", None, AuthErrorKind.INVALID_CREDENTIALS),
        (None, "Invalid login credentials", 400, AuthErrorKind.INVALID_CREDENTIALS),
        (None, "Email not confirmed", 400, AuthErrorKind.NOT_CONFIRMED),
        ("over_sms_send_rate_limit", "", 429, AuthErrorKind.RATE_LIMITED),
        (None, "slow down", 429, AuthErrorKind.RATE_LIMITED),
        ("otp_expired", "", 403, AuthErrorKind.INVALID_OR_EXPIRED_CODE),
        (None, "Token has expired or is invalid", 403, AuthErrorKind.INVALID_OR_EXPIRED_CODE),
        ("PGRST116", "", 406, AuthErrorKind.PROFILE_NOT_FOUND),
        (None, "TypeError: Failed to fetch", None, AuthErrorKind.UNAVAILABLE),
        (None, "upstream exploded", 502, AuthErrorKind.UNAVAILABLE),
        ("weird", "something else", 400, AuthErrorKind.UNKNOWN),
    ],
)
def test_classify(code: str | None, message: str, status: int | None, kind: AuthErrorKind) -> None:
    assert classify(code, message, status=status) is kind


def test_auth_error_from_provider_error_uses_friendly_message() -> None:
    error = auth_error_from(ProviderError("invalid_credentials", "Invalid login credentials", status=400))
    assert error == AuthError(
        kind=AuthErrorKind.INVALID_CREDENTIALS, message="Invalid email or password", code="invalid_credentials"
    )


def test_auth_error_from_unknown_provider_error_keeps_message() -> None:
    error = auth_error_from(ProviderError("weak_password", "Password should be at least 6 characters"))
    assert error.kind is AuthErrorKind.UNKNOWN
    assert error.message == "Password should be at least 6 characters"


def test_auth_error_from_connection_and_challenge_errors() -> None:
    assert auth_error_from(ConnectionError()).kind is AuthErrorKind.UNAVAILABLE
    wrapped = AuthError(kind=AuthErrorKind.RATE_LIMITED, message="slow down")
    assert auth_error_from(ChallengeError("send failed", error=wrapped)) is wrapped
    assert auth_error_from(ValueError(), fallback="Failed to sign in").message == "Failed to sign in"


def test_result_helpers() -> None:
    assert Result.success(3).ok
    failed = Result.failure(AuthError(kind=AuthErrorKind.UNKNOWN, message="nope"))
    assert not failed.ok
    assert failed.value is None
