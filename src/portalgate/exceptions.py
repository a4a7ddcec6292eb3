"""Error taxonomy and result values."""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, TypeVar

from msgspec import Struct

T = TypeVar("T")


class PortalGateError(Exception):
    """Base error type."""


class ProviderError(PortalGateError):
    """Raised by identity provider and profile store collaborators."""

    def __init__(self, code: str, message: str = "", *, status: int | None = None) -> None:
        super().__init__(code, message)
        self.code = code
        self.message = message or code
        self.status = status

    def __str__(self) -> str:
        return self.message


class UnknownRoleError(PortalGateError, ValueError):
    """Raised when identity metadata carries a role outside the closed set."""


class ReconcilerError(PortalGateError, RuntimeError):
    """Raised when the session reconciler lifecycle is misused."""


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_CONFIRMED = "email_or_phone_not_confirmed"
    RATE_LIMITED = "rate_limited"
    INVALID_OR_EXPIRED_CODE = "invalid_or_expired_code"
    PROFILE_NOT_FOUND = "profile_not_found"
    UNAVAILABLE = "network_or_provider_unavailable"
    UNKNOWN = "unknown"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class AuthError(Struct, frozen=True):
    """User-presentable description of a failed authentication operation."""

    kind: AuthErrorKind
    message: str
    code: str | None = None


class ChallengeError(PortalGateError):
    """Raised on an invalid one-time-code transition or a failed code request."""

    def __init__(self, message: str, *, error: AuthError | None = None) -> None:
        super().__init__(message)
        self.error = error


class Result(Struct, Generic[T], frozen=True):
    """Outcome of a channel store operation; exactly one of ``value``/``error`` is meaningful."""

    value: T | None = None
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "Result[Any]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> "Result[Any]":
        return cls(error=error)


# Substrings emitted by the hosted provider, matched case-insensitively.
_MESSAGE_KINDS: tuple[tuple[str, AuthErrorKind], ...] = (
    ("invalid login credentials", AuthErrorKind.INVALID_CREDENTIALS),
    ("email not confirmed", AuthErrorKind.NOT_CONFIRMED),
    ("phone not confirmed", AuthErrorKind.NOT_CONFIRMED),
    ("too many requests", AuthErrorKind.RATE_LIMITED),
    ("token expired", AuthErrorKind.INVALID_OR_EXPIRED_CODE),
    ("token has expired", AuthErrorKind.INVALID_OR_EXPIRED_CODE),
    ("invalid token", AuthErrorKind.INVALID_OR_EXPIRED_CODE),
    ("failed to fetch", AuthErrorKind.UNAVAILABLE),
    ("network", AuthErrorKind.UNAVAILABLE),
)

_CODE_KINDS: dict[str, AuthErrorKind] = {
    "invalid_credentials": AuthErrorKind.INVALID_CREDENTIALS,
    "invalid_grant": AuthErrorKind.INVALID_CREDENTIALS,
    "email_not_confirmed": AuthErrorKind.NOT_CONFIRMED,
    "phone_not_confirmed": AuthErrorKind.NOT_CONFIRMED,
    "over_request_rate_limit": AuthErrorKind.RATE_LIMITED,
    "over_email_send_rate_limit": AuthErrorKind.RATE_LIMITED,
    "over_sms_send_rate_limit": AuthErrorKind.RATE_LIMITED,
    "too_many_requests": AuthErrorKind.RATE_LIMITED,
    "rate_limited": AuthErrorKind.RATE_LIMITED,
    "otp_expired": AuthErrorKind.INVALID_OR_EXPIRED_CODE,
    "invalid_otp": AuthErrorKind.INVALID_OR_EXPIRED_CODE,
    "invalid_token": AuthErrorKind.INVALID_OR_EXPIRED_CODE,
    "profile_not_found": AuthErrorKind.PROFILE_NOT_FOUND,
    "PGRST116": AuthErrorKind.PROFILE_NOT_FOUND,
    "unavailable": AuthErrorKind.UNAVAILABLE,
    "network_error": AuthErrorKind.UNAVAILABLE,
}

_DEFAULT_MESSAGES: dict[AuthErrorKind, str] = {
    AuthErrorKind.INVALID_CREDENTIALS: "Invalid email or password",
    AuthErrorKind.NOT_CONFIRMED: "Please check your email and confirm your account",
    AuthErrorKind.RATE_LIMITED: "Too many attempts. Please try again later",
    AuthErrorKind.INVALID_OR_EXPIRED_CODE: "Invalid or expired code. Please try again or request a new one",
    AuthErrorKind.PROFILE_NOT_FOUND: "Profile not found",
    AuthErrorKind.UNAVAILABLE: "The service is unavailable. Please try again shortly",
}


def classify(code: str | None, message: str | None = None, *, status: int | None = None) -> AuthErrorKind:
    """Map a provider error code/message/status onto :class:`AuthErrorKind`."""

    if code and code in _CODE_KINDS:
        return _CODE_KINDS[code]
    lowered = (message or "").lower()
    for needle, kind in _MESSAGE_KINDS:
        if needle in lowered:
            return kind
    if status == 429:
        return AuthErrorKind.RATE_LIMITED
    if status is not None and status >= 500:
        return AuthErrorKind.UNAVAILABLE
    return AuthErrorKind.UNKNOWN


def auth_error_from(exc: BaseException, *, fallback: str = "Authentication failed") -> AuthError:
    """Translate an exception raised by a collaborator into an :class:`AuthError`."""

    if isinstance(exc, ChallengeError) and exc.error is not None:
        return exc.error
    if isinstance(exc, ProviderError):
        kind = classify(exc.code, exc.message, status=exc.status)
        message = _DEFAULT_MESSAGES.get(kind) or exc.message or fallback
        return AuthError(kind=kind, message=message, code=exc.code)
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        kind = AuthErrorKind.UNAVAILABLE
        return AuthError(kind=kind, message=_DEFAULT_MESSAGES[kind], code=type(exc).__name__)
    return AuthError(kind=AuthErrorKind.UNKNOWN, message=str(exc) or fallback, code=type(exc).__name__)


def default_message(kind: AuthErrorKind) -> str:
    return _DEFAULT_MESSAGES.get(kind, "An authentication error occurred")


__all__ = [
    "AuthError",
    "AuthErrorKind",
    "ChallengeError",
    "PortalGateError",
    "ProviderError",
    "ReconcilerError",
    "Result",
    "UnknownRoleError",
    "auth_error_from",
    "classify",
    "default_message",
]
