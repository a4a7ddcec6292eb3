"""Detect provider errors carried in redirect fragments and describe them."""

from __future__ import annotations

import logging
from enum import Enum
from urllib.parse import parse_qsl, urlencode, urlsplit

from msgspec import Struct

from .config import PortalConfig

logger = logging.getLogger(__name__)

UNKNOWN_ERROR = "unknown_error"


class ErrorAction(str, Enum):
    RESEND = "resend"
    LOGIN = "login"
    RETRY = "retry"


class AuthErrorInfo(Struct, frozen=True):
    error: str
    error_code: str = ""
    error_description: str = ""

    @property
    def is_expired(self) -> bool:
        return self.error_code == "otp_expired"

    @property
    def is_access_denied(self) -> bool:
        return self.error_code == "access_denied"

    @property
    def is_invalid_token(self) -> bool:
        return self.error_code == "invalid_token"

    def to_query(self) -> str:
        return urlencode(
            {"error": self.error, "error_code": self.error_code, "error_description": self.error_description}
        )


class ErrorDescription(Struct, frozen=True):
    title: str
    message: str
    action: ErrorAction
    hint: str
    primary_label: str
    secondary_label: str


class MalformedFragment(ValueError):
    """Raised when a fragment has an ``error`` key but cannot be decoded."""


def parse_auth_error(fragment: str) -> AuthErrorInfo | None:
    """Decode ``error``/``error_code``/``error_description`` from a URL fragment.

    Returns ``None`` when the fragment carries no error (plain anchors included).
    Raises :class:`MalformedFragment` when it has an ``error`` key it cannot decode.
    """

    raw = fragment[1:] if fragment.startswith("#") else fragment
    if not raw:
        return None
    if not any(key == "error" for key, _ in parse_qsl(raw, keep_blank_values=True)):
        return None
    try:
        pairs = parse_qsl(raw, keep_blank_values=True, strict_parsing=True, errors="strict")
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedFragment(f"cannot decode error fragment: {raw!r}") from exc
    params = dict(pairs)
    if not params["error"].strip():
        raise MalformedFragment("error fragment has an empty error value")
    return AuthErrorInfo(
        error=params["error"],
        error_code=params.get("error_code", ""),
        error_description=params.get("error_description", ""),
    )


def info_from_query(query: str) -> AuthErrorInfo:
    """Rebuild the error shown on the error page from its query string."""

    params = dict(parse_qsl(query.lstrip("?"), keep_blank_values=True))
    return AuthErrorInfo(
        error=params.get("error") or UNKNOWN_ERROR,
        error_code=params.get("error_code", ""),
        error_description=params.get("error_description", ""),
    )


_TITLES = {
    "otp_expired": "Link Expired",
    "access_denied": "Access Denied",
    "invalid_token": "Invalid Link",
}

_MESSAGES = {
    "otp_expired": "Your email verification link has expired. Please request a new one.",
    "access_denied": "Access denied. Please try logging in again.",
    "invalid_token": "The verification link is invalid. Please request a new one.",
    "email_not_confirmed": "Please check your email and confirm your account before signing in.",
    "invalid_credentials": "Invalid email or password. Please try again.",
    "too_many_requests": "Too many attempts. Please try again later.",
}

_RESEND_VERIFICATION = (ErrorAction.RESEND, "Request a new verification email", "Resend Email", "Back to Login")

_ACTIONS = {
    "otp_expired": _RESEND_VERIFICATION,
    "invalid_token": _RESEND_VERIFICATION,
    "access_denied": (ErrorAction.LOGIN, "Please sign in again", "Sign In", "Back to Home"),
    "email_not_confirmed": (ErrorAction.RESEND, "Resend confirmation email", "Resend Email", "Back to Login"),
}

_DEFAULT_ACTION = (ErrorAction.RETRY, "Please try again", "Try Again", "Back to Home")


def describe(info: AuthErrorInfo | None) -> ErrorDescription:
    """Title, message and suggested action for the error page."""

    if info is None:
        action, hint, primary, secondary = _DEFAULT_ACTION
        return ErrorDescription(
            title="Authentication Error",
            message="An authentication error occurred",
            action=action,
            hint=hint,
            primary_label=primary,
            secondary_label=secondary,
        )
    code = info.error_code
    message = _MESSAGES.get(code) or info.error_description or "An authentication error occurred. Please try again."
    action, hint, primary, secondary = _ACTIONS.get(code, _DEFAULT_ACTION)
    return ErrorDescription(
        title=_TITLES.get(code, "Authentication Error"),
        message=message,
        action=action,
        hint=hint,
        primary_label=primary,
        secondary_label=secondary,
    )


class RedirectErrorHandler:
    """Turn a provider error fragment into a one-time redirect to the error page."""

    def __init__(self, config: PortalConfig | None = None) -> None:
        self.config = config or PortalConfig()

    def check(self, url: str) -> str | None:
        """Return the error-page target for ``url``, or ``None`` to continue navigating.

        The target carries the error in its query string and no fragment, so
        checking it again yields ``None``.
        """

        fragment = urlsplit(url).fragment
        if not fragment:
            return None
        try:
            info = parse_auth_error(fragment)
        except MalformedFragment:
            logger.warning("Malformed error fragment on %s", urlsplit(url).path or "/")
            info = AuthErrorInfo(error=UNKNOWN_ERROR)
        if info is None:
            return None
        logger.info("Redirecting provider error %s (%s) to the error page", info.error, info.error_code or "-")
        return f"{self.config.error_path}?{info.to_query()}"


__all__ = [
    "AuthErrorInfo",
    "ErrorAction",
    "ErrorDescription",
    "MalformedFragment",
    "RedirectErrorHandler",
    "UNKNOWN_ERROR",
    "describe",
    "info_from_query",
    "parse_auth_error",
]
