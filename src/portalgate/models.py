"""Typed records shared by the identity and routing layers."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any, Mapping

import msgspec
from msgspec import Struct, field

from .exceptions import UnknownRoleError

ROLE_METADATA_KEY = "user_type"


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    STAFF = "staff"
    ADMIN = "admin"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class OtpChannel(str, Enum):
    PHONE = "phone"
    EMAIL = "email"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class AuthMethod(str, Enum):
    """How the provider authenticated an identity."""

    PASSWORD = "password"
    OAUTH = "oauth"
    OTP_PHONE = "otp_phone"
    OTP_EMAIL = "otp_email"

    @classmethod
    def for_otp(cls, channel: OtpChannel) -> "AuthMethod":
        return cls.OTP_PHONE if channel is OtpChannel.PHONE else cls.OTP_EMAIL


class ActiveChannel(str, Enum):
    PASSWORD = "password"
    OTP_PHONE = "otp_phone"
    OTP_EMAIL = "otp_email"
    NONE = "none"

    @classmethod
    def for_method(cls, method: AuthMethod) -> "ActiveChannel":
        if method is AuthMethod.OTP_PHONE:
            return cls.OTP_PHONE
        if method is AuthMethod.OTP_EMAIL:
            return cls.OTP_EMAIL
        return cls.PASSWORD


class SessionEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


def parse_role(metadata: Mapping[str, Any] | None, *, default: Role = Role.PATIENT) -> Role:
    """Read the role from identity metadata.

    Missing or empty values fall back to ``default``; anything else must name one
    of the closed set of roles.
    """

    raw = (metadata or {}).get(ROLE_METADATA_KEY)
    if raw is None or raw == "":
        return default
    if isinstance(raw, Role):
        return raw
    if not isinstance(raw, str):
        raise UnknownRoleError(f"Role metadata must be a string, got {type(raw).__name__}")
    try:
        return Role(raw.strip().lower())
    except ValueError as exc:
        raise UnknownRoleError(f"Unknown role {raw!r}") from exc


class Identity(Struct, frozen=True):
    """Principal asserted by the identity provider."""

    id: str
    email_or_phone: str
    role: Role
    method: AuthMethod = AuthMethod.PASSWORD
    raw_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        for key in ("full_name", "name"):
            value = self.raw_metadata.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ""

    @property
    def email(self) -> str | None:
        if "@" in self.email_or_phone:
            return self.email_or_phone
        value = self.raw_metadata.get("email")
        return value if isinstance(value, str) and value else None

    @property
    def phone(self) -> str | None:
        if self.email_or_phone and "@" not in self.email_or_phone:
            return self.email_or_phone
        value = self.raw_metadata.get("phone")
        return value if isinstance(value, str) and value else None


class Session(Struct, frozen=True):
    """Provider session wrapping the authenticated identity."""

    identity: Identity
    access_token: str
    expires_at: dt.datetime | None = None


class Profile(Struct, frozen=True):
    """Application record attached one-to-one to an :class:`Identity`."""

    identity_id: str
    role: Role
    full_name: str = ""
    email: str | None = None
    phone: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return msgspec.to_builtins(self)


def profile_from_record(record: Mapping[str, Any]) -> Profile:
    """Decode a profile store row, folding unknown columns into ``extra``."""

    known = {"identity_id", "role", "full_name", "email", "phone", "extra"}
    payload: dict[str, Any] = {key: value for key, value in record.items() if key in known}
    if "identity_id" not in payload and "id" in record:
        payload["identity_id"] = record["id"]
    if "role" not in payload and ROLE_METADATA_KEY in record:
        payload["role"] = record[ROLE_METADATA_KEY]
    if isinstance(payload.get("role"), Role):
        payload["role"] = payload["role"].value
    if payload.get("full_name") is None:
        payload["full_name"] = ""
    extra = dict(payload.get("extra") or {})
    for key, value in record.items():
        if key not in known and key not in {"id", ROLE_METADATA_KEY}:
            extra[key] = value
    payload["extra"] = extra
    return msgspec.convert(payload, Profile)


class OtpChallengeRecord(Struct, frozen=True):
    channel: OtpChannel
    destination: str
    issued_at: dt.datetime
    expires_at: dt.datetime
    attempts: int = 0

    def is_expired(self, now: dt.datetime) -> bool:
        return now > self.expires_at


class SessionContext(Struct, frozen=True):
    """Reconciled view consumed by routing and the view layer."""

    active_channel: ActiveChannel = ActiveChannel.NONE
    identity: Identity | None = None
    profile: Profile | None = None
    is_bootstrapping: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    @property
    def role(self) -> Role | None:
        return self.identity.role if self.identity is not None else None


__all__ = [
    "ROLE_METADATA_KEY",
    "ActiveChannel",
    "AuthMethod",
    "Identity",
    "OtpChallengeRecord",
    "OtpChannel",
    "Profile",
    "Role",
    "Session",
    "SessionContext",
    "SessionEvent",
    "parse_role",
    "profile_from_record",
]
