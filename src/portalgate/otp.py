"""One-time-code challenge state machine.

One :class:`OtpChallenge` exists per channel (phone, email).  The machine moves
``idle -> sent -> verifying -> authenticated | rejected | expired``:

* ``send`` is accepted from ``idle``, ``rejected`` and ``expired``; ``resend``
  additionally from ``sent`` and reuses the current destination.
* ``verify`` is accepted while a code is outstanding (``sent``, ``rejected`` or
  ``expired``).  Expiry is decided by the local clock before any provider call.
* ``authenticated`` is terminal for the challenge, which then returns to
  ``idle`` so the form can be reused.
* ``reset`` returns to ``idle`` from anywhere and invalidates in-flight
  verifications: their results are reported as stale and leave the state alone.
  A stale outcome still carries any session the provider established, so the
  caller can end it.

No cooldown between sends is enforced here; callers throttle ``resend``.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from enum import Enum
from typing import Any, Callable, Mapping

from msgspec import Struct, structs

from .exceptions import AuthError, AuthErrorKind, ChallengeError, auth_error_from, default_message
from .models import ROLE_METADATA_KEY, OtpChallengeRecord, OtpChannel, Role, Session
from .observability import Observability, mask_destination
from .provider import IdentityProviderClient

logger = logging.getLogger(__name__)

DEFAULT_CODE_TTL = dt.timedelta(minutes=10)

_PHONE_SEPARATORS = re.compile(r"[\s\-().]")


class ChallengeState(str, Enum):
    IDLE = "idle"
    SENT = "sent"
    VERIFYING = "verifying"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"
    EXPIRED = "expired"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


_SENDABLE = frozenset({ChallengeState.IDLE, ChallengeState.REJECTED, ChallengeState.EXPIRED})
_VERIFIABLE = frozenset({ChallengeState.SENT, ChallengeState.REJECTED, ChallengeState.EXPIRED})
_RESENDABLE = _VERIFIABLE


class VerifyOutcome(Struct, frozen=True):
    """Result of a single ``verify`` call."""

    state: ChallengeState
    session: Session | None = None
    error: AuthError | None = None
    stale: bool = False

    @property
    def authenticated(self) -> bool:
        return self.state is ChallengeState.AUTHENTICATED and not self.stale


def normalize_destination(channel: OtpChannel, destination: str, *, default_country_code: str = "+91") -> str:
    """Canonicalise a phone number or email address before it reaches the provider."""

    value = destination.strip()
    if not value:
        raise ChallengeError(
            "destination is required",
            error=AuthError(kind=AuthErrorKind.UNKNOWN, message="Please enter a phone number or email address"),
        )
    if channel is OtpChannel.EMAIL:
        return value.lower()
    digits = _PHONE_SEPARATORS.sub("", value)
    if digits.startswith("+"):
        return digits
    if digits.startswith("00"):
        return "+" + digits[2:]
    return f"{default_country_code}{digits.lstrip('0')}"


def format_remaining(remaining: dt.timedelta) -> str:
    """Render a countdown as ``m:ss``, or ``Expired`` once it reaches zero."""

    total = int(remaining.total_seconds())
    if total <= 0:
        return "Expired"
    minutes, seconds = divmod(total, 60)
    return f"{minutes}:{seconds:02d}"


class OtpChallenge:
    """Track issuance and verification of one-time codes for one channel."""

    def __init__(
        self,
        channel: OtpChannel,
        provider: IdentityProviderClient,
        *,
        ttl: dt.timedelta = DEFAULT_CODE_TTL,
        clock: Callable[[], dt.datetime] | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.channel = channel
        self.provider = provider
        self.ttl = ttl
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self._observability = observability or Observability()
        self._state = ChallengeState.IDLE
        self._record: OtpChallengeRecord | None = None
        self._metadata: dict[str, Any] = {}
        self._generation = 0

    @property
    def state(self) -> ChallengeState:
        return self._state

    @property
    def record(self) -> OtpChallengeRecord | None:
        return self._record

    @property
    def outstanding(self) -> bool:
        return self._record is not None

    def now(self) -> dt.datetime:
        return self._clock()

    async def send(self, destination: str, metadata: Mapping[str, Any] | None = None) -> OtpChallengeRecord:
        if self._state not in _SENDABLE:
            raise ChallengeError(f"cannot send a code while {self._state.value}")
        return await self._issue(destination, metadata)

    async def resend(self) -> OtpChallengeRecord:
        if self._record is None or self._state not in _RESENDABLE:
            raise ChallengeError(f"no code to resend while {self._state.value}")
        return await self._issue(self._record.destination, self._metadata)

    async def verify(self, code: str) -> VerifyOutcome:
        if self._state not in _VERIFIABLE or self._record is None:
            raise ChallengeError(f"cannot verify a code while {self._state.value}")
        record = self._record
        now = self._clock()
        if record.is_expired(now):
            self._state = ChallengeState.EXPIRED
            self._observability.event("otp.expired", channel=self.channel.value, attempts=record.attempts)
            error = AuthError(
                kind=AuthErrorKind.INVALID_OR_EXPIRED_CODE,
                message="Code expired. Please request a new one",
                code="otp_expired",
            )
            return VerifyOutcome(state=ChallengeState.EXPIRED, error=error)

        generation = self._generation
        self._state = ChallengeState.VERIFYING
        self._record = structs.replace(record, attempts=record.attempts + 1)
        try:
            with self._observability.span("otp.verify", {"channel": self.channel.value}):
                session = await self.provider.verify_one_time_code(self.channel, record.destination, code.strip())
        except Exception as exc:
            if generation != self._generation:
                return VerifyOutcome(state=self._state, stale=True)
            error = auth_error_from(exc, fallback="Failed to verify code")
            self._state = ChallengeState.EXPIRED if error.code == "otp_expired" else ChallengeState.REJECTED
            self._observability.event(
                "otp.rejected", channel=self.channel.value, kind=error.kind.value, attempts=self._attempts()
            )
            return VerifyOutcome(state=self._state, error=error)
        if generation != self._generation:
            logger.info("Ignoring %s code verification that completed after reset", self.channel.value)
            return VerifyOutcome(state=self._state, session=session, stale=True)
        self._observability.event("otp.authenticated", channel=self.channel.value, attempts=self._attempts())
        self._clear()
        return VerifyOutcome(state=ChallengeState.AUTHENTICATED, session=session)

    def reset(self) -> None:
        if self._state is not ChallengeState.IDLE:
            self._observability.event("otp.reset", channel=self.channel.value, state=self._state.value)
        self._generation += 1
        self._clear()

    def time_remaining(self, now: dt.datetime | None = None) -> dt.timedelta:
        if self._record is None:
            return dt.timedelta(0)
        remaining = self._record.expires_at - (now or self._clock())
        return max(remaining, dt.timedelta(0))

    def formatted_time_remaining(self, now: dt.datetime | None = None) -> str:
        return format_remaining(self.time_remaining(now))

    async def _issue(self, destination: str, metadata: Mapping[str, Any] | None) -> OtpChallengeRecord:
        payload = dict(metadata or {})
        payload.setdefault(ROLE_METADATA_KEY, Role.PATIENT.value)
        payload.setdefault(self.channel.value, destination)
        try:
            with self._observability.span("otp.send", {"channel": self.channel.value}):
                await self.provider.send_one_time_code(self.channel, destination, payload)
        except Exception as exc:
            error = auth_error_from(exc, fallback="Failed to send code")
            self._observability.event(
                "otp.send_failed",
                channel=self.channel.value,
                destination=mask_destination(destination),
                kind=error.kind.value,
            )
            raise ChallengeError(error.message or default_message(error.kind), error=error) from exc
        issued_at = self._clock()
        self._generation += 1
        self._metadata = payload
        self._record = OtpChallengeRecord(
            channel=self.channel,
            destination=destination,
            issued_at=issued_at,
            expires_at=issued_at + self.ttl,
            attempts=0,
        )
        self._state = ChallengeState.SENT
        self._observability.event(
            "otp.sent", channel=self.channel.value, destination=mask_destination(destination)
        )
        return self._record

    def _attempts(self) -> int:
        return self._record.attempts if self._record is not None else 0

    def _clear(self) -> None:
        self._state = ChallengeState.IDLE
        self._record = None
        self._metadata = {}


__all__ = [
    "DEFAULT_CODE_TTL",
    "ChallengeState",
    "OtpChallenge",
    "VerifyOutcome",
    "format_remaining",
    "normalize_destination",
]
