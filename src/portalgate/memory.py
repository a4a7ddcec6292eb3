"""In-memory identity provider and profile store.

These back local development and the test-suite.  They follow the hosted
platform's observable behaviour: error codes and messages, optional email
confirmation, one outstanding code per destination, and session-change
broadcasts to every subscriber.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import hashlib
import hmac
import inspect
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret as argon2_hash_secret

from .exceptions import ProviderError
from .id57 import generate_id57
from .models import ROLE_METADATA_KEY, AuthMethod, Identity, OtpChannel, Session, SessionEvent, parse_role
from .provider import OAuthRedirect, SessionChangeCallback, SignUpOutcome

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class PasswordHasher:
    """Argon2id hashing run off the event loop."""

    def __init__(self, *, time_cost: int = 2, memory_cost: int = 19_456, parallelism: int = 1) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    async def hash(self, password: str, *, salt: str) -> str:
        return await asyncio.to_thread(self._hash, password, salt)

    async def verify(self, password: str, *, salt: str, expected: str) -> bool:
        candidate = await self.hash(password, salt=salt)
        return hmac.compare_digest(candidate, expected)

    def _hash(self, password: str, salt: str) -> str:
        hashed = argon2_hash_secret(
            password.encode(),
            hashlib.sha256(salt.encode()).digest(),
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=32,
            type=Argon2Type.ID,
        )
        return hashed.decode() if isinstance(hashed, bytes) else hashed


@dataclass(slots=True)
class _AttemptState:
    failures: int = 0
    last_failure: dt.datetime | None = None
    locked_until: dt.datetime | None = None


class AttemptLimiter:
    """Lock a key out after repeated failures inside a sliding window."""

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window: dt.timedelta = dt.timedelta(minutes=15),
        lockout_period: dt.timedelta = dt.timedelta(minutes=15),
    ) -> None:
        self.max_attempts = max_attempts
        self.window = window
        self.lockout_period = lockout_period
        self._states: dict[str, _AttemptState] = {}

    def enforce(self, key: str, now: dt.datetime) -> None:
        state = self._states.get(key)
        if state is None:
            return
        self._refresh(key, state, now)
        if state.locked_until is not None and state.locked_until > now:
            raise ProviderError("over_request_rate_limit", "Too many requests", status=429)

    def record_failure(self, key: str, now: dt.datetime) -> None:
        state = self._states.setdefault(key, _AttemptState())
        self._refresh(key, state, now)
        state = self._states.setdefault(key, state)
        state.failures += 1
        state.last_failure = now
        if state.failures >= self.max_attempts:
            state.locked_until = now + self.lockout_period
            state.failures = 0
            state.last_failure = None

    def record_success(self, key: str) -> None:
        self._states.pop(key, None)

    def _refresh(self, key: str, state: _AttemptState, now: dt.datetime) -> None:
        if state.locked_until is not None and state.locked_until <= now:
            state.locked_until = None
        if state.last_failure is not None and now - state.last_failure >= self.window:
            state.failures = 0
            state.last_failure = None
        if state.locked_until is None and state.last_failure is None and state.failures <= 0:
            self._states.pop(key, None)


@dataclass(slots=True)
class _Account:
    identity: Identity
    password_hash: str
    salt: str
    confirmed: bool


@dataclass(slots=True)
class _IssuedCode:
    code: str
    expires_at: dt.datetime
    metadata: dict[str, Any] = field(default_factory=dict)


class _Subscription:
    def __init__(self, owner: "InMemoryIdentityProvider", callback: SessionChangeCallback) -> None:
        self._owner = owner
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._owner._drop(self)

    async def deliver(self, event: SessionEvent, session: Session | None) -> None:
        result = self._callback(event, session)
        if inspect.isawaitable(result):
            await result


class InMemoryIdentityProvider:
    """Identity provider that keeps accounts, codes and the session in memory."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        require_email_confirmation: bool = False,
        code_ttl: dt.timedelta = dt.timedelta(minutes=10),
        session_ttl: dt.timedelta = dt.timedelta(hours=1),
        hasher: PasswordHasher | None = None,
        limiter: AttemptLimiter | None = None,
        code_length: int = 6,
    ) -> None:
        self._clock = clock or _utcnow
        self.require_email_confirmation = require_email_confirmation
        self.code_ttl = code_ttl
        self.session_ttl = session_ttl
        self.hasher = hasher or PasswordHasher()
        self.limiter = limiter or AttemptLimiter()
        self.code_length = code_length
        self._accounts: dict[str, _Account] = {}
        self._otp_identities: dict[tuple[OtpChannel, str], Identity] = {}
        self._codes: dict[tuple[OtpChannel, str], _IssuedCode] = {}
        self._subscriptions: list[_Subscription] = []
        self._failures: dict[str, list[ProviderError]] = {}
        self.session: Session | None = None
        self.calls: list[str] = []
        self.outbox: list[tuple[str, str]] = []

    # ------------------------------------------------------------------ test hooks
    def fail_next(self, operation: str, error: ProviderError) -> None:
        """Make the next call to ``operation`` raise ``error``."""

        self._failures.setdefault(operation, []).append(error)

    def last_code(self, channel: OtpChannel, destination: str) -> str | None:
        issued = self._codes.get((channel, destination))
        return issued.code if issued is not None else None

    def confirm_email(self, email: str) -> None:
        account = self._accounts.get(email.lower())
        if account is None:
            raise ProviderError("user_not_found", "User not found", status=404)
        account.confirmed = True

    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def emit(self, event: SessionEvent, session: Session | None) -> None:
        """Broadcast a session change to every subscriber, as the platform does."""

        logger.debug("Broadcasting %s to %d subscribers", event.value, len(self._subscriptions))
        for subscription in tuple(self._subscriptions):
            if subscription.active:
                await subscription.deliver(event, session)

    async def set_session(self, session: Session | None, event: SessionEvent | None = None) -> None:
        self.session = session
        if event is None:
            event = SessionEvent.SIGNED_IN if session is not None else SessionEvent.SIGNED_OUT
        await self.emit(event, session)

    async def seed_account(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        confirmed: bool = True,
    ) -> Identity:
        """Register an account directly, without signing in or broadcasting."""

        identity = self._new_identity(email, AuthMethod.PASSWORD, metadata or {})
        salt = secrets.token_hex(16)
        hashed = await self.hasher.hash(password, salt=salt)
        self._accounts[email.lower()] = _Account(identity, hashed, salt, confirmed)
        return identity

    # ------------------------------------------------------------------ provider API
    async def sign_in_with_password(self, email: str, password: str) -> Session:
        self._begin("sign_in_with_password")
        now = self._clock()
        key = f"password:{email.lower()}"
        self.limiter.enforce(key, now)
        account = self._accounts.get(email.lower())
        if account is None or not await self.hasher.verify(
            password, salt=account.salt, expected=account.password_hash
        ):
            self.limiter.record_failure(key, now)
            raise ProviderError("invalid_credentials", "Invalid login credentials", status=400)
        if self.require_email_confirmation and not account.confirmed:
            raise ProviderError("email_not_confirmed", "Email not confirmed", status=400)
        self.limiter.record_success(key)
        session = self._issue(account.identity)
        await self.set_session(session, SessionEvent.SIGNED_IN)
        return session

    async def sign_up(self, email: str, password: str, metadata: Mapping[str, Any]) -> SignUpOutcome:
        self._begin("sign_up")
        if email.lower() in self._accounts:
            raise ProviderError("user_already_exists", "User already registered", status=422)
        if len(password) < 6:
            raise ProviderError("weak_password", "Password should be at least 6 characters", status=422)
        identity = await self.seed_account(
            email, password, metadata, confirmed=not self.require_email_confirmation
        )
        if self.require_email_confirmation:
            self.outbox.append(("confirm", email))
            return SignUpOutcome(identity=identity, session=None)
        session = self._issue(identity)
        await self.set_session(session, SessionEvent.SIGNED_IN)
        return SignUpOutcome(identity=identity, session=session)

    async def sign_out(self) -> None:
        self._begin("sign_out")
        await self.set_session(None, SessionEvent.SIGNED_OUT)

    async def get_session(self) -> Session | None:
        self._begin("get_session")
        session = self.session
        if session is not None and session.expires_at is not None and session.expires_at <= self._clock():
            self.session = None
            return None
        return session

    def on_session_change(self, callback: SessionChangeCallback) -> _Subscription:
        subscription = _Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    async def reset_password_for_email(self, email: str, *, redirect_to: str | None = None) -> None:
        self._begin("reset_password_for_email")
        # Unknown addresses succeed silently so that accounts cannot be enumerated.
        self.outbox.append(("recovery", email))

    async def resend_verification_email(self, email: str, *, redirect_to: str | None = None) -> None:
        self._begin("resend_verification_email")
        self.outbox.append(("confirm", email))

    async def sign_in_with_oauth(self, provider: str, *, redirect_to: str | None = None) -> OAuthRedirect:
        self._begin("sign_in_with_oauth")
        if provider not in {"google", "github", "azure"}:
            raise ProviderError("validation_failed", "Unsupported provider: provider is not enabled", status=400)
        target = redirect_to or ""
        return OAuthRedirect(provider=provider, url=f"https://auth.invalid/authorize?provider={provider}&redirect_to={target}")

    async def complete_oauth(self, email: str, metadata: Mapping[str, Any] | None = None) -> Session:
        """Finish an OAuth round-trip: the platform creates the identity and signs it in."""

        identity = self._new_identity(email, AuthMethod.OAUTH, metadata or {})
        session = self._issue(identity)
        await self.set_session(session, SessionEvent.SIGNED_IN)
        return session

    async def send_one_time_code(self, channel: OtpChannel, destination: str, metadata: Mapping[str, Any]) -> None:
        self._begin("send_one_time_code")
        now = self._clock()
        self.limiter.enforce(f"send:{channel.value}:{destination}", now)
        if channel is OtpChannel.PHONE and not destination.startswith("+"):
            raise ProviderError("validation_failed", "Invalid phone number format", status=400)
        if channel is OtpChannel.EMAIL and "@" not in destination:
            raise ProviderError("validation_failed", "Invalid email address", status=400)
        code = "".join(str(secrets.randbelow(10)) for _ in range(self.code_length))
        self._codes[(channel, destination)] = _IssuedCode(code, now + self.code_ttl, dict(metadata))
        self.outbox.append((f"otp:{channel.value}", destination))

    async def verify_one_time_code(self, channel: OtpChannel, destination: str, code: str) -> Session:
        self._begin("verify_one_time_code")
        now = self._clock()
        key = f"verify:{channel.value}:{destination}"
        self.limiter.enforce(key, now)
        issued = self._codes.get((channel, destination))
        if issued is None or not hmac.compare_digest(issued.code, code):
            self.limiter.record_failure(key, now)
            raise ProviderError("invalid_otp", "Invalid token", status=403)
        if issued.expires_at < now:
            del self._codes[(channel, destination)]
            raise ProviderError("otp_expired", "Token has expired or is invalid", status=403)
        del self._codes[(channel, destination)]
        self.limiter.record_success(key)
        identity = self._otp_identities.get((channel, destination))
        if identity is None:
            identity = self._new_identity(destination, AuthMethod.for_otp(channel), issued.metadata)
            self._otp_identities[(channel, destination)] = identity
        session = self._issue(identity)
        await self.set_session(session, SessionEvent.SIGNED_IN)
        return session

    async def update_identity_metadata(self, fields: Mapping[str, Any]) -> Identity:
        self._begin("update_identity_metadata")
        if self.session is None:
            raise ProviderError("session_not_found", "Auth session missing!", status=401)
        current = self.session.identity
        metadata = {**current.raw_metadata, **fields}
        updated = Identity(
            id=current.id,
            email_or_phone=current.email_or_phone,
            role=parse_role(metadata),
            method=current.method,
            raw_metadata=metadata,
        )
        for account in self._accounts.values():
            if account.identity.id == updated.id:
                account.identity = updated
        for key, identity in tuple(self._otp_identities.items()):
            if identity.id == updated.id:
                self._otp_identities[key] = updated
        session = Session(identity=updated, access_token=self.session.access_token, expires_at=self.session.expires_at)
        await self.set_session(session, SessionEvent.USER_UPDATED)
        return updated

    # ------------------------------------------------------------------ internals
    def _drop(self, subscription: _Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _begin(self, operation: str) -> None:
        self.calls.append(operation)
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _issue(self, identity: Identity) -> Session:
        return Session(
            identity=identity,
            access_token=generate_id57(timestamp=self._clock()),
            expires_at=self._clock() + self.session_ttl,
        )

    def _new_identity(self, handle: str, method: AuthMethod, metadata: Mapping[str, Any]) -> Identity:
        return Identity(
            id=generate_id57(timestamp=self._clock()),
            email_or_phone=handle,
            role=parse_role(metadata),
            method=method,
            raw_metadata=dict(metadata),
        )


class InMemoryProfileStore:
    """Dict-backed profile table keyed by identity id."""

    def __init__(self, rows: Iterable[Mapping[str, Any]] | None = None, *, latency: float = 0.0) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self.latency = latency
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[ProviderError]] = {}
        for row in rows or []:
            self._rows[str(row["identity_id"])] = dict(row)

    def fail_next(self, operation: str, error: ProviderError) -> None:
        self._failures.setdefault(operation, []).append(error)

    def count(self, operation: str, identity_id: str | None = None) -> int:
        return sum(
            1 for name, key in self.calls if name == operation and (identity_id is None or key == identity_id)
        )

    def rows(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self._rows.values()]

    async def get_by_id(self, identity_id: str) -> Mapping[str, Any] | None:
        await self._begin("get_by_id", identity_id)
        row = self._rows.get(identity_id)
        return dict(row) if row is not None else None

    async def insert(self, record: Mapping[str, Any]) -> Mapping[str, Any]:
        identity_id = str(record.get("identity_id", ""))
        await self._begin("insert", identity_id)
        if not identity_id:
            raise ProviderError("23502", 'null value in column "identity_id"', status=400)
        if identity_id in self._rows:
            raise ProviderError("23505", "duplicate key value violates unique constraint", status=409)
        if ROLE_METADATA_KEY in record and "role" not in record:
            record = {**record, "role": record[ROLE_METADATA_KEY]}
        self._rows[identity_id] = dict(record)
        return dict(self._rows[identity_id])

    async def update(self, identity_id: str, fields: Mapping[str, Any]) -> Mapping[str, Any]:
        await self._begin("update", identity_id)
        row = self._rows.get(identity_id)
        if row is None:
            raise ProviderError("PGRST116", "The result contains 0 rows", status=406)
        row.update(fields)
        return dict(row)

    async def _begin(self, operation: str, identity_id: str) -> None:
        self.calls.append((operation, identity_id))
        await asyncio.sleep(self.latency)
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)


__all__ = [
    "AttemptLimiter",
    "InMemoryIdentityProvider",
    "InMemoryProfileStore",
    "PasswordHasher",
]
