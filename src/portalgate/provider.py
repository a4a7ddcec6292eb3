"""Collaborator interfaces for the hosted identity platform.

Implementations raise :class:`~portalgate.exceptions.ProviderError` for every
failure reported by the platform.  ``ProfileStore.get_by_id`` returns ``None``
when no row exists rather than raising.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

from msgspec import Struct

from .models import Identity, OtpChannel, Session, SessionEvent

SessionChangeCallback = Callable[[SessionEvent, "Session | None"], Awaitable[None] | None]


class SignUpOutcome(Struct, frozen=True):
    """Identity created by ``sign_up``; ``session`` is ``None`` while confirmation is pending."""

    identity: Identity
    session: Session | None = None


class OAuthRedirect(Struct, frozen=True):
    provider: str
    url: str


@runtime_checkable
class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class IdentityProviderClient(Protocol):
    async def sign_in_with_password(self, email: str, password: str) -> Session: ...

    async def sign_up(self, email: str, password: str, metadata: Mapping[str, Any]) -> SignUpOutcome: ...

    async def sign_out(self) -> None: ...

    async def get_session(self) -> Session | None: ...

    def on_session_change(self, callback: SessionChangeCallback) -> Subscription: ...

    async def reset_password_for_email(self, email: str, *, redirect_to: str | None = None) -> None: ...

    async def resend_verification_email(self, email: str, *, redirect_to: str | None = None) -> None: ...

    async def sign_in_with_oauth(self, provider: str, *, redirect_to: str | None = None) -> OAuthRedirect: ...

    async def send_one_time_code(
        self, channel: OtpChannel, destination: str, metadata: Mapping[str, Any]
    ) -> None: ...

    async def verify_one_time_code(self, channel: OtpChannel, destination: str, code: str) -> Session: ...

    async def update_identity_metadata(self, fields: Mapping[str, Any]) -> Identity: ...


class ProfileStore(Protocol):
    async def get_by_id(self, identity_id: str) -> Mapping[str, Any] | None: ...

    async def insert(self, record: Mapping[str, Any]) -> Mapping[str, Any]: ...

    async def update(self, identity_id: str, fields: Mapping[str, Any]) -> Mapping[str, Any]: ...


__all__ = [
    "IdentityProviderClient",
    "OAuthRedirect",
    "ProfileStore",
    "SessionChangeCallback",
    "SignUpOutcome",
    "Subscription",
]
