"""Per-channel identity stores.

Each store owns the identity and profile for one sign-in channel.  Only the
:class:`~portalgate.reconciler.SessionReconciler` writes that state; the
operations exposed here talk to the provider, wait for the reconciler to apply
the resulting session change, and report the outcome as a
:class:`~portalgate.exceptions.Result`.  Provider exceptions never escape.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from .config import PortalConfig
from .exceptions import AuthError, AuthErrorKind, ChallengeError, Result, auth_error_from
from .models import ROLE_METADATA_KEY, ActiveChannel, Identity, OtpChallengeRecord, OtpChannel, Profile, Role
from .notifications import NotificationCenter
from .observability import Observability, mask_destination
from .otp import ChallengeState, OtpChallenge, normalize_destination
from .profiles import ProfileService
from .provider import IdentityProviderClient, OAuthRedirect

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionCoordinator(Protocol):
    async def settle(self) -> None: ...

    async def refresh_profile(self) -> Profile | None: ...


class ChannelStore:
    """State and shared plumbing for one authentication channel."""

    channel: ActiveChannel = ActiveChannel.NONE

    def __init__(
        self,
        provider: IdentityProviderClient,
        *,
        config: PortalConfig | None = None,
        notifications: NotificationCenter | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or PortalConfig()
        self.notifications = notifications or NotificationCenter()
        self.observability = observability or Observability(self.config.observability)
        self.loading = False
        self._identity: Identity | None = None
        self._profile: Profile | None = None
        self._coordinator: SessionCoordinator | None = None

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def profile(self) -> Profile | None:
        return self._profile

    def bind(self, coordinator: SessionCoordinator) -> None:
        self._coordinator = coordinator

    # Written by the reconciler only.
    def set_identity(self, identity: Identity) -> None:
        if self._identity is not None and self._identity.id != identity.id:
            self._profile = None
        self._identity = identity

    def attach_profile(self, profile: Profile) -> None:
        self._profile = profile

    def clear_profile(self) -> None:
        self._profile = None

    def clear(self) -> None:
        self._identity = None
        self._profile = None

    async def sign_out(self) -> Result[None]:
        return await self._run("sign_out", self.provider.sign_out, failure="Failed to sign out")

    async def _settle(self) -> None:
        if self._coordinator is not None:
            await self._coordinator.settle()

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        failure: str,
        success: str | None = None,
        describe: Callable[[AuthError], str] | None = None,
        **fields: Any,
    ) -> Result[T]:
        self.loading = True
        try:
            with self.observability.span(f"{self.channel.value}.{operation}"):
                value = await call()
            await self._settle()
        except Exception as exc:
            error = auth_error_from(exc, fallback=failure)
            message = describe(error) if describe is not None else error.message
            self.observability.event(
                "auth.failed", channel=self.channel.value, operation=operation, kind=error.kind.value, **fields
            )
            self.notifications.error(message or failure, source=self.channel.value)
            return Result.failure(AuthError(kind=error.kind, message=message or failure, code=error.code))
        finally:
            self.loading = False
        self.observability.event("auth.succeeded", channel=self.channel.value, operation=operation, **fields)
        if success:
            self.notifications.success(success, source=self.channel.value)
        return Result.success(value)


class PasswordIdentityStore(ChannelStore):
    """Email and password channel, including OAuth sign-in."""

    channel = ActiveChannel.PASSWORD

    def __init__(
        self,
        provider: IdentityProviderClient,
        profiles: ProfileService,
        *,
        config: PortalConfig | None = None,
        notifications: NotificationCenter | None = None,
        observability: Observability | None = None,
    ) -> None:
        super().__init__(provider, config=config, notifications=notifications, observability=observability)
        self.profiles = profiles

    async def sign_in(self, email: str, password: str) -> Result[Identity]:
        async def call() -> Identity:
            session = await self.provider.sign_in_with_password(email.strip(), password)
            return session.identity

        return await self._run(
            "sign_in",
            call,
            failure="Failed to sign in",
            success="Welcome back!",
            destination=mask_destination(email),
        )

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        full_name: str,
        role: Role = Role.PATIENT,
        **attributes: Any,
    ) -> Result[Identity]:
        """Register an account and write its full profile.

        When the provider holds the new account for email confirmation the store
        signs in immediately with the same credentials, which surfaces
        ``email_or_phone_not_confirmed`` if the platform enforces confirmation.
        """

        email = email.strip()

        async def call() -> Identity:
            metadata = {ROLE_METADATA_KEY: role.value, "full_name": full_name}
            outcome = await self.provider.sign_up(email, password, metadata)
            identity = outcome.identity
            if outcome.session is None:
                session = await self.provider.sign_in_with_password(email, password)
                identity = session.identity
            await self.profiles.save(identity, {"full_name": full_name, "email": email, **attributes})
            return identity

        result = await self._run(
            "sign_up",
            call,
            failure="Failed to create account",
            success="Account created successfully! Welcome to eScanCare Hospital.",
            destination=mask_destination(email),
        )
        if result.ok and self._coordinator is not None:
            await self._coordinator.refresh_profile()
        return result

    async def reset_password(self, email: str) -> Result[None]:
        redirect = self.config.url_for(self.config.password_reset_path)
        return await self._run(
            "reset_password",
            lambda: self.provider.reset_password_for_email(email.strip(), redirect_to=redirect),
            failure="Failed to send reset email",
            success="Password reset email sent!",
        )

    async def resend_verification(self, email: str) -> Result[None]:
        redirect = self.config.url_for(self.config.verification_redirect_path)
        return await self._run(
            "resend_verification",
            lambda: self.provider.resend_verification_email(email.strip(), redirect_to=redirect),
            failure="Failed to send verification email",
            success="Verification email sent! Please check your inbox.",
        )

    async def sign_in_with_oauth(self, provider_name: str = "google") -> Result[OAuthRedirect]:
        redirect = self.config.url_for(self.config.oauth_callback_path)
        return await self._run(
            "sign_in_with_oauth",
            lambda: self.provider.sign_in_with_oauth(provider_name, redirect_to=redirect),
            failure=f"Failed to sign in with {provider_name.title()}",
            provider=provider_name,
        )


class OtpIdentityStore(ChannelStore):
    """One-time-code channel bound to a single :class:`OtpChallenge`."""

    def __init__(
        self,
        provider: IdentityProviderClient,
        otp_channel: OtpChannel,
        *,
        config: PortalConfig | None = None,
        notifications: NotificationCenter | None = None,
        observability: Observability | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        super().__init__(provider, config=config, notifications=notifications, observability=observability)
        self.otp_channel = otp_channel
        self.channel = ActiveChannel.OTP_PHONE if otp_channel is OtpChannel.PHONE else ActiveChannel.OTP_EMAIL
        self.challenge = OtpChallenge(
            otp_channel,
            provider,
            ttl=dt.timedelta(seconds=self.config.otp_ttl_seconds),
            clock=clock,
            observability=self.observability,
        )

    @property
    def code_sent(self) -> bool:
        return self.challenge.outstanding

    @property
    def destination(self) -> str | None:
        record = self.challenge.record
        return record.destination if record is not None else None

    async def send_code(self, destination: str) -> Result[OtpChallengeRecord]:
        async def call() -> OtpChallengeRecord:
            target = normalize_destination(
                self.otp_channel, destination, default_country_code=self.config.default_country_code
            )
            return await self.challenge.send(target, {ROLE_METADATA_KEY: Role.PATIENT.value})

        return await self._run(
            "send_code",
            call,
            failure="Failed to send code",
            success=self._sent_message(),
            describe=self._describe_send_error,
            destination=mask_destination(destination),
        )

    async def resend_code(self) -> Result[OtpChallengeRecord]:
        return await self._run(
            "resend_code",
            self.challenge.resend,
            failure="Failed to resend code",
            success=self._sent_message(),
            describe=self._describe_send_error,
        )

    async def verify_code(self, code: str) -> Result[Identity]:
        try:
            outcome = await self.challenge.verify(code)
        except ChallengeError as exc:
            error = exc.error or AuthError(kind=AuthErrorKind.UNKNOWN, message="Please request a code first")
            self.notifications.error(error.message, source=self.channel.value)
            return Result.failure(error)
        if outcome.stale:
            if outcome.session is not None:
                await self._discard_session()
            return Result.failure(
                AuthError(kind=AuthErrorKind.UNKNOWN, message="Verification cancelled", code="cancelled")
            )
        if outcome.state is not ChallengeState.AUTHENTICATED or outcome.session is None:
            error = outcome.error or AuthError(kind=AuthErrorKind.UNKNOWN, message="Failed to verify code")
            message = _describe_code_error(error)
            self.notifications.error(message, source=self.channel.value)
            return Result.failure(AuthError(kind=error.kind, message=message, code=error.code))
        await self._settle()
        self.notifications.success("Welcome back!", source=self.channel.value)
        return Result.success(outcome.session.identity)

    async def sign_in(self, code: str) -> Result[Identity]:
        return await self.verify_code(code)

    def reset(self) -> None:
        self.challenge.reset()

    async def _discard_session(self) -> None:
        # The provider signed in before the reset landed; end that session.
        try:
            await self.provider.sign_out()
            await self._settle()
        except Exception:
            logger.exception("Failed to end the session of a cancelled %s verification", self.otp_channel.value)
            return
        self.observability.event("otp.discarded", channel=self.channel.value)

    def clear(self) -> None:
        super().clear()
        self.challenge.reset()

    def _sent_message(self) -> str:
        if self.otp_channel is OtpChannel.PHONE:
            return "OTP sent to your phone number!"
        return "OTP sent to your email!"

    def _describe_send_error(self, error: AuthError) -> str:
        message = error.message.lower()
        if self.otp_channel is OtpChannel.PHONE:
            if "unsupported phone" in message or "phone auth" in message:
                return "Phone authentication is not enabled. Please use email login or contact support."
            if "invalid phone" in message:
                return "Please enter a valid phone number"
        elif "invalid email" in message:
            return "Please enter a valid email address"
        return error.message


def _describe_code_error(error: AuthError) -> str:
    if error.code == "otp_expired":
        return "OTP expired. Please request a new one"
    if error.kind is AuthErrorKind.INVALID_OR_EXPIRED_CODE:
        return "Invalid OTP. Please try again"
    return error.message


__all__ = [
    "ChannelStore",
    "OtpIdentityStore",
    "PasswordIdentityStore",
    "SessionCoordinator",
]
