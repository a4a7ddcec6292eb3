"""Portal facade wiring the identity channels, reconciler and navigation guards."""

from __future__ import annotations

import datetime as dt
import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping

from msgspec import Struct

from .config import PortalConfig
from .exceptions import AuthError, Result, auth_error_from
from .models import ActiveChannel, Identity, OtpChannel, Profile, SessionContext
from .notifications import NotificationCenter
from .observability import Observability
from .profiles import ProfileService
from .provider import IdentityProviderClient, ProfileStore
from .reconciler import ContextListener, SessionReconciler
from .redirects import RedirectErrorHandler
from .routing import Decision, RedirectTo, RouteAccessRule, RouteGuard, default_rules, normalize_path
from .stores import ChannelStore, OtpIdentityStore, PasswordIdentityStore

logger = logging.getLogger(__name__)

Hook = Callable[[], Awaitable[None] | None]


class NavigationOutcome(Struct, frozen=True):
    """Where a navigation attempt ends up."""

    path: str
    decision: Decision

    @property
    def target(self) -> str:
        if isinstance(self.decision, RedirectTo):
            return self.decision.target
        return self.path


class Portal:
    """Central object the view layer talks to."""

    def __init__(
        self,
        provider: IdentityProviderClient,
        profile_store: ProfileStore,
        config: PortalConfig | None = None,
        *,
        rules: tuple[RouteAccessRule, ...] | None = None,
        notifications: NotificationCenter | None = None,
        observability: Observability | None = None,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self.config = config or PortalConfig()
        self.provider = provider
        self.observability = observability or Observability(self.config.observability)
        self.notifications = notifications or NotificationCenter()
        self.profiles = ProfileService(profile_store, observability=self.observability)
        shared: dict[str, Any] = {
            "config": self.config,
            "notifications": self.notifications,
            "observability": self.observability,
        }
        self.password = PasswordIdentityStore(provider, self.profiles, **shared)
        self.phone = OtpIdentityStore(provider, OtpChannel.PHONE, clock=clock, **shared)
        self.email = OtpIdentityStore(provider, OtpChannel.EMAIL, clock=clock, **shared)
        self.reconciler = SessionReconciler(
            provider,
            self.profiles,
            {
                ActiveChannel.PASSWORD: self.password,
                ActiveChannel.OTP_PHONE: self.phone,
                ActiveChannel.OTP_EMAIL: self.email,
            },
            notifications=self.notifications,
            observability=self.observability,
        )
        self.guard = RouteGuard(rules if rules is not None else default_rules(self.config), config=self.config)
        self.redirects = RedirectErrorHandler(self.config)
        self.location: str | None = None
        self._startup_hooks: list[Hook] = []
        self._shutdown_hooks: list[Hook] = []

    # ------------------------------------------------------------------ state
    @property
    def context(self) -> SessionContext:
        return self.reconciler.context

    @property
    def stores(self) -> Mapping[ActiveChannel, ChannelStore]:
        return self.reconciler.stores

    def active_store(self) -> ChannelStore | None:
        return self.reconciler.stores.get(self.context.active_channel)

    def subscribe(self, listener: ContextListener) -> Callable[[], None]:
        return self.reconciler.subscribe(listener)

    # ------------------------------------------------------------------ lifecycle
    def on_startup(self, func: Hook) -> Hook:
        self._startup_hooks.append(func)
        return func

    def on_shutdown(self, func: Hook) -> Hook:
        self._shutdown_hooks.append(func)
        return func

    async def startup(self) -> None:
        await self.reconciler.start()
        for hook in self._startup_hooks:
            result = hook()
            if inspect.isawaitable(result):
                await result

    async def shutdown(self) -> None:
        for hook in self._shutdown_hooks:
            result = hook()
            if inspect.isawaitable(result):
                await result
        await self.reconciler.close()

    # ------------------------------------------------------------------ navigation
    def decide(self, path: str) -> Decision:
        return self.guard.decide(path, self.context)

    def navigate(self, url: str) -> NavigationOutcome:
        """Run the error redirect check, then the route guard, for ``url``."""

        error_target = self.redirects.check(url)
        if error_target is not None:
            self._leave(normalize_path(error_target))
            return NavigationOutcome(path=normalize_path(url), decision=RedirectTo(error_target))
        path = normalize_path(url)
        self._leave(path)
        decision = self.decide(path)
        self.observability.event("navigation.decided", path=path, decision=type(decision).__name__)
        return NavigationOutcome(path=path, decision=decision)

    def _leave(self, path: str) -> None:
        previous, self.location = self.location, path
        if previous == self.config.patient_login_path and path != previous:
            # Abandoning the code form discards any outstanding challenge.
            self.phone.reset()
            self.email.reset()

    # ------------------------------------------------------------------ profile
    async def update_profile(self, fields: Mapping[str, Any]) -> Result[Profile]:
        try:
            profile = await self.reconciler.update_profile(fields)
        except Exception as exc:
            error = auth_error_from(exc, fallback="Failed to update profile")
            self.notifications.error("Failed to update profile")
            return Result.failure(AuthError(kind=error.kind, message="Failed to update profile", code=error.code))
        self.notifications.success("Profile updated successfully")
        return Result.success(profile)

    async def refresh_profile(self) -> Profile | None:
        try:
            return await self.reconciler.refresh_profile()
        except Exception:
            logger.warning("Profile refresh failed", exc_info=True)
            return self.context.profile

    async def update_identity(self, fields: Mapping[str, Any]) -> Result[Identity]:
        """Write ``fields`` to the provider-side identity metadata."""

        try:
            identity = await self.provider.update_identity_metadata(fields)
            await self.reconciler.settle()
        except Exception as exc:
            error = auth_error_from(exc, fallback="Failed to update account")
            self.notifications.error(error.message)
            return Result.failure(error)
        return Result.success(identity)

    async def sign_out(self) -> Result[None]:
        """Sign out whichever channel is active."""

        store = self.active_store() or self.password
        return await store.sign_out()


__all__ = ["NavigationOutcome", "Portal"]
