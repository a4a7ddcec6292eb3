"""Testing helpers."""

from __future__ import annotations

import datetime as dt
from typing import Any, Iterable, Mapping

from .application import NavigationOutcome, Portal
from .config import PortalConfig
from .memory import AttemptLimiter, InMemoryIdentityProvider, InMemoryProfileStore, PasswordHasher
from .notifications import Notification, NotificationLevel
from .observability import ObservabilityConfig


class FakeClock:
    """Manually advanced UTC clock."""

    __test__ = False

    def __init__(self, start: dt.datetime | None = None) -> None:
        self.now = start or dt.datetime(2024, 1, 1, 9, 0, tzinfo=dt.timezone.utc)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**delta)
        return self.now


class PortalTestHarness:
    """Async context manager running a :class:`Portal` against in-memory collaborators."""

    __test__ = False

    def __init__(
        self,
        *,
        config: PortalConfig | None = None,
        profile_rows: Iterable[Mapping[str, Any]] | None = None,
        require_email_confirmation: bool = False,
        clock: FakeClock | None = None,
        provider: InMemoryIdentityProvider | None = None,
        profile_store: InMemoryProfileStore | None = None,
    ) -> None:
        self.clock = clock or FakeClock()
        self.config = config or PortalConfig(observability=ObservabilityConfig(enabled=False))
        self.provider = provider or InMemoryIdentityProvider(
            clock=self.clock,
            require_email_confirmation=require_email_confirmation,
            code_ttl=dt.timedelta(seconds=self.config.otp_ttl_seconds),
            hasher=PasswordHasher(time_cost=1, memory_cost=1024),
            limiter=AttemptLimiter(),
        )
        self.profile_store = profile_store or InMemoryProfileStore(profile_rows)
        self.portal = Portal(self.provider, self.profile_store, self.config, clock=self.clock)

    async def __aenter__(self) -> "PortalTestHarness":
        await self.portal.startup()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.portal.shutdown()

    def navigate(self, url: str) -> NavigationOutcome:
        return self.portal.navigate(url)

    def notifications(self, level: NotificationLevel | None = None) -> list[Notification]:
        history = self.portal.notifications.history
        if level is None:
            return list(history)
        return [item for item in history if item.level is level]

    def messages(self, level: NotificationLevel | None = None) -> list[str]:
        return [item.message for item in self.notifications(level)]


__all__ = ["FakeClock", "PortalTestHarness"]
