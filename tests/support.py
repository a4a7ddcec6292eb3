"""Test support utilities for portalgate session and channel tests."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from portalgate.config import PortalConfig
from portalgate.exceptions import ProviderError
from portalgate.memory import InMemoryIdentityProvider, InMemoryProfileStore, PasswordHasher
from portalgate.models import OtpChannel, Session
from portalgate.observability import ObservabilityConfig
from portalgate.testing import FakeClock


def quiet_config(**overrides: Any) -> PortalConfig:
    return PortalConfig(observability=ObservabilityConfig(enabled=False), **overrides)


def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=1024)


class GatedIdentityProvider(InMemoryIdentityProvider):
    """In-memory provider whose slow calls can be held open by a test."""

    def __init__(self, clock: FakeClock | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("hasher", fast_hasher())
        super().__init__(clock=clock or FakeClock(), **kwargs)
        self.session_gate = asyncio.Event()
        self.session_gate.set()
        self.session_requested = asyncio.Event()
        self.verify_gate = asyncio.Event()
        self.verify_gate.set()
        self.verify_started = asyncio.Event()

    def hold_bootstrap(self) -> None:
        self.session_gate.clear()

    def hold_verification(self) -> None:
        self.verify_gate.clear()

    async def get_session(self) -> Session | None:
        self.session_requested.set()
        await self.session_gate.wait()
        return await super().get_session()

    async def verify_one_time_code(self, channel: OtpChannel, destination: str, code: str) -> Session:
        self.verify_started.set()
        await self.verify_gate.wait()
        return await super().verify_one_time_code(channel, destination, code)


class FlakyProfileStore(InMemoryProfileStore):
    """Profile table that rejects inserts carrying columns outside ``allowed``."""

    def __init__(self, allowed: set[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.allowed = allowed

    async def insert(self, record: Mapping[str, Any]) -> Mapping[str, Any]:
        unknown = set(record) - self.allowed
        if unknown:
            self.calls.append(("insert", str(record.get("identity_id", ""))))
            raise ProviderError("PGRST204", f"Could not find the '{sorted(unknown)[0]}' column", status=400)
        return await super().insert(record)

