"""Fetch, provision and update profiles with per-identity serialization."""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from .exceptions import ProviderError
from .models import ROLE_METADATA_KEY, Identity, Profile, profile_from_record
from .observability import Observability
from .provider import ProfileStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DUPLICATE_KEY = "23505"
_IDENTITY_KEYS = frozenset({"id", "identity_id", "role", ROLE_METADATA_KEY})


def minimal_profile_record(identity: Identity) -> dict[str, Any]:
    """Smallest row that satisfies the profile table for ``identity``."""

    return {
        "identity_id": identity.id,
        "role": identity.role.value,
        "full_name": identity.display_name,
        "email": identity.email,
        "phone": identity.phone,
    }


class ProfileService:
    """Serialize profile reads and writes per identity id.

    Concurrent requests for the same id share one in-flight operation, so two
    notifications for one identity cannot both observe a missing row and insert
    it twice.
    """

    def __init__(self, store: ProfileStore, *, observability: Observability | None = None) -> None:
        self.store = store
        self._observability = observability or Observability()
        # Locks live only while some operation holds or awaits them.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._inflight: dict[str, asyncio.Task[Profile]] = {}

    async def attach(self, identity: Identity) -> Profile:
        """Return the profile for ``identity``, auto-provisioning a minimal one when absent."""

        task = self._inflight.get(identity.id)
        if task is None:
            task = asyncio.ensure_future(self._serialized(identity.id, lambda: self._fetch_or_provision(identity)))
            self._inflight[identity.id] = task
            task.add_done_callback(lambda _: self._inflight.pop(identity.id, None))
        return await asyncio.shield(task)

    async def save(self, identity: Identity, fields: Mapping[str, Any]) -> Profile:
        """Write a full profile for ``identity``, falling back to the minimal row on failure."""

        return await self._serialized(identity.id, lambda: self._save(identity, fields))

    async def update(self, identity_id: str, fields: Mapping[str, Any]) -> Profile:
        async def run() -> Profile:
            with self._observability.span("profile.update", {"identity_id": identity_id}):
                row = await self.store.update(identity_id, _without_identity_keys(fields))
            return profile_from_record(row)

        return await self._serialized(identity_id, run)

    async def fetch(self, identity_id: str) -> Profile | None:
        async def run() -> Profile | None:
            row = await self.store.get_by_id(identity_id)
            return profile_from_record(row) if row is not None else None

        return await self._serialized(identity_id, run)

    async def _serialized(self, identity_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        lock = self._locks.get(identity_id)
        if lock is None:
            lock = self._locks[identity_id] = asyncio.Lock()
        async with lock:
            return await operation()

    async def _fetch_or_provision(self, identity: Identity) -> Profile:
        with self._observability.span("profile.attach", {"identity_id": identity.id}):
            row = await self.store.get_by_id(identity.id)
            if row is not None:
                return profile_from_record(row)
            self._observability.event("profile.provision", identity_id=identity.id, role=identity.role.value)
            return await self._insert(identity, minimal_profile_record(identity))

    async def _save(self, identity: Identity, fields: Mapping[str, Any]) -> Profile:
        payload = {**minimal_profile_record(identity), **_without_identity_keys(fields)}
        existing = await self.store.get_by_id(identity.id)
        if existing is not None:
            row = await self.store.update(identity.id, _without_identity_keys(payload))
            return profile_from_record(row)
        try:
            return await self._insert(identity, payload)
        except ProviderError as exc:
            logger.warning("Full profile insert failed for %s (%s); retrying with minimal fields", identity.id, exc.code)
            return await self._insert(identity, minimal_profile_record(identity))

    async def _insert(self, identity: Identity, record: Mapping[str, Any]) -> Profile:
        try:
            row = await self.store.insert(record)
        except ProviderError as exc:
            if exc.code != _DUPLICATE_KEY:
                raise
            existing = await self.store.get_by_id(identity.id)
            if existing is None:
                raise
            row = existing
        return profile_from_record(row)


def _without_identity_keys(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if key not in _IDENTITY_KEYS}


__all__ = ["ProfileService", "minimal_profile_record"]
