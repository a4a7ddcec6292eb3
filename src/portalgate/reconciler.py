"""Session reconciliation: the single writer of :class:`SessionContext`.

Provider notifications, the startup bootstrap and profile refreshes are all
funnelled through one queue drained by one worker task.  Bootstrap is always
the first job, so a notification that arrives while it is running waits until
the bootstrap (profile attachment included) has finished.  Every job publishes
exactly one new context to listeners.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from msgspec import structs

from .exceptions import ReconcilerError
from .models import ActiveChannel, Identity, Profile, Session, SessionContext, SessionEvent
from .notifications import NotificationCenter
from .observability import Observability
from .profiles import ProfileService
from .provider import IdentityProviderClient, Subscription
from .stores import ChannelStore

logger = logging.getLogger(__name__)

ContextListener = Callable[[SessionContext], None]


@dataclass(slots=True)
class _Job:
    kind: str
    event: SessionEvent | None = None
    session: Session | None = None
    fields: Mapping[str, Any] | None = None
    done: asyncio.Future[Any] | None = None


class SessionReconciler:
    """Merge provider session changes into one authoritative context."""

    def __init__(
        self,
        provider: IdentityProviderClient,
        profiles: ProfileService,
        stores: Mapping[ActiveChannel, ChannelStore],
        *,
        notifications: NotificationCenter | None = None,
        observability: Observability | None = None,
    ) -> None:
        if ActiveChannel.NONE in stores:
            raise ValueError("stores cannot be registered for ActiveChannel.NONE")
        if ActiveChannel.PASSWORD not in stores:
            raise ValueError("a password channel store is required")
        self.provider = provider
        self.profiles = profiles
        self.stores = dict(stores)
        self.notifications = notifications or NotificationCenter()
        self.observability = observability or Observability()
        self._context = SessionContext()
        self._listeners: list[ContextListener] = []
        self._queue: asyncio.Queue[_Job | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._subscription: Subscription | None = None
        self._started = False
        self._closed = False
        for store in self.stores.values():
            store.bind(self)

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: ContextListener) -> Callable[[], None]:
        """Register ``listener`` for context changes; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self) -> SessionContext:
        """Bootstrap from the provider's current session and begin listening for changes."""

        if self._started:
            raise ReconcilerError("reconciler already started")
        if self._closed:
            raise ReconcilerError("reconciler is closed")
        self._started = True
        self._publish(structs.replace(self._context, is_bootstrapping=True))
        done: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        # Bootstrap is queued ahead of anything the subscription can deliver.
        self._queue.put_nowait(_Job("bootstrap", done=done))
        self._subscription = self.provider.on_session_change(self._on_session_change)
        self._worker = asyncio.create_task(self._run(), name="portalgate-reconciler")
        await done
        return self._context

    async def close(self) -> None:
        """Release the provider subscription and stop the worker; safe to call twice."""

        if self._closed:
            return
        self._closed = True
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()
        if self._worker is not None:
            self._queue.put_nowait(None)
            await self._worker
            self._worker = None
        self._listeners.clear()
        self.observability.event("session.closed")

    async def settle(self) -> None:
        """Wait until every queued reconciliation has been applied."""

        if self._worker is None or self._worker.done():
            return
        await self._queue.join()

    async def refresh_profile(self) -> Profile | None:
        """Re-read the active identity's profile and publish it."""

        return await self._submit(_Job("refresh"))

    async def update_profile(self, fields: Mapping[str, Any]) -> Profile:
        """Write ``fields`` to the active identity's profile and publish the result."""

        return await self._submit(_Job("update", fields=dict(fields)))

    def _on_session_change(self, event: SessionEvent, session: Session | None) -> None:
        if self._closed:
            return
        self.observability.event(
            "session.notified",
            session_event=getattr(event, "value", str(event)),
            bootstrapping=self._context.is_bootstrapping,
        )
        self._queue.put_nowait(_Job("change", event=event, session=session))

    async def _submit(self, job: _Job) -> Any:
        if not self._started or self._closed or self._worker is None:
            raise ReconcilerError("reconciler is not running")
        job.done = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(job)
        return await job.done

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._process(job)
            finally:
                self._queue.task_done()

    async def _process(self, job: _Job) -> None:
        try:
            with self.observability.span(f"session.{job.kind}"):
                if job.kind == "bootstrap":
                    result: Any = await self._bootstrap()
                elif job.kind == "change":
                    result = await self._apply(job.event or SessionEvent.SIGNED_IN, job.session)
                elif job.kind == "refresh":
                    result = await self._refresh()
                elif job.kind == "update":
                    result = await self._update(job.fields or {})
                else:  # pragma: no cover - internal misuse
                    raise ReconcilerError(f"unknown job kind {job.kind!r}")
        except Exception as exc:
            logger.exception("Session %s job failed", job.kind)
            if job.done is not None and not job.done.done():
                job.done.set_exception(exc)
            return
        if job.done is not None and not job.done.done():
            job.done.set_result(result)

    async def _bootstrap(self) -> SessionContext:
        try:
            session = await self.provider.get_session()
        except Exception:
            logger.exception("Failed to read the provider session during bootstrap")
            self.notifications.error("Failed to initialize authentication")
            session = None
        return await self._apply(SessionEvent.INITIAL_SESSION, session, bootstrap=True)

    async def _apply(
        self, event: SessionEvent, session: Session | None, *, bootstrap: bool = False
    ) -> SessionContext:
        previous = self._context
        bootstrapping = False if bootstrap else previous.is_bootstrapping
        if session is None:
            for store in self.stores.values():
                store.clear()
            context = SessionContext(is_bootstrapping=bootstrapping)
            if event is SessionEvent.SIGNED_OUT and previous.identity is not None:
                self.notifications.success("You have been signed out")
        else:
            identity = session.identity
            target = self._channel_for(identity)
            # Reset every other channel before populating the target one.
            for channel, store in self.stores.items():
                if channel is not target:
                    store.clear()
            store = self.stores[target]
            store.set_identity(identity)
            profile = await self._attach(identity)
            if profile is None:
                store.clear_profile()
            else:
                store.attach_profile(profile)
            context = SessionContext(
                active_channel=target,
                identity=identity,
                profile=profile,
                is_bootstrapping=bootstrapping,
            )
        self.observability.event(
            "session.reconciled",
            session_event=event.value,
            channel=context.active_channel.value,
            identity_id=context.identity.id if context.identity else None,
            role=context.identity.role.value if context.identity else None,
        )
        self._publish(context)
        return context

    async def _attach(self, identity: Identity) -> Profile | None:
        try:
            return await self.profiles.attach(identity)
        except Exception:
            # Routing only needs the identity's role; the profile may be retried later.
            logger.exception("Failed to attach profile for identity %s", identity.id)
            return None

    async def _refresh(self) -> Profile | None:
        identity = self._context.identity
        if identity is None:
            return None
        profile = await self.profiles.fetch(identity.id)
        self._set_profile(profile)
        return profile

    async def _update(self, fields: Mapping[str, Any]) -> Profile:
        identity = self._context.identity
        if identity is None:
            raise ReconcilerError("cannot update a profile without an active identity")
        profile = await self.profiles.update(identity.id, fields)
        self._set_profile(profile)
        return profile

    def _set_profile(self, profile: Profile | None) -> None:
        store = self.stores.get(self._context.active_channel)
        if store is not None:
            if profile is None:
                store.clear_profile()
            else:
                store.attach_profile(profile)
        self._publish(structs.replace(self._context, profile=profile))

    def _channel_for(self, identity: Identity) -> ActiveChannel:
        channel = ActiveChannel.for_method(identity.method)
        if channel not in self.stores:
            logger.warning("No store registered for %s; using the password channel", channel.value)
            return ActiveChannel.PASSWORD
        return channel

    def _publish(self, context: SessionContext) -> None:
        self._context = context
        for listener in tuple(self._listeners):
            try:
                listener(context)
            except Exception:
                logger.exception("Session context listener failed")


__all__ = ["ContextListener", "SessionReconciler"]
