"""Portalgate: multi-channel identity, session reconciliation and role-gated routing."""

from .application import NavigationOutcome, Portal
from .config import PortalConfig
from .exceptions import (
    AuthError,
    AuthErrorKind,
    ChallengeError,
    PortalGateError,
    ProviderError,
    ReconcilerError,
    Result,
    UnknownRoleError,
)
from .memory import InMemoryIdentityProvider, InMemoryProfileStore
from .models import (
    ActiveChannel,
    AuthMethod,
    Identity,
    OtpChallengeRecord,
    OtpChannel,
    Profile,
    Role,
    Session,
    SessionContext,
    SessionEvent,
)
from .notifications import Notification, NotificationCenter, NotificationLevel
from .observability import Observability, ObservabilityConfig
from .otp import ChallengeState, OtpChallenge, VerifyOutcome
from .profiles import ProfileService
from .provider import IdentityProviderClient, ProfileStore, Subscription
from .reconciler import SessionReconciler
from .redirects import AuthErrorInfo, RedirectErrorHandler, describe
from .routing import Access, Allow, Pending, RedirectTo, RouteAccessRule, RouteGuard, default_rules
from .stores import ChannelStore, OtpIdentityStore, PasswordIdentityStore
from .testing import FakeClock, PortalTestHarness

__all__ = [
    "Access",
    "ActiveChannel",
    "Allow",
    "AuthError",
    "AuthErrorInfo",
    "AuthErrorKind",
    "AuthMethod",
    "ChallengeError",
    "ChallengeState",
    "ChannelStore",
    "FakeClock",
    "Identity",
    "IdentityProviderClient",
    "InMemoryIdentityProvider",
    "InMemoryProfileStore",
    "NavigationOutcome",
    "Notification",
    "NotificationCenter",
    "NotificationLevel",
    "Observability",
    "ObservabilityConfig",
    "OtpChallenge",
    "OtpChallengeRecord",
    "OtpChannel",
    "OtpIdentityStore",
    "PasswordIdentityStore",
    "Pending",
    "Portal",
    "PortalConfig",
    "PortalGateError",
    "PortalTestHarness",
    "Profile",
    "ProfileService",
    "ProfileStore",
    "ProviderError",
    "ReconcilerError",
    "RedirectErrorHandler",
    "RedirectTo",
    "Result",
    "Role",
    "RouteAccessRule",
    "RouteGuard",
    "Session",
    "SessionContext",
    "SessionEvent",
    "SessionReconciler",
    "Subscription",
    "UnknownRoleError",
    "VerifyOutcome",
    "default_rules",
    "describe",
]
