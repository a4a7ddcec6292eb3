from __future__ import annotations

import pytest

from portalgate.config import PortalConfig
from portalgate.models import ActiveChannel, AuthMethod, Identity, Role, SessionContext
from portalgate.routing import (
    Access,
    Allow,
    Pending,
    RedirectTo,
    RouteAccessRule,
    RouteGuard,
    default_rules,
    normalize_path,
)


def _context(role: Role | None, *, bootstrapping: bool = False) -> SessionContext:
    if role is None:
        return SessionContext(is_bootstrapping=bootstrapping)
    identity = Identity(id=f"id-{role.value}", email_or_phone=f"{role.value}@example.com", role=role)
    return SessionContext(
        active_channel=ActiveChannel.for_method(AuthMethod.PASSWORD),
        identity=identity,
        is_bootstrapping=bootstrapping,
    )


@pytest.fixture
def guard() -> RouteGuard:
    config = PortalConfig()
    return RouteGuard(default_rules(config), config=config)


def test_public_patient_view_is_allowed_for_anonymous_users(guard: RouteGuard) -> None:
    assert guard.decide("/patient/view/abc123", _context(None)) == Allow()
    assert guard.decide("/patient", _context(None)) == RedirectTo("/patient-login")


def test_public_patient_view_captures_identifier(guard: RouteGuard) -> None:
    match = guard.match("/patient/view/abc123/")
    assert match is not None
    assert match.rule.access is Access.PUBLIC
    assert match.params == {"patient_id": "abc123"}
    assert guard.match("/patient/view/abc123/edit") is not None
    assert guard.match("/patient/view/abc123/edit").rule.access is Access.ROLES


@pytest.mark.parametrize(
    ("path", "role"),
    [
        ("/patient", Role.PATIENT),
        ("/patient/records", Role.PATIENT),
        ("/doctor", Role.DOCTOR),
        ("/doctor/appointments/today", Role.DOCTOR),
        ("/staff/queue", Role.STAFF),
        ("/admin/users", Role.ADMIN),
    ],
)
def test_role_gated_paths_allow_only_their_role(guard: RouteGuard, path: str, role: Role) -> None:
    login = "/patient-login" if path.startswith("/patient") else "/login"
    assert guard.decide(path, _context(role)) == Allow()
    assert guard.decide(path, _context(None)) == RedirectTo(login)
    for other in Role:
        if other is not role:
            assert guard.decide(path, _context(other)) == RedirectTo(login)


def test_multi_role_rule(guard: RouteGuard) -> None:
    assert guard.decide("/qr-scanner", _context(Role.DOCTOR)) == Allow()
    assert guard.decide("/qr-scanner", _context(Role.ADMIN)) == Allow()
    assert guard.decide("/qr-scanner", _context(Role.STAFF)) == RedirectTo("/login")
    assert guard.decide("/qr-scanner/camera", _context(Role.DOCTOR)) == RedirectTo("/")


def test_public_pages_ignore_session_state(guard: RouteGuard) -> None:
    for path in ("/", "/login", "/patient-login", "/signup", "/auth-error", "/about", "/departments"):
        assert guard.decide(path, _context(None)) == Allow()
        assert guard.decide(path, _context(Role.ADMIN, bootstrapping=True)) == Allow()


def test_bootstrapping_defers_gated_decisions(guard: RouteGuard) -> None:
    assert guard.decide("/doctor", _context(None, bootstrapping=True)) == Pending()


def test_unmatched_paths_go_home(guard: RouteGuard) -> None:
    assert guard.decide("/nowhere", _context(Role.ADMIN)) == RedirectTo("/")
    assert guard.decide("/doctorate", _context(Role.DOCTOR)) == RedirectTo("/")


def test_decide_is_deterministic(guard: RouteGuard) -> None:
    contexts = [_context(role) for role in Role] + [_context(None), _context(None, bootstrapping=True)]
    paths = ["/", "/patient", "/patient/view/x", "/doctor/x", "/admin", "/qr-scanner", "/missing"]
    first = [[guard.decide(path, context) for path in paths] for context in contexts]
    second = [[guard.decide(path, context) for path in paths] for context in reversed(contexts)]
    assert first == list(reversed(second))


def test_authenticated_rule_accepts_any_role() -> None:
    guard = RouteGuard([RouteAccessRule.authenticated("/settings")])
    for role in Role:
        assert guard.decide("/settings/profile", _context(role)) == Allow()
    assert guard.decide("/settings", _context(None)) == RedirectTo("/login")


def test_longest_prefix_wins() -> None:
    guard = RouteGuard(
        [
            RouteAccessRule.for_roles("/records", Role.DOCTOR, Role.STAFF),
            RouteAccessRule.for_roles("/records/audit", Role.ADMIN),
        ]
    )
    assert guard.decide("/records/audit/2024", _context(Role.ADMIN)) == Allow()
    assert guard.decide("/records/audit/2024", _context(Role.DOCTOR)) == RedirectTo("/login")
    assert guard.decide("/records/42", _context(Role.STAFF)) == Allow()


def test_role_rule_requires_roles() -> None:
    with pytest.raises(ValueError):
        RouteAccessRule.for_roles("/empty")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("/doctor/", "/doctor"),
        ("/doctor?tab=1#top", "/doctor"),
        ("doctor", "/doctor"),
        ("//admin//users/", "/admin/users"),
        ("", "/"),
        ("http://localhost:5173/patient", "/patient"),
    ],
)
def test_normalize_path(raw: str, expected: str) -> None:
    assert normalize_path(raw) == expected
