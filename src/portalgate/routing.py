"""Role-gated route access decisions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Sequence
from urllib.parse import urlsplit

import rure
from msgspec import Struct
from rure.regex import RegexObject

from .config import PortalConfig
from .models import Role, SessionContext

_PATH_PARAM_PATTERN = re.compile(r"{([a-zA-Z_][a-zA-Z0-9_]*)(?::([a-zA-Z_][a-zA-Z0-9_]*))?}")
_REGEX_META = frozenset(".+*?()|[]^$\\")


class Access(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"
    ROLES = "roles"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class RouteAccessRule(Struct, frozen=True):
    """Static access requirement for a path pattern.

    ``exact`` rules match the whole path (``{name}`` segments allowed); other
    rules also match every path below them.  ``explicit`` rules are consulted
    before any prefix match.
    """

    path_pattern: str
    access: Access
    roles: frozenset[Role] = frozenset()
    exact: bool = False
    explicit: bool = False

    @classmethod
    def public(cls, pattern: str, *, exact: bool = True, explicit: bool = False) -> "RouteAccessRule":
        return cls(pattern, Access.PUBLIC, exact=exact, explicit=explicit)

    @classmethod
    def authenticated(cls, pattern: str, *, exact: bool = False) -> "RouteAccessRule":
        return cls(pattern, Access.AUTHENTICATED, exact=exact)

    @classmethod
    def for_roles(cls, pattern: str, *roles: Role, exact: bool = False) -> "RouteAccessRule":
        if not roles:
            raise ValueError("a role-gated rule needs at least one role")
        return cls(pattern, Access.ROLES, roles=frozenset(roles), exact=exact)

    def permits(self, role: Role | None) -> bool:
        if self.access is Access.PUBLIC:
            return True
        if role is None:
            return False
        return self.access is Access.AUTHENTICATED or role in self.roles


class Allow(Struct, frozen=True):
    pass


class RedirectTo(Struct, frozen=True):
    target: str


class Pending(Struct, frozen=True):
    """Bootstrap still running; render a loading state and decide again later."""


Decision = Allow | RedirectTo | Pending


@dataclass(slots=True)
class CompiledRule:
    rule: RouteAccessRule
    pattern: RegexObject
    param_names: tuple[str, ...]
    weight: int


@dataclass(slots=True)
class RuleMatch:
    rule: RouteAccessRule
    params: Mapping[str, str]


class RouteGuard:
    """Pure decision function over a static rule table.

    ``decide`` reads nothing but its arguments and the immutable rules, so the
    same path and context always produce the same decision.
    """

    def __init__(self, rules: Iterable[RouteAccessRule], *, config: PortalConfig | None = None) -> None:
        self.config = config or PortalConfig()
        compiled = [_compile_rule(rule) for rule in rules]
        self._explicit: tuple[CompiledRule, ...] = tuple(item for item in compiled if item.rule.explicit)
        self._ordered: tuple[CompiledRule, ...] = tuple(
            sorted((item for item in compiled if not item.rule.explicit), key=lambda item: -item.weight)
        )

    @property
    def rules(self) -> Sequence[RouteAccessRule]:
        return tuple(item.rule for item in self._explicit + self._ordered)

    def match(self, path: str) -> RuleMatch | None:
        normalized = normalize_path(path)
        for group in (self._explicit, self._ordered):
            for item in group:
                captures = item.pattern.match(normalized)
                if captures is None:
                    continue
                params = {name: captures.group(name) for name in item.param_names}
                return RuleMatch(rule=item.rule, params={k: v for k, v in params.items() if v is not None})
        return None

    def decide(self, path: str, context: SessionContext) -> Decision:
        normalized = normalize_path(path)
        found = self.match(normalized)
        if found is None:
            return RedirectTo(self.config.home_path)
        rule = found.rule
        if rule.access is Access.PUBLIC:
            return Allow()
        if context.is_bootstrapping:
            return Pending()
        if not rule.permits(context.role):
            return RedirectTo(self.config.login_path_for(normalized))
        return Allow()


def default_rules(config: PortalConfig | None = None) -> tuple[RouteAccessRule, ...]:
    """Route table of the hospital portal."""

    config = config or PortalConfig()
    public_pages = (
        config.home_path,
        "/auth",
        config.login_path,
        "/signup",
        config.patient_login_path,
        "/patient-signup",
        config.error_path,
        config.oauth_callback_path,
        config.password_reset_path,
        "/about",
        "/contact",
        "/departments",
    )
    rules: list[RouteAccessRule] = [RouteAccessRule.public(path) for path in dict.fromkeys(public_pages)]
    rules.append(RouteAccessRule.public(config.public_patient_view, explicit=True))
    rules.extend(
        (
            RouteAccessRule.for_roles(config.patient_area_prefix, Role.PATIENT),
            RouteAccessRule.for_roles("/doctor", Role.DOCTOR),
            RouteAccessRule.for_roles("/staff", Role.STAFF),
            RouteAccessRule.for_roles("/admin", Role.ADMIN),
            RouteAccessRule.for_roles("/qr-scanner", Role.DOCTOR, Role.ADMIN, exact=True),
        )
    )
    return tuple(rules)


def normalize_path(path: str) -> str:
    """Strip query, fragment and trailing slashes from ``path``."""

    candidate = urlsplit(path).path or "/"
    if not candidate.startswith("/"):
        candidate = "/" + candidate
    while "//" in candidate:
        candidate = candidate.replace("//", "/")
    if len(candidate) > 1:
        candidate = candidate.rstrip("/") or "/"
    return candidate


def _compile_rule(rule: RouteAccessRule) -> CompiledRule:
    path = normalize_path(rule.path_pattern)
    param_names: list[str] = []

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        converter = match.group(2)
        param_names.append(name)
        if converter is None:
            return f"(?P<{name}>[^/]+)"
        if converter == "path":
            return f"(?P<{name}>.*)"
        raise ValueError(f"Unsupported path converter: {converter}")

    literal_parts = _PATH_PARAM_PATTERN.split(path)
    body = _PATH_PARAM_PATTERN.sub(replace, _escape_literals(path))
    if rule.exact:
        pattern = "^" + body + "$"
    elif path == "/":
        pattern = "^/.*$"
    else:
        pattern = "^" + body + "(?:/.*)?$"
    # Longer literal prefixes win over shorter ones.
    weight = len("".join(literal_parts[::3]))
    return CompiledRule(rule=rule, pattern=rure.compile(pattern), param_names=tuple(param_names), weight=weight)


def _escape_literals(path: str) -> str:
    pieces: list[str] = []
    cursor = 0
    for match in _PATH_PARAM_PATTERN.finditer(path):
        pieces.append(_escape(path[cursor : match.start()]))
        pieces.append(match.group(0))
        cursor = match.end()
    pieces.append(_escape(path[cursor:]))
    return "".join(pieces)


def _escape(literal: str) -> str:
    return "".join("\\" + char if char in _REGEX_META else char for char in literal)


__all__ = [
    "Access",
    "Allow",
    "Decision",
    "Pending",
    "RedirectTo",
    "RouteAccessRule",
    "RouteGuard",
    "RuleMatch",
    "default_rules",
    "normalize_path",
]
