"""Portal configuration objects."""

from __future__ import annotations

import os
from typing import Mapping

from msgspec import Struct

from .observability import ObservabilityConfig

_ENV_PREFIX = "PORTALGATE_"


class PortalConfig(Struct, frozen=True):
    """Typed configuration for a :class:`~portalgate.application.Portal` instance."""

    site_origin: str = "http://localhost:5173"
    otp_ttl_seconds: int = 600
    default_country_code: str = "+91"
    home_path: str = "/"
    login_path: str = "/login"
    patient_login_path: str = "/patient-login"
    patient_area_prefix: str = "/patient"
    public_patient_view: str = "/patient/view/{patient_id}"
    error_path: str = "/auth-error"
    oauth_callback_path: str = "/auth/callback"
    password_reset_path: str = "/reset-password"
    verification_redirect_path: str = "/auth"
    observability: ObservabilityConfig = ObservabilityConfig()

    def url_for(self, path: str) -> str:
        """Return an absolute URL on the portal origin for ``path``."""

        return f"{self.site_origin.rstrip('/')}{path}"

    def login_path_for(self, path: str) -> str:
        """Patient-area paths use the patient login; every other area uses the staff login."""

        prefix = self.patient_area_prefix.rstrip("/")
        if path == prefix or path.startswith(prefix + "/"):
            return self.patient_login_path
        return self.login_path

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PortalConfig":
        """Build a configuration from ``PORTALGATE_*`` environment variables."""

        env = os.environ if environ is None else environ
        defaults = cls()
        observability = ObservabilityConfig(
            enabled=_flag(env.get(f"{_ENV_PREFIX}OBSERVABILITY"), defaults.observability.enabled),
            opentelemetry_enabled=_flag(
                env.get(f"{_ENV_PREFIX}OPENTELEMETRY"), defaults.observability.opentelemetry_enabled
            ),
        )
        ttl_raw = env.get(f"{_ENV_PREFIX}OTP_TTL_SECONDS")
        if ttl_raw is None:
            ttl = defaults.otp_ttl_seconds
        else:
            try:
                ttl = int(ttl_raw)
            except ValueError as exc:
                raise ValueError(f"{_ENV_PREFIX}OTP_TTL_SECONDS must be an integer, got {ttl_raw!r}") from exc
            if ttl <= 0:
                raise ValueError(f"{_ENV_PREFIX}OTP_TTL_SECONDS must be positive")
        return cls(
            site_origin=env.get(f"{_ENV_PREFIX}SITE_ORIGIN", defaults.site_origin),
            otp_ttl_seconds=ttl,
            default_country_code=env.get(f"{_ENV_PREFIX}DEFAULT_COUNTRY_CODE", defaults.default_country_code),
            observability=observability,
        )


def _flag(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


__all__ = ["PortalConfig"]
