from __future__ import annotations

import pytest

from portalgate.config import PortalConfig


def test_defaults_match_portal_routes() -> None:
    config = PortalConfig()
    assert config.otp_ttl_seconds == 600
    assert config.default_country_code == "+91"
    assert config.url_for("/auth/callback") == "http://localhost:5173/auth/callback"


def test_login_path_depends_on_area() -> None:
    config = PortalConfig()
    assert config.login_path_for("/patient") == "/patient-login"
    assert config.login_path_for("/patient/records") == "/patient-login"
    assert config.login_path_for("/patients") == "/login"
    assert config.login_path_for("/doctor") == "/login"


def test_from_env_reads_prefixed_variables() -> None:
    config = PortalConfig.from_env(
        {
            "PORTALGATE_SITE_ORIGIN": "https://care.example.org/",
            "PORTALGATE_OTP_TTL_SECONDS": "300",
            "PORTALGATE_DEFAULT_COUNTRY_CODE": "+44",
            "PORTALGATE_OBSERVABILITY": "off",
            "PORTALGATE_OPENTELEMETRY": "yes",
        }
    )
    assert config.url_for("/reset-password") == "https://care.example.org/reset-password"
    assert config.otp_ttl_seconds == 300
    assert config.default_country_code == "+44"
    assert config.observability.enabled is False
    assert config.observability.opentelemetry_enabled is True


def test_from_env_uses_defaults_when_unset() -> None:
    assert PortalConfig.from_env({}) == PortalConfig()


@pytest.mark.parametrize("value", ["ten", "0", "-5"])
def test_from_env_rejects_bad_ttl(value: str) -> None:
    with pytest.raises(ValueError):
        PortalConfig.from_env({"PORTALGATE_OTP_TTL_SECONDS": value})


def test_from_env_defaults_to_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PORTALGATE_DEFAULT_COUNTRY_CODE", "+1")
    assert PortalConfig.from_env().default_country_code == "+1"
