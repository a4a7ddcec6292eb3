from __future__ import annotations

import json
import logging

import pytest

from portalgate.observability import Observability, ObservabilityConfig, mask_destination
from portalgate.testing import PortalTestHarness


def _events(caplog: pytest.LogCaptureFixture) -> list[dict[str, object]]:
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == "portalgate.observability"]


def test_event_writes_one_json_line_without_secrets(caplog: pytest.LogCaptureFixture) -> None:
    observability = Observability(ObservabilityConfig(opentelemetry_enabled=False))

    with caplog.at_level(logging.INFO, logger="portalgate.observability"):
        observability.event("otp.sent", channel="phone", code="123456", password="x", destination=None)

    assert _events(caplog) == [{"channel": "phone", "event": "otp.sent"}]


def test_disabled_observability_is_silent(caplog: pytest.LogCaptureFixture) -> None:
    observability = Observability(ObservabilityConfig(enabled=False))

    with caplog.at_level(logging.INFO, logger="portalgate.observability"):
        observability.event("otp.sent", channel="phone")
        with observability.span("otp.send"):
            pass

    assert _events(caplog) == []


def test_span_propagates_errors() -> None:
    observability = Observability()

    with pytest.raises(RuntimeError):
        with observability.span("session.change", {"identity_id": "abc", "role": None}):
            raise RuntimeError("boom")


@pytest.mark.parametrize(
    ("raw", "masked"),
    [
        ("asha@example.com", "a***@example.com"),
        ("+919876543210", "*********3210"),
        ("123", "***"),
        (None, None),
    ],
)
def test_mask_destination(raw: str | None, masked: str | None) -> None:
    assert mask_destination(raw) == masked


@pytest.mark.asyncio
async def test_channel_operations_log_masked_destinations(caplog: pytest.LogCaptureFixture) -> None:
    harness = PortalTestHarness()
    harness.portal.observability = Observability(ObservabilityConfig(opentelemetry_enabled=False))
    harness.portal.phone.observability = harness.portal.observability

    async with harness:
        with caplog.at_level(logging.INFO, logger="portalgate.observability"):
            await harness.portal.phone.send_code("+919876543210")

    events = _events(caplog)
    assert {"event": "auth.succeeded", "channel": "otp_phone", "operation": "send_code", "destination": "*********3210"} in events
    assert all("+919876543210" not in json.dumps(event) for event in events)
