"""Structured logging and tracing for the identity core."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

import msgspec
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode


class ObservabilityConfig(msgspec.Struct, frozen=True):
    """Top-level observability configuration."""

    enabled: bool = True
    opentelemetry_enabled: bool = True
    opentelemetry_tracer: str = "portalgate"
    logger_name: str = "portalgate.observability"
    span_prefix: str = "portalgate"


_SENSITIVE_KEYS = frozenset({"password", "code", "token", "access_token"})


def mask_destination(destination: str | None) -> str | None:
    """Mask an email address or phone number for log output."""

    if not destination:
        return destination
    if "@" in destination:
        local, _, domain = destination.partition("@")
        head = local[:1] or "*"
        return f"{head}***@{domain}"
    if len(destination) <= 4:
        return "*" * len(destination)
    return "*" * (len(destination) - 4) + destination[-4:]


class Observability:
    """Coordinate JSON event logging and OpenTelemetry spans."""

    def __init__(self, config: ObservabilityConfig | None = None) -> None:
        self.config = config or ObservabilityConfig()
        self._logger = logging.getLogger(self.config.logger_name)
        self._tracer = None
        if self.config.enabled and self.config.opentelemetry_enabled:
            self._tracer = trace.get_tracer(self.config.opentelemetry_tracer)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def event(self, name: str, **fields: Any) -> None:
        """Emit one compact JSON line for ``name``."""

        if not self.config.enabled:
            return
        payload: dict[str, Any] = {}
        for key, value in fields.items():
            if value is None or key in _SENSITIVE_KEYS:
                continue
            payload[key] = value
        payload["event"] = name
        self._logger.info(msgspec.json.encode(payload).decode())

    @contextmanager
    def span(self, name: str, attributes: Mapping[str, Any] | None = None) -> Iterator[None]:
        """Trace a provider call or reconciliation step."""

        if self._tracer is None:
            yield
            return
        span_name = f"{self.config.span_prefix}.{name}"
        clean = {key: _attribute(value) for key, value in (attributes or {}).items() if value is not None}
        start = time.perf_counter()
        with self._tracer.start_as_current_span(span_name, attributes=clean) as span:
            try:
                yield
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, description=type(exc).__name__))
                raise
            finally:
                span.set_attribute("duration_ms", (time.perf_counter() - start) * 1000.0)


def _attribute(value: Any) -> Any:
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


__all__ = ["Observability", "ObservabilityConfig", "mask_destination"]
