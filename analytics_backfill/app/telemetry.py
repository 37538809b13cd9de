from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Literal, Protocol

import structlog

TelemetryValue = bool | int | float | str | None

# Substring match on the lowercased key: "access_token", "client_secret" and
# "response_body" are all caught.
SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = (
    "authorization",
    "body",
    "password",
    "payload",
    "secret",
    "token",
)
REDACTED = "[redacted]"
MAX_VALUE_LENGTH = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class DiscardingSink:
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        _ = (event_name, attributes)


class StructlogSink:
    """Writes each event as one structured line on the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("analytics_backfill.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


SINK_FACTORIES: dict[str, Callable[[], TelemetrySink]] = {
    "log": StructlogSink,
}


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink
    context: Mapping[str, TelemetryValue] = field(default_factory=dict)

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=DiscardingSink())

    def bind(self, **attributes: Any) -> TelemetryClient:
        """Return a client that adds `attributes` to every event it emits."""
        return replace(self, context={**self.context, **scrub_attributes(attributes)})

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(
            event_name=event_name,
            attributes={**self.context, **scrub_attributes(attributes)},
        )


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    factory = SINK_FACTORIES.get(sink) if enabled else None
    if factory is None:
        return TelemetryClient.disabled()
    return TelemetryClient(enabled=True, sink=factory())


def scrub_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    scrubbed: dict[str, TelemetryValue] = {}
    for raw_key, value in attributes.items():
        key = str(raw_key).strip().lower()
        if key:
            scrubbed[key] = _scrub_value(key, value)
    return scrubbed


def _scrub_value(key: str, value: Any) -> TelemetryValue:
    if any(fragment in key for fragment in SENSITIVE_KEY_FRAGMENTS):
        return REDACTED
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        compact = " ".join(value.split())
        if len(compact) > MAX_VALUE_LENGTH:
            return compact[:MAX_VALUE_LENGTH] + "..."
        return compact
    return type(value).__name__
