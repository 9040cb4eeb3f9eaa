from __future__ import annotations

import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TelemetryValue = bool | int | float | str | None

REDACTED = "[redacted]"
TELEMETRY_EVENT_KEY = "telemetry_event"
# Substrings of attribute names whose values never leave the process.
_SECRET_KEY_FRAGMENTS = (
    "api_key",
    "authorization",
    "credential",
    "developer_key",
    "password",
    "secret",
    "token",
)
_TEXT_LIMIT = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class DiscardingSink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        del event_name, attributes


class LogFileSink:
    """Writes each event to the `campaign_tracker.telemetry` logger."""

    def __init__(self, logger_name: str = "campaign_tracker.telemetry") -> None:
        self._log = structlog.get_logger(logger_name)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._log.info("telemetry", **{TELEMETRY_EVENT_KEY: event_name}, **attributes)


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=DiscardingSink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if self.enabled:
            self.sink.emit(event_name=event_name, attributes=sanitize_attributes(attributes))

    @contextmanager
    def timed(self, event_prefix: str, **attributes: Any) -> Iterator[dict[str, Any]]:
        """
        Bracket a block with `<prefix>.start` and `<prefix>.finish` (or `<prefix>.error`).

        Whatever the block stores in the yielded dict is added to the finish event.
        Both closing events carry `duration_ms`; exceptions are re-raised.
        """
        outcome: dict[str, Any] = {}
        clock_start = time.perf_counter()
        self.emit(f"{event_prefix}.start", **attributes)
        try:
            yield outcome
        except Exception as exc:
            elapsed = _millis_since(clock_start)
            self.emit(
                f"{event_prefix}.error",
                **attributes,
                error_type=type(exc).__name__,
                duration_ms=elapsed,
            )
            raise
        outcome["duration_ms"] = _millis_since(clock_start)
        self.emit(f"{event_prefix}.finish", **{**attributes, **outcome})


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=LogFileSink())
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    """Normalize keys, redact secrets and flatten values to JSON scalars."""
    cleaned: dict[str, TelemetryValue] = {}
    for raw_key, value in attributes.items():
        key = str(raw_key).strip().lower()
        if key:
            cleaned[key] = REDACTED if _looks_secret(key) else _to_scalar(value)
    return cleaned


def _looks_secret(key: str) -> bool:
    return any(fragment in key for fragment in _SECRET_KEY_FRAGMENTS)


def _to_scalar(value: Any) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        text = " ".join(value.split())
        return text if len(text) <= _TEXT_LIMIT else text[:_TEXT_LIMIT] + "..."
    # Collections are reported by size so id lists never bloat the log.
    if isinstance(value, list | tuple | set | frozenset | dict):
        return len(value)
    return type(value).__name__


def _millis_since(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
