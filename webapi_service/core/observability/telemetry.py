"""Process-wide telemetry publisher.

The publisher buffers structured events and hands them to sinks on flush.
One instance is installed per process during startup; it is safe to publish
from any request thread afterwards. ``close()`` (or ``shutdown_telemetry()``)
flushes the buffer and must run before the process exits.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Iterable, Optional, Protocol

from webapi_service.core.observability.metrics import increment_telemetry_events

_logger = logging.getLogger("webapi_service.telemetry")


class FaultKind(str, Enum):
    DEGRADABLE = "degradable"
    FATAL = "fatal"
    REQUEST = "request"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "event",
            "name": self.name,
            "timestamp": self.timestamp,
            "properties": dict(self.properties),
        }


@dataclass(frozen=True)
class ExceptionEvent:
    exception_type: str
    message: str
    stack: str
    fault_kind: FaultKind
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_now)

    @property
    def name(self) -> str:
        return "exception"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "exception",
            "name": self.name,
            "timestamp": self.timestamp,
            "exception_type": self.exception_type,
            "message": self.message,
            "stack": self.stack,
            "fault_kind": self.fault_kind.value,
            "properties": dict(self.properties),
        }


def to_exception_event(
    exc: BaseException, fault_kind: FaultKind = FaultKind.FATAL, **properties: Any
) -> ExceptionEvent:
    """Build an exception event; the stack is empty for never-raised exceptions."""
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return ExceptionEvent(
        exception_type=f"{type(exc).__module__}.{type(exc).__qualname__}",
        message=str(exc),
        stack=stack if exc.__traceback__ is not None else "",
        fault_kind=fault_kind,
        properties=properties,
    )


class TelemetrySink(Protocol):
    def send(self, envelopes: list[dict[str, Any]]) -> None: ...


class LoggingSink:
    """Default sink: one structured log line per envelope."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _logger

    def send(self, envelopes: list[dict[str, Any]]) -> None:
        for envelope in envelopes:
            level = logging.ERROR if envelope["event"]["type"] == "exception" else logging.INFO
            self.logger.log(level, "telemetry.%s", envelope["event"]["name"], extra={"telemetry": envelope})


class TelemetryPublisher:
    """Thread-safe buffered publisher bound to an instrumentation key."""

    def __init__(
        self,
        instrumentation_key: str,
        internal_key: str = "",
        sinks: Optional[Iterable[TelemetrySink]] = None,
        buffer_size: int = 50,
    ):
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self.instrumentation_key = instrumentation_key
        self.internal_key = internal_key or instrumentation_key
        self.buffer_size = buffer_size
        self._sinks: list[TelemetrySink] = list(sinks) if sinks is not None else [LoggingSink()]
        self._buffer: list[dict[str, Any]] = []
        self._lock = Lock()
        self._closed = False
        self._published = 0

    @classmethod
    def from_settings(cls, telemetry_settings, sinks: Optional[Iterable[TelemetrySink]] = None) -> "TelemetryPublisher":
        return cls(
            telemetry_settings.instrumentation_key,
            telemetry_settings.internal_key,
            sinks=sinks,
        )

    @property
    def published_count(self) -> int:
        with self._lock:
            return self._published

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: TelemetryEvent | ExceptionEvent, *, internal: bool = False) -> None:
        """Queue an event; events on the internal channel use the internal key."""
        envelope = {
            "ikey": self.internal_key if internal else self.instrumentation_key,
            "channel": "internal" if internal else "default",
            "event": event.to_dict(),
        }
        with self._lock:
            if self._closed:
                _logger.warning("telemetry_publish_after_close", extra={"event_name": event.name})
                return
            self._buffer.append(envelope)
            self._published += 1
            should_flush = len(self._buffer) >= self.buffer_size
        kind = event.fault_kind.value if isinstance(event, ExceptionEvent) else "event"
        increment_telemetry_events(kind)
        if should_flush:
            self.flush()

    def publish_exception(
        self,
        exc: BaseException,
        fault_kind: FaultKind = FaultKind.FATAL,
        *,
        internal: bool = False,
        **properties: Any,
    ) -> ExceptionEvent:
        event = to_exception_event(exc, fault_kind, **properties)
        self.publish(event, internal=internal)
        return event

    def flush(self) -> None:
        """Hand buffered envelopes to every sink; a failing sink does not stop the others."""
        with self._lock:
            if not self._buffer:
                return
            batch, self._buffer = self._buffer, []
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink.send(list(batch))
            except Exception:
                _logger.exception(
                    "telemetry_sink_failed",
                    extra={"sink": type(sink).__name__, "dropped_envelopes": len(batch)},
                )

    def close(self) -> None:
        self.flush()
        with self._lock:
            self._closed = True


_publisher: Optional[TelemetryPublisher] = None
_publisher_lock = Lock()


def install_publisher(publisher: TelemetryPublisher) -> TelemetryPublisher:
    """Install the process-wide publisher; a previous one is flushed and closed."""
    global _publisher
    with _publisher_lock:
        previous, _publisher = _publisher, publisher
    if previous is not None and previous is not publisher:
        previous.close()
    return publisher


def get_publisher() -> TelemetryPublisher:
    if _publisher is None:
        raise RuntimeError("Telemetry publisher has not been installed")
    return _publisher


def shutdown_telemetry() -> None:
    """Flush and close the process-wide publisher (idempotent)."""
    global _publisher
    with _publisher_lock:
        publisher, _publisher = _publisher, None
    if publisher is not None:
        publisher.close()
