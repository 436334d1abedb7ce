"""
Event system for nbs-tunnel.

Two kinds of events flow out of the engine:

- Diagnostic events (Event): structured JSONL records for every connect,
  authentication, channel, forwarding transition, scan and error.
- Forwarding events (ForwardingEvent): the started/stopped/error/deleted
  stream a UI subscribes to in order to update indicators.

All diagnostic events include:
- timestamp: Unix timestamp in milliseconds
- event_type: One of EventType
- data: Event-specific structured data
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from nbs_tunnel.records import ForwardingRecord

log = logging.getLogger(__name__)


class EventType(str, Enum):
    """Diagnostic event types for structured logging."""
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    DISCONNECT = "DISCONNECT"
    FORWARD = "FORWARD"
    CHANNEL = "CHANNEL"
    SCAN = "SCAN"
    ERROR = "ERROR"


@dataclass
class Event:
    """A single diagnostic event."""
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        """Serialise event to JSON string."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialise event from JSON string."""
        data = json.loads(json_str)
        return cls(
            event_type=data["event_type"],
            timestamp=data["timestamp"],
            data=data.get("data", {}),
        )


class EventCollector:
    """Collects events in memory for testing and inspection."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        """Add an event to the collection."""
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Return collected events (copy)."""
        return list(self._events)

    def clear(self) -> None:
        """Clear all collected events."""
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        """Get all events of a specific type."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return [e for e in self._events if e.event_type == event_type]


class JSONLEventWriter:
    """Appends events to a JSONL file, one JSON object per line."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    def open(self) -> None:
        """Open the log file for appending."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        """Close the log file."""
        if self._file:
            self._file.close()
            self._file = None

    def emit(self, event: Event) -> None:
        """Write an event to the log file."""
        assert self._file is not None, "Writer not opened. Call open() first."
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Composite event emitter that dispatches to an in-memory collector
    and/or a JSONL file.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
    ) -> None:
        self._collector = collector
        self._jsonl_writer: JSONLEventWriter | None = None

        if jsonl_path:
            self._jsonl_writer = JSONLEventWriter(jsonl_path)
            self._jsonl_writer.open()

    @property
    def collector(self) -> EventCollector | None:
        return self._collector

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """
        Create and emit an event.

        Args:
            event_type: The type of event
            **data: Event-specific data

        Returns:
            The created event
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value

        event = Event(event_type=event_type, data=data)

        if self._collector:
            self._collector.emit(event)

        if self._jsonl_writer:
            self._jsonl_writer.emit(event)

        return event

    def close(self) -> None:
        """Close any open resources."""
        if self._jsonl_writer:
            self._jsonl_writer.close()
            self._jsonl_writer = None


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Read all events from a JSONL file."""
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                events.append(Event.from_json(line))

    return events


# ---------------------------------------------------------------------------
# Forwarding lifecycle stream
# ---------------------------------------------------------------------------

class ForwardingEventKind(str, Enum):
    """Lifecycle transitions reported to forwarding subscribers."""
    STARTED = "started"
    STOPPED = "stopped"
    ERROR = "error"
    DELETED = "deleted"


@dataclass(frozen=True)
class ForwardingEvent:
    """
    One lifecycle transition of a forwarding record.

    record is a snapshot taken at emission time; mutating it does not
    affect the registry.
    """
    kind: ForwardingEventKind
    record: "ForwardingRecord"
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.kind.value, "record": self.record.to_dict()}
        if self.error is not None:
            result["error"] = self.error
        return result


ForwardingListener = Callable[[ForwardingEvent], None]


class ForwardingEventStream:
    """
    Fan-out of ForwardingEvents to subscribers.

    A subscriber that raises is logged and skipped; it never affects the
    registry or other subscribers.
    """

    def __init__(self) -> None:
        self._listeners: list[ForwardingListener] = []

    def subscribe(self, listener: ForwardingListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: ForwardingEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Forwarding event listener %r failed", listener)

    def __len__(self) -> int:
        return len(self._listeners)
