"""
Structured engine events.

Provides:
- EventType / Event: typed, timestamped records of engine activity
- EventSink and its implementations: EventCollector (memory),
  JSONLEventWriter (append-only file), StreamEventWriter (live text stream)
- EventEmitter: fans each event out to every attached sink
- read_jsonl_events: load a JSONL event log back into Events

Controllers tag their events with connection_id, so a log shared by many
tabs can be split per session with EventCollector.for_connection() or by
filtering read_jsonl_events() output on Event.connection_id.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterable, Iterator, TextIO

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """What an event describes."""
    CONNECT = "CONNECT"            # connect sequence started/finished
    KNOCK = "KNOCK"                # pre-connect hook ran
    TUNNEL = "TUNNEL"              # proxy or jump-host plumbing
    AUTH = "AUTH"                  # credential strategy selected
    HOST_KEY = "HOST_KEY"          # key verified, decision obtained
    STATE_CHANGE = "STATE_CHANGE"  # controller transition
    EXEC = "EXEC"
    CHANNEL = "CHANNEL"            # shell / sftp opened
    POOL = "POOL"                  # session manager bookkeeping
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


_EVENT_TYPES = frozenset(e.value for e in EventType)


def _now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class Event:
    """
    One engine event.

    timestamp is Unix milliseconds; data holds event-specific fields and
    never contains secrets.
    """
    event_type: str
    timestamp: float = field(default_factory=_now_ms)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        assert self.event_type in _EVENT_TYPES, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {sorted(_EVENT_TYPES)}"
        assert self.timestamp > 0, f"Timestamp must be positive, got {self.timestamp}"

    @property
    def connection_id(self) -> str | None:
        return self.data.get("connection_id")

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        record = json.loads(json_str)
        return cls(
            event_type=record["event_type"],
            timestamp=record["timestamp"],
            data=record.get("data", {}),
        )


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class EventSink:
    """Destination for events. emit() may be called from any thread."""

    def emit(self, event: Event) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class EventCollector(EventSink):
    """Keeps events in memory for tests and the CLI."""

    def __init__(self) -> None:
        self._events: list[Event] = []
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """Snapshot of everything collected so far."""
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        wanted = EventType(event_type).value
        return [e for e in self.events if e.event_type == wanted]

    def for_connection(self, connection_id: str) -> list[Event]:
        return [e for e in self.events if e.connection_id == connection_id]


class StreamEventWriter(EventSink):
    """
    Writes events as JSON lines to an already-open text stream.

    The stream belongs to the caller and is not closed.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        line = event.to_json() + "\n"
        with self._lock:
            self._stream.write(line)
            self._stream.flush()


class JSONLEventWriter(EventSink):
    """
    Appends events to a JSONL file.

    Usage:
        with JSONLEventWriter(path) as writer:
            writer.emit(event)
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def emit(self, event: Event) -> None:
        line = event.to_json() + "\n"
        with self._lock:
            assert self._file is not None, "Writer not opened. Call open() first."
            self._file.write(line)
            self._file.flush()

    def __enter__(self) -> "JSONLEventWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

class EventEmitter:
    """
    Builds events and hands them to every sink.

    collector and jsonl_path are shorthands for the two common sinks;
    anything else goes in sinks. With no sinks, events are built and
    returned but go nowhere.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
        sinks: Iterable[EventSink] = (),
    ) -> None:
        self._collector = collector
        self._sinks: list[EventSink] = []
        self._owned: list[EventSink] = []

        if collector is not None:
            self._sinks.append(collector)
        if jsonl_path:
            writer = JSONLEventWriter(jsonl_path)
            writer.open()
            self._sinks.append(writer)
            self._owned.append(writer)
        self._sinks.extend(sinks)

    @property
    def collector(self) -> EventCollector | None:
        return self._collector

    @property
    def sinks(self) -> list[EventSink]:
        return list(self._sinks)

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """Build an event from keyword data and deliver it."""
        event = Event(event_type=EventType(event_type).value, data=data)
        for sink in self._sinks:
            sink.emit(event)
        return event

    def close(self) -> None:
        """Close the sinks this emitter opened itself."""
        for sink in self._owned:
            if sink in self._sinks:
                self._sinks.remove(sink)
            sink.close()
        self._owned.clear()

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Emit event_type when the block exits, with duration_ms added.

        The yielded dict may be filled in by the block; the event is emitted
        even if the block raises.

        Usage:
            with emitter.timed_event(EventType.EXEC, command="uptime") as data:
                output = await controller.execute("uptime")
                data["stdout_len"] = len(output)
        """
        start_ms = _now_ms()
        event_data = dict(initial_data)
        try:
            yield event_data
        finally:
            event_data["duration_ms"] = _now_ms() - start_ms
            self.emit(event_type, **event_data)


def read_jsonl_events(path: Path | str) -> list[Event]:
    """
    Load every event from a JSONL log.

    Lines that are not valid events (a torn final write, a foreign record)
    are skipped with a warning.
    """
    path = Path(path)
    assert path.exists(), f"JSONL file not found: {path}"

    events: list[Event] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(Event.from_json(line))
            except (ValueError, KeyError, TypeError, AssertionError) as e:
                logger.warning("Skipping bad event on %s line %d: %s", path, lineno, e)
    return events
