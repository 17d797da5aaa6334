"""
Structured session events.

A Session reports what it does as events: state transitions, handshake
progress, authentication attempts, host key queries, command runs and
errors. Events go to an in-memory EventCollector, a JSONL file, or both.

Event types:
- CONNECT: handshake initiating/connected/failed
- AUTH: one authentication attempt, with its outcome and duration
- HOST_KEY: fingerprint, known_hosts check or known_hosts add
- EXEC: command run on the session channel
- STATE_CHANGE: session state machine transition
- DISCONNECT: session torn down
- ERROR: an operation failed

Credentials never reach a sink: values stored under a secret key
(password, passphrase, responses) are masked when the event is built.
"""
from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator, Mapping

REDACTED = "<redacted>"

# Data keys (compared lower-case) whose values are masked
SECRET_KEYS = frozenset({"password", "passphrase", "response", "responses", "secret"})


class EventType(str, Enum):
    """What a session event reports."""
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    HOST_KEY = "HOST_KEY"
    EXEC = "EXEC"
    STATE_CHANGE = "STATE_CHANGE"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


def redact(data: Mapping[str, Any]) -> dict[str, Any]:
    """Copy of data with secret values masked, nested mappings included."""
    clean: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in SECRET_KEYS and value is not None:
            clean[key] = REDACTED
        elif isinstance(value, Mapping):
            clean[key] = redact(value)
        else:
            clean[key] = value
    return clean


@dataclass
class Event:
    """
    One structured event.

    Attributes:
        event_type: An EventType value
        timestamp: Unix time in milliseconds
        data: Event-specific fields; anything not JSON-native is written
            as its str()
    """
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.event_type, EventType):
            self.event_type = self.event_type.value
        assert self.event_type in EventType._value2member_map_, \
            f"Unknown event_type {self.event_type!r}"
        assert self.timestamp > 0, f"timestamp must be positive, got {self.timestamp}"

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, line: str) -> "Event":
        raw = json.loads(line)
        return cls(raw["event_type"], raw["timestamp"], raw.get("data", {}))


class EventCollector:
    """In-memory sink for tests and for callers inspecting a session."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """A copy of everything collected so far."""
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        wanted = EventType(event_type).value
        return [e for e in self._events if e.event_type == wanted]

    def transitions(self) -> list[tuple[str, str]]:
        """(from_state, to_state) pairs in the order the session moved."""
        return [
            (e.data["from_state"], e.data["to_state"])
            for e in self.get_by_type(EventType.STATE_CHANGE)
        ]


class JSONLEventWriter:
    """
    Appends events to a JSONL file, one flushed line per event.

    The file and its directory are created on the first event.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._file: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event: Event) -> None:
        if self._file is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")
        self._file.write(event.to_json() + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "JSONLEventWriter":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Builds events and hands them to the configured sinks.

    context fields (a session passes its host, port and username) are
    added to every event; fields given to emit() take precedence. Data
    is redacted before any sink sees it.

    Usage:
        emitter = EventEmitter(collector, "events.jsonl", context={"host": "example.com"})
        emitter.state_change("idle", "connecting")
        with emitter.timed_event(EventType.AUTH, method="password") as data:
            data["status"] = "success"
        emitter.close()
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self._collector = collector
        self._writer = JSONLEventWriter(jsonl_path) if jsonl_path else None
        self._context = dict(context or {})

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """Build an event from context plus data and dispatch it."""
        event = Event(
            event_type=EventType(event_type).value,
            data=redact({**self._context, **data}),
        )
        if self._collector is not None:
            self._collector.emit(event)
        if self._writer is not None:
            self._writer.emit(event)
        return event

    def state_change(self, from_state: str, to_state: str, **extra: Any) -> Event:
        return self.emit(EventType.STATE_CHANGE, from_state=from_state, to_state=to_state, **extra)

    def host_key(self, action: str, key_type: str, **extra: Any) -> Event:
        """HOST_KEY event; action is fingerprint, check or add."""
        return self.emit(EventType.HOST_KEY, action=action, key_type=key_type, **extra)

    def error(self, operation: str, exc: BaseException) -> Event:
        """ERROR event for a failed operation, from exc.to_dict() when it has one."""
        to_dict = getattr(exc, "to_dict", None)
        if to_dict is not None:
            details = to_dict()
        else:
            details = {"error_type": type(exc).__name__, "message": str(exc)}
        return self.emit(EventType.ERROR, operation=operation, **details)

    def close(self) -> None:
        """Close the JSONL file; later events only reach the collector."""
        if self._writer is not None:
            self._writer.close()
            self._writer = None

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Time a block and emit one event when it ends, even if it raises.

        The yielded dict becomes the event data; duration_ms is added.

        Usage:
            with emitter.timed_event(EventType.EXEC, command=command) as data:
                result = await transport.run(command)
                data["exit_code"] = result.exit_code
        """
        start = time.monotonic()
        event_data = dict(initial_data)
        try:
            yield event_data
        finally:
            event_data["duration_ms"] = (time.monotonic() - start) * 1000
            self.emit(event_type, **event_data)


def read_jsonl_events(path: Path | str) -> list[Event]:
    """Load every event from a JSONL log, skipping blank lines."""
    with Path(path).open(encoding="utf-8") as f:
        return [Event.from_json(line) for line in f if line.strip()]
