"""A filter that holds related events back until a flush event arrives.

Events whose payloads are gateable are buffered by their ID. When an event
with the same ID signals a flush, the filter composes every buffered event
for that ID into a single event and passes it on. Buffered groups expire
after a while; expired groups are composed and sent through the broker,
or dropped when there is no broker.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from eventpipe.graph import Status
from eventpipe.node import Event, EventType, InvalidParameterError, Node, NodeType

DEFAULT_EVENT_TIMEOUT = timedelta(seconds=10)


@runtime_checkable
class Sender(Protocol):
    """Something that can send a payload through the registered pipelines."""

    def send(self, event_type: EventType, payload: Any) -> Status:
        """Send the payload as an event of the given type."""


@runtime_checkable
class Gateable(Protocol):
    """An event payload that the gated filter buffers by ID."""

    def get_id(self) -> str:
        """Return the ID shared by every payload of one group."""

    def flush_event(self) -> bool:
        """Return True when this payload closes its group."""

    def compose_from(self, events: list) -> tuple:
        """Compose a group of events into one (event type, payload) pair.

        The composed payload must not itself be gateable.
        """


def _time_string(moment: datetime) -> str:
    """Render a time as "2006-01-02 15:04:05.999999 +0000 UTC"."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d} "
        f"{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    seconds = int(offset.total_seconds()) if offset else 0
    sign = "-" if seconds < 0 else "+"
    hours, minutes = divmod(abs(seconds) // 60, 60)
    numeric = f"{sign}{hours:02d}{minutes:02d}"
    name = moment.tzname()
    if name is None or name.startswith("UTC"):
        name = "UTC" if seconds == 0 else numeric
    return f"{text} {numeric} {name}"


@dataclass
class _GatedEvent:
    id: str
    expires: datetime
    events: list = field(default_factory=list)


@dataclass
class GatedFilter(Node):
    """Buffers gateable events by ID until one of them asks for a flush.

    `broker` is used only for expired groups and for flush_all(); without
    one, those groups are dropped. A zero `expiration` means the default
    of ten seconds. `now_func` overrides the clock.
    """

    broker: Optional[Sender] = None
    expiration: timedelta = timedelta(0)
    now_func: Optional[Callable[[], datetime]] = None
    _gated: dict = field(default_factory=dict, init=False, repr=False, compare=False)
    _compose_from: Optional[Callable[[list], tuple]] = field(
        default=None, init=False, repr=False, compare=False
    )
    _lock: Any = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def process(self, event: Optional[Event]) -> Optional[Event]:
        """Pass non-gateable events on; buffer gateable ones until a flush."""
        if event is None:
            raise InvalidParameterError("missing event")
        payload = event.payload
        if not isinstance(payload, Gateable):
            return event
        gate_id = payload.get_id()
        if not gate_id:
            raise InvalidParameterError("missing ID")

        with self._lock:
            if not self.expiration:
                self.expiration = DEFAULT_EVENT_TIMEOUT
            if self._compose_from is None:
                self._compose_from = payload.compose_from

        self._process_expired()

        with self._lock:
            gated = self._gated.get(gate_id)
            if gated is None:
                gated = _GatedEvent(gate_id, self.now() + self.expiration)
                self._gated[gate_id] = gated
            gated.events.append(event)

            if not payload.flush_event():
                return None

            # The group goes away even if composing it fails.
            del self._gated[gate_id]
            event_type, composed = self._compose_from(gated.events)
            return Event(type=event_type, payload=composed, created_at=self.now(), formatted={})

    def _process_expired(self) -> None:
        with self._lock:
            if self._compose_from is None:
                raise InvalidParameterError("compose function is not initialized")
            if not self._gated:
                return
            if not self.expiration:
                self.expiration = DEFAULT_EVENT_TIMEOUT
            # Groups are kept in arrival order, so the first live one ends the scan.
            for gated in list(self._gated.values()):
                if self.now() > gated.expires:
                    self._open_gate(gated)
                else:
                    break

    def flush_all(self) -> None:
        """Compose and send every buffered group, or drop them all without a broker."""
        with self._lock:
            if not self._gated:
                return
            if self._compose_from is None:
                raise InvalidParameterError("compose function is not initialized")
            if self.broker is None:
                self._gated.clear()
                return
            for gated in list(self._gated.values()):
                self._open_gate(gated)

    def _open_gate(self, gated: _GatedEvent) -> None:
        """Compose one group and send it; the caller holds the lock."""
        self._gated.pop(gated.id, None)
        event_type, composed = self._compose_from(gated.events)
        if isinstance(composed, Gateable):
            raise ValueError(
                f"{type(composed).__name__}.compose_from returned a Gateable payload"
            )
        if self.broker is not None:
            self.broker.send(event_type, composed)

    def reopen(self) -> None:
        """Nothing external to reopen; buffered groups are kept as they are."""
        super().reopen()

    def node_type(self) -> NodeType:
        return NodeType.FILTER

    def now(self) -> datetime:
        """Return the current time, from now_func when it is set."""
        if self.now_func is not None:
            return self.now_func()
        return datetime.now(timezone.utc)


@dataclass
class EventPayloadDetails:
    """One detail entry of a composed payload."""

    type: str = ""
    created_at: str = ""
    payload: Optional[dict] = None

    def to_dict(self) -> dict:
        """Return the JSON fields, leaving out an empty payload."""
        result: dict = {"type": self.type, "created_at": self.created_at}
        if self.payload:
            result["payload"] = self.payload
        return result


@dataclass
class EventPayload:
    """The payload produced by composing a group of Payload events."""

    id: str = ""
    header: Optional[dict] = None
    details: list = field(default_factory=list)

    def to_dict(self) -> dict:
        """Return the JSON fields, leaving out an empty header or details."""
        result: dict = {"id": self.id}
        if self.header:
            result["header"] = self.header
        if self.details:
            result["details"] = list(self.details)
        return result


@dataclass
class Payload:
    """A simple gateable payload with a header and a detail map."""

    id: str = ""
    flush: bool = False
    header: Optional[dict] = None
    detail: Optional[dict] = None

    def get_id(self) -> str:
        return self.id

    def flush_event(self) -> bool:
        return self.flush

    def compose_from(self, events: list) -> tuple:
        """Merge headers and collect details of the events into an EventPayload."""
        if not events:
            raise InvalidParameterError("missing events")
        composed = EventPayload()
        for index, event in enumerate(events):
            part = event.payload
            if not isinstance(part, Payload):
                raise InvalidParameterError(f"event {index} is not a simple gated payload")
            composed.id = part.get_id()
            if part.header is not None:
                if composed.header is None:
                    composed.header = {}
                composed.header.update(part.header)
            if part.detail is not None:
                composed.details.append(
                    EventPayloadDetails(
                        type=str(event.type),
                        created_at=_time_string(event.created_at),
                        payload=part.detail,
                    )
                )
        return events[0].type, composed

    def to_dict(self) -> dict:
        """Return the JSON fields; the flush flag is never serialised."""
        result: dict = {"id": self.id}
        if self.header:
            result["header"] = self.header
        if self.detail:
            result["detail"] = self.detail
        return result