"""Formatter nodes that render events as JSON."""

from __future__ import annotations

import base64
import dataclasses
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from eventpipe.node import Event, Node, NodeType

JSON_FORMAT = "json"

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    seconds = int(offset.total_seconds()) if offset else 0
    if seconds == 0:
        return text + "Z"
    sign = "+" if seconds > 0 else "-"
    hours, minutes = divmod(abs(seconds) // 60, 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def _to_json_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return int(value)
        return value
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Mapping):
        items = sorted(((str(k), v) for k, v in value.items()), key=lambda kv: kv[0])
        return {k: _to_json_value(v) for k, v in items}
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return {str(k): _to_json_value(v) for k, v in to_dict().items()}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_json_value(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_json_value(v) for v in value]
    raise TypeError(f"cannot encode value of type {type(value).__name__} as JSON")


def _dump_line(document: dict) -> bytes:
    text = json.dumps(document, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    for char, escape in _HTML_ESCAPES.items():
        text = text.replace(char, escape)
    return (text + "\n").encode("utf-8")


def _encode_event(event: Event) -> bytes:
    return _dump_line(
        {
            "created_at": _format_time(event.created_at),
            "event_type": str(event.type),
            "payload": _to_json_value(event.payload),
        }
    )


class JSONFormatter(Node):
    """Formats events as JSON under the "json" format name."""

    def process(self, event: Event) -> Event:
        event.formatted_as(JSON_FORMAT, _encode_event(event))
        return event

    def reopen(self) -> None:
        """Nothing external to reopen; only the reopen is counted."""
        super().reopen()

    def node_type(self) -> NodeType:
        return NodeType.FORMATTER

    def name(self) -> str:
        return "JSONFormatter"


class JSONFormatterFilter(Node):
    """Formats events as JSON, then keeps only those the predicate accepts."""

    def __init__(self, predicate: Optional[Callable[[Event], bool]] = None):
        self.predicate = predicate

    def process(self, event: Event) -> Optional[Event]:
        event.formatted_as(JSON_FORMAT, _encode_event(event))
        if self.predicate is not None and not self.predicate(event):
            return None
        return event

    def reopen(self) -> None:
        """Nothing external to reopen; only the reopen is counted."""
        super().reopen()

    def node_type(self) -> NodeType:
        return NodeType.FORMATTER_FILTER

    def name(self) -> str:
        return "JSONFormatteFilter"