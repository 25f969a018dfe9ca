"""A sink that writes an event's formatted bytes to a stream."""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import IO, Any, Optional

from eventpipe.formatter import JSON_FORMAT
from eventpipe.node import Event, InvalidParameterError, Node, NodeType


@dataclass
class WriterSink(Node):
    """Writes the event in `format` (default "json") to `writer`.

    Text streams such as sys.stdout receive decoded text; others get bytes.
    """

    format: str = ""
    writer: Optional[IO[Any]] = None

    def reopen(self) -> None:
        """Streams cannot be rotated; pending output is flushed instead."""
        flush = getattr(self.writer, "flush", None)
        if callable(flush):
            flush()
        super().reopen()

    def node_type(self) -> NodeType:
        return NodeType.SINK

    def process(self, event: Optional[Event]) -> None:
        if self.writer is None:
            raise InvalidParameterError("sink writer is nil")
        if event is None:
            raise InvalidParameterError("event is nil")
        data = event.format(self.format or JSON_FORMAT)
        if data is None:
            raise InvalidParameterError("event was not marshaled")
        if isinstance(self.writer, io.TextIOBase):
            self.writer.write(data.decode("utf-8"))
        else:
            self.writer.write(data)
        return None