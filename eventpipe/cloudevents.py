"""A formatter filter that renders events as CloudEvents.

Events are encoded as CloudEvents (spec version 1.0), either as compact JSON
or as indented text. The result is stored on the event under the format
name and may be signed. A predicate can then decide, from the CloudEvent,
whether the event is kept.
"""

from __future__ import annotations

import base64
import json
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from eventpipe.formatter import _HTML_ESCAPES, _format_time, _to_json_value
from eventpipe.node import ZERO_TIME, Event, InvalidParameterError, Node, NodeType

DATA_CONTENT_TYPE_CLOUDEVENTS = "application/cloudevents"
DATA_CONTENT_TYPE_TEXT = "text/plain"

FORMAT_JSON = "cloudevents-json"
FORMAT_TEXT = "cloudevents-text"
FORMAT_UNSPECIFIED = ""

NODE_NAME = "cloudevents-formatter-filter"
SPEC_VERSION = "1.0"
TEXT_INDENT = "  "

_VALID_FORMATS = (FORMAT_JSON, FORMAT_TEXT, FORMAT_UNSPECIFIED)
_ID_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
_ID_LENGTH = 10

Signer = Callable[[bytes], str]


def validate_format(fmt: str) -> str:
    """Return the format if it is supported; raise InvalidParameterError otherwise."""
    if fmt not in _VALID_FORMATS:
        raise InvalidParameterError(f"'{fmt}' is not a valid format")
    return fmt


def data_content_type(fmt: str) -> str:
    """Return the media type of the data produced by a format."""
    if fmt in (FORMAT_JSON, FORMAT_UNSPECIFIED):
        return DATA_CONTENT_TYPE_CLOUDEVENTS
    return DATA_CONTENT_TYPE_TEXT


def new_id() -> str:
    """Return a random ten-character base62 identifier."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


@dataclass
class CloudEvent:
    """The CloudEvent built from an event before it is encoded."""

    id: str = ""
    source: str = ""
    spec_version: str = ""
    type: str = ""
    data: Any = None
    data_content_type: str = ""
    data_schema: str = ""
    time: datetime = ZERO_TIME
    serialized: str = ""
    serialized_hmac: str = ""

    def to_dict(self) -> dict:
        """Return the JSON document, in field order, leaving out empty optional fields."""
        result: dict = {
            "id": self.id,
            "source": self.source,
            "specversion": self.spec_version,
            "type": self.type,
        }
        if self.data is not None:
            result["data"] = _to_json_value(self.data)
        if self.data_content_type:
            result["datacontentype"] = self.data_content_type
        if self.data_schema:
            result["dataschema"] = self.data_schema
        result["time"] = _format_time(self.time)
        if self.serialized:
            result["serialized"] = self.serialized
        if self.serialized_hmac:
            result["serialized_hmac"] = self.serialized_hmac
        return result


def _encode(cloud_event: CloudEvent, indent: Optional[str]) -> bytes:
    try:
        document = cloud_event.to_dict()
        text = json.dumps(document, indent=indent, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"error formatting as JSON: {exc}") from exc
    for char, escape in _HTML_ESCAPES.items():
        text = text.replace(char, escape)
    return (text + "\n").encode("utf-8")


def _call_if_callable(payload: Any, name: str) -> tuple:
    method = getattr(payload, name, None)
    if callable(method):
        return True, method()
    return False, None


@dataclass
class FormatterFilter(Node):
    """Formats events as CloudEvents and optionally filters them.

    `source` is required; `schema`, when given, must not be empty. An empty
    `format` means FORMAT_JSON. Payloads may provide `id()` and `data()`
    methods to supply the CloudEvent id and data; otherwise a random id is
    generated and the whole payload is used as data. When `signer` is set,
    events whose type is in `sign_event_types` are signed.
    """

    source: Optional[str] = None
    schema: Optional[str] = None
    format: str = FORMAT_UNSPECIFIED
    predicate: Optional[Callable[[CloudEvent], bool]] = None
    signer: Optional[Signer] = None
    sign_event_types: list = field(default_factory=list)

    def _validate(self) -> None:
        if not self.source:
            raise InvalidParameterError("invalid formatter filter: missing source")
        try:
            validate_format(self.format)
        except InvalidParameterError as exc:
            raise InvalidParameterError(f"invalid formatter filter: {exc}") from exc
        if self.schema is not None and self.schema == "":
            raise InvalidParameterError("invalid formatter filter: an empty schema is not valid")

    def process(self, event: Optional[Event]) -> Optional[Event]:
        """Store the CloudEvent encoding on the event; return None if filtered out."""
        self._validate()
        if event is None:
            raise InvalidParameterError("missing event")

        payload = event.payload
        has_data, data = _call_if_callable(payload, "data")
        if not has_data:
            data = payload
        has_id, event_id = _call_if_callable(payload, "id")
        if has_id:
            if not event_id:
                raise InvalidParameterError("returned ID() is empty")
        else:
            event_id = new_id()

        text_format = self.format == FORMAT_TEXT
        cloud_event = CloudEvent(
            id=event_id,
            source=self.source,
            spec_version=SPEC_VERSION,
            type=str(event.type),
            data=data,
            data_content_type=data_content_type(self.format),
            data_schema=self.schema or "",
            time=event.created_at,
        )
        indent = TEXT_INDENT if text_format else None
        encoded = self._sign(cloud_event, _encode(cloud_event, indent), indent)
        event.formatted_as(FORMAT_TEXT if text_format else FORMAT_JSON, encoded)

        if self.predicate is not None and not self.predicate(cloud_event):
            return None
        return event

    def _sign(self, cloud_event: CloudEvent, encoded: bytes, indent: Optional[str]) -> bytes:
        if self.signer is None or cloud_event.type not in self.sign_event_types:
            return encoded
        try:
            signature = self.signer(encoded)
        except Exception:
            # A failed signature leaves the event formatted but unsigned.
            return encoded
        cloud_event.serialized = base64.urlsafe_b64encode(encoded).rstrip(b"=").decode("ascii")
        cloud_event.serialized_hmac = signature
        return _encode(cloud_event, indent)

    def reopen(self) -> None:
        """Nothing external to reopen; only the reopen is counted."""
        super().reopen()

    def node_type(self) -> NodeType:
        return NodeType.FORMATTER_FILTER

    def name(self) -> str:
        return NODE_NAME

    def rotate(self, signer: Optional[Signer]) -> None:
        """Replace the signer used for signing formatted events."""
        if signer is None:
            raise InvalidParameterError("missing signer")
        self.signer = signer