import io
import json
from datetime import datetime, timedelta, timezone

import pytest

from eventpipe.formatter import JSONFormatter
from eventpipe.gated import (
    DEFAULT_EVENT_TIMEOUT,
    EventPayload,
    EventPayloadDetails,
    GatedFilter,
    Payload,
)
from eventpipe.graph import Graph, Status
from eventpipe.node import Event, InvalidParameterError, NodeType, link_nodes
from eventpipe.writer import WriterSink

NOW = datetime(2021, 6, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
NOW_STRING = "2021-06-01 12:30:45.123456 +0000 UTC"


class _Clock:
    def __init__(self, start, step):
        self.current = start
        self.step = step

    def __call__(self):
        value = self.current
        self.current += self.step
        return value


class _PipelineSender:
    """Sends payloads through gated filter -> JSON formatter -> in-memory sink."""

    def __init__(self, gated_filter, created_at=None):
        self.output = io.BytesIO()
        self.graph = Graph()
        root = link_nodes(
            [gated_filter, JSONFormatter(), WriterSink(writer=self.output)],
            ["node-0", "node-1", "node-2"],
        )
        self.graph.store("id", root)
        self.graph.validate()
        self.created_at = created_at

    def send(self, event_type, payload):
        event = Event(
            type=event_type,
            created_at=self.created_at or datetime.now(timezone.utc),
            payload=payload,
        )
        return self.graph.process(event)

    def lines(self):
        return [json.loads(line) for line in self.output.getvalue().splitlines()]


class _RecordingSender:
    def __init__(self):
        self.sent = []

    def send(self, event_type, payload):
        self.sent.append((event_type, payload))
        return Status()


def _broker_filter(created_at=NOW):
    gf = GatedFilter()
    sender = _PipelineSender(gf, created_at=created_at)
    gf.broker = sender
    return gf, sender


def _setup_events():
    return [
        Event(
            type="test",
            created_at=NOW,
            payload=Payload(
                id="event-1",
                header={"user": "alice", "tmz": "EST"},
                detail={"file_name": "file1.txt", "total_bytes": 1024},
            ),
        ),
        Event(
            type="test",
            created_at=NOW,
            payload=Payload(
                id="event-1",
                header={"roles": ["admin", "anon"]},
                detail={"file_name": "file2.txt", "total_bytes": 512},
            ),
        ),
    ]


def _flush_event():
    return Event(
        type="test",
        created_at=NOW,
        payload=Payload(
            id="event-1",
            flush=True,
            detail={"file_name": "file3.txt", "total_bytes": 1000000},
        ),
    )


def test_process_simple():
    gf = GatedFilter(now_func=lambda: NOW)
    for event in _setup_events():
        assert gf.process(event) is None
    got = gf.process(_flush_event())
    want = Event(
        type="test",
        created_at=NOW,
        formatted={},
        payload=EventPayload(
            id="event-1",
            header={"roles": ["admin", "anon"], "tmz": "EST", "user": "alice"},
            details=[
                EventPayloadDetails("test", NOW_STRING, {"file_name": "file1.txt", "total_bytes": 1024}),
                EventPayloadDetails("test", NOW_STRING, {"file_name": "file2.txt", "total_bytes": 512}),
                EventPayloadDetails(
                    "test", NOW_STRING, {"file_name": "file3.txt", "total_bytes": 1000000}
                ),
            ],
        ),
    )
    assert got == want


def test_process_expired_without_broker():
    clock = _Clock(NOW, timedelta(seconds=1))
    gf = GatedFilter(expiration=timedelta(microseconds=1), now_func=clock)
    for event in _setup_events():
        assert gf.process(event) is None
    got = gf.process(_flush_event())
    assert got.type == "test"
    assert got.formatted == {}
    assert got.payload == EventPayload(
        id="event-1",
        details=[
            EventPayloadDetails("test", NOW_STRING, {"file_name": "file3.txt", "total_bytes": 1000000})
        ],
    )


def test_process_missing_event():
    with pytest.raises(InvalidParameterError, match="missing event"):
        GatedFilter(now_func=lambda: NOW).process(None)


def test_process_not_gateable_passes_through():
    event = Event(type="test", created_at=NOW, payload="not-gateable")
    got = GatedFilter(now_func=lambda: NOW).process(event)
    assert got is event
    assert got.payload == "not-gateable"


def test_process_missing_id():
    event = Event(type="test", created_at=NOW, payload=Payload(header={"missing-id": True}))
    with pytest.raises(InvalidParameterError, match="missing ID"):
        GatedFilter(now_func=lambda: NOW).process(event)


def test_process_sets_default_expiration():
    gf = GatedFilter(now_func=lambda: NOW)
    gf.process(_setup_events()[0])
    assert gf.expiration == DEFAULT_EVENT_TIMEOUT


def test_expiration_with_broker():
    gf, sender = _broker_filter()
    gf.expiration = timedelta(microseconds=1)
    gf.now_func = _Clock(NOW, timedelta(seconds=1))

    assert gf.process(_setup_events()[0]) is None
    got = gf.process(_flush_event())
    assert got.payload == EventPayload(
        id="event-1",
        details=[
            EventPayloadDetails("test", NOW_STRING, {"file_name": "file3.txt", "total_bytes": 1000000})
        ],
    )

    lines = sender.lines()
    assert len(lines) == 1
    logged = lines[0]
    assert logged["event_type"] == "test"
    assert logged["payload"] == {
        "id": "event-1",
        "header": {"tmz": "EST", "user": "alice"},
        "details": [
            {
                "type": "test",
                "created_at": NOW_STRING,
                "payload": {"file_name": "file1.txt", "total_bytes": 1024},
            }
        ],
    }


def test_flush_all_success():
    gf, sender = _broker_filter()
    gf.expiration = timedelta(minutes=100)
    gf.now_func = lambda: NOW
    sender.send(
        "test",
        Payload(
            id="event-1",
            header={"user": "alice", "tmz": "EST"},
            detail={"file_name": "file1.txt", "total_bytes": 1024},
        ),
    )
    assert sender.lines() == []

    gf.flush_all()
    lines = sender.lines()
    assert len(lines) == 1
    assert lines[0]["event_type"] == "test"
    assert lines[0]["payload"] == {
        "id": "event-1",
        "header": {"tmz": "EST", "user": "alice"},
        "details": [
            {
                "type": "test",
                "created_at": NOW_STRING,
                "payload": {"file_name": "file1.txt", "total_bytes": 1024},
            }
        ],
    }


def test_flush_all_no_gated_events():
    gf, sender = _broker_filter()
    gf.flush_all()
    assert sender.lines() == []


def test_flush_all_without_broker_drops_events():
    gf, sender = _broker_filter()
    gf.now_func = lambda: NOW
    gf.broker = None
    sender.send(
        "test",
        Payload(
            id="event-1",
            header={"user": "alice", "tmz": "EST"},
            detail={"file_name": "file1.txt", "total_bytes": 1024},
        ),
    )
    gf.flush_all()
    assert sender.lines() == []

    # The dropped group no longer contributes to a later flush.
    got = gf.process(_flush_event())
    assert got.payload.header is None
    assert [d.payload["file_name"] for d in got.payload.details] == ["file3.txt"]


def test_flush_all_rejects_gateable_composition():
    class SelfComposing:
        def get_id(self):
            return "loop"

        def flush_event(self):
            return False

        def compose_from(self, events):
            return "loop-type", self

    sender = _RecordingSender()
    gf = GatedFilter(broker=sender, now_func=lambda: NOW)
    assert gf.process(Event(type="loop-type", created_at=NOW, payload=SelfComposing())) is None
    with pytest.raises(ValueError, match="Gateable payload"):
        gf.flush_all()
    gf.flush_all()
    assert sender.sent == []


def test_now_default():
    gf = GatedFilter()
    before = datetime.now(timezone.utc)
    got = gf.now()
    after = datetime.now(timezone.utc)
    assert before <= got <= after


def test_now_override():
    gf = GatedFilter(now_func=lambda: NOW)
    assert gf.now() == NOW


def test_node_type():
    assert GatedFilter().node_type() == NodeType.FILTER


def test_compose_from_requires_events():
    with pytest.raises(InvalidParameterError, match="missing events"):
        Payload().compose_from([])


def test_compose_from_rejects_foreign_payload():
    events = [Event(type="test", created_at=NOW, payload="plain")]
    with pytest.raises(InvalidParameterError, match="event 0 is not a simple gated payload"):
        Payload().compose_from(events)


def test_compose_from_time_string_with_offset():
    moment = datetime(2009, 11, 17, 20, 34, 58, tzinfo=timezone(timedelta(hours=3)))
    events = [Event(type="t", created_at=moment, payload=Payload(id="x", detail={"k": 1}))]
    event_type, composed = Payload().compose_from(events)
    assert event_type == "t"
    assert composed.details[0].created_at == "2009-11-17 20:34:58 +0300 +0300"


def test_payload_flags():
    payload = Payload(id="event-1", flush=True)
    assert payload.get_id() == "event-1"
    assert payload.flush_event() is True


def test_example_pipeline_output():
    then = datetime(2009, 11, 17, 20, 34, 58, 651387, tzinfo=timezone.utc)
    gf = GatedFilter(now_func=lambda: then)
    sender = _PipelineSender(gf, created_at=then)
    gf.broker = sender

    payloads = [
        Payload(
            id="event-1",
            header={"tmz": "EST", "user": "alice"},
            detail={"file_name": "file1.txt", "total_bytes": 1024},
        ),
        Payload(id="event-1", header={"roles": ["admin", "individual-contributor"]}),
        Payload(id="event-1", flush=True, detail={"file_name": "file2.txt", "total_bytes": 512}),
    ]
    for payload in payloads:
        sender.send("test-event", payload)

    assert sender.output.getvalue().decode("utf-8") == (
        '{"created_at":"2009-11-17T20:34:58.651387Z","event_type":"test-event",'
        '"payload":{"id":"event-1","header":{"roles":["admin","individual-contributor"],'
        '"tmz":"EST","user":"alice"},"details":[{"type":"test-event",'
        '"created_at":"2009-11-17 20:34:58.651387 +0000 UTC",'
        '"payload":{"file_name":"file1.txt","total_bytes":1024}},'
        '{"type":"test-event","created_at":"2009-11-17 20:34:58.651387 +0000 UTC",'
        '"payload":{"file_name":"file2.txt","total_bytes":512}}]}}\n'
    )