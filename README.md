# eventpipe

A small library that sends events through pipelines of nodes. An event passes
through filters and formatters and ends in one or more sinks. Nodes are joined
into linked chains. A `Graph` holds one root per pipeline and runs an event
through all of them at the same time.

The package uses only the standard library.

## Modules

### `eventpipe.node`

- `Event` is a dataclass with the fields `type`, `created_at`, `payload` and
  `formatted`. `formatted_as(name, data)` stores bytes under a format name.
  `format(name)` returns them, or `None` if nothing is stored under that name.
- `Node` is the abstract base class. Each node implements `process(event)`,
  which returns the event to pass it on or `None` to stop it, and
  `node_type()`. The default `reopen()` only counts calls in `reopen_count`.
- `NodeType` has four members: `FILTER`, `FORMATTER`, `SINK` and
  `FORMATTER_FILTER`.
- `InvalidParameterError` is a `ValueError`. It is raised for missing or
  malformed arguments.
- `link_nodes(nodes, ids)` chains nodes into `LinkedNode` objects and returns
  the head. `link_nodes_and_sinks(inner, sinks, node_ids, sink_ids)` chains
  the inner nodes and then fans out from the last one to every sink.

### `eventpipe.formatter`

- `JSONFormatter` stores a one-line JSON document under the format name
  `"json"`. The document has the keys `created_at`, `event_type` and
  `payload`. Times are written in RFC 3339. Bytes are written as base64.
  Mapping keys are sorted. Dataclasses and objects with a `to_dict()` method
  are written as objects. `<`, `>` and `&` are escaped.
- `JSONFormatterFilter(predicate=None)` formats the event in the same way. It
  then drops the event if `predicate(event)` returns false.

### `eventpipe.graph`

- `Graph(success_threshold=0)` holds roots keyed by pipeline id. Roots are
  added with `store()` and removed with `delete()`.
- `process(event, timeout=None)` runs every pipeline concurrently in threads
  and returns a `Status`. A node that raises adds a warning. A sink that
  finishes, or a node that filters the event out, adds its node id to
  `complete`. Results that arrive after `timeout` seconds are ignored. If
  fewer ids completed than the threshold, `GraphError` is raised, and the
  status is available as its `status` attribute.
- `Status.check(threshold)` makes the same threshold check on its own.
- `validate()` raises `GraphError` in three cases: a pipeline ends in a node
  that is not a sink, a sink is at the root, or a sink has no formatter or
  formatter filter before it.
- `reopen()` reopens every node depth first. It raises `GraphError` with the
  failures collected.

### `eventpipe.writer`

- `WriterSink(format="", writer=None)` writes the event's formatted bytes to a
  stream. An empty format means `"json"`. Text streams such as `sys.stdout`
  receive decoded text, and other streams receive bytes. `reopen()` flushes
  the stream.

### `eventpipe.gated`

- `GatedFilter(broker=None, expiration=timedelta(0), now_func=None)` holds
  back events whose payload is `Gateable`, grouped by `get_id()`. Events with
  other payloads pass straight through.
  - When a payload's `flush_event()` is true, the group is composed with
    `compose_from()` into one new event, and that event is returned.
  - A group expires after `expiration`. A zero value means ten seconds. When
    an expired group is found, it is composed and sent with
    `broker.send(event_type, payload)`. Without a broker, it is dropped.
  - `flush_all()` composes and sends every held group. Without a broker, it
    drops them all.
  - `now()` uses `now_func` when it is set.
- `Sender` and `Gateable` are runtime-checkable protocols.
- `Payload(id, flush, header, detail)` is a ready-made `Gateable`.
  `compose_from` merges the headers of a group. It also collects each detail,
  together with the event's type and creation time, into an `EventPayload`
  made of `EventPayloadDetails`.

### `eventpipe.cloudevents`

- `FormatterFilter(source, schema, format, predicate, signer,
  sign_event_types)` builds a `CloudEvent` with spec version 1.0.
  - It stores the CloudEvent under `"cloudevents-json"` as compact JSON, or
    under `"cloudevents-text"` as text indented by two spaces.
  - If the payload has `id()` or `data()` methods, they supply the CloudEvent
    id and data. Otherwise a random ten-character id from `new_id()` is used,
    and the whole payload becomes the data.
  - When a signer is set and the event type is in `sign_event_types`, the
    event is signed: the encoded bytes are passed to `signer(bytes)`, then
    stored as unpadded URL-safe base64 in `serialized`, with the signature in
    `serialized_hmac`.
  - `predicate(cloud_event)` can drop the event.
  - `rotate(signer)` replaces the signer.
- `validate_format(fmt)` and `data_content_type(fmt)` check a format name and
  map it to its media type.

## Example

```python
import io

from eventpipe.formatter import JSONFormatter
from eventpipe.graph import Graph
from eventpipe.node import Event, link_nodes_and_sinks
from eventpipe.writer import WriterSink

out = io.StringIO()
root = link_nodes_and_sinks(
    [JSONFormatter()], [WriterSink(writer=out)], ["fmt"], ["stdout"]
)

graph = Graph(success_threshold=1)
graph.store("pipeline", root)
graph.validate()

status = graph.process(Event(type="user-login", payload={"name": "bob"}), timeout=1.0)
print(status.complete)   # ['stdout']
print(out.getvalue())
```

## What it does not do

- There is no broker that registers nodes and pipelines by id and sends
  payloads by event type. You build graphs with `link_nodes` and
  `Graph.store`. For expired or flushed gated events to go anywhere,
  `GatedFilter.broker` needs an object of your own that has a `send` method.
- The only sink is `WriterSink`. There is no file sink with rotation.
- The package has no command-line program.

## Tests

```
pip install -e .[test]
pytest
```