"""Events, pipeline nodes and the links that join nodes into a graph."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

EventType = str
NodeID = str
PipelineID = str

ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)


class NodeType(enum.IntEnum):
    """The role a node plays in a pipeline."""

    FILTER = 1
    FORMATTER = 2
    SINK = 3
    FORMATTER_FILTER = 4


class InvalidParameterError(ValueError):
    """Raised when a required argument is missing or malformed."""


@dataclass
class Event:
    """A single event travelling through a pipeline."""

    type: EventType = ""
    created_at: datetime = ZERO_TIME
    payload: Any = None
    formatted: dict = field(default_factory=dict)

    def formatted_as(self, format_name: str, data: bytes) -> None:
        """Store the event's representation in the given format."""
        self.formatted[format_name] = bytes(data)

    def format(self, format_name: str) -> Optional[bytes]:
        """Return the stored representation for a format, or None."""
        return self.formatted.get(format_name)


class Node(abc.ABC):
    """A step in a pipeline: filter, formatter or sink."""

    @abc.abstractmethod
    def process(self, event: Event) -> Optional[Event]:
        """Handle the event; return it to pass it on, or None to stop it."""

    def reopen(self) -> None:
        """Re-read external configuration or reopen files.

        Nodes without external state only count how often they were reopened.
        """
        self.reopen_count = getattr(self, "reopen_count", 0) + 1

    @abc.abstractmethod
    def node_type(self) -> NodeType:
        """Describe the node's role."""


@dataclass
class LinkedNode:
    """A node together with its id and the nodes that follow it."""

    node: Node
    node_id: NodeID = ""
    children: list = field(default_factory=list)


def link_nodes(nodes: Iterable[Node], ids: Iterable[NodeID]) -> LinkedNode:
    """Chain nodes into a linked list and return its head."""
    nodes = list(nodes)
    if not nodes:
        raise InvalidParameterError("no nodes given")
    ids = list(ids)[: len(nodes)]
    ids += [""] * (len(nodes) - len(ids))
    linked = [LinkedNode(node, node_id) for node, node_id in zip(nodes, ids)]
    for parent, child in zip(linked, linked[1:]):
        parent.children = [child]
    return linked[0]


def link_nodes_and_sinks(
    inner: Iterable[Node],
    sinks: Iterable[Node],
    node_ids: Iterable[NodeID],
    sink_ids: Iterable[NodeID],
) -> LinkedNode:
    """Chain the inner nodes, then fan out to every sink from the last one."""
    root = link_nodes(inner, node_ids)
    tail = root
    while tail.children:
        tail = tail.children[0]
    tail.children.extend(
        LinkedNode(sink, sink_id)
        for sink, sink_id in zip(list(sinks), list(sink_ids), strict=True)
    )
    return root