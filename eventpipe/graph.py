"""A graph of pipelines that routes events from root nodes to sinks."""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from eventpipe.node import Event, LinkedNode, NodeType, PipelineID


class GraphError(Exception):
    """Raised when a graph fails to validate, reopen or deliver an event."""

    def __init__(self, message: str, *, errors=(), status: Optional["Status"] = None):
        super().__init__(message)
        self.errors = list(errors)
        self.status = status


@dataclass
class Status:
    """The outcome of sending an event: warnings and the ids of completed leaves."""

    warnings: list = field(default_factory=list)
    complete: list = field(default_factory=list)

    def check(self, threshold: int) -> None:
        """Raise GraphError if fewer than `threshold` sinks completed."""
        if len(self.complete) < threshold:
            raise GraphError(
                "event not written to enough sinks", errors=self.warnings, status=self
            )


_FORMATTING_TYPES = (NodeType.FORMATTER, NodeType.FORMATTER_FILTER)


class Graph:
    """Root nodes keyed by pipeline id, with a success threshold for delivery."""

    def __init__(self, success_threshold: int = 0):
        self.success_threshold = success_threshold
        self._roots: dict = {}
        self._lock = threading.Lock()

    def store(self, pipeline_id: PipelineID, root: LinkedNode) -> None:
        with self._lock:
            self._roots[pipeline_id] = root

    def delete(self, pipeline_id: PipelineID) -> None:
        with self._lock:
            self._roots.pop(pipeline_id, None)

    def _snapshot(self) -> list:
        with self._lock:
            return list(self._roots.values())

    def process(self, event: Event, timeout: Optional[float] = None) -> Status:
        """Route the event through every pipeline concurrently.

        Results arriving after `timeout` seconds are ignored. Raises GraphError
        (carrying the status) when fewer sinks than the threshold completed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        messages: queue.Queue = queue.Queue()
        roots = self._snapshot()
        for root in roots:
            self._spawn(root, event, messages)

        status = Status()
        outstanding = len(roots)
        while outstanding:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                break
            try:
                part, spawned = messages.get(timeout=remaining)
            except queue.Empty:
                break
            outstanding += spawned - 1
            status.warnings.extend(part.warnings)
            status.complete.extend(part.complete)

        status.check(self.success_threshold)
        return status

    def _spawn(self, linked: LinkedNode, event: Event, messages: queue.Queue) -> None:
        threading.Thread(target=self._run, args=(linked, event, messages), daemon=True).start()

    def _run(self, linked: LinkedNode, event: Event, messages: queue.Queue) -> None:
        try:
            result = linked.node.process(event)
        except Exception as exc:  # a failing node becomes a warning
            messages.put((Status(warnings=[exc]), 0))
            return
        if result is None or not linked.children:
            messages.put((Status(complete=[linked.node_id]), 0))
            return
        # Report the fan-out before children start so the count never drops to zero early.
        messages.put((Status(), len(linked.children)))
        for child in linked.children:
            self._spawn(child, result, messages)

    def reopen(self) -> None:
        """Reopen every node, depth first; raise GraphError listing failures."""
        errors = []
        for root in self._snapshot():
            try:
                self._reopen_node(root)
            except Exception as exc:
                errors.append(exc)
        if errors:
            raise GraphError("; ".join(str(e) for e in errors), errors=errors)

    def _reopen_node(self, linked: LinkedNode) -> None:
        linked.node.reopen()
        for child in linked.children:
            self._reopen_node(child)

    def validate(self) -> None:
        """Check that every pipeline is sensibly arranged."""
        errors = []
        for root in self._snapshot():
            message = self._validate_node(None, root)
            if message is not None:
                errors.append(GraphError(message))
        if errors:
            raise GraphError("; ".join(str(e) for e in errors), errors=errors)

    def _validate_node(self, parent: Optional[LinkedNode], linked: LinkedNode) -> Optional[str]:
        if not linked.children:
            if linked.node.node_type() != NodeType.SINK:
                return "non-sink node has no children"
            if parent is None:
                return "sink node at root"
            if parent.node.node_type() not in _FORMATTING_TYPES:
                return "sink node without preceding formatter or formatter filter"
            return None
        for child in linked.children:
            message = self._validate_node(linked, child)
            if message is not None:
                return message
        return None