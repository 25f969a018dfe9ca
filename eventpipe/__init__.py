"""Route events through pipelines of filters, formatters and sinks."""

__version__ = "0.1.0"
__all__ = ["cloudevents", "formatter", "gated", "graph", "node", "writer"]