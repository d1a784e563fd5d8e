"""Destinations for relayed documents."""

from .sink_writer import SinkWriter, SINK_MODES

__all__ = ["SinkWriter", "SINK_MODES"]
