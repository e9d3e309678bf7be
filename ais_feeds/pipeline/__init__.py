"""Streaming feed pipeline.

- fetch_day: Remote day archive → lazy record stream
- projector: Record → rounded GeoJSON point feature (filters, subsampling)
- encoder: Features → gzip NDJSON into a sink
- sinks: Backpressure-aware byte sinks
"""

from ais_feeds.pipeline.encoder import EncodeResult, encode
from ais_feeds.pipeline.fetch_day import DayFetcher, DayStream, FetchOutcome, FetchState
from ais_feeds.pipeline.projector import EncodeOptions, project, project_records
from ais_feeds.pipeline.sinks import ChannelReader, ChannelSink, FileSink, Sink, SpoolSink, TeeSink

__all__ = [
    "ChannelReader",
    "ChannelSink",
    "DayFetcher",
    "DayStream",
    "EncodeOptions",
    "EncodeResult",
    "FetchOutcome",
    "FetchState",
    "FileSink",
    "Sink",
    "SpoolSink",
    "TeeSink",
    "encode",
    "project",
    "project_records",
]
