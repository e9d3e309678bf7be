"""Serialise features as gzip-compressed NDJSON into a sink.

Features are pulled one at a time, so the sink's backpressure gates
the serializer, which gates the projector, which gates how fast the
upstream archive is read.

A ``PipelineError`` raised while pulling features is not propagated:
it becomes a final ``{"type": "Error", ...}`` line, the gzip member is
finalised so the truncated stream stays decodable, and the error is
returned in ``EncodeResult.error``.  If the consumer disconnects the
compressor is closed without further writes to the sink.
"""

from __future__ import annotations

import gzip
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ais_feeds.core.exceptions import PipelineError, SinkClosedError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from ais_feeds.pipeline.sinks import Sink

logger = logging.getLogger(__name__)

DEFAULT_GZIP_LEVEL = 1


@dataclass(frozen=True, slots=True)
class EncodeResult:
    """Counts for one encoded stream.

    Attributes:
        written_count: Features serialised (the error line is not counted).
        byte_count: Compressed bytes handed to the sink.  For a file
            sink this is the artifact's on-disk size.
        raw_byte_count: Uncompressed NDJSON bytes, error line included.
        error: The error that truncated the stream, if any.
    """

    written_count: int
    byte_count: int
    raw_byte_count: int
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _SinkWriter:
    """File-like adapter that honours the sink's backpressure signal."""

    def __init__(self, sink: Sink) -> None:
        self._sink = sink
        self._detached = False
        self.bytes_written = 0

    def detach(self) -> None:
        self._detached = True

    def write(self, data: bytes) -> int:
        size = len(data)
        if self._detached or not size:
            return size
        ready = self._sink.write(bytes(data))
        self.bytes_written += size
        if not ready:
            self._sink.wait_drained()
        return size

    def flush(self) -> None:
        return None


def encode(
    features: Iterable[dict[str, Any]],
    sink: Sink,
    *,
    compresslevel: int = DEFAULT_GZIP_LEVEL,
) -> EncodeResult:
    """Write *features* to *sink* as one gzip member of NDJSON lines.

    Returns:
        An ``EncodeResult``; ``error`` carries an upstream failure or a
        ``SinkClosedError`` when the consumer went away.
    """
    writer = _SinkWriter(sink)
    iterator = iter(features)
    written = 0
    raw_bytes = 0
    error: PipelineError | None = None
    stream: gzip.GzipFile | None = None
    try:
        stream = gzip.GzipFile(fileobj=writer, mode="wb", compresslevel=compresslevel, mtime=0)  # type: ignore[arg-type]
        try:
            for feature in iterator:
                raw_bytes += _write_line(stream, feature)
                written += 1
        except SinkClosedError:
            raise
        except PipelineError as exc:
            error = exc
            logger.error(
                "encode truncated | written=%d | code=%s | stage=%s | error=%s",
                written,
                exc.code,
                exc.stage,
                exc,
            )
            raw_bytes += _write_line(stream, exc.to_error_record())
        stream.close()
    except SinkClosedError as exc:
        error = exc
        writer.detach()
        logger.warning("encode aborted | consumer disconnected | written=%d", written)
    finally:
        if stream is not None:
            stream.close()
        _close_iterator(iterator)

    logger.debug(
        "encode finished | written=%d | bytes=%d | raw_bytes=%d",
        written,
        writer.bytes_written,
        raw_bytes,
    )
    return EncodeResult(written, writer.bytes_written, raw_bytes, error)


def _write_line(stream: gzip.GzipFile, obj: dict[str, Any]) -> int:
    line = (json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")
    stream.write(line)
    return len(line)


def _close_iterator(iterator: Iterator[Any]) -> None:
    close = getattr(iterator, "close", None)
    if callable(close):
        close()
