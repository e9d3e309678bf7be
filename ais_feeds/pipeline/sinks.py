"""Byte sinks with an explicit backpressure signal.

A sink accepts compressed feed bytes.  ``write()`` always takes the
chunk; a ``False`` return means the sink is at capacity and the
producer must call ``wait_drained()`` before writing again.  A sink
whose consumer has gone away raises ``SinkClosedError`` from either
method, so a producer is never left waiting on a sink that cannot
drain.

- ``ChannelSink``: bounded hand-off between a producer thread and the
  HTTP response iterator.
- ``FileSink``: writes to a binary file (blocking writes, never full).
- ``TeeSink``: fans one stream out to several sinks.
- ``SpoolSink``: best-effort capture that detaches itself on an I/O
  error instead of failing the stream it is teed from.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import IO, Protocol, runtime_checkable

from ais_feeds.core.exceptions import SinkClosedError

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER_BYTES = 1024 * 1024
DEFAULT_STALL_TIMEOUT_SECONDS = 5 * 60.0


@runtime_checkable
class Sink(Protocol):
    """Destination for encoded bytes."""

    def write(self, data: bytes) -> bool:
        """Accept *data*; return ``False`` when the producer should pause."""
        ...

    def wait_drained(self) -> None:
        """Block until the sink can accept more data."""
        ...


class ChannelSink:
    """Bounded byte channel between a producing thread and a consumer.

    The producer writes and eventually calls ``close()``.  The consumer
    iterates the sink to receive chunks through a ``ChannelReader``; if
    the reader is closed or dropped before the end of the stream (client
    disconnect), the channel is aborted and the producer's next ``write``
    or ``wait_drained`` raises ``SinkClosedError``.  A producer that
    waits longer than ``stall_timeout_seconds`` for the consumer to drain
    aborts the channel itself.
    """

    def __init__(
        self,
        high_water_bytes: int = DEFAULT_HIGH_WATER_BYTES,
        stall_timeout_seconds: float | None = DEFAULT_STALL_TIMEOUT_SECONDS,
    ) -> None:
        self._high_water_bytes = high_water_bytes
        self._stall_timeout_seconds = stall_timeout_seconds
        self._chunks: deque[bytes] = deque()
        self._buffered = 0
        self._finished = False
        self._aborted = False
        self._condition = threading.Condition()

    @property
    def buffered_bytes(self) -> int:
        with self._condition:
            return self._buffered

    @property
    def aborted(self) -> bool:
        with self._condition:
            return self._aborted

    # -- producer side -------------------------------------------------

    def write(self, data: bytes) -> bool:
        with self._condition:
            if self._aborted:
                msg = "Consumer disconnected"
                raise SinkClosedError(msg)
            if self._finished:
                msg = "Write after close"
                raise SinkClosedError(msg)
            if data:
                self._chunks.append(bytes(data))
                self._buffered += len(data)
                self._condition.notify_all()
            return self._buffered < self._high_water_bytes

    def wait_drained(self) -> None:
        with self._condition:
            drained = self._condition.wait_for(
                lambda: self._aborted or self._buffered < self._high_water_bytes,
                timeout=self._stall_timeout_seconds,
            )
            if not drained:
                self._abort_locked()
                logger.warning("Channel sink consumer stalled | timeout=%ss", self._stall_timeout_seconds)
                msg = "Consumer stalled"
                raise SinkClosedError(msg)
            if self._aborted:
                msg = "Consumer disconnected"
                raise SinkClosedError(msg)

    def close(self) -> None:
        """Signal end of stream; buffered chunks are still delivered."""
        with self._condition:
            self._finished = True
            self._condition.notify_all()

    # -- consumer side -------------------------------------------------

    def abort(self) -> None:
        """Discard buffered data and fail the producer's next write."""
        with self._condition:
            if self._aborted:
                return
            self._abort_locked()
        logger.debug("Channel sink aborted by consumer")

    def _abort_locked(self) -> None:
        self._aborted = True
        self._chunks.clear()
        self._buffered = 0
        self._condition.notify_all()

    def next_chunk(self) -> bytes | None:
        """Block for the next chunk; ``None`` at end of stream or after abort."""
        with self._condition:
            self._condition.wait_for(lambda: self._chunks or self._finished or self._aborted)
            if self._aborted or not self._chunks:
                return None
            chunk = self._chunks.popleft()
            self._buffered -= len(chunk)
            self._condition.notify_all()
            return chunk

    def __iter__(self) -> ChannelReader:
        return ChannelReader(self)


class ChannelReader:
    """Consumer end of a ``ChannelSink``.

    Closing the reader, or letting it be garbage collected, before the
    stream has ended aborts the channel, whether or not any chunk was
    pulled.
    """

    def __init__(self, channel: ChannelSink) -> None:
        self._channel = channel
        self._done = False

    def __iter__(self) -> ChannelReader:
        return self

    def __next__(self) -> bytes:
        if self._done:
            raise StopIteration
        chunk = self._channel.next_chunk()
        if chunk is None:
            self._done = True
            raise StopIteration
        return chunk

    def close(self) -> None:
        if not self._done:
            self._done = True
            self._channel.abort()

    def __del__(self) -> None:
        self.close()


class FileSink:
    """Sink over a binary file object; always ready."""

    def __init__(self, fileobj: IO[bytes]) -> None:
        self._fileobj = fileobj
        self.bytes_written = 0

    def write(self, data: bytes) -> bool:
        self._fileobj.write(data)
        self.bytes_written += len(data)
        return True

    def wait_drained(self) -> None:
        return None


class SpoolSink(FileSink):
    """Capture a stream into a file on a best-effort basis.

    The first ``OSError`` (disk full, I/O error) is logged and the sink
    detaches: later writes are dropped and ``failed`` is set, so the
    stream it is teed from carries on and the capture is discarded.
    """

    def __init__(self, fileobj: IO[bytes]) -> None:
        super().__init__(fileobj)
        self.failed = False

    def write(self, data: bytes) -> bool:
        if not self.failed:
            try:
                super().write(data)
            except OSError as exc:
                self._detach(exc)
        return True

    def close(self) -> bool:
        """Flush and close the file; return whether the capture is intact."""
        try:
            self._fileobj.close()
        except OSError as exc:
            if not self.failed:
                self._detach(exc)
        return not self.failed

    def _detach(self, exc: OSError) -> None:
        self.failed = True
        logger.warning("Spool write failed; capture abandoned | bytes=%d | error=%s", self.bytes_written, exc)


class TeeSink:
    """Duplicate every write to several sinks; ready only when all are."""

    def __init__(self, *sinks: Sink) -> None:
        self._sinks = sinks

    def write(self, data: bytes) -> bool:
        ready = True
        for sink in self._sinks:
            ready = sink.write(data) and ready
        return ready

    def wait_drained(self) -> None:
        for sink in self._sinks:
            sink.wait_drained()
