"""Streaming single-entry ZIP reader.

Reads local file headers sequentially from a byte-chunk iterator and
yields the decompressed payload of the first entry whose name matches a
pattern.  Nothing is buffered beyond one network chunk plus one inflate
window, so the archive never has to be seekable or held in memory.

Supported: stored and deflated entries, data descriptors on deflated
entries (deflate streams are self-terminating), ZIP64 sizes in the
local extra field.  Encrypted entries are rejected.
"""

from __future__ import annotations

import logging
import re
import struct
import zlib
from typing import TYPE_CHECKING

from ais_feeds.core.exceptions import ArchiveError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

_LOCAL_HEADER_SIG = b"PK\x03\x04"
_CENTRAL_DIR_SIG = b"PK\x01\x02"
_END_OF_CENTRAL_DIR_SIG = b"PK\x05\x06"
_DATA_DESCRIPTOR_SIG = b"PK\x07\x08"

# signature, version, flags, method, mtime, mdate, crc32, csize, usize, name_len, extra_len
_LOCAL_HEADER = struct.Struct("<4sHHHHHIIIHH")

_FLAG_ENCRYPTED = 0x0001
_FLAG_DATA_DESCRIPTOR = 0x0008
_FLAG_UTF8 = 0x0800

_METHOD_STORED = 0
_METHOD_DEFLATED = 8

_ZIP64_EXTRA_ID = 0x0001
_ZIP64_MARKER = 0xFFFFFFFF

# Upper bound on a single decompressed chunk handed downstream.
_INFLATE_CHUNK = 64 * 1024


class _ByteReader:
    """Pull-based buffer over an iterator of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = iter(chunks)
        self._buffer = bytearray()

    def _pull(self) -> bool:
        chunk = next(self._chunks, None)
        if chunk is None:
            return False
        self._buffer += chunk
        return True

    def read_exact(self, size: int) -> bytes:
        while len(self._buffer) < size:
            if not self._pull():
                msg = f"Archive truncated: needed {size} bytes, {len(self._buffer)} available"
                raise ArchiveError(msg)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def read_some(self, limit: int | None = None) -> bytes:
        """Return buffered bytes, pulling a chunk when empty; ``b""`` at end of input."""
        while not self._buffer:
            if not self._pull():
                return b""
        if limit is None or limit >= len(self._buffer):
            data = bytes(self._buffer)
            self._buffer.clear()
        else:
            data = bytes(self._buffer[:limit])
            del self._buffer[:limit]
        return data

    def unread(self, data: bytes) -> None:
        self._buffer[:0] = data


def iter_entry_payload(chunks: Iterable[bytes], pattern: re.Pattern[str]) -> Iterator[bytes]:
    """Yield the decompressed bytes of the first archive entry matching *pattern*.

    Args:
        chunks: Raw archive bytes, in arrival order.
        pattern: Searched against each entry name; directories never match.

    Raises:
        ArchiveError: If the input is not a ZIP archive, is truncated,
            uses an unsupported feature, or has no matching entry.
    """
    reader = _ByteReader(chunks)
    entries_seen = 0
    while True:
        signature = reader.read_some(4)
        if signature and len(signature) < 4:
            signature += reader.read_exact(4 - len(signature))
        if signature in (_CENTRAL_DIR_SIG, _END_OF_CENTRAL_DIR_SIG, b""):
            msg = f"No archive entry matching {pattern.pattern!r} ({entries_seen} entries scanned)"
            raise ArchiveError(msg)
        if signature != _LOCAL_HEADER_SIG:
            msg = f"Not a ZIP archive (unexpected signature {signature!r})"
            raise ArchiveError(msg)

        fields = _LOCAL_HEADER.unpack(signature + reader.read_exact(_LOCAL_HEADER.size - 4))
        flags, method = fields[2], fields[3]
        csize, usize, name_len, extra_len = fields[7], fields[8], fields[9], fields[10]
        raw_name = reader.read_exact(name_len)
        extra = reader.read_exact(extra_len)
        name = raw_name.decode("utf-8" if flags & _FLAG_UTF8 else "cp437", errors="replace")
        entries_seen += 1

        if flags & _FLAG_ENCRYPTED:
            msg = f"Encrypted archive entry not supported: {name}"
            raise ArchiveError(msg)
        if csize == _ZIP64_MARKER:
            csize = _zip64_compressed_size(extra, usize)

        if method == _METHOD_DEFLATED:
            payload = _inflate(reader)
        elif method == _METHOD_STORED:
            if flags & _FLAG_DATA_DESCRIPTOR:
                msg = f"Stored entry with data descriptor not supported: {name}"
                raise ArchiveError(msg)
            payload = _read_stored(reader, csize)
        else:
            msg = f"Unsupported compression method {method} for entry {name}"
            raise ArchiveError(msg)

        if not name.endswith("/") and pattern.search(name):
            logger.debug("Archive entry selected | name=%s | method=%d", name, method)
            yield from payload
            return

        logger.debug("Archive entry skipped | name=%s", name)
        for _ in payload:
            pass
        if flags & _FLAG_DATA_DESCRIPTOR:
            _skip_data_descriptor(reader)


def _inflate(reader: _ByteReader) -> Iterator[bytes]:
    """Inflate one raw deflate stream, returning trailing bytes to *reader*."""
    decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
    try:
        while not decompressor.eof:
            data = reader.read_some()
            if not data:
                msg = "Archive truncated inside a deflate stream"
                raise ArchiveError(msg)
            while True:
                out = decompressor.decompress(data, _INFLATE_CHUNK)
                if out:
                    yield out
                data = decompressor.unconsumed_tail
                if decompressor.eof or (not data and len(out) < _INFLATE_CHUNK):
                    break
    except zlib.error as exc:
        msg = f"Corrupt deflate stream: {exc}"
        raise ArchiveError(msg) from exc

    if decompressor.unused_data:
        reader.unread(decompressor.unused_data)


def _read_stored(reader: _ByteReader, size: int) -> Iterator[bytes]:
    remaining = size
    while remaining > 0:
        data = reader.read_some(min(remaining, _INFLATE_CHUNK))
        if not data:
            msg = f"Archive truncated: {remaining} bytes of stored entry missing"
            raise ArchiveError(msg)
        remaining -= len(data)
        yield data


def _skip_data_descriptor(reader: _ByteReader) -> None:
    head = reader.read_exact(4)
    # crc32 + csize + usize, with or without the optional signature
    reader.read_exact(12 if head == _DATA_DESCRIPTOR_SIG else 8)


def _zip64_compressed_size(extra: bytes, usize: int) -> int:
    offset = 0
    while offset + 4 <= len(extra):
        header_id, size = struct.unpack_from("<HH", extra, offset)
        if header_id == _ZIP64_EXTRA_ID:
            field_offset = offset + 4 + (8 if usize == _ZIP64_MARKER else 0)
            if field_offset + 8 > offset + 4 + size:
                break
            return int(struct.unpack_from("<Q", extra, field_offset)[0])
        offset += 4 + size
    msg = "ZIP64 entry without a usable size record"
    raise ArchiveError(msg)
