"""Incremental CSV record parsing over decompressed byte chunks.

The first non-empty row is the header.  Rows shorter than the header
yield only the fields present; extra trailing cells are dropped.
A UTF-8 byte-order mark is stripped and empty lines are skipped.
"""

from __future__ import annotations

import codecs
import csv
from typing import TYPE_CHECKING

from ais_feeds.core.exceptions import ParseError

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

Record = dict[str, str]


def iter_csv_records(payload: Iterable[bytes], *, encoding: str = "utf-8-sig") -> Iterator[Record]:
    """Yield one dict per data row, in file order.

    Raises:
        ParseError: On malformed CSV or undecodable bytes.
    """
    reader = csv.reader(_iter_lines(payload, encoding))
    header: list[str] | None = None
    try:
        for row in reader:
            if not row:
                continue
            if header is None:
                header = [name.strip() for name in row]
                continue
            yield dict(zip(header, row, strict=False))
    except csv.Error as exc:
        msg = f"CSV error at line {reader.line_num}: {exc}"
        raise ParseError(msg) from exc
    except UnicodeDecodeError as exc:
        msg = f"Payload is not valid {encoding}: {exc.reason}"
        raise ParseError(msg) from exc


def _iter_lines(payload: Iterable[bytes], encoding: str) -> Iterator[str]:
    """Split decoded chunks on ``\\n``, keeping the terminator for ``csv``."""
    decoder = codecs.getincrementaldecoder(encoding)()
    pending = ""
    for chunk in payload:
        lines = (pending + decoder.decode(chunk)).split("\n")
        pending = lines.pop()
        for line in lines:
            yield line + "\n"
    tail = pending + decoder.decode(b"", final=True)
    if tail:
        yield tail
