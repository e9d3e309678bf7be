"""Tests for the streaming archive reader and incremental CSV parser."""

from __future__ import annotations

import io
import zipfile
from collections.abc import Iterator

import pytest

from ais_feeds.core.constants import ARCHIVE_ENTRY_PATTERN
from ais_feeds.core.exceptions import ArchiveError, ParseError
from ais_feeds.pipeline._archive import iter_entry_payload
from ais_feeds.pipeline._records import iter_csv_records
from tests.builders import chunked, zip_bytes

CSV = b"MMSI,LAT,LON\n1,3.0,2.0\n2,3.5,0.0\n"


class _Unseekable(io.RawIOBase):
    """Write-only stream; makes ``zipfile`` emit data descriptors."""

    def __init__(self) -> None:
        self.buffer = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, data: bytes) -> int:  # type: ignore[override]
        self.buffer += data
        return len(data)

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        raise OSError("unseekable")


def _streamed_zip(entries: dict[str, bytes]) -> bytes:
    sink = _Unseekable()
    with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return bytes(sink.buffer)


def _payload(data: bytes, chunk_size: int = 7) -> bytes:
    return b"".join(iter_entry_payload(chunked(data, chunk_size), ARCHIVE_ENTRY_PATTERN))


class TestIterEntryPayload:
    """Sequential local-header parsing."""

    def test_deflated_entry(self) -> None:
        assert _payload(zip_bytes({"AIS_2023_01_01.csv": CSV})) == CSV

    def test_stored_entry(self) -> None:
        assert _payload(zip_bytes({"day.CSV": CSV}, compression=zipfile.ZIP_STORED)) == CSV

    def test_single_chunk_input(self) -> None:
        data = zip_bytes({"day.csv": CSV})
        assert b"".join(iter_entry_payload([data], ARCHIVE_ENTRY_PATTERN)) == CSV

    @pytest.mark.parametrize("compression", [zipfile.ZIP_DEFLATED, zipfile.ZIP_STORED])
    def test_skips_non_matching_entries(self, compression: int) -> None:
        data = zip_bytes({"README.txt": b"about this dataset\n" * 50, "day.csv": CSV}, compression)
        assert _payload(data) == CSV

    def test_skips_directory_entries(self) -> None:
        data = zip_bytes({"exports/": b"", "exports/day.csv": CSV})
        assert _payload(data) == CSV

    def test_data_descriptors(self) -> None:
        data = _streamed_zip({"README.txt": b"notes\n" * 100, "day.csv": CSV})
        assert _payload(data, chunk_size=5) == CSV

    def test_large_payload_yields_bounded_chunks(self) -> None:
        body = b"".join(b"%d,%d.5,%d.25\n" % (i, i % 90, i % 180) for i in range(60_000))
        chunks = list(iter_entry_payload(chunked(zip_bytes({"day.csv": body}), 4096), ARCHIVE_ENTRY_PATTERN))
        assert b"".join(chunks) == body
        assert len(chunks) > 1
        assert max(len(c) for c in chunks) <= 64 * 1024

    def test_input_pulled_lazily(self) -> None:
        body = b"".join(b"row-%d,%d\n" % (i, i * 7919 % 100_003) for i in range(200_000))
        source = list(chunked(zip_bytes({"day.csv": body}), 1024))
        pulled = 0

        def _source() -> Iterator[bytes]:
            nonlocal pulled
            for chunk in source:
                pulled += 1
                yield chunk

        payload = iter_entry_payload(_source(), ARCHIVE_ENTRY_PATTERN)
        next(payload)
        assert pulled < len(source)
        payload.close()

    def test_not_a_zip(self) -> None:
        with pytest.raises(ArchiveError, match="Not a ZIP"):
            _payload(b"<html>Service unavailable</html>")

    def test_empty_input(self) -> None:
        with pytest.raises(ArchiveError, match="No archive entry"):
            _payload(b"")

    def test_no_matching_entry(self) -> None:
        with pytest.raises(ArchiveError, match="No archive entry"):
            _payload(zip_bytes({"README.txt": b"nothing here"}))

    def test_truncated_archive(self) -> None:
        body = b"".join(b"%d,%d\n" % (i, i * 7919 % 100_003) for i in range(5_000))
        data = zip_bytes({"day.csv": body})
        with pytest.raises(ArchiveError, match="truncated"):
            _payload(data[: len(data) // 2])

    def test_corrupt_deflate_stream(self) -> None:
        data = bytearray(zip_bytes({"day.csv": CSV * 100}))
        header_end = 30 + len("day.csv")
        data[header_end : header_end + 16] = b"\xff" * 16
        with pytest.raises(ArchiveError):
            _payload(bytes(data))


class TestIterCsvRecords:
    """Header handling and row shaping."""

    def test_rows_keyed_by_header(self) -> None:
        records = list(iter_csv_records([CSV]))
        assert records == [
            {"MMSI": "1", "LAT": "3.0", "LON": "2.0"},
            {"MMSI": "2", "LAT": "3.5", "LON": "0.0"},
        ]

    def test_rows_split_across_chunks(self) -> None:
        assert list(iter_csv_records(chunked(CSV, 3))) == list(iter_csv_records([CSV]))

    def test_bom_and_blank_lines(self) -> None:
        data = b"\xef\xbb\xbf\n MMSI ,LAT\n\n1,2\r\n\n"
        assert list(iter_csv_records(chunked(data, 2))) == [{"MMSI": "1", "LAT": "2"}]

    def test_short_and_long_rows(self) -> None:
        data = b"a,b,c\n1,2\n1,2,3,4\n"
        assert list(iter_csv_records([data])) == [{"a": "1", "b": "2"}, {"a": "1", "b": "2", "c": "3"}]

    def test_quoted_field_with_newline(self) -> None:
        data = b'MMSI,VesselName\n1,"TWO\nLINES"\n'
        assert list(iter_csv_records(chunked(data, 4))) == [{"MMSI": "1", "VesselName": "TWO\nLINES"}]

    def test_multibyte_character_split_across_chunks(self) -> None:
        data = "MMSI,VesselName\n1,SØRLANDET\n".encode()
        assert list(iter_csv_records(chunked(data, 1)))[0]["VesselName"] == "SØRLANDET"

    def test_no_trailing_newline(self) -> None:
        assert list(iter_csv_records([b"a,b\n1,2"])) == [{"a": "1", "b": "2"}]

    def test_header_only(self) -> None:
        assert list(iter_csv_records([b"a,b\n"])) == []

    def test_invalid_utf8(self) -> None:
        with pytest.raises(ParseError, match="not valid"):
            list(iter_csv_records([b"a,b\n\xff\xfe,1\n"]))

    def test_oversized_field(self) -> None:
        data = b"a,b\n" + b'"' + b"x" * 200_000 + b'",1\n'
        with pytest.raises(ParseError, match="CSV error"):
            list(iter_csv_records([data]))
