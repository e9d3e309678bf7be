"""Project raw AIS records into GeoJSON point features.

``project`` never raises for malformed input: a record that lacks a
finite position, fails a filter, or falls between subsampling indices
is rejected by returning ``None``.

Field lookup is case-insensitive and follows a fixed alias preference
order (see ``ais_feeds.core.constants``).  Coordinates are rounded half
away from zero on their shortest decimal representation, which makes
rounding idempotent.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from ais_feeds.core.constants import (
    DEFAULT_PRECISION_DIGITS,
    DEFAULT_SAMPLE_INTERVAL,
    LATITUDE_ALIASES,
    LONGITUDE_ALIASES,
    MAX_PRECISION_DIGITS,
    MIN_PRECISION_DIGITS,
    TIMESTAMP_ALIASES,
)
from ais_feeds.core.exceptions import InvalidInputError
from ais_feeds.utils.geometry import point_in_bbox, point_in_region, prepare_region

if TYPE_CHECKING:
    from datetime import date

    from shapely.geometry import Polygon

    from ais_feeds.utils.geometry import BBox

RecordFilter = Callable[[Mapping[str, Any]], bool]


def accept_all(record: Mapping[str, Any]) -> bool:  # noqa: ARG001
    """Filter that keeps every record."""
    return True


@dataclass(frozen=True, slots=True)
class EncodeOptions:
    """How records are filtered, subsampled and rounded.

    Attributes:
        precision_digits: Decimal digits kept on each coordinate (0-8).
        sample_interval: Keep records whose index is a multiple of this (>= 1).
        spatial_filter: Predicate over the record (a ``FoldedRecord`` view).
        temporal_filter: Predicate over the record (a ``FoldedRecord`` view).
    """

    precision_digits: int = DEFAULT_PRECISION_DIGITS
    sample_interval: int = DEFAULT_SAMPLE_INTERVAL
    spatial_filter: RecordFilter = accept_all
    temporal_filter: RecordFilter = accept_all

    def __post_init__(self) -> None:
        digits = self.precision_digits
        if isinstance(digits, bool) or not isinstance(digits, int):
            msg = f"precision must be an integer, got {digits!r}"
            raise InvalidInputError(msg, field_name="precision")
        if not MIN_PRECISION_DIGITS <= digits <= MAX_PRECISION_DIGITS:
            msg = f"precision must be between {MIN_PRECISION_DIGITS} and {MAX_PRECISION_DIGITS}, got {digits}"
            raise InvalidInputError(msg, field_name="precision")

        interval = self.sample_interval
        if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
            msg = f"sample must be an integer >= 1, got {interval!r}"
            raise InvalidInputError(msg, field_name="sample")


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------


class FoldedRecord(Mapping[str, Any]):
    """Read-only view of a record with case- and whitespace-insensitive keys.

    When two source keys fold to the same name, the first one wins.
    Folding an already folded record reuses its table.
    """

    __slots__ = ("_data",)

    def __init__(self, record: Mapping[str, Any]) -> None:
        if isinstance(record, FoldedRecord):
            self._data: dict[str, Any] = record._data
            return
        self._data = {}
        for key, value in record.items():
            self._data.setdefault(_fold_key(key), value)

    def __getitem__(self, key: str) -> Any:
        return self._data[_fold_key(key)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def first_of(self, aliases: tuple[str, ...]) -> Any:
        """Value of the first alias present and non-empty, else ``None``."""
        for alias in aliases:
            value = self._data.get(alias)
            if value is not None and value != "":
                return value
        return None


def _fold_key(key: object) -> str:
    return str(key).strip().lower()


def _lookup(record: Mapping[str, Any], aliases: tuple[str, ...]) -> Any:
    return FoldedRecord(record).first_of(aliases)


def _to_finite(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def extract_position(record: Mapping[str, Any]) -> tuple[float, float] | None:
    """Return ``(lon, lat)`` when both are finite numbers, else ``None``."""
    lon = _to_finite(_lookup(record, LONGITUDE_ALIASES))
    lat = _to_finite(_lookup(record, LATITUDE_ALIASES))
    if lon is None or lat is None:
        return None
    return lon, lat


def extract_timestamp(record: Mapping[str, Any]) -> datetime | None:
    """Return the record timestamp as an aware UTC datetime, if parseable."""
    raw = _lookup(record, TIMESTAMP_ALIASES)
    if raw is None:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def round_coordinate(value: float, digits: int) -> float:
    """Round half away from zero to *digits* decimals."""
    try:
        quantum = Decimal(1).scaleb(-digits)
        return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return value


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def project(record: Mapping[str, Any], options: EncodeOptions, index: int) -> dict[str, Any] | None:
    """Convert *record* to a point ``Feature`` or reject it (``None``).

    Args:
        record: Raw upstream record.
        options: Filters, subsampling interval and precision.
        index: Zero-based position of *record* among all records examined.
    """
    if index % options.sample_interval != 0:
        return None
    view = FoldedRecord(record)
    position = extract_position(view)
    if position is None:
        return None
    if not options.spatial_filter(view) or not options.temporal_filter(view):
        return None

    lon, lat = position
    digits = options.precision_digits
    return {
        "type": "Feature",
        "geometry": {
            "type": "Point",
            "coordinates": [round_coordinate(lon, digits), round_coordinate(lat, digits)],
        },
        "properties": record,
    }


def project_records(
    records: Iterable[Mapping[str, Any]],
    options: EncodeOptions,
) -> Iterator[dict[str, Any]]:
    """Lazily project *records*; the index advances for rejected records too."""
    for index, record in enumerate(records):
        feature = project(record, options, index)
        if feature is not None:
            yield feature


# ---------------------------------------------------------------------------
# Filter builders
# ---------------------------------------------------------------------------


def bbox_filter(bbox: BBox) -> RecordFilter:
    """Keep records whose position lies in *bbox*, edges included."""

    def _in_bbox(record: Mapping[str, Any]) -> bool:
        position = extract_position(record)
        return position is not None and point_in_bbox(position[0], position[1], bbox)

    return _in_bbox


def region_filter(region: Polygon) -> RecordFilter:
    """Keep records whose position lies in *region*, boundary included."""
    prepare_region(region)

    def _in_region(record: Mapping[str, Any]) -> bool:
        position = extract_position(record)
        return position is not None and point_in_region(position[0], position[1], region)

    return _in_region


def time_window_filter(start: datetime | None, end: datetime | None) -> RecordFilter:
    """Keep records timestamped within ``[start, end]``.

    Records without a parseable timestamp are rejected.  Naive bounds
    are taken as UTC.
    """
    lower = _as_utc(start)
    upper = _as_utc(end)

    def _in_window(record: Mapping[str, Any]) -> bool:
        stamp = extract_timestamp(record)
        if stamp is None:
            return False
        if lower is not None and stamp < lower:
            return False
        return upper is None or stamp <= upper

    return _in_window


def day_window(start: date, end: date) -> tuple[datetime, datetime]:
    """Return the UTC instants spanning whole days *start* through *end*."""
    return (
        datetime.combine(start, time.min, tzinfo=UTC),
        datetime.combine(end, time.max, tzinfo=UTC),
    )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
