"""Bounding-box parsing and point-in-region evaluation.

Regions are shapely polygons, prepared once and then tested against
raw coordinates.  A point on the region boundary counts as inside,
matching the inclusive edge semantics of the plain bbox comparison
filter.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import shapely
from shapely.geometry import Polygon, box

from ais_feeds.core.exceptions import InvalidInputError

BBox = tuple[float, float, float, float]
"""``(minLng, minLat, maxLng, maxLat)`` in WGS 84 degrees."""


def parse_bbox(value: str | Sequence[object], *, field_name: str = "bbox") -> BBox:
    """Parse ``minLng,minLat,maxLng,maxLat`` into a ``BBox``.

    Accepts the comma-joined string form or a sequence of four values.

    Raises:
        InvalidInputError: If there are not exactly four finite numbers.
    """
    parts: Sequence[object] = value.split(",") if isinstance(value, str) else value
    if len(parts) != 4:
        msg = f"{field_name} must be four comma-separated numbers"
        raise InvalidInputError(msg, field_name=field_name)

    numbers: list[float] = []
    for part in parts:
        try:
            number = float(str(part).strip())
        except ValueError as exc:
            msg = f"{field_name} must be four comma-separated numbers"
            raise InvalidInputError(msg, field_name=field_name) from exc
        if not math.isfinite(number):
            msg = f"{field_name} values must be finite"
            raise InvalidInputError(msg, field_name=field_name)
        numbers.append(number)

    return (numbers[0], numbers[1], numbers[2], numbers[3])


def bbox_polygon(bbox: BBox) -> Polygon:
    """Return the rectangular polygon for *bbox*."""
    min_lng, min_lat, max_lng, max_lat = bbox
    return box(min_lng, min_lat, max_lng, max_lat)


def prepare_region(region: Polygon) -> Polygon:
    """Build *region*'s spatial index in place and return it.

    Prepared regions answer repeated point tests much faster; preparing
    twice is a no-op.
    """
    shapely.prepare(region)
    return region


def point_in_region(lon: float, lat: float, region: Polygon) -> bool:
    """Whether ``(lon, lat)`` lies inside or on the boundary of *region*.

    For a point, intersecting a polygon is the same as being covered
    by it, so no point geometry is built per call.
    """
    return bool(shapely.intersects_xy(region, lon, lat))


def point_in_bbox(lon: float, lat: float, bbox: BBox) -> bool:
    """Inclusive axis-aligned bbox test without building a geometry."""
    min_lng, min_lat, max_lng, max_lat = bbox
    return min_lng <= lon <= max_lng and min_lat <= lat <= max_lat
