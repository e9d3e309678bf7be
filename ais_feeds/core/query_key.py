"""Canonical query keys and weak validators for feed requests.

The key is a deterministic function of the semantic query, stable across
process restarts, so it can name cache artifacts on disk.  Inputs are not
validated here; request validation happens before a key is built.

Fields are joined with ``:``.  A field value that itself contains ``:``
can collide with a different query; callers only feed parsed numbers and
ISO dates, so this is accepted.
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence

from ais_feeds.core.constants import (
    DEFAULT_FORMAT,
    DEFAULT_GRID,
    DEFAULT_PRECISION_DIGITS,
    DEFAULT_SAMPLE_INTERVAL,
    QUERY_KEY_VERSION,
)


def make_query_key(
    bbox: Sequence[float] | str,
    start: str,
    end: str | None = None,
    *,
    precision: int | None = None,
    sample: int | None = None,
    format: str | None = None,  # noqa: A002
    grid: str | None = None,
) -> str:
    """Build the canonical key for a feed query.

    Args:
        bbox: ``[minLng, minLat, maxLng, maxLat]`` or its comma-joined form.
        start: Start date as supplied by the caller.
        end: Optional end date; rendered empty when absent.
        precision: Coordinate decimal digits (default 5).
        sample: Subsampling interval (default 1).
        format: Output format tag, lower-cased (default ``"ndjson"``).
        grid: Grid tag (default ``"none"``).

    Returns:
        ``v2:{bbox}:{start}:{end}:p{precision}:s{sample}:f{format}:g{grid}``
    """
    bbox_str = bbox if isinstance(bbox, str) else ",".join(_format_number(v) for v in bbox)
    precision = DEFAULT_PRECISION_DIGITS if precision is None else precision
    sample = DEFAULT_SAMPLE_INTERVAL if sample is None else sample
    fmt = (DEFAULT_FORMAT if format is None else str(format)).lower()
    grid = DEFAULT_GRID if grid is None else grid
    end = "" if end is None else end
    return f"{QUERY_KEY_VERSION}:{bbox_str}:{start}:{end}:p{precision}:s{sample}:f{fmt}:g{grid}"


def make_query_etag(key: str) -> str:
    """Return a weak entity tag derived from a canonical query key."""
    digest = hashlib.sha1(key.encode("utf-8"), usedforsecurity=False).hexdigest()
    return f'W/"{digest}"'


def _format_number(value: object) -> str:
    """Render integral floats without a trailing ``.0`` (``2.0`` → ``"2"``)."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
