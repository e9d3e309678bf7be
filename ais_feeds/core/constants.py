"""Shared feed constants.

Centralises the upstream URL template, record field aliases, feed
defaults and cache layout literals used across the pipeline stages,
the cache store and the HTTP layer.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Upstream dataset
# ---------------------------------------------------------------------------

DEFAULT_DAY_URL_TEMPLATE: str = (
    "https://coast.noaa.gov/htdata/CMSP/AISDataHandler/{day:%Y}/AIS_{day:%Y_%m_%d}.zip"
)
"""NOAA Marine Cadastre daily AIS archive, formatted with a ``datetime.date``."""

ARCHIVE_ENTRY_PATTERN: re.Pattern[str] = re.compile(r"\.csv$", re.IGNORECASE)
"""The archive entry holding the tabular payload."""

DEFAULT_STAC_API_URL: str = "https://earth-search.aws.element84.com/v1"

# ---------------------------------------------------------------------------
# Record field aliases (matched case-insensitively, in preference order)
# ---------------------------------------------------------------------------

LONGITUDE_ALIASES: tuple[str, ...] = ("lon", "longitude", "long", "lng", "x")
LATITUDE_ALIASES: tuple[str, ...] = ("lat", "latitude", "y")
TIMESTAMP_ALIASES: tuple[str, ...] = ("basedatetime", "time", "timestamp", "datetime")

# ---------------------------------------------------------------------------
# Feed defaults
# ---------------------------------------------------------------------------

MIN_PRECISION_DIGITS = 0
MAX_PRECISION_DIGITS = 8
DEFAULT_PRECISION_DIGITS = 5
"""Default coordinate precision for the query key and the multi-day feed."""

NSJSON_PRECISION_DIGITS = 6
"""Default coordinate precision for the single-day ``/v2/nsjson`` feed."""

DEFAULT_SAMPLE_INTERVAL = 1
DEFAULT_FORMAT = "ndjson"
DEFAULT_GRID = "none"
QUERY_KEY_VERSION = "v2"

NDJSON_MEDIA_TYPE = "application/x-ndjson"

# ---------------------------------------------------------------------------
# Cache layout
# ---------------------------------------------------------------------------

CACHE_FILE_SUFFIX = ".ndjson.gz"
CACHE_UNSAFE_CHARS: re.Pattern[str] = re.compile(r"[^A-Za-z0-9_:,.]")
