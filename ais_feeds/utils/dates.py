"""Calendar-day helpers for daily upstream archives."""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import TYPE_CHECKING

from ais_feeds.core.constants import DEFAULT_DAY_URL_TEMPLATE
from ais_feeds.core.exceptions import InvalidInputError

if TYPE_CHECKING:
    from collections.abc import Iterator

_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_day(day_id: str, *, field_name: str = "day") -> date:
    """Parse a ``YYYY-MM-DD`` calendar date.

    Raises:
        InvalidInputError: If *day_id* is not a valid calendar date
            (wrong shape, or e.g. ``2023-02-30``).
    """
    text = str(day_id).strip()
    if not _DAY_RE.match(text):
        msg = f"{field_name} must be YYYY-MM-DD, got {day_id!r}"
        raise InvalidInputError(msg, field_name=field_name)
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        msg = f"{field_name} is not a calendar date: {day_id!r}"
        raise InvalidInputError(msg, field_name=field_name) from exc


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield every calendar day from *start* to *end* inclusive."""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def day_url(day: date, template: str = DEFAULT_DAY_URL_TEMPLATE) -> str:
    """Resolve the remote archive URL for one day."""
    return template.format(day=day)

