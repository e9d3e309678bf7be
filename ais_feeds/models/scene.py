"""Typed models for the Sentinel-2 scene-search feed.

- ``SceneQuery``: search criteria parsed from request parameters.
- ``Scene``: one catalogue item reduced to the fields the feed emits.

Helpers derive product type, cloud cover and MGRS tile from the loosely
standardised properties different STAC catalogues publish.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ais_feeds.core.exceptions import InvalidInputError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ais_feeds.utils.geometry import BBox

PRODUCT_TYPES = ("ANY", "S2MSI2A", "S2MSI1C")

_MGRS_RE = re.compile(r"_T(\d{2})([A-Z])([A-Z]{2})_")
_MGRS_COMPACT_RE = re.compile(r"^S2[AB]_(\d{2})([A-Z])([A-Z]{2})_")
_PROCESSING_LEVEL_RE = re.compile(r"MSI(L1C|L2A)")
_S3_RE = re.compile(r"^s3://([^/]+)/(.+)$", re.IGNORECASE)

_CLOUD_KEYS = ("eo:cloud_cover", "s2:cloud_cover", "cloudcoverpercentage")
_PRODUCT_TYPE_KEYS = ("s2:product_type", "productType", "processing:level", "processing")
_QUICKLOOK_ASSET_KEYS = ("quicklook", "thumbnail", "thumbnail-jpeg", "preview", "overview")


@dataclass(frozen=True, slots=True)
class SceneQuery:
    """Criteria for a scene search.

    Attributes:
        start: ISO date or datetime, inclusive.
        end: ISO date or datetime, inclusive.
        bbox: Search extent.
        product_type: ``ANY``, ``S2MSI2A`` (L2A) or ``S2MSI1C`` (L1C).
        cloud_lt: Maximum cloud cover percentage, if any.
        limit: Scenes to collect before stopping.
        frames: Scenes to emit (at most ``limit``).
    """

    start: str
    end: str
    bbox: BBox
    product_type: str = "ANY"
    cloud_lt: float | None = None
    limit: int = 6
    frames: int | None = None

    def __post_init__(self) -> None:
        if self.product_type not in PRODUCT_TYPES:
            msg = f"productType must be one of {', '.join(PRODUCT_TYPES)}, got {self.product_type!r}"
            raise InvalidInputError(msg, field_name="productType")
        if self.limit < 1:
            msg = f"limit must be >= 1, got {self.limit}"
            raise InvalidInputError(msg, field_name="limit")
        if self.frames is not None and self.frames < 1:
            msg = f"frames must be >= 1, got {self.frames}"
            raise InvalidInputError(msg, field_name="frames")

    @property
    def max_scenes(self) -> int:
        return min(self.limit, self.frames) if self.frames is not None else self.limit

    @property
    def datetime_range(self) -> str:
        return f"{self.start}/{self.end}"


@dataclass(frozen=True, slots=True)
class Scene:
    """A catalogue scene as emitted by the scene feed."""

    scene_id: str
    datetime: str
    product_type: str
    cloud: float | None = None
    footprint: dict[str, Any] | None = None
    mgrs: dict[str, str] | None = None
    quicklook: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "type": "scene",
            "id": self.scene_id,
            "datetime": self.datetime,
            "cloud": self.cloud,
            "productType": self.product_type,
            "footprint": self.footprint,
            "mgrs": self.mgrs,
            "quicklook": self.quicklook,
        }


# ---------------------------------------------------------------------------
# Property helpers
# ---------------------------------------------------------------------------


def parse_mgrs(scene_id: str) -> dict[str, str] | None:
    """Extract the MGRS tile (``zone``, ``latBand``, ``grid``) from a scene id."""
    match = _MGRS_RE.search(scene_id) or _MGRS_COMPACT_RE.search(scene_id)
    if not match:
        return None
    return {"zone": match.group(1), "latBand": match.group(2), "grid": match.group(3)}


def cloud_from(properties: Mapping[str, Any]) -> float | None:
    """Return cloud cover from the first recognised property, if numeric."""
    for key in _CLOUD_KEYS:
        value = properties.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int | float):
            return float(value)
        if isinstance(value, str) and value.strip():
            try:
                return float(value)
            except ValueError:
                continue
    return None


def derive_product_type(scene_id: str, properties: Mapping[str, Any]) -> str:
    """Product type from properties, else from the processing level in the id."""
    for key in _PRODUCT_TYPE_KEYS:
        value = properties.get(key)
        if value:
            return str(value)
    match = _PROCESSING_LEVEL_RE.search(scene_id)
    if match is None:
        if "_L2A" in scene_id:
            return "S2MSI2A"
        if "_L1C" in scene_id:
            return "S2MSI1C"
        return ""
    return "S2MSI2A" if match.group(1) == "L2A" else "S2MSI1C"


def s3_to_https(url: str) -> str:
    """Rewrite ``s3://bucket/key`` to its public HTTPS form."""
    match = _S3_RE.match(url)
    return f"https://{match.group(1)}.s3.amazonaws.com/{match.group(2)}" if match else url


def pick_quicklook(assets: Mapping[str, Any]) -> str | None:
    """Return the first quicklook-like asset href reachable over HTTP(S)."""
    for key in _QUICKLOOK_ASSET_KEYS:
        asset = assets.get(key)
        href = getattr(asset, "href", None) if asset is not None else None
        if isinstance(asset, dict):
            href = asset.get("href")
        if not href:
            continue
        url = s3_to_https(str(href))
        if url.lower().startswith(("http://", "https://")):
            return url
    return None
