"""STAC catalogue adapter for Sentinel-2 scene search.

Uses ``pystac-client`` against Element 84 Earth Search by default.
Pagination is handled by ``pystac-client``; items are pulled lazily,
so the search stops requesting pages once enough scenes were emitted.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import pystac_client

from ais_feeds.core.constants import DEFAULT_STAC_API_URL
from ais_feeds.models.scene import (
    Scene,
    cloud_from,
    derive_product_type,
    parse_mgrs,
    pick_quicklook,
)
from ais_feeds.providers.base import ProviderSearchError, SceneSource

if TYPE_CHECKING:
    from collections.abc import Iterator

    import pystac

    from ais_feeds.models.scene import SceneQuery

logger = logging.getLogger(__name__)

_DEFAULT_COLLECTIONS = ("sentinel-2-l2a", "sentinel-2-l1c")

# Page size relative to the number of scenes wanted, capped by the API.
_PAGE_SIZE_FACTOR = 5
_MAX_PAGE_SIZE = 100
_MAX_ITEMS_FACTOR = 40


class StacSceneSource(SceneSource):
    """Scene source backed by a STAC API."""

    def __init__(
        self,
        stac_url: str = DEFAULT_STAC_API_URL,
        *,
        collections: tuple[str, ...] = _DEFAULT_COLLECTIONS,
    ) -> None:
        self._stac_url = stac_url
        self._collections = list(collections)

    @property
    def name(self) -> str:
        return "stac"

    def search(self, query: SceneQuery) -> Iterator[Scene]:
        wanted = query.max_scenes
        emitted = 0
        for item in self._iter_items(query):
            scene = self._item_to_scene(item, query)
            if scene is None:
                continue
            yield scene
            emitted += 1
            if emitted >= wanted:
                break

        logger.info(
            "STAC search finished | url=%s | bbox=%s | range=%s | scenes=%d",
            self._stac_url,
            query.bbox,
            query.datetime_range,
            emitted,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _iter_items(self, query: SceneQuery) -> Iterator[pystac.Item]:
        per_page = min(_MAX_PAGE_SIZE, query.limit * _PAGE_SIZE_FACTOR)
        try:
            catalogue = pystac_client.Client.open(self._stac_url)
            search = catalogue.search(
                bbox=list(query.bbox),
                datetime=query.datetime_range,
                collections=self._collections,
                limit=per_page,
                max_items=query.limit * _MAX_ITEMS_FACTOR,
            )
            items = search.items()
        except Exception as exc:
            msg = f"STAC search failed: {exc}"
            raise ProviderSearchError(self.name, msg) from exc

        while True:
            try:
                item = next(items, None)
            except Exception as exc:
                msg = f"STAC page fetch failed: {exc}"
                raise ProviderSearchError(self.name, msg) from exc
            if item is None:
                return
            yield item

    def _item_to_scene(self, item: pystac.Item, query: SceneQuery) -> Scene | None:
        """Convert a STAC item to a ``Scene``, or ``None`` if filtered out."""
        properties: dict[str, Any] = item.properties or {}
        scene_id = str(item.id or "")
        stamp = str(properties.get("datetime") or properties.get("date") or "")
        if not scene_id or not stamp:
            return None

        product_type = derive_product_type(scene_id, properties)
        if query.product_type != "ANY" and product_type != query.product_type:
            return None

        cloud = cloud_from(properties)
        if query.cloud_lt is not None and cloud is not None and cloud > query.cloud_lt:
            return None

        return Scene(
            scene_id=scene_id,
            datetime=stamp,
            product_type=product_type,
            cloud=cloud,
            footprint=item.geometry,
            mgrs=parse_mgrs(scene_id),
            quicklook=pick_quicklook(item.assets or {}),
        )
