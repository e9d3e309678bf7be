"""Scene catalogue adapters.

- SceneSource: Abstract base class defining the interface
- StacSceneSource: STAC API search via pystac-client (Earth Search by default)
"""

from ais_feeds.providers.base import ProviderSearchError, SceneSource
from ais_feeds.providers.stac import StacSceneSource

__all__ = [
    "ProviderSearchError",
    "SceneSource",
    "StacSceneSource",
]
