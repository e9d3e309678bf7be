"""SceneSource abstract base class.

Defines the contract for the satellite-catalogue collaborator consumed
by the scene feed.  The feed service only knows this interface; which
catalogue (and how it paginates) is an adapter concern.
"""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING

from ais_feeds.core.exceptions import PipelineError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ais_feeds.models.scene import Scene, SceneQuery


class SceneSource(abc.ABC):
    """Lazy producer of scenes for a query."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name used in logs and errors."""

    @abc.abstractmethod
    def search(self, query: SceneQuery) -> Iterator[Scene]:
        """Yield scenes matching *query*, best match first.

        Yields at most ``query.max_scenes`` scenes.

        Raises:
            ProviderSearchError: On catalogue API errors.
        """


class ProviderSearchError(PipelineError):
    """Catalogue search failed.

    Attributes:
        provider: Name of the provider that raised the error.
    """

    default_stage = "scene_search"
    default_code = "PROVIDER_SEARCH_FAILED"

    def __init__(self, provider: str, message: str, *, retryable: bool = True) -> None:
        self.provider = provider
        super().__init__(message, retryable=retryable)

    def __str__(self) -> str:
        return f"[{self.provider}] {self.message}"
