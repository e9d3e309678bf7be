"""Feed service configuration loaded from environment variables.

All configuration values have sensible defaults.  Azure Functions app
settings (or ``local.settings.json`` for local dev) are the source of
truth in deployment; tests construct ``FeedConfig`` directly.

Fail-fast validation:
    ``from_env()`` raises ``ConfigValidationError`` if any numeric
    value is out of its valid range.  This prevents latent runtime
    errors by catching bad configuration at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from ais_feeds.core.constants import DEFAULT_DAY_URL_TEMPLATE, DEFAULT_STAC_API_URL
from ais_feeds.core.exceptions import PipelineError


class ConfigValidationError(PipelineError):
    """Raised when configuration values are out of valid range.

    Attributes:
        key: The configuration key that failed validation.
        value: The invalid value.
        message: Human-readable description of the valid range.
    """

    default_stage = "config"
    default_code = "CONFIG_VALIDATION_FAILED"

    def __init__(self, key: str, value: object, message: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid configuration {key}={value!r}: {message}")


@dataclass(frozen=True, slots=True)
class FeedConfig:
    """Immutable feed service configuration.

    Loaded once at function startup and passed to the cache store,
    the day fetcher and the feed service.

    Attributes:
        cache_dir: Directory holding compressed feed artifacts.
        cache_max_items: Maximum entries held in the in-memory cache index.
        cache_max_bytes: Byte budget for artifacts known to the index.
        cache_ttl_seconds: Maximum artifact age before it is purge-eligible.
        cache_purge_interval_seconds: Period of the background TTL sweep.
        fetch_timeout_seconds: Per-request HTTP timeout for day archives.
        fetch_deadline_seconds: Upper bound on one day archive download,
            from connection to last byte.
        fetch_max_retries: Retries after the first failed connection attempt.
        day_url_template: ``str.format`` template receiving ``day=<date>``.
        max_days: Maximum number of days a multi-day feed may span.
        gzip_level: Compression level for produced feeds (1 = fastest).
        sink_high_water_bytes: Buffered bytes after which a channel sink
            reports backpressure.
        sink_stall_timeout_seconds: How long a producer waits on a full
            channel before giving the consumer up.
        stac_api_url: STAC API root for the scene-search feed.
    """

    cache_dir: str = "data/cache"
    cache_max_items: int = 300
    cache_max_bytes: int = 512 * 1024 * 1024
    cache_ttl_seconds: float = 24 * 60 * 60
    cache_purge_interval_seconds: float = 60 * 60
    fetch_timeout_seconds: float = 30.0
    fetch_deadline_seconds: float = 15 * 60
    fetch_max_retries: int = 2
    day_url_template: str = DEFAULT_DAY_URL_TEMPLATE
    max_days: int = 31
    gzip_level: int = 1
    sink_high_water_bytes: int = 1024 * 1024
    sink_stall_timeout_seconds: float = 5 * 60
    stac_api_url: str = DEFAULT_STAC_API_URL

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load and validate configuration from environment variables.

        Raises:
            ConfigValidationError: If a numeric value is out of range
                or a required string value is empty.
            ValueError: If a numeric environment variable cannot be
                parsed (e.g. ``AIS_CACHE_MAX_ITEMS=abc``).
        """
        config = cls(
            cache_dir=os.getenv("AIS_CACHE_DIR", "data/cache"),
            cache_max_items=int(os.getenv("AIS_CACHE_MAX_ITEMS", "300")),
            cache_max_bytes=int(os.getenv("AIS_CACHE_MAX_BYTES", str(512 * 1024 * 1024))),
            cache_ttl_seconds=float(os.getenv("AIS_CACHE_TTL_SECONDS", "86400")),
            cache_purge_interval_seconds=float(os.getenv("AIS_CACHE_PURGE_INTERVAL_SECONDS", "3600")),
            fetch_timeout_seconds=float(os.getenv("AIS_FETCH_TIMEOUT_SECONDS", "30")),
            fetch_deadline_seconds=float(os.getenv("AIS_FETCH_DEADLINE_SECONDS", "900")),
            fetch_max_retries=int(os.getenv("AIS_FETCH_MAX_RETRIES", "2")),
            day_url_template=os.getenv("AIS_DAY_URL_TEMPLATE", DEFAULT_DAY_URL_TEMPLATE),
            max_days=int(os.getenv("AIS_MAX_DAYS", "31")),
            gzip_level=int(os.getenv("AIS_GZIP_LEVEL", "1")),
            sink_high_water_bytes=int(os.getenv("AIS_SINK_HIGH_WATER_BYTES", str(1024 * 1024))),
            sink_stall_timeout_seconds=float(os.getenv("AIS_SINK_STALL_TIMEOUT_SECONDS", "300")),
            stac_api_url=os.getenv("STAC_API_URL", DEFAULT_STAC_API_URL),
        )
        _validate(config)
        return config


def _validate(config: FeedConfig) -> None:
    """Validate configuration ranges.  Raises ``ConfigValidationError``."""
    if not config.cache_dir:
        raise ConfigValidationError("AIS_CACHE_DIR", config.cache_dir, "must not be empty")

    if config.cache_max_items < 1:
        raise ConfigValidationError("AIS_CACHE_MAX_ITEMS", config.cache_max_items, "must be >= 1")

    if config.cache_max_bytes < 0:
        raise ConfigValidationError(
            "AIS_CACHE_MAX_BYTES",
            config.cache_max_bytes,
            "must be >= 0 (bytes)",
        )

    if config.cache_ttl_seconds <= 0:
        raise ConfigValidationError(
            "AIS_CACHE_TTL_SECONDS",
            config.cache_ttl_seconds,
            "must be > 0 (seconds)",
        )

    if config.cache_purge_interval_seconds <= 0:
        raise ConfigValidationError(
            "AIS_CACHE_PURGE_INTERVAL_SECONDS",
            config.cache_purge_interval_seconds,
            "must be > 0 (seconds)",
        )

    if config.fetch_timeout_seconds <= 0:
        raise ConfigValidationError(
            "AIS_FETCH_TIMEOUT_SECONDS",
            config.fetch_timeout_seconds,
            "must be > 0 (seconds)",
        )

    if config.fetch_deadline_seconds < config.fetch_timeout_seconds:
        raise ConfigValidationError(
            "AIS_FETCH_DEADLINE_SECONDS",
            config.fetch_deadline_seconds,
            "must be >= AIS_FETCH_TIMEOUT_SECONDS (seconds)",
        )

    if config.fetch_max_retries < 0:
        raise ConfigValidationError("AIS_FETCH_MAX_RETRIES", config.fetch_max_retries, "must be >= 0")

    if "{day" not in config.day_url_template:
        raise ConfigValidationError(
            "AIS_DAY_URL_TEMPLATE",
            config.day_url_template,
            "must contain a {day...} placeholder",
        )

    if config.max_days < 1:
        raise ConfigValidationError("AIS_MAX_DAYS", config.max_days, "must be >= 1")

    if not 0 <= config.gzip_level <= 9:
        raise ConfigValidationError("AIS_GZIP_LEVEL", config.gzip_level, "must be between 0 and 9")

    if config.sink_high_water_bytes < 1:
        raise ConfigValidationError(
            "AIS_SINK_HIGH_WATER_BYTES",
            config.sink_high_water_bytes,
            "must be >= 1 (bytes)",
        )

    if config.sink_stall_timeout_seconds <= 0:
        raise ConfigValidationError(
            "AIS_SINK_STALL_TIMEOUT_SECONDS",
            config.sink_stall_timeout_seconds,
            "must be > 0 (seconds)",
        )
