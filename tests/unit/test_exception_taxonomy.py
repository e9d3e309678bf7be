"""Tests for the feed exception taxonomy.

Validates:
- PipelineError hierarchy and structured attributes
- Category classification (validation, transient, permanent)
- ``to_error_dict()`` and ``to_error_record()`` produce stable payloads
- Every stage exception carries its default stage and code
"""

from __future__ import annotations

from typing import ClassVar

from ais_feeds.core.config import ConfigValidationError
from ais_feeds.core.exceptions import (
    ArchiveError,
    CacheIOError,
    CallbackError,
    InvalidInputError,
    NetworkError,
    ParseError,
    PermanentError,
    PipelineError,
    SinkClosedError,
    TransientError,
    ValidationError,
)
from ais_feeds.providers.base import ProviderSearchError


class TestPipelineErrorBase:
    """PipelineError base class behavior."""

    def test_default_attributes(self) -> None:
        err = PipelineError("boom")
        assert err.message == "boom"
        assert err.stage == ""
        assert err.code == ""
        assert err.retryable is False
        assert err.correlation_id == ""

    def test_custom_attributes(self) -> None:
        err = PipelineError(
            "fail",
            stage="fetch_day",
            code="NETWORK_ERROR",
            retryable=True,
            correlation_id="abc-123",
        )
        assert err.stage == "fetch_day"
        assert err.code == "NETWORK_ERROR"
        assert err.retryable is True
        assert err.correlation_id == "abc-123"

    def test_str_is_message(self) -> None:
        assert str(PipelineError("human-readable error")) == "human-readable error"

    def test_to_error_dict_keys(self) -> None:
        d = PipelineError("x", stage="s", code="C", retryable=True, correlation_id="id").to_error_dict()
        assert set(d.keys()) == {"category", "code", "stage", "message", "retryable", "correlation_id"}
        assert d["category"] == "transient"


class TestCategoryBases:
    """Category base classes set correct defaults."""

    def test_validation_error_not_retryable(self) -> None:
        err = ValidationError("bad input")
        assert err.retryable is False
        assert err.category == "validation"

    def test_transient_error_retryable(self) -> None:
        err = TransientError("timeout")
        assert err.retryable is True
        assert err.category == "transient"

    def test_permanent_error_not_retryable(self) -> None:
        err = PermanentError("gone")
        assert err.retryable is False
        assert err.category == "permanent"

    def test_dynamic_category_from_retryable(self) -> None:
        assert PipelineError("x", retryable=True).category == "transient"
        assert PipelineError("x", retryable=False).category == "permanent"


class TestErrorKinds:
    """Every stage exception has a default stage and code."""

    EXCEPTION_CLASSES: ClassVar[list[type[PipelineError]]] = [
        InvalidInputError,
        NetworkError,
        ArchiveError,
        ParseError,
        CallbackError,
        CacheIOError,
        SinkClosedError,
        ConfigValidationError,
        ProviderSearchError,
    ]

    def test_all_subclass_pipeline_error(self) -> None:
        for cls in self.EXCEPTION_CLASSES:
            assert issubclass(cls, PipelineError), f"{cls.__name__} is not a PipelineError"

    def test_invalid_input(self) -> None:
        err = InvalidInputError("bad bbox", field_name="bbox")
        assert err.stage == "request"
        assert err.code == "INVALID_INPUT"
        assert err.field_name == "bbox"
        assert err.category == "validation"

    def test_network_error_keeps_status(self) -> None:
        err = NetworkError("HTTP 503", status_code=503)
        assert err.stage == "fetch_day"
        assert err.code == "NETWORK_ERROR"
        assert err.status_code == 503
        assert err.retryable is True

    def test_network_error_can_be_permanent(self) -> None:
        err = NetworkError("HTTP 404", status_code=404, retryable=False)
        assert err.retryable is False
        assert err.category == "transient"

    def test_archive_and_parse_errors(self) -> None:
        assert ArchiveError("x").code == "ARCHIVE_ERROR"
        assert ArchiveError("x").stage == "decompress"
        assert ParseError("x").code == "PARSE_ERROR"
        assert ParseError("x").stage == "parse"

    def test_callback_error(self) -> None:
        err = CallbackError("consumer blew up")
        assert err.stage == "consume"
        assert err.category == "permanent"

    def test_cache_io_error_is_transient(self) -> None:
        err = CacheIOError("disk full")
        assert err.code == "CACHE_IO_ERROR"
        assert err.retryable is True

    def test_sink_closed(self) -> None:
        err = SinkClosedError("gone")
        assert err.stage == "encode"
        assert err.code == "SINK_CLOSED"

    def test_provider_search_error(self) -> None:
        err = ProviderSearchError("stac", "timeout")
        assert err.code == "PROVIDER_SEARCH_FAILED"
        assert err.retryable is True
        assert str(err) == "[stac] timeout"


class TestErrorRecord:
    """``to_error_record()`` is the terminal NDJSON line of a truncated feed."""

    def test_record_shape(self) -> None:
        record = ParseError("CSV error at line 3").to_error_record()
        assert record == {
            "type": "Error",
            "code": "PARSE_ERROR",
            "stage": "parse",
            "message": "CSV error at line 3",
        }

    def test_empty_message_falls_back(self) -> None:
        assert NetworkError().to_error_record()["message"] == "Internal"
