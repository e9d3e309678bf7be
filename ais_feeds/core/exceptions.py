"""Unified feed exception taxonomy.

Provides a shared base exception hierarchy for every pipeline stage
(fetch, decompress, parse, project, encode) and the cache store.  Every
domain exception inherits from ``PipelineError`` and carries structured
context fields that enable consistent retry decisions, HTTP status
mapping, and operator diagnostics.

Taxonomy categories
-------------------
- ``ValidationError``: input/contract violations, never retryable.
- ``TransientError``: temporary failures (network, filesystem), retryable.
- ``PermanentError``: unrecoverable failures for this request, not retryable.

Error kinds
-----------
- ``InvalidInputError``: malformed date/bbox/parameters, raised before any I/O.
- ``NetworkError``: transport or HTTP failure, possibly after retries.
- ``ArchiveError``: decompression or archive format mismatch.
- ``ParseError``: malformed tabular data.
- ``CallbackError``: consumer-side fault while processing a record.
- ``CacheIOError``: filesystem fault in the cache store.
- ``SinkClosedError``: the downstream consumer went away mid-stream.

Every exception exposes ``to_error_dict()`` for a stable structured
error payload suitable for logging and the terminal NDJSON error line.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all feed-pipeline errors.

    Attributes:
        message: Human-readable error description.
        stage: Pipeline stage where the error occurred
            (e.g. ``"fetch_day"``, ``"cache"``).
        code: Machine-readable error code (e.g. ``"NETWORK_ERROR"``).
        retryable: Whether the caller could reasonably retry the operation.
        correlation_id: Request correlation identifier.
    """

    #: Default stage for subclasses (override via class attribute or kwarg).
    default_stage: str = ""
    #: Default code for subclasses (override via class attribute or kwarg).
    default_code: str = ""

    def __init__(
        self,
        message: str = "",
        *,
        stage: str = "",
        code: str = "",
        retryable: bool = False,
        correlation_id: str = "",
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.code = code or self.default_code
        self.retryable = retryable
        self.correlation_id = correlation_id
        super().__init__(message)

    @property
    def category(self) -> str:
        """Return the error category based on concrete class."""
        if isinstance(self, ValidationError):
            return "validation"
        if isinstance(self, TransientError):
            return "transient"
        if isinstance(self, PermanentError):
            return "permanent"
        return "transient" if self.retryable else "permanent"

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured error payload with stable keys."""
        return {
            "category": self.category,
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "correlation_id": self.correlation_id,
        }

    def to_error_record(self) -> dict[str, object]:
        """Return the terminal NDJSON error record for a truncated feed."""
        return {
            "type": "Error",
            "code": self.code,
            "stage": self.stage,
            "message": self.message or "Internal",
        }


# ---------------------------------------------------------------------------
# Category base classes
# ---------------------------------------------------------------------------


class ValidationError(PipelineError):
    """Input or domain-model validation failure. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class TransientError(PipelineError):
    """Temporary failure that may succeed on retry."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class PermanentError(PipelineError):
    """Unrecoverable failure for this request. Not retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------


class InvalidInputError(ValidationError):
    """Malformed request parameter (date, bbox, precision, ...).

    Attributes:
        field_name: The parameter that failed validation, if known.
    """

    default_stage = "request"
    default_code = "INVALID_INPUT"

    def __init__(self, message: str = "", *, field_name: str = "", **kwargs: object) -> None:
        self.field_name = field_name
        super().__init__(message, **kwargs)


class NetworkError(TransientError):
    """Transport or HTTP failure while fetching a remote dataset.

    Attributes:
        status_code: HTTP status of the final attempt, or ``None`` when
            the failure happened below HTTP (DNS, connect, read).
    """

    default_stage = "fetch_day"
    default_code = "NETWORK_ERROR"

    def __init__(self, message: str = "", *, status_code: int | None = None, **kwargs: object) -> None:
        self.status_code = status_code
        super().__init__(message, **kwargs)


class ArchiveError(PermanentError):
    """Archive framing or decompression failure."""

    default_stage = "decompress"
    default_code = "ARCHIVE_ERROR"


class ParseError(PermanentError):
    """Malformed tabular data in the decompressed payload."""

    default_stage = "parse"
    default_code = "PARSE_ERROR"


class CallbackError(PermanentError):
    """A record consumer raised while processing a record."""

    default_stage = "consume"
    default_code = "CALLBACK_ERROR"


class CacheIOError(TransientError):
    """Filesystem failure inside the cache store."""

    default_stage = "cache"
    default_code = "CACHE_IO_ERROR"


class SinkClosedError(PermanentError):
    """The downstream consumer disconnected; no further writes are accepted."""

    default_stage = "encode"
    default_code = "SINK_CLOSED"
