"""Custom exceptions for the chat-export service.

Every exception carries a ``code`` that the orchestrator surfaces as the
reason code of a terminal status.
"""

from __future__ import annotations


class ExportError(Exception):
    """Base exception for export-related errors."""

    code = "export_error"


class ScrapeError(ExportError):
    """Raised when the conversation container is absent or unrecognizable.

    Error Code: scrape_failed
    """

    code = "scrape_failed"


# ---------------------------------------------------------------------------
# Asset Exceptions
# ---------------------------------------------------------------------------


class AssetResolutionError(ExportError):
    """Base exception for a single asset that could not be resolved.

    Error Code: asset_failed
    """

    code = "asset_failed"

    def __init__(self, url: str, detail: str = "") -> None:
        self.url = url
        self.detail = detail
        message = f"Could not load asset {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TransientAssetError(AssetResolutionError):
    """Raised for retryable failures (timeout, connection reset, HTTP 5xx/429)."""

    pass


class PermanentAssetError(AssetResolutionError):
    """Raised for failures that retrying cannot fix (HTTP 4xx, oversize, bad scheme)."""

    pass


class AssetResolverUnavailableError(ExportError):
    """Raised when the resolver as a whole cannot operate.

    Error Code: assets_unavailable
    """

    code = "assets_unavailable"


# ---------------------------------------------------------------------------
# Encoding / Naming / Delivery Exceptions
# ---------------------------------------------------------------------------


class InvalidExportFormatError(ExportError):
    """Raised when an unknown export format is requested.

    Error Code: invalid_format
    """

    code = "invalid_format"

    def __init__(self, format_value: str) -> None:
        self.format_value = format_value
        super().__init__(f"Invalid export format: {format_value}")


class EncodingError(ExportError):
    """Raised when an encoder cannot produce a structurally valid file.

    Error Code: encoding_failed
    """

    code = "encoding_failed"

    def __init__(self, format_value: str, detail: str = "") -> None:
        self.format_value = format_value
        self.detail = detail
        message = f"Failed to generate {format_value} export"
        if detail:
            message = f"{message}. {detail}"
        super().__init__(message)


class NamingError(ExportError):
    """Raised internally by the naming resolver for an unusable template.

    Never escapes ``NamingResolver.resolve``; it triggers the fallback name.

    Error Code: naming_fallback
    """

    code = "naming_fallback"


class DeliveryError(ExportError):
    """Raised by a delivery sink that could not accept the file.

    Error Code: delivery_failed
    """

    code = "delivery_failed"


# ---------------------------------------------------------------------------
# Job Lifecycle Exceptions
# ---------------------------------------------------------------------------


class ExportCancelledError(ExportError):
    """Raised at a suspension point once the job has been cancelled.

    Error Code: cancelled
    """

    code = "cancelled"

    def __init__(self, message: str = "Export was cancelled") -> None:
        super().__init__(message)


class EmptySelectionError(ExportError):
    """Raised when no selected turn survives validation.

    Error Code: empty_selection
    """

    code = "empty_selection"

    def __init__(self, message: str = "No conversation turns selected for export") -> None:
        super().__init__(message)


class ExportInProgressError(ExportError):
    """Raised when a second job is started while one is still running.

    Error Code: export_in_progress
    """

    code = "export_in_progress"


class InvalidTransitionError(ExportError):
    """Raised on an illegal job state transition (programming error).

    Error Code: invalid_transition
    """

    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal export state transition: {current} -> {target}")
