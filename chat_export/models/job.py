"""Export job, its options, and the status it reports while running."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class ExportFormat(str, enum.Enum):
    """Supported output formats."""

    TEXT = "text"
    MARKDOWN = "markdown"
    WORD = "word"
    HTML = "html"
    JSON = "json"
    EXCEL = "excel"
    CSV = "csv"
    PDF = "pdf"
    SCREENSHOT = "screenshot"


class JobStage(str, enum.Enum):
    """Export orchestrator states."""

    IDLE = "idle"
    SCRAPING = "scraping"
    RESOLVING_ASSETS = "resolving_assets"
    ENCODING = "encoding"
    DELIVERING = "delivering"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStage.DONE, JobStage.FAILED, JobStage.CANCELLED)


class RowGranularity(str, enum.Enum):
    """Row projection for tabular formats."""

    TURN = "turn"
    BLOCK = "block"


@dataclass(frozen=True)
class ExportOptions:
    """Per-job encoder and pipeline options."""

    include_header: bool = True
    rows_per: RowGranularity = RowGranularity.TURN
    asset_concurrency: int | None = None  # None -> settings.asset_concurrency
    resolve_assets: bool = True
    screenshot_viewport_width: int | None = None
    screenshot_viewport_height: int | None = None


@dataclass(frozen=True)
class ExportJob:
    """The unit of work handed to the orchestrator."""

    format: ExportFormat
    selection: tuple[str, ...] = ()  # empty -> every turn, conversation order
    naming_template: str = ""
    options: ExportOptions = field(default_factory=ExportOptions)


@dataclass(frozen=True)
class ExportWarning:
    """A non-fatal problem accumulated during a job."""

    code: str
    message: str


@dataclass(frozen=True)
class StatusUpdate:
    """One entry in the job status stream."""

    stage: JobStage
    progress: float
    warnings: tuple[ExportWarning, ...] = ()
    reason: str | None = None
    message: str | None = None


@dataclass
class ExportResult:
    """Terminal outcome of an export job."""

    state: JobStage
    filename: str | None = None
    mime_type: str | None = None
    size_bytes: int = 0
    warnings: list[ExportWarning] = field(default_factory=list)
    reason: str | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state is JobStage.DONE
