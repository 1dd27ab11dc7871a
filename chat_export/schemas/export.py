"""Pydantic v2 schemas for the export endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from chat_export.models.conversation import Role
from chat_export.models.job import ExportFormat, ExportOptions, RowGranularity


class ExportOptionsSchema(BaseModel):
    """Per-job options; omitted values use service defaults."""

    include_header: bool = True
    rows_per: RowGranularity = RowGranularity.TURN
    asset_concurrency: int | None = Field(default=None, ge=1, le=16)
    resolve_assets: bool = True
    screenshot_viewport_width: int | None = Field(default=None, ge=320, le=3840)
    screenshot_viewport_height: int | None = Field(default=None, ge=240, le=4320)

    def to_options(self) -> ExportOptions:
        return ExportOptions(
            include_header=self.include_header,
            rows_per=self.rows_per,
            asset_concurrency=self.asset_concurrency,
            resolve_assets=self.resolve_assets,
            screenshot_viewport_width=self.screenshot_viewport_width,
            screenshot_viewport_height=self.screenshot_viewport_height,
        )


class SnapshotRequest(BaseModel):
    """A captured chat page."""

    html: str = Field(..., min_length=1)
    source_url: str = ""
    title: str | None = None
    site: str | None = None  # profile key; detected from source_url when omitted


class ExportRequest(SnapshotRequest):
    """Body for POST /api/v1/exports."""

    format: ExportFormat
    selection: list[str] = Field(default_factory=list)
    naming_template: str = Field(default="", max_length=255)
    options: ExportOptionsSchema = Field(default_factory=ExportOptionsSchema)


class TurnPreviewSchema(BaseModel):
    id: str
    role: Role
    role_name: str
    preview: str
    block_kinds: list[str]


class WarningSchema(BaseModel):
    code: str
    message: str


class PreviewResponse(BaseModel):
    """Body returned by POST /api/v1/exports/preview."""

    title: str
    site: str
    turns: list[TurnPreviewSchema]
    count: int
    warnings: list[WarningSchema] = Field(default_factory=list)


class FormatSchema(BaseModel):
    format: ExportFormat
    label: str
    mime_type: str
    extension: str


class FormatListResponse(BaseModel):
    formats: list[FormatSchema]
