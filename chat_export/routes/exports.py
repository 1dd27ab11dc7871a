"""Export REST endpoints.

A client posts a captured chat page (HTML) plus the export job; the
response body is the exported file itself.
"""

from __future__ import annotations

import json
import logging
from urllib.parse import quote

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from chat_export.core.config import settings
from chat_export.exceptions import ScrapeError
from chat_export.models.job import ExportJob, ExportResult
from chat_export.schemas.export import (
    ExportRequest,
    FormatListResponse,
    FormatSchema,
    PreviewResponse,
    SnapshotRequest,
    TurnPreviewSchema,
    WarningSchema,
)
from chat_export.services.delivery import MemoryDeliverySink
from chat_export.services.encoders import FORMATS
from chat_export.services.normalizer import Normalizer
from chat_export.services.orchestrator import ExportOrchestrator
from chat_export.services.profiles import get_profile
from chat_export.services.snapshot import Snapshot, take_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/exports", tags=["exports"])

# Reason code -> HTTP status for failed jobs
REASON_STATUS = {
    "scrape_failed": 422,
    "empty_selection": 422,
    "invalid_format": 400,
    "assets_unavailable": 503,
    "cancelled": 409,
}


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={
            "error": {
                "code": code.upper(),
                "message": message,
            }
        },
    )


def _snapshot_from(request: SnapshotRequest) -> Snapshot:
    if len(request.html.encode("utf-8")) > settings.max_snapshot_bytes:
        raise _error(
            413,
            "snapshot_too_large",
            f"Snapshot exceeds the {settings.max_snapshot_bytes} byte limit",
        )
    try:
        return take_snapshot(request.html, source_url=request.source_url, title=request.title)
    except ScrapeError as e:
        raise _error(422, e.code, str(e))


def _normalizer_for(request: SnapshotRequest) -> Normalizer:
    return Normalizer(profile=get_profile(request.site) if request.site else None)


def content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback and the RFC 5987 UTF-8 name."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_").replace('"', "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def _warnings_header(result: ExportResult) -> str:
    return json.dumps([{"code": w.code, "message": w.message} for w in result.warnings])


@router.get("/formats", response_model=FormatListResponse)
async def list_formats() -> FormatListResponse:
    """List every supported export format."""
    return FormatListResponse(
        formats=[
            FormatSchema(
                format=info.format,
                label=info.label,
                mime_type=info.mime_type,
                extension=info.extension,
            )
            for info in FORMATS.values()
        ]
    )


@router.post("/preview", response_model=PreviewResponse)
async def preview_export(request: SnapshotRequest) -> PreviewResponse:
    """Normalize a snapshot and list its turns so a client can build a selection."""
    snapshot = _snapshot_from(request)
    try:
        result = await _normalizer_for(request).normalize_async(snapshot)
    except ScrapeError as e:
        raise _error(422, e.code, str(e))

    conversation = result.conversation
    return PreviewResponse(
        title=conversation.title,
        site=conversation.site,
        turns=[
            TurnPreviewSchema(
                id=turn.id,
                role=turn.role,
                role_name=result.profile.role_label(turn.role.value),
                preview=turn.preview,
                block_kinds=[block.kind for block in turn.blocks],
            )
            for turn in conversation.turns
        ],
        count=len(conversation.turns),
        warnings=[WarningSchema(code=w.code, message=w.message) for w in result.warnings],
    )


@router.post(
    "",
    response_class=Response,
    responses={200: {"description": "The exported file"}},
)
async def create_export(request: ExportRequest) -> Response:
    """Run one export job and return the file.

    The resolved filename is sent in ``Content-Disposition``; non-fatal
    warnings are sent as a JSON list in ``X-Export-Warnings``.
    """
    snapshot = _snapshot_from(request)
    sink = MemoryDeliverySink()
    orchestrator = ExportOrchestrator(sink, normalizer=_normalizer_for(request))
    job = ExportJob(
        format=request.format,
        selection=tuple(request.selection),
        naming_template=request.naming_template,
        options=request.options.to_options(),
    )

    result = await orchestrator.run(snapshot, job)
    if not result.succeeded or sink.last is None:
        reason = result.reason or "export_error"
        raise _error(REASON_STATUS.get(reason, 500), reason, result.message or "Export failed")

    delivered = sink.last
    return Response(
        content=delivered.data,
        media_type=delivered.mime_type,
        headers={
            "Content-Disposition": content_disposition(delivered.filename),
            "X-Export-Warnings": _warnings_header(result),
        },
    )
