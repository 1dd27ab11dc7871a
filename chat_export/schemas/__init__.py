"""Pydantic schemas package."""

from chat_export.schemas.conversation import (  # noqa: F401
    ConversationSchema,
    ExportDocumentSchema,
    TurnSchema,
)
from chat_export.schemas.export import (  # noqa: F401
    ExportOptionsSchema,
    ExportRequest,
    FormatListResponse,
    PreviewResponse,
    SnapshotRequest,
)
