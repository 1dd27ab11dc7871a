"""Domain models for conversations, assets and export jobs."""

from chat_export.models.asset import Asset, ResolutionState
from chat_export.models.conversation import (
    AttachmentBlock,
    Block,
    CodeBlock,
    Conversation,
    DisplayMode,
    ImageBlock,
    MathBlock,
    Role,
    TextBlock,
    Turn,
    block_plain_text,
)
from chat_export.models.job import (
    ExportFormat,
    ExportJob,
    ExportOptions,
    ExportResult,
    ExportWarning,
    JobStage,
    RowGranularity,
    StatusUpdate,
)

__all__ = [
    "Asset",
    "AttachmentBlock",
    "Block",
    "CodeBlock",
    "Conversation",
    "DisplayMode",
    "ExportFormat",
    "ExportJob",
    "ExportOptions",
    "ExportResult",
    "ExportWarning",
    "ImageBlock",
    "JobStage",
    "MathBlock",
    "ResolutionState",
    "Role",
    "RowGranularity",
    "StatusUpdate",
    "TextBlock",
    "Turn",
    "block_plain_text",
]
