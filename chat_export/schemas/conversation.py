"""Pydantic v2 schemas for the JSON export document.

These mirror the domain dataclasses one-to-one so that decoding an export
rebuilds an equal Conversation. Blocks are a discriminated union on ``kind``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

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
)

# Bumped whenever the document layout changes incompatibly
FORMAT_VERSION = 1


class TextBlockSchema(BaseModel):
    kind: Literal["text"] = "text"
    text: str
    markdown: str | None = None


class CodeBlockSchema(BaseModel):
    kind: Literal["code"] = "code"
    text: str
    language: str | None = None


class MathBlockSchema(BaseModel):
    kind: Literal["math"] = "math"
    latex_source: str
    display_mode: DisplayMode = DisplayMode.INLINE


class ImageBlockSchema(BaseModel):
    kind: Literal["image"] = "image"
    source_url: str
    asset_ref: str
    alt: str = ""


class AttachmentBlockSchema(BaseModel):
    kind: Literal["attachment"] = "attachment"
    filename: str
    mime_type: str
    asset_ref: str
    source_url: str = ""


BlockSchema = Annotated[
    Union[
        TextBlockSchema,
        CodeBlockSchema,
        MathBlockSchema,
        ImageBlockSchema,
        AttachmentBlockSchema,
    ],
    Field(discriminator="kind"),
]


class TurnSchema(BaseModel):
    id: str
    role: Role
    role_name: str | None = None  # display label, informational only
    blocks: list[BlockSchema]


class ConversationSchema(BaseModel):
    title: str = ""
    source_url: str = ""
    site: str = "generic"
    captured_at: datetime
    turns: list[TurnSchema]


class AssetMetadataSchema(BaseModel):
    """What is known about one referenced asset (bytes are not included)."""

    url: str
    state: ResolutionState
    content_type: str | None = None
    size_bytes: int = 0
    error: str | None = None


class ExportDocumentSchema(BaseModel):
    """Top-level JSON export document."""

    format_version: int = FORMAT_VERSION
    exported_at: datetime
    selection: list[str] = Field(default_factory=list)
    conversation: ConversationSchema
    assets: list[AssetMetadataSchema] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Domain <-> schema conversion
# ---------------------------------------------------------------------------


def block_to_schema(block: Block) -> BlockSchema:
    match block:
        case TextBlock(text=text, markdown=markdown):
            return TextBlockSchema(text=text, markdown=markdown)
        case CodeBlock(text=text, language=language):
            return CodeBlockSchema(text=text, language=language)
        case MathBlock(latex_source=latex, display_mode=mode):
            return MathBlockSchema(latex_source=latex, display_mode=mode)
        case ImageBlock(source_url=url, asset_ref=ref, alt=alt):
            return ImageBlockSchema(source_url=url, asset_ref=ref, alt=alt)
        case AttachmentBlock(filename=name, mime_type=mime, asset_ref=ref, source_url=url):
            return AttachmentBlockSchema(filename=name, mime_type=mime, asset_ref=ref, source_url=url)
    raise TypeError(f"Unsupported block type: {type(block).__name__}")


def schema_to_block(schema: BlockSchema) -> Block:
    match schema:
        case TextBlockSchema():
            return TextBlock(text=schema.text, markdown=schema.markdown)
        case CodeBlockSchema():
            return CodeBlock(text=schema.text, language=schema.language)
        case MathBlockSchema():
            return MathBlock(latex_source=schema.latex_source, display_mode=schema.display_mode)
        case ImageBlockSchema():
            return ImageBlock(source_url=schema.source_url, asset_ref=schema.asset_ref, alt=schema.alt)
        case AttachmentBlockSchema():
            return AttachmentBlock(
                filename=schema.filename,
                mime_type=schema.mime_type,
                asset_ref=schema.asset_ref,
                source_url=schema.source_url,
            )
    raise TypeError(f"Unsupported block schema: {type(schema).__name__}")


def turn_to_schema(turn: Turn, role_name: str | None = None) -> TurnSchema:
    return TurnSchema(
        id=turn.id,
        role=turn.role,
        role_name=role_name,
        blocks=[block_to_schema(b) for b in turn.blocks],
    )


def schema_to_turn(schema: TurnSchema) -> Turn:
    return Turn(
        id=schema.id,
        role=schema.role,
        blocks=tuple(schema_to_block(b) for b in schema.blocks),
    )


def asset_to_schema(asset: Asset) -> AssetMetadataSchema:
    return AssetMetadataSchema(
        url=asset.url,
        state=asset.state,
        content_type=asset.content_type,
        size_bytes=asset.size_bytes,
        error=asset.error,
    )


def schema_to_conversation(schema: ConversationSchema) -> Conversation:
    return Conversation(
        turns=tuple(schema_to_turn(t) for t in schema.turns),
        title=schema.title,
        source_url=schema.source_url,
        site=schema.site,
        captured_at=schema.captured_at,
    )
