"""Lossless JSON encoder and its decoder."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from pydantic import ValidationError

from chat_export.exceptions import EncodingError
from chat_export.models.asset import Asset
from chat_export.models.conversation import Conversation, Turn
from chat_export.models.job import ExportOptions
from chat_export.schemas.conversation import (
    AssetMetadataSchema,
    ConversationSchema,
    ExportDocumentSchema,
    asset_to_schema,
    schema_to_conversation,
    turn_to_schema,
)
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import EncodedOutput, checkpoint, role_label

MIME_TYPE = "application/json"
EXTENSION = "json"


@dataclass
class DecodedExport:
    """Result of reading a JSON export back."""

    conversation: Conversation
    selection: list[str]
    assets: list[AssetMetadataSchema]
    exported_at: datetime


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    """Dump the selected turns, the selection order and asset metadata.

    The document's conversation holds the selected turns in selection
    order, so exporting every turn reproduces the whole Conversation.
    """
    turns = []
    for turn in selection:
        checkpoint(token)
        turns.append(turn_to_schema(turn, role_name=role_label(conversation, turn.role)))

    referenced = conversation.asset_refs(selection)
    document = ExportDocumentSchema(
        exported_at=datetime.now(timezone.utc),
        selection=[turn.id for turn in selection],
        conversation=ConversationSchema(
            title=conversation.title,
            source_url=conversation.source_url,
            site=conversation.site,
            captured_at=conversation.captured_at,
            turns=turns,
        ),
        assets=[asset_to_schema(assets[url]) for url in referenced if url in assets],
    )
    data = document.model_dump_json(indent=2).encode("utf-8")
    return EncodedOutput(data=data, mime_type=MIME_TYPE, extension=EXTENSION)


def decode_json(data: bytes | str) -> DecodedExport:
    """Rebuild the Conversation from a JSON export.

    Raises:
        EncodingError: If the document is not a valid export.
    """
    try:
        document = ExportDocumentSchema.model_validate_json(data)
    except ValidationError as e:
        raise EncodingError("json", f"Invalid export document: {e.error_count()} errors") from e

    try:
        conversation = schema_to_conversation(document.conversation)
    except ValueError as e:
        raise EncodingError("json", str(e)) from e

    return DecodedExport(
        conversation=conversation,
        selection=list(document.selection),
        assets=list(document.assets),
        exported_at=document.exported_at,
    )
