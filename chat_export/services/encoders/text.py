"""Plain text encoder."""

from __future__ import annotations

from typing import Mapping

from chat_export.models.asset import Asset
from chat_export.models.conversation import (
    AttachmentBlock,
    CodeBlock,
    Conversation,
    ImageBlock,
    MathBlock,
    TextBlock,
    Turn,
)
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import (
    EncodedOutput,
    build_header,
    checkpoint,
    display_url,
    inline_runs,
    role_label,
)

MIME_TYPE = "text/plain; charset=utf-8"
EXTENSION = "txt"

TURN_SEPARATOR = "-" * 16


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    """Flatten turns to plain lines.

    Math is emitted as its raw LaTeX source; images and attachments become
    ``[Image: ...]`` / ``[Attachment: ...]`` placeholders, so the output
    never contains binary data and does not depend on asset resolution.
    """
    lines: list[str] = []

    if options.include_header:
        header = build_header(conversation, selection)
        lines.extend(
            [
                header.title,
                f"Exported: {header.export_date_label}",
                f"Turns: {header.turn_count}",
            ]
        )
        if header.source_url:
            lines.append(f"Source: {header.source_url}")
        lines.extend(["", "=" * 40, ""])

    for position, turn in enumerate(selection):
        checkpoint(token)
        if position:
            lines.extend(["", TURN_SEPARATOR, ""])
        lines.append(f"{role_label(conversation, turn.role)}:")
        for run in inline_runs(turn.blocks):
            lines.append(" ".join(_render(block) for block in run))

    text = "\n".join(lines).rstrip() + "\n"
    return EncodedOutput(data=text.encode("utf-8"), mime_type=MIME_TYPE, extension=EXTENSION)


def _render(block) -> str:
    match block:
        case TextBlock(text=text):
            return text
        case CodeBlock(text=text):
            return text
        case MathBlock(latex_source=latex):
            return latex
        case ImageBlock(alt=alt, source_url=url):
            label = display_url(url)
            return f"[Image: {alt} ({label})]" if alt else f"[Image: {label}]"
        case AttachmentBlock(filename=name):
            return f"[Attachment: {name}]"
    return ""
