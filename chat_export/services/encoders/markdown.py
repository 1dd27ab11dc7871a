"""Markdown encoder.

Exports turns to GitHub-flavored Markdown. Images are written as reference
links whose definitions (inline data URIs for resolved images) are collected
at the end of the document, keeping the body readable.
"""

from __future__ import annotations

import re
from typing import Mapping

from chat_export.models.asset import Asset
from chat_export.models.conversation import (
    AttachmentBlock,
    Block,
    CodeBlock,
    Conversation,
    DisplayMode,
    ImageBlock,
    MathBlock,
    TextBlock,
    Turn,
)
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import (
    EncodedOutput,
    asset_failure,
    build_header,
    checkpoint,
    inline_runs,
    resolved_asset,
    role_label,
)

MIME_TYPE = "text/markdown; charset=utf-8"
EXTENSION = "md"


class _References:
    """Numbered link definitions, one per distinct URL."""

    def __init__(self) -> None:
        self._labels: dict[str, str] = {}

    def label_for(self, prefix: str, target: str) -> str:
        if target not in self._labels:
            self._labels[target] = f"{prefix}-{len(self._labels) + 1}"
        return self._labels[target]

    def definitions(self) -> list[str]:
        return [f"[{label}]: {target}" for target, label in self._labels.items()]


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    lines: list[str] = []
    references = _References()

    # Header with metadata
    if options.include_header:
        header = build_header(conversation, selection)
        lines.extend(
            [
                f"# {_escape_inline(header.title)}",
                "",
                f"**Exported**: {header.export_date_label}  ",
                f"**Turns**: {header.turn_count}",
            ]
        )
        if header.source_url:
            lines[-1] += "  "
            lines.append(f"**Source**: <{header.source_url}>")
        lines.extend(["", "---", ""])

    for turn in selection:
        checkpoint(token)
        lines.append(f"### {role_label(conversation, turn.role)}")
        lines.append("")

        for run in inline_runs(turn.blocks):
            lines.append(" ".join(_render(block, assets, references) for block in run))
            lines.append("")

        attachments = [b for b in turn.blocks if isinstance(b, AttachmentBlock)]
        if attachments:
            lines.append("**Attachments**:")
            lines.extend(f"- {_escape_inline(a.filename)} ({a.mime_type})" for a in attachments)
            lines.append("")

        lines.append("---")
        lines.append("")

    definitions = references.definitions()
    if definitions:
        lines.extend(definitions)
        lines.append("")

    text = "\n".join(lines).rstrip() + "\n"
    return EncodedOutput(data=text.encode("utf-8"), mime_type=MIME_TYPE, extension=EXTENSION)


def _render(block: Block, assets: Mapping[str, Asset], references: _References) -> str:
    match block:
        case TextBlock(text=text, markdown=markdown):
            return markdown or text
        case CodeBlock(text=text, language=language):
            fence = _fence_for(text)
            return f"{fence}{language or ''}\n{text}\n{fence}"
        case MathBlock(latex_source=latex, display_mode=DisplayMode.BLOCK):
            return f"$$\n{latex}\n$$"
        case MathBlock(latex_source=latex):
            return f"${latex}$"
        case ImageBlock(alt=alt, asset_ref=ref, source_url=url):
            return _render_image(alt, ref, url, assets, references)
        case AttachmentBlock(filename=name, asset_ref=ref):
            label = _escape_inline(name)
            if ref and not ref.startswith("data:"):
                return f"[{label}][{references.label_for('attachment', ref)}]"
            return f"*{label}*"
    return ""


def _render_image(
    alt: str,
    ref: str,
    url: str,
    assets: Mapping[str, Asset],
    references: _References,
) -> str:
    alt_text = _escape_inline(alt or "image")
    asset = resolved_asset(assets, ref)
    if asset is not None:
        return f"![{alt_text}][{references.label_for('image', asset.data_uri)}]"

    failure = asset_failure(assets, ref)
    if failure is not None:
        # Link omitted: the image could not be loaded
        return f"*[Image unavailable: {alt_text}]*"

    # Never requested (asset resolution disabled): link to the source
    return f"![{alt_text}][{references.label_for('image', url)}]"


def _fence_for(code: str) -> str:
    longest = max((len(m) for m in re.findall(r"`{3,}", code)), default=0)
    return "`" * max(3, longest + 1)


def _escape_inline(value: str) -> str:
    return re.sub(r"([\\`*_\[\]])", r"\\\1", value)
