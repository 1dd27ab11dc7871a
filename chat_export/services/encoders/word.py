"""Word (.docx) encoder built on python-docx.

Structural validity comes first: anything python-docx cannot embed (an
unsupported image type, math the converter rejects) degrades to readable
text in place instead of failing the document.
"""

from __future__ import annotations

import io
import logging
from typing import Any, Mapping, cast

import mathml2omml
from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml import OxmlElement, parse_xml
from docx.oxml.ns import qn
from docx.shared import Cm, Pt, RGBColor
from latex2mathml.converter import convert as latex_to_mathml

from chat_export.exceptions import EncodingError, ExportCancelledError
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
from chat_export.models.job import ExportOptions, ExportWarning
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import (
    EncodedOutput,
    asset_failure,
    build_header,
    checkpoint,
    display_url,
    inline_runs,
    resolved_asset,
    role_label,
)

logger = logging.getLogger(__name__)

MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
EXTENSION = "docx"

MATH_NS = "http://schemas.openxmlformats.org/officeDocument/2006/math"
WORD_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"

CODE_FONT = "Courier New"
PLACEHOLDER_COLOR = RGBColor(0xC6, 0x28, 0x28)
MUTED_COLOR = RGBColor(100, 100, 100)


class _DocxWriter:
    """Appends conversation content to one python-docx Document."""

    def __init__(self, conversation: Conversation, assets: Mapping[str, Asset]) -> None:
        self.conversation = conversation
        self.assets = assets
        self.doc = Document()
        self.warnings: list[ExportWarning] = []

        normal = self.doc.styles["Normal"]
        normal.font.name = "Calibri"
        normal.font.size = Pt(11)

    @property
    def content_width(self) -> int:
        section = self.doc.sections[0]
        return section.page_width - section.left_margin - section.right_margin

    def add_header(self, selection: list[Turn]) -> None:
        header = build_header(self.conversation, selection)
        self.doc.add_heading(header.title, level=1)
        meta = self.doc.add_paragraph()
        self._muted(meta.add_run(f"Exported: {header.export_date_label}"))
        meta.add_run().add_break()
        self._muted(meta.add_run(f"Turns: {header.turn_count}"))
        if header.source_url:
            meta.add_run().add_break()
            self._muted(meta.add_run(f"Source: {header.source_url}"))

    def add_turn(self, turn: Turn) -> None:
        self.doc.add_heading(role_label(self.conversation, turn.role), level=2)
        for run in inline_runs(turn.blocks):
            if len(run) == 1:
                self.add_block(run[0])
                continue
            paragraph = self.doc.add_paragraph()
            for position, block in enumerate(run):
                if position:
                    paragraph.add_run(" ")
                if isinstance(block, MathBlock):
                    self._add_inline_math(paragraph, block.latex_source)
                elif isinstance(block, TextBlock):
                    self._add_text_runs(paragraph, block.text)

    def add_block(self, block: Block) -> None:
        match block:
            case TextBlock(text=text):
                for chunk in text.split("\n\n"):
                    if chunk.strip():
                        self._add_text_runs(self.doc.add_paragraph(), chunk)
            case CodeBlock(text=text, language=language):
                self._add_code(text, language)
            case MathBlock(latex_source=latex, display_mode=DisplayMode.BLOCK):
                self._add_display_math(latex)
            case MathBlock(latex_source=latex):
                self._add_inline_math(self.doc.add_paragraph(), latex)
            case ImageBlock(alt=alt, asset_ref=ref, source_url=url):
                self._add_image(alt, ref, url)
            case AttachmentBlock(filename=name, mime_type=mime, asset_ref=ref):
                self._add_attachment(name, mime, ref)

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.doc.save(buffer)
        return buffer.getvalue()

    # --- block writers -------------------------------------------------

    def _add_text_runs(self, paragraph, text: str) -> None:
        lines = text.split("\n")
        for idx, line in enumerate(lines):
            run = paragraph.add_run(line)
            if idx < len(lines) - 1:
                run.add_break()

    def _add_code(self, text: str, language: str | None) -> None:
        if language:
            label = self.doc.add_paragraph()
            label_run = label.add_run(language.upper())
            label_run.font.name = CODE_FONT
            label_run.font.size = Pt(8)
            label_run.font.bold = True
            label_run.font.color.rgb = MUTED_COLOR
            label.paragraph_format.space_after = Pt(0)

        paragraph = self.doc.add_paragraph()
        paragraph.paragraph_format.left_indent = Cm(0.5)
        paragraph.paragraph_format.space_after = Pt(6)
        shading = OxmlElement("w:shd")
        shading.set(qn("w:val"), "clear")
        shading.set(qn("w:fill"), "F7F7F7")
        paragraph._element.get_or_add_pPr().append(shading)

        lines = text.split("\n")
        for idx, line in enumerate(lines):
            run = paragraph.add_run(line)
            run.font.name = CODE_FONT
            run.font.size = Pt(9)
            if idx < len(lines) - 1:
                run.add_break()

    def _add_display_math(self, latex: str) -> None:
        paragraph = self.doc.add_paragraph()
        paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
        try:
            omml = mathml2omml.convert(latex_to_mathml(latex))
            xml = f'<m:oMathPara xmlns:m="{MATH_NS}" xmlns:w="{WORD_NS}">{omml}</m:oMathPara>'
            cast(Any, paragraph)._p.append(parse_xml(xml))
        except Exception as e:
            logger.warning("Math conversion failed; keeping LaTeX source: %s", e)
            run = paragraph.add_run(latex)
            run.font.name = CODE_FONT

    def _add_inline_math(self, paragraph, latex: str) -> None:
        try:
            omml = mathml2omml.convert(latex_to_mathml(latex)).strip()
            if omml.startswith("<m:oMath") and "xmlns:m=" not in omml.split(">", 1)[0]:
                omml = omml.replace("<m:oMath", f'<m:oMath xmlns:m="{MATH_NS}"', 1)
            cast(Any, paragraph)._p.append(parse_xml(omml))
        except Exception as e:
            logger.warning("Inline math conversion failed; keeping LaTeX source: %s", e)
            paragraph.add_run(f"${latex}$")

    def _add_image(self, alt: str, ref: str, url: str) -> None:
        paragraph = self.doc.add_paragraph()
        asset = resolved_asset(self.assets, ref)
        if asset is None:
            reason = asset_failure(self.assets, ref) or "not loaded"
            self._placeholder(paragraph, f"[Image unavailable: {alt or display_url(url)} ({reason})]")
            return

        try:
            shape = paragraph.add_run().add_picture(io.BytesIO(asset.data or b""))
        except Exception as e:
            # e.g. SVG or WebP, which python-docx cannot embed
            logger.warning("Could not embed image %s in docx: %s", display_url(url), e)
            self.warnings.append(
                ExportWarning(
                    code="image_not_embedded",
                    message=f"Image {display_url(url)} ({asset.content_type}) could not be embedded in Word",
                )
            )
            self._placeholder(paragraph, f"[Image not embedded: {alt or display_url(url)}]")
            return

        max_width = self.content_width
        if shape.width > max_width:
            ratio = max_width / shape.width
            shape.width = int(max_width)
            shape.height = int(shape.height * ratio)

    def _add_attachment(self, name: str, mime: str, ref: str) -> None:
        paragraph = self.doc.add_paragraph()
        run = paragraph.add_run(f"Attachment: {name} ({mime})")
        run.italic = True
        if asset_failure(self.assets, ref) is not None:
            self._placeholder(paragraph, " [unavailable]")

    def _placeholder(self, paragraph, text: str) -> None:
        run = paragraph.add_run(text)
        run.italic = True
        run.font.color.rgb = PLACEHOLDER_COLOR

    def _muted(self, run) -> None:
        run.font.size = Pt(9)
        run.font.color.rgb = MUTED_COLOR


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    try:
        writer = _DocxWriter(conversation, assets)
        if options.include_header:
            writer.add_header(selection)
        for turn in selection:
            checkpoint(token)
            writer.add_turn(turn)
        data = writer.to_bytes()
    except ExportCancelledError:
        raise
    except Exception as e:
        raise EncodingError("word", f"Document generation failed: {e!s}") from e

    return EncodedOutput(
        data=data,
        mime_type=MIME_TYPE,
        extension=EXTENSION,
        warnings=writer.warnings,
    )
