"""PDF encoder.

Pages are decided by the deterministic Paginator; each laid-out page is
rendered as one fixed-height HTML section and converted with weasyprint, so
the PDF has exactly the pages the layout computed.
"""

from __future__ import annotations

import html as html_lib
import logging
from typing import Mapping

from chat_export.exceptions import EncodingError, ExportCancelledError
from chat_export.models.asset import Asset
from chat_export.models.conversation import Conversation, Turn
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import EncodedOutput, build_header, checkpoint, resolved_asset
from chat_export.services.encoders.pagination import Page, PageGeometry, Paginator, PlacedItem

logger = logging.getLogger(__name__)

# Conditional import - weasyprint needs native libraries that may be missing
try:
    from weasyprint import CSS, HTML

    WEASYPRINT_AVAILABLE = True
except (ImportError, OSError):
    WEASYPRINT_AVAILABLE = False
    HTML = None  # type: ignore[misc, assignment]
    CSS = None  # type: ignore[misc, assignment]

MIME_TYPE = "application/pdf"
EXTENSION = "pdf"

GEOMETRY = PageGeometry()


def _stylesheet(g: PageGeometry) -> str:
    return f"""
        @page {{
            size: {g.width}pt {g.height}pt;
            margin: {g.margin}pt;
        }}
        body {{
            margin: 0;
            font-family: 'Helvetica Neue', Arial, 'DejaVu Sans', sans-serif;
            font-size: {g.font_size}pt;
            line-height: {g.line_height}pt;
            color: #333;
        }}
        .page {{
            height: {g.content_height}pt;
            overflow: hidden;
            break-after: page;
        }}
        .page:last-child {{ break-after: auto; }}
        .item {{ overflow: hidden; margin: 0; }}
        .gap {{ margin-top: {g.block_gap}pt; }}
        .title {{
            font-size: 18pt;
            line-height: {g.title_height}pt;
            font-weight: bold;
            color: #1a1a1a;
            border-bottom: 2px solid #0066cc;
        }}
        .meta {{ color: #666; }}
        .heading {{
            font-weight: bold;
            line-height: {g.heading_height}pt;
            padding: 0 6pt;
            border-radius: 3pt;
        }}
        .heading.user {{ background-color: #e3f2fd; color: #1565c0; }}
        .heading.assistant {{ background-color: #f3e5f5; color: #7b1fa2; }}
        .heading.system {{ background-color: #eeeeee; color: #424242; }}
        .text {{ white-space: pre-wrap; }}
        .code, .math {{
            background-color: #f5f5f5;
            font-family: 'DejaVu Sans Mono', Consolas, monospace;
            font-size: {g.code_font_size}pt;
            line-height: {g.code_line_height}pt;
            padding: {g.block_padding / 2}pt 6pt;
            white-space: pre;
            box-sizing: border-box;
        }}
        .math {{ text-align: center; }}
        .image img {{ display: block; }}
        .placeholder {{ color: #c62828; font-style: italic; border: 1px dashed #c62828; padding: 2pt 4pt; }}
        .attachment {{ font-style: italic; }}
    """


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    """Generate the PDF.

    Raises:
        EncodingError: If weasyprint is not available or rendering fails.
    """
    if not WEASYPRINT_AVAILABLE:
        raise EncodingError("pdf", "PDF export requires the weasyprint library")

    header = build_header(conversation, selection) if options.include_header else None
    layout = Paginator(GEOMETRY, assets).paginate(conversation, selection, header, token)

    try:
        html_content = render_pages(layout.pages, assets, token)
        checkpoint(token)
        pdf_bytes = HTML(string=html_content).write_pdf(stylesheets=[CSS(string=_stylesheet(GEOMETRY))])
    except (EncodingError, ExportCancelledError):
        raise
    except Exception as e:
        raise EncodingError("pdf", f"PDF generation failed: {e!s}") from e

    logger.info("Rendered PDF with %d pages (%d bytes)", len(layout.pages), len(pdf_bytes))
    return EncodedOutput(
        data=pdf_bytes,
        mime_type=MIME_TYPE,
        extension=EXTENSION,
        warnings=list(layout.warnings),
    )


def render_pages(
    pages: list[Page],
    assets: Mapping[str, Asset],
    token: CancellationToken | None = None,
) -> str:
    """HTML with one fixed-height section per laid-out page."""
    lines = ["<!DOCTYPE html>", "<html>", "<head><meta charset='utf-8'></head>", "<body>"]
    for page in pages:
        checkpoint(token)
        lines.append(f"<section class='page' data-page='{page.number}'>")
        for position, item in enumerate(page.items):
            lines.append(_render_item(item, assets, gap=position > 0))
        lines.append("</section>")
    lines.extend(["</body>", "</html>"])
    return "\n".join(lines)


def _render_item(item: PlacedItem, assets: Mapping[str, Asset], gap: bool) -> str:
    classes = ["item", item.kind]
    if gap:
        classes.append("gap")
    if item.kind == "heading" and item.role:
        classes.append(item.role)
    style = f"height: {item.height:.2f}pt;"
    open_tag = f"<div class='{' '.join(classes)}' style='{style}'>"

    match item.kind:
        case "image":
            ref = getattr(item.block, "asset_ref", "")
            asset = resolved_asset(assets, ref)
            if item.placeholder is not None or asset is None:
                text = html_lib.escape(item.placeholder or "[Image unavailable]")
                return f"{open_tag}<span class='placeholder'>{text}</span></div>"
            alt = html_lib.escape(getattr(item.block, "alt", ""), quote=True)
            return (
                f"{open_tag}<img src='{asset.data_uri}' alt='{alt}' "
                f"style='width: {item.image_width:.2f}pt; height: {item.height:.2f}pt;'></div>"
            )
        case "code" | "math":
            return open_tag + html_lib.escape("\n".join(item.lines)) + "</div>"
        case _:
            return open_tag + "<br>".join(html_lib.escape(line) for line in item.lines) + "</div>"
