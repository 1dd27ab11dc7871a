"""Self-contained HTML encoder.

The page needs no network access to render: resolved images are embedded as
``data:`` URIs, math is converted to MathML with latex2mathml, and assets
that failed show a visible placeholder. The screenshot encoder renders this
same page.
"""

from __future__ import annotations

import html as html_lib
import logging
from typing import Mapping

from latex2mathml.converter import convert as latex_to_mathml

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

logger = logging.getLogger(__name__)

MIME_TYPE = "text/html; charset=utf-8"
EXTENSION = "html"

CSS_STYLES = """
    body {
        font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif;
        font-size: 15px;
        line-height: 1.55;
        color: #222;
        background: #fff;
        margin: 0;
        padding: 24px;
    }
    main { max-width: 860px; margin: 0 auto; }
    h1 {
        font-size: 24px;
        border-bottom: 2px solid #0066cc;
        padding-bottom: 0.4em;
    }
    .metadata { font-size: 13px; color: #666; margin-bottom: 2em; }
    .metadata p { margin: 0.2em 0; }
    .turn { margin-bottom: 1.5em; }
    .turn-header {
        font-weight: bold;
        padding: 0.4em 0.6em;
        border-radius: 4px;
        margin-bottom: 0.5em;
    }
    .turn-header.user { background-color: #e3f2fd; color: #1565c0; }
    .turn-header.assistant { background-color: #f3e5f5; color: #7b1fa2; }
    .turn-header.system { background-color: #eeeeee; color: #424242; }
    .turn-content { padding: 0 0.8em; border-left: 3px solid #ddd; }
    pre {
        background-color: #f5f5f5;
        padding: 0.8em;
        border-radius: 4px;
        white-space: pre-wrap;
        word-break: break-word;
        font-family: 'SF Mono', Monaco, Consolas, monospace;
        font-size: 13px;
    }
    .code-language { font-size: 11px; color: #888; text-transform: uppercase; }
    .math-block { text-align: center; margin: 0.8em 0; }
    .math-source { font-family: 'SF Mono', Monaco, Consolas, monospace; }
    img { max-width: 100%; height: auto; }
    .asset-placeholder {
        display: inline-block;
        border: 1px dashed #c62828;
        color: #c62828;
        background: #fff5f5;
        padding: 0.4em 0.6em;
        font-size: 13px;
    }
    .attachment { font-size: 14px; }
"""


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    document = render_document(conversation, selection, assets, options, token)
    return EncodedOutput(data=document.encode("utf-8"), mime_type=MIME_TYPE, extension=EXTENSION)


def render_document(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> str:
    """Build the complete HTML document as a string."""
    header = build_header(conversation, selection)
    lines: list[str] = [
        "<!DOCTYPE html>",
        "<html>",
        "<head>",
        "<meta charset='utf-8'>",
        f"<title>{html_lib.escape(header.title)}</title>",
        f"<style>{CSS_STYLES}</style>",
        "</head>",
        "<body>",
        "<main>",
    ]

    if options.include_header:
        lines.extend(
            [
                f"<h1>{html_lib.escape(header.title)}</h1>",
                "<div class='metadata'>",
                f"<p><strong>Exported:</strong> {header.export_date_label}</p>",
                f"<p><strong>Turns:</strong> {header.turn_count}</p>",
            ]
        )
        if header.source_url:
            lines.append(f"<p><strong>Source:</strong> {html_lib.escape(header.source_url)}</p>")
        lines.append("</div>")

    for turn in selection:
        checkpoint(token)
        lines.append(render_turn(conversation, turn, assets))

    lines.extend(["</main>", "</body>", "</html>"])
    return "\n".join(lines)


def render_turn(conversation: Conversation, turn: Turn, assets: Mapping[str, Asset]) -> str:
    role = turn.role.value
    parts = [
        f"<section class='turn {role}' data-turn-id='{html_lib.escape(turn.id, quote=True)}'>",
        f"<div class='turn-header {role}'>{html_lib.escape(role_label(conversation, turn.role))}</div>",
        "<div class='turn-content'>",
    ]
    for run in inline_runs(turn.blocks):
        if len(run) == 1 and not isinstance(run[0], TextBlock):
            parts.append(render_block(run[0], assets))
        else:
            parts.append("<p>" + " ".join(_render_inline(b) for b in run) + "</p>")
    parts.extend(["</div>", "</section>"])
    return "\n".join(parts)


def render_block(block: Block, assets: Mapping[str, Asset]) -> str:
    """HTML for one standalone (non-text) block."""
    match block:
        case CodeBlock(text=text, language=language):
            label = f"<div class='code-language'>{html_lib.escape(language)}</div>" if language else ""
            css_class = f" class='language-{html_lib.escape(language, quote=True)}'" if language else ""
            return f"{label}<pre><code{css_class}>{html_lib.escape(text)}</code></pre>"
        case MathBlock(latex_source=latex, display_mode=DisplayMode.BLOCK):
            return f"<div class='math-block'>{render_math(latex, display=True)}</div>"
        case MathBlock(latex_source=latex):
            return render_math(latex, display=False)
        case ImageBlock(alt=alt, asset_ref=ref):
            return _render_image(alt, ref, assets)
        case AttachmentBlock(filename=name, asset_ref=ref):
            return _render_attachment(name, ref, assets)
        case TextBlock():
            return "<p>" + _render_inline(block) + "</p>"
    return ""


def render_math(latex: str, display: bool) -> str:
    """MathML for ``latex``; the escaped source when conversion fails."""
    try:
        return latex_to_mathml(latex, display="block" if display else "inline")
    except Exception as e:
        logger.warning("Math conversion failed; keeping LaTeX source: %s", e)
        return f"<code class='math-source'>{html_lib.escape(latex)}</code>"


def _render_inline(block: Block) -> str:
    if isinstance(block, MathBlock):
        return render_math(block.latex_source, display=False)
    if isinstance(block, TextBlock):
        paragraphs = block.text.split("\n\n")
        rendered = [html_lib.escape(p).replace("\n", "<br>") for p in paragraphs]
        return "<br><br>".join(rendered)
    return ""


def _render_image(alt: str, ref: str, assets: Mapping[str, Asset]) -> str:
    asset = resolved_asset(assets, ref)
    alt_attr = html_lib.escape(alt, quote=True)
    if asset is not None:
        return f"<figure><img src='{asset.data_uri}' alt='{alt_attr}'></figure>"
    if ref.startswith("data:"):
        return f"<figure><img src='{html_lib.escape(ref, quote=True)}' alt='{alt_attr}'></figure>"

    reason = asset_failure(assets, ref) or "not loaded"
    label = html_lib.escape(alt or "image")
    return (
        f"<div class='asset-placeholder' data-asset-url='{html_lib.escape(ref, quote=True)}'>"
        f"Image unavailable: {label} ({html_lib.escape(reason)})</div>"
    )


def _render_attachment(name: str, ref: str, assets: Mapping[str, Asset]) -> str:
    asset = resolved_asset(assets, ref)
    label = html_lib.escape(name)
    if asset is not None:
        return (
            f"<p class='attachment'>Attachment: <a download='{html_lib.escape(name, quote=True)}' "
            f"href='{asset.data_uri}'>{label}</a></p>"
        )
    return f"<p class='attachment'><span class='asset-placeholder'>Attachment unavailable: {label}</span></p>"
