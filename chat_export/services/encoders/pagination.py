"""Deterministic page layout for the PDF encoder.

Blocks are measured with a fixed metric instead of real font shaping, so
the same conversation on the same geometry always produces the same pages:

* text wraps at ``content_width / (font_size * glyph_factor)`` columns, where
  wide (CJK) characters take two columns, and advances by a fixed line height;
* images are scaled to the content width (never up) and capped at one page;
* text may break between lines, while images, code and display math are
  atomic: when one does not fit in the remaining space it starts a new page.

A code block taller than a whole page cannot be kept atomic; it is split at
line boundaries and a warning is recorded.
"""

from __future__ import annotations

import io
import logging
import textwrap
import unicodedata
from dataclasses import dataclass, field
from typing import Mapping

from PIL import Image, UnidentifiedImageError

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
from chat_export.models.job import ExportWarning
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import (
    DocumentHeader,
    asset_failure,
    checkpoint,
    display_url,
    inline_runs,
    resolved_asset,
    role_label,
)

logger = logging.getLogger(__name__)

ATOMIC_KINDS = frozenset({"image", "code", "math", "attachment", "heading"})


@dataclass(frozen=True)
class PageGeometry:
    """Page size and text metrics, all in PostScript points."""

    width: float = 595.0  # A4
    height: float = 842.0
    margin: float = 56.0
    font_size: float = 10.5
    line_height: float = 15.0
    code_font_size: float = 9.0
    code_line_height: float = 12.0
    glyph_factor: float = 0.55  # average glyph width as a fraction of font size
    code_glyph_factor: float = 0.6
    heading_height: float = 26.0
    title_height: float = 34.0
    block_gap: float = 6.0
    block_padding: float = 8.0  # vertical padding around code and math boxes

    @property
    def content_width(self) -> float:
        return self.width - 2 * self.margin

    @property
    def content_height(self) -> float:
        return self.height - 2 * self.margin

    @property
    def text_columns(self) -> int:
        return max(10, int(self.content_width // (self.font_size * self.glyph_factor)))

    @property
    def code_columns(self) -> int:
        return max(10, int((self.content_width - 12) // (self.code_font_size * self.code_glyph_factor)))

    @property
    def code_lines_per_page(self) -> int:
        return max(1, int((self.content_height - self.block_padding) // self.code_line_height))


@dataclass
class PlacedItem:
    """One laid-out piece of content on a page."""

    kind: str  # title, meta, heading, text, code, math, image, attachment
    height: float
    turn_id: str | None = None
    role: str | None = None
    block_index: int | None = None
    lines: list[str] = field(default_factory=list)
    block: Block | None = None
    image_width: float = 0.0
    fragment: int = 0
    fragment_count: int = 1
    placeholder: str | None = None

    @property
    def is_atomic(self) -> bool:
        return self.kind in ATOMIC_KINDS


@dataclass
class Page:
    number: int
    items: list[PlacedItem] = field(default_factory=list)
    used: float = 0.0


@dataclass
class PaginationResult:
    pages: list[Page]
    warnings: list[ExportWarning]


def display_width(line: str) -> int:
    """Columns taken by ``line``; East Asian wide and fullwidth characters count twice."""
    return sum(2 if unicodedata.east_asian_width(ch) in ("W", "F") else 1 for ch in line)


def _split_wide(line: str, columns: int) -> list[str]:
    if display_width(line) <= columns:
        return [line]
    pieces: list[str] = []
    current = ""
    used = 0
    for ch in line:
        width = display_width(ch)
        if current and used + width > columns:
            pieces.append(current.rstrip())
            current, used = "", 0
            if ch.isspace():
                continue
        current += ch
        used += width
    if current:
        pieces.append(current)
    return pieces


def wrap_lines(text: str, columns: int) -> list[str]:
    """Wrap ``text`` to ``columns``, keeping explicit line breaks."""
    lines: list[str] = []
    for raw in text.split("\n"):
        if not raw.strip():
            lines.append("")
            continue
        wrapped = textwrap.wrap(
            raw,
            width=columns,
            break_long_words=True,
            break_on_hyphens=False,
            replace_whitespace=False,
            drop_whitespace=True,
        )
        # textwrap counts characters, so lines with wide characters may still overflow
        lines.extend(piece for line in wrapped or [""] for piece in _split_wide(line, columns))
    # Leading and trailing blank lines carry no content
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return lines


class Paginator:
    """Lay out a selection onto fixed-size pages.

    Usage:
        result = Paginator(PageGeometry(), assets).paginate(conversation, selection, header)
        for page in result.pages:
            ...
    """

    def __init__(self, geometry: PageGeometry | None = None, assets: Mapping[str, Asset] | None = None):
        self.geometry = geometry or PageGeometry()
        self.assets = assets or {}
        self._pages: list[Page] = []
        self._warnings: list[ExportWarning] = []

    def paginate(
        self,
        conversation: Conversation,
        selection: list[Turn],
        header: DocumentHeader | None = None,
        token: CancellationToken | None = None,
    ) -> PaginationResult:
        self._pages = [Page(number=1)]
        self._warnings = []
        g = self.geometry

        if header is not None:
            self._place_atomic(PlacedItem(kind="title", height=g.title_height, lines=[header.title]))
            meta = [f"Exported: {header.export_date_label}", f"Turns: {header.turn_count}"]
            self._place_atomic(PlacedItem(kind="meta", height=len(meta) * g.line_height, lines=meta))

        for turn in selection:
            checkpoint(token)
            self._place_turn(conversation, turn)

        logger.debug("Paginated %d turns onto %d pages", len(selection), len(self._pages))
        return PaginationResult(pages=self._pages, warnings=self._warnings)

    # ------------------------------------------------------------------

    @property
    def _page(self) -> Page:
        return self._pages[-1]

    @property
    def _remaining(self) -> float:
        return self.geometry.content_height - self._page.used

    def _new_page(self) -> None:
        self._pages.append(Page(number=len(self._pages) + 1))

    def _gap(self) -> float:
        return self.geometry.block_gap if self._page.items else 0.0

    def _append(self, item: PlacedItem) -> None:
        self._page.used += self._gap() + item.height
        self._page.items.append(item)

    def _place_atomic(self, item: PlacedItem, keep_with: float = 0.0) -> None:
        needed = self._gap() + item.height + keep_with
        if needed > self._remaining and self._page.items:
            self._new_page()
        self._append(item)

    def _place_turn(self, conversation: Conversation, turn: Turn) -> None:
        g = self.geometry
        heading = PlacedItem(
            kind="heading",
            height=g.heading_height,
            turn_id=turn.id,
            role=turn.role.value,
            lines=[role_label(conversation, turn.role)],
        )
        # A heading never ends a page on its own
        self._place_atomic(heading, keep_with=g.line_height)

        block_index = 0
        for run in inline_runs(turn.blocks):
            first = run[0]
            if len(run) > 1 or isinstance(first, TextBlock) or (
                isinstance(first, MathBlock) and first.display_mode is DisplayMode.INLINE
            ):
                self._place_text(turn, block_index, _run_text(run))
            else:
                self._place_block(turn, block_index, first)
            block_index += len(run)

    def _place_text(self, turn: Turn, block_index: int, text: str) -> None:
        g = self.geometry
        lines = wrap_lines(text, g.text_columns)
        fragment = 0
        while lines:
            fit = int((self._remaining - self._gap()) // g.line_height)
            if fit <= 0:
                self._new_page()
                continue
            chunk, lines = lines[:fit], lines[fit:]
            self._append(
                PlacedItem(
                    kind="text",
                    height=len(chunk) * g.line_height,
                    turn_id=turn.id,
                    role=turn.role.value,
                    block_index=block_index,
                    lines=chunk,
                    fragment=fragment,
                )
            )
            fragment += 1
            if lines:
                self._new_page()

    def _place_block(self, turn: Turn, block_index: int, block: Block) -> None:
        g = self.geometry
        common = {"turn_id": turn.id, "role": turn.role.value, "block_index": block_index, "block": block}

        match block:
            case CodeBlock(text=text):
                lines = wrap_lines(text, g.code_columns) or [""]
                if len(lines) > g.code_lines_per_page:
                    self._place_oversized_code(lines, common)
                    return
                height = len(lines) * g.code_line_height + g.block_padding
                self._place_atomic(PlacedItem(kind="code", height=height, lines=lines, **common))

            case MathBlock(latex_source=latex):
                lines = wrap_lines(latex, g.code_columns) or [""]
                max_lines = g.code_lines_per_page
                height = min(len(lines), max_lines) * g.code_line_height + g.block_padding
                self._place_atomic(PlacedItem(kind="math", height=height, lines=lines[:max_lines], **common))

            case ImageBlock(alt=alt, asset_ref=ref, source_url=url):
                self._place_image(alt, ref, url, common)

            case AttachmentBlock(filename=name, mime_type=mime, asset_ref=ref):
                label = f"Attachment: {name} ({mime})"
                if asset_failure(self.assets, ref) is not None:
                    label += " [unavailable]"
                self._place_atomic(PlacedItem(kind="attachment", height=g.line_height, lines=[label], **common))

    def _place_oversized_code(self, lines: list[str], common: dict) -> None:
        g = self.geometry
        per_page = g.code_lines_per_page
        chunks = [lines[i : i + per_page] for i in range(0, len(lines), per_page)]
        self._warnings.append(
            ExportWarning(
                code="code_block_split",
                message=(
                    f"A code block of {len(lines)} lines is taller than a page "
                    f"and was split across {len(chunks)} pages"
                ),
            )
        )
        logger.warning("Splitting code block of %d lines across %d pages", len(lines), len(chunks))
        for idx, chunk in enumerate(chunks):
            if self._page.items:
                self._new_page()
            self._append(
                PlacedItem(
                    kind="code",
                    height=len(chunk) * g.code_line_height + g.block_padding,
                    lines=chunk,
                    fragment=idx,
                    fragment_count=len(chunks),
                    **common,
                )
            )

    def _place_image(self, alt: str, ref: str, url: str, common: dict) -> None:
        g = self.geometry
        asset = resolved_asset(self.assets, ref)
        size = _image_size(asset.data) if asset is not None and asset.is_image else None

        if size is None:
            reason = asset_failure(self.assets, ref) or (
                "unsupported image" if asset is not None else "not loaded"
            )
            placeholder = f"[Image unavailable: {alt or display_url(url)} ({reason})]"
            self._place_atomic(
                PlacedItem(kind="image", height=g.line_height * 2, placeholder=placeholder, **common)
            )
            return

        px_width, px_height = size
        # 1px = 0.75pt at 96 dpi; never upscale
        width = min(g.content_width, px_width * 0.75)
        height = px_height * (width / px_width)
        if height > g.content_height:
            width = width * (g.content_height / height)
            height = g.content_height
        self._place_atomic(PlacedItem(kind="image", height=height, image_width=width, **common))


def _run_text(run: list[Block]) -> str:
    parts: list[str] = []
    for block in run:
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, MathBlock):
            parts.append(f"${block.latex_source}$")
    return " ".join(parts)


def _image_size(data: bytes | None) -> tuple[int, int] | None:
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    if width <= 0 or height <= 0:
        return None
    return width, height
