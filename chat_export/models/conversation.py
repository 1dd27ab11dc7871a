"""Canonical conversation model shared by every encoder.

Blocks form a tagged variant: each block dataclass carries a ``kind`` tag and
encoders pattern-match on the concrete type.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union


class Role(str, enum.Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class DisplayMode(str, enum.Enum):
    """Layout of a math block."""

    INLINE = "inline"
    BLOCK = "block"


@dataclass(frozen=True)
class TextBlock:
    """Prose content. ``markdown`` keeps inline formatting when the source had any."""

    text: str
    markdown: str | None = None
    kind: str = field(default="text", init=False)


@dataclass(frozen=True)
class CodeBlock:
    """Preformatted source code."""

    text: str
    language: str | None = None
    kind: str = field(default="code", init=False)


@dataclass(frozen=True)
class MathBlock:
    """Raw LaTeX source, never pre-rendered."""

    latex_source: str
    display_mode: DisplayMode = DisplayMode.INLINE
    kind: str = field(default="math", init=False)


@dataclass(frozen=True)
class ImageBlock:
    """Image reference; bytes live in the asset cache under ``asset_ref``."""

    source_url: str
    asset_ref: str
    alt: str = ""
    kind: str = field(default="image", init=False)


@dataclass(frozen=True)
class AttachmentBlock:
    """Downloadable file referenced from a message."""

    filename: str
    mime_type: str
    asset_ref: str
    source_url: str = ""
    kind: str = field(default="attachment", init=False)


Block = Union[TextBlock, CodeBlock, MathBlock, ImageBlock, AttachmentBlock]

MEDIA_BLOCK_TYPES = (ImageBlock, AttachmentBlock)


@dataclass(frozen=True)
class Turn:
    """One message unit attributed to a role."""

    id: str
    role: Role
    blocks: tuple[Block, ...]

    @property
    def preview(self) -> str:
        """First 100 characters of the turn's readable content."""
        return block_plain_text(self.blocks)[:100]

    def asset_refs(self) -> list[str]:
        """Asset URLs referenced by this turn, in block order."""
        return [b.asset_ref for b in self.blocks if isinstance(b, MEDIA_BLOCK_TYPES)]


@dataclass(frozen=True)
class Conversation:
    """Ordered sequence of turns scraped from one snapshot."""

    turns: tuple[Turn, ...]
    title: str = ""
    source_url: str = ""
    site: str = "generic"
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for turn in self.turns:
            if turn.id in seen:
                raise ValueError(f"Duplicate turn id in conversation: {turn.id}")
            seen.add(turn.id)

    @property
    def turn_ids(self) -> list[str]:
        return [turn.id for turn in self.turns]

    def get_turn(self, turn_id: str) -> Turn | None:
        for turn in self.turns:
            if turn.id == turn_id:
                return turn
        return None

    def asset_refs(self, turns: list[Turn] | None = None) -> list[str]:
        """Distinct asset URLs in first-reference order."""
        ordered: dict[str, None] = {}
        for turn in turns if turns is not None else self.turns:
            for ref in turn.asset_refs():
                ordered.setdefault(ref, None)
        return list(ordered)


def block_plain_text(blocks: tuple[Block, ...] | list[Block]) -> str:
    """Flatten blocks into a single readable string (used for previews and tables)."""
    parts: list[str] = []
    for block in blocks:
        match block:
            case TextBlock(text=text):
                parts.append(text)
            case CodeBlock(text=text):
                parts.append(text)
            case MathBlock(latex_source=latex, display_mode=DisplayMode.BLOCK):
                parts.append(f"$${latex}$$")
            case MathBlock(latex_source=latex):
                parts.append(f"${latex}$")
            case ImageBlock(alt=alt, source_url=url):
                parts.append(f"[Image: {alt or url}]")
            case AttachmentBlock(filename=name):
                parts.append(f"[Attachment: {name}]")
    return " ".join(p.strip() for p in parts if p.strip())
