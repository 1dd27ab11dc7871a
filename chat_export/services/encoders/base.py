"""Shared types and helpers for the format encoders.

Every encoder is a plain function with the signature::

    encode(conversation, selection, assets, options, token=None) -> EncodedOutput

``selection`` is the ordered list of turns to export; ``assets`` maps asset
URLs to Assets (possibly failed or missing). Encoders never mutate any of
their inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Protocol

from chat_export.models.asset import Asset
from chat_export.models.conversation import (
    Block,
    Conversation,
    DisplayMode,
    MathBlock,
    Role,
    TextBlock,
    Turn,
)
from chat_export.models.job import ExportOptions, ExportWarning
from chat_export.services.cancellation import CancellationToken
from chat_export.services.profiles import get_profile


@dataclass
class EncodedOutput:
    """Bytes produced by one encoder plus what is needed to deliver them."""

    data: bytes
    mime_type: str
    extension: str
    warnings: list[ExportWarning] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class Encoder(Protocol):
    def __call__(
        self,
        conversation: Conversation,
        selection: list[Turn],
        assets: Mapping[str, Asset],
        options: ExportOptions,
        token: CancellationToken | None = None,
    ) -> EncodedOutput: ...


@dataclass(frozen=True)
class DocumentHeader:
    """Title block shown at the top of human-readable formats."""

    title: str
    export_date: datetime
    turn_count: int
    source_url: str = ""

    @property
    def export_date_label(self) -> str:
        return self.export_date.strftime("%Y-%m-%d %H:%M:%S UTC")


def build_header(conversation: Conversation, selection: list[Turn]) -> DocumentHeader:
    profile = get_profile(conversation.site)
    return DocumentHeader(
        title=conversation.title or profile.default_title,
        export_date=datetime.now(timezone.utc),
        turn_count=len(selection),
        source_url=conversation.source_url,
    )


def role_label(conversation: Conversation, role: Role) -> str:
    """Display name for a role ("You", "ChatGPT", ...) per site profile."""
    return get_profile(conversation.site).role_label(role.value)


def resolved_asset(assets: Mapping[str, Asset], ref: str) -> Asset | None:
    """The Asset for ``ref`` if it resolved with data, otherwise None."""
    asset = assets.get(ref)
    if asset is not None and asset.is_resolved:
        return asset
    return None


def asset_failure(assets: Mapping[str, Asset], ref: str) -> str | None:
    """Failure detail for ``ref``, or None when it resolved or was never requested."""
    asset = assets.get(ref)
    if asset is None or asset.is_resolved:
        return None
    return asset.error or "not loaded"


def display_url(url: str) -> str:
    """A URL short enough for a placeholder (inline data is not repeated)."""
    if url.startswith("data:"):
        return "embedded image"
    return url


def checkpoint(token: CancellationToken | None) -> None:
    """Cancellation point between encoder chunks."""
    if token is not None:
        token.raise_if_cancelled()


def is_inline_math(block: Block) -> bool:
    return isinstance(block, MathBlock) and block.display_mode is DisplayMode.INLINE


def inline_runs(blocks: tuple[Block, ...] | list[Block]) -> list[list[Block]]:
    """Group blocks so inline math stays in the sentence it was written in.

    An inline MathBlock joins the TextBlock (or inline math) directly before
    and after it. Every other block forms a run of its own. Block order is
    unchanged.
    """
    runs: list[list[Block]] = []
    for block in blocks:
        if runs and _joins(runs[-1][-1], block):
            runs[-1].append(block)
        else:
            runs.append([block])
    return runs


def _joins(previous: Block, block: Block) -> bool:
    if is_inline_math(previous):
        return isinstance(block, TextBlock) or is_inline_math(block)
    return isinstance(previous, TextBlock) and is_inline_math(block)
