"""Row projection shared by the CSV and Excel encoders."""

from __future__ import annotations

from dataclasses import astuple, dataclass

from chat_export.models.conversation import Block, Conversation, Turn, block_plain_text
from chat_export.models.job import ExportOptions, RowGranularity
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import checkpoint

COLUMNS = ("index", "turn_id", "role", "block_kind", "content", "timestamp")


@dataclass(frozen=True)
class TableRow:
    index: int
    turn_id: str
    role: str
    block_kind: str
    content: str
    timestamp: str

    def as_tuple(self) -> tuple:
        return astuple(self)


def block_summary(block: Block) -> str:
    return block_plain_text([block])


def turn_summary(turn: Turn) -> str:
    """Readable content of a whole turn, one paragraph per block."""
    return "\n\n".join(s for s in (block_summary(b) for b in turn.blocks) if s)


def project_rows(
    conversation: Conversation,
    selection: list[Turn],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> list[TableRow]:
    """One row per selected turn, or one per block of the selected turns.

    ``timestamp`` is the capture time of the snapshot in ISO-8601; the chat
    pages do not expose per-message times.
    """
    timestamp = conversation.captured_at.isoformat()
    rows: list[TableRow] = []

    for turn in selection:
        checkpoint(token)
        if options.rows_per is RowGranularity.BLOCK:
            for block in turn.blocks:
                rows.append(
                    TableRow(
                        index=len(rows) + 1,
                        turn_id=turn.id,
                        role=turn.role.value,
                        block_kind=block.kind,
                        content=block_summary(block),
                        timestamp=timestamp,
                    )
                )
        else:
            kinds = list(dict.fromkeys(block.kind for block in turn.blocks))
            rows.append(
                TableRow(
                    index=len(rows) + 1,
                    turn_id=turn.id,
                    role=turn.role.value,
                    block_kind=",".join(kinds),
                    content=turn_summary(turn),
                    timestamp=timestamp,
                )
            )
    return rows
