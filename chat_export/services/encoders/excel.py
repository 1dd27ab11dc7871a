"""Excel encoder: the tabular projection on a single openpyxl worksheet."""

from __future__ import annotations

import io
import logging
from typing import Mapping

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from chat_export.exceptions import EncodingError
from chat_export.models.asset import Asset
from chat_export.models.conversation import Conversation, Turn
from chat_export.models.job import ExportOptions, ExportWarning
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import EncodedOutput
from chat_export.services.encoders.tabular import COLUMNS, project_rows

logger = logging.getLogger(__name__)

MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXTENSION = "xlsx"

SHEET_TITLE = "Conversation"
MAX_CELL_CHARS = 32767  # Excel's hard limit per cell

HEADER_FILL = PatternFill("solid", fgColor="1E3A5F")
HEADER_FONT = Font(name="Calibri", bold=True, color="FFFFFF", size=11)
DATA_FONT = Font(name="Calibri", size=11)
WRAP_ALIGN = Alignment(horizontal="left", vertical="top", wrap_text=True)

COLUMN_WIDTHS = {
    "index": 8,
    "turn_id": 24,
    "role": 12,
    "block_kind": 16,
    "content": 90,
    "timestamp": 28,
}


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    warnings: list[ExportWarning] = []
    rows = project_rows(conversation, selection, options, token)

    try:
        wb = Workbook()
        ws = wb.active
        ws.title = SHEET_TITLE

        ws.append(list(COLUMNS))
        for cell in ws[1]:
            cell.fill = HEADER_FILL
            cell.font = HEADER_FONT

        truncated = 0
        for row in rows:
            values = []
            for value in row.as_tuple():
                if isinstance(value, str):
                    value = ILLEGAL_CHARACTERS_RE.sub("", value)
                    if len(value) > MAX_CELL_CHARS:
                        value = value[: MAX_CELL_CHARS - 1] + "…"
                        truncated += 1
                values.append(value)
            ws.append(values)

        for row_cells in ws.iter_rows(min_row=2):
            for cell in row_cells:
                cell.font = DATA_FONT
                cell.alignment = WRAP_ALIGN
                # Chat text such as "=== Summary ===" is never a formula
                if isinstance(cell.value, str):
                    cell.data_type = "s"

        for col_idx, name in enumerate(COLUMNS, start=1):
            ws.column_dimensions[get_column_letter(col_idx)].width = COLUMN_WIDTHS[name]
        ws.freeze_panes = "A2"

        buffer = io.BytesIO()
        wb.save(buffer)
    except Exception as e:
        raise EncodingError("excel", f"Workbook generation failed: {e!s}") from e

    if truncated:
        logger.warning("Truncated %d cells exceeding the Excel cell limit", truncated)
        warnings.append(
            ExportWarning(
                code="cell_truncated",
                message=f"{truncated} cells were longer than Excel allows and were truncated",
            )
        )

    return EncodedOutput(
        data=buffer.getvalue(),
        mime_type=MIME_TYPE,
        extension=EXTENSION,
        warnings=warnings,
    )
