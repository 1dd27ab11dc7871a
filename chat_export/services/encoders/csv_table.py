"""CSV encoder: the tabular projection written with the csv module."""

from __future__ import annotations

import csv
import io
from typing import Mapping

from chat_export.models.asset import Asset
from chat_export.models.conversation import Conversation, Turn
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import EncodedOutput
from chat_export.services.encoders.tabular import COLUMNS, project_rows

MIME_TYPE = "text/csv; charset=utf-8"
EXTENSION = "csv"

# Leading characters spreadsheet apps evaluate as a formula
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def escape_formula(value):
    if isinstance(value, str) and value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    """Header row plus one data row per turn (or per block).

    Fields containing delimiters, quotes or newlines are quoted and inner
    quotes doubled (RFC 4180). The UTF-8 BOM lets spreadsheet apps detect
    the encoding. Text that a spreadsheet would read as a formula is
    prefixed with a single quote.
    """
    buffer = io.StringIO(newline="")
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerow(COLUMNS)
    for row in project_rows(conversation, selection, options, token):
        writer.writerow([escape_formula(value) for value in row.as_tuple()])

    return EncodedOutput(
        data=buffer.getvalue().encode("utf-8-sig"),
        mime_type=MIME_TYPE,
        extension=EXTENSION,
    )
