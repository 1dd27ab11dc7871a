"""Format encoders.

One encode function per output format, all consuming the same Conversation
model. Use ``get_encoder`` to look one up by ExportFormat.
"""

from __future__ import annotations

from dataclasses import dataclass

from chat_export.exceptions import InvalidExportFormatError
from chat_export.models.job import ExportFormat
from chat_export.services.encoders import (
    csv_table,
    excel,
    html_page,
    json_dump,
    markdown,
    pdf,
    screenshot,
    text,
    word,
)
from chat_export.services.encoders.base import EncodedOutput, Encoder


@dataclass(frozen=True)
class FormatInfo:
    """Static description of one output format."""

    format: ExportFormat
    label: str
    mime_type: str
    extension: str


_ENCODERS: dict[ExportFormat, Encoder] = {
    ExportFormat.TEXT: text.encode,
    ExportFormat.MARKDOWN: markdown.encode,
    ExportFormat.WORD: word.encode,
    ExportFormat.HTML: html_page.encode,
    ExportFormat.JSON: json_dump.encode,
    ExportFormat.EXCEL: excel.encode,
    ExportFormat.CSV: csv_table.encode,
    ExportFormat.PDF: pdf.encode,
    ExportFormat.SCREENSHOT: screenshot.encode,
}

FORMATS: dict[ExportFormat, FormatInfo] = {
    ExportFormat.TEXT: FormatInfo(ExportFormat.TEXT, "Text", text.MIME_TYPE, text.EXTENSION),
    ExportFormat.MARKDOWN: FormatInfo(ExportFormat.MARKDOWN, "Markdown", markdown.MIME_TYPE, markdown.EXTENSION),
    ExportFormat.WORD: FormatInfo(ExportFormat.WORD, "Word", word.MIME_TYPE, word.EXTENSION),
    ExportFormat.HTML: FormatInfo(ExportFormat.HTML, "HTML", html_page.MIME_TYPE, html_page.EXTENSION),
    ExportFormat.JSON: FormatInfo(ExportFormat.JSON, "JSON", json_dump.MIME_TYPE, json_dump.EXTENSION),
    ExportFormat.EXCEL: FormatInfo(ExportFormat.EXCEL, "Excel", excel.MIME_TYPE, excel.EXTENSION),
    ExportFormat.CSV: FormatInfo(ExportFormat.CSV, "CSV", csv_table.MIME_TYPE, csv_table.EXTENSION),
    ExportFormat.PDF: FormatInfo(ExportFormat.PDF, "PDF", pdf.MIME_TYPE, pdf.EXTENSION),
    ExportFormat.SCREENSHOT: FormatInfo(
        ExportFormat.SCREENSHOT, "Screenshot", screenshot.MIME_TYPE, screenshot.EXTENSION
    ),
}


def parse_format(value: ExportFormat | str) -> ExportFormat:
    """Coerce a format name to ExportFormat.

    Raises:
        InvalidExportFormatError: If the name is not a supported format.
    """
    if isinstance(value, ExportFormat):
        return value
    try:
        return ExportFormat(str(value).lower().strip())
    except ValueError:
        raise InvalidExportFormatError(str(value)) from None


def get_encoder(format: ExportFormat | str) -> Encoder:
    """Factory function to get the encode function for a format.

    Raises:
        InvalidExportFormatError: If format is not supported
    """
    encoder = _ENCODERS.get(parse_format(format))
    if encoder is None:
        raise InvalidExportFormatError(str(format))
    return encoder


def get_format_info(format: ExportFormat | str) -> FormatInfo:
    return FORMATS[parse_format(format)]


__all__ = [
    "EncodedOutput",
    "Encoder",
    "FORMATS",
    "FormatInfo",
    "get_encoder",
    "get_format_info",
    "parse_format",
]
