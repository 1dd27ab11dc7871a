"""Every encoder must still produce a file when assets could not be loaded."""

from __future__ import annotations

import pytest

from chat_export.models.job import ExportFormat, ExportOptions
from chat_export.services.encoders import FORMATS, get_encoder, pdf
from chat_export.services.encoders.pagination import Paginator

# Screenshot needs a browser; its degraded rendering is covered with a fake capturer
OFFLINE_FORMATS = [f for f in ExportFormat if f not in (ExportFormat.PDF, ExportFormat.SCREENSHOT)]


@pytest.mark.parametrize("export_format", OFFLINE_FORMATS, ids=lambda f: f.value)
def test_encoder_succeeds_with_failed_assets(export_format, conversation, failed_assets) -> None:
    encode = get_encoder(export_format)
    output = encode(conversation, list(conversation.turns), failed_assets, ExportOptions())

    assert output.data
    assert output.extension == FORMATS[export_format].extension
    assert output.mime_type == FORMATS[export_format].mime_type


@pytest.mark.parametrize("export_format", OFFLINE_FORMATS, ids=lambda f: f.value)
def test_encoder_succeeds_without_resolution(export_format, conversation) -> None:
    output = get_encoder(export_format)(conversation, list(conversation.turns), {}, ExportOptions())
    assert output.data


@pytest.mark.parametrize(
    "export_format, marker",
    [
        (ExportFormat.MARKDOWN, "*[Image unavailable: plot]*"),
        (ExportFormat.HTML, "Image unavailable: plot (HTTP 404)"),
        (ExportFormat.TEXT, "[Image: plot (https://cdn.example.com/plot.png)]"),
    ],
)
def test_text_formats_show_placeholder(export_format, marker, conversation, failed_assets) -> None:
    output = get_encoder(export_format)(conversation, list(conversation.turns), failed_assets, ExportOptions())
    body = output.data.decode("utf-8")

    assert marker in body
    assert "data:image" not in body


def test_pdf_layout_shows_placeholder(conversation, failed_assets) -> None:
    result = Paginator(assets=failed_assets).paginate(conversation, list(conversation.turns))
    html = pdf.render_pages(result.pages, failed_assets)

    assert "Image unavailable: plot (HTTP 404)" in html
    assert "Attachment: report.pdf (application/pdf) [unavailable]" in html
    assert "<img" not in html


@pytest.mark.skipif(not pdf.WEASYPRINT_AVAILABLE, reason="weasyprint not available")
def test_pdf_succeeds_with_failed_assets(conversation, failed_assets) -> None:
    output = pdf.encode(conversation, list(conversation.turns), failed_assets, ExportOptions())
    assert output.data.startswith(b"%PDF")
