"""Tests for deterministic pagination and the PDF encoder."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from chat_export.exceptions import EncodingError, ExportCancelledError
from chat_export.models.asset import Asset
from chat_export.models.conversation import CodeBlock, Conversation, ImageBlock, Role, TextBlock, Turn
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders import pdf
from chat_export.services.encoders.pagination import PageGeometry, Paginator, display_width, wrap_lines

IMAGE_URL = "https://cdn.example.com/plot.png"


def _chat(*blocks) -> Conversation:
    return Conversation(turns=(Turn(id="t1", role=Role.ASSISTANT, blocks=tuple(blocks)),), title="Layout")


def _image_asset(data: bytes) -> dict[str, Asset]:
    asset = Asset(url=IMAGE_URL)
    asset.mark_resolved(data, "image/png")
    return {IMAGE_URL: asset}


def _items(result, kind: str):
    return [(page.number, item) for page in result.pages for item in page.items if item.kind == kind]


IMAGE = ImageBlock(source_url=IMAGE_URL, asset_ref=IMAGE_URL, alt="plot")


# ---------------------------------------------------------------------------
# Geometry and wrapping
# ---------------------------------------------------------------------------


def test_default_geometry_is_a4() -> None:
    g = PageGeometry()
    assert (g.width, g.height) == (595.0, 842.0)
    assert g.content_height == 730.0
    assert g.code_lines_per_page == 60


def test_wrap_lines_keeps_breaks_and_trims_blank_edges() -> None:
    assert wrap_lines("\n\nfirst\n\nsecond third\n\n", columns=10) == ["first", "", "second", "third"]


def test_wide_characters_count_double() -> None:
    assert display_width("abc") == 3
    assert display_width("中文") == 4
    assert wrap_lines("中文中文中文", columns=4) == ["中文", "中文", "中文"]


# ---------------------------------------------------------------------------
# Paginator
# ---------------------------------------------------------------------------


class TestPaginator:
    def test_image_that_does_not_fit_moves_whole(self, make_png) -> None:
        geometry = PageGeometry(height=400, margin=20)
        text = "\n".join(f"line {i}" for i in range(20))
        chat = _chat(TextBlock(text=text), IMAGE)

        result = Paginator(geometry, _image_asset(make_png(200, 200))).paginate(chat, list(chat.turns))

        [(page_number, image)] = _items(result, "image")
        assert page_number == 2
        assert image.height == pytest.approx(150.0)
        assert result.pages[1].items[0] is image

    def test_images_are_never_upscaled(self, make_png) -> None:
        chat = _chat(IMAGE)
        result = Paginator(assets=_image_asset(make_png(40, 30))).paginate(chat, list(chat.turns))

        [(_, image)] = _items(result, "image")
        assert image.image_width == pytest.approx(30.0)
        assert image.height == pytest.approx(22.5)

    def test_tall_image_is_capped_to_one_page(self, make_png) -> None:
        geometry = PageGeometry()
        chat = _chat(IMAGE)
        result = Paginator(geometry, _image_asset(make_png(100, 5000))).paginate(chat, list(chat.turns))

        [(_, image)] = _items(result, "image")
        assert image.height == pytest.approx(geometry.content_height)
        assert image.image_width == pytest.approx(75.0 * 730.0 / 3750.0)

    def test_failed_image_becomes_placeholder(self, failed_assets) -> None:
        chat = _chat(IMAGE)
        result = Paginator(assets=failed_assets).paginate(chat, list(chat.turns))

        [(_, image)] = _items(result, "image")
        assert image.placeholder == "[Image unavailable: plot (HTTP 404)]"

    def test_text_breaks_between_lines(self) -> None:
        geometry = PageGeometry(height=200, margin=20)
        original = [f"line {i}" for i in range(30)]
        chat = _chat(TextBlock(text="\n".join(original)))

        result = Paginator(geometry).paginate(chat, list(chat.turns))
        fragments = _items(result, "text")

        assert [len(item.lines) for _, item in fragments] == [8, 10, 10, 2]
        assert [line for _, item in fragments for line in item.lines] == original
        for page in result.pages:
            assert page.used <= geometry.content_height

    def test_cjk_text_stays_inside_content_width(self) -> None:
        geometry = PageGeometry()
        chat = _chat(TextBlock(text="中" * 400))

        result = Paginator(geometry).paginate(chat, list(chat.turns))
        lines = [line for _, item in _items(result, "text") for line in item.lines]

        assert "".join(lines) == "中" * 400
        for line in lines:
            # Each ideograph is about one em wide
            assert len(line) * geometry.font_size <= geometry.content_width

    def test_oversized_code_is_split_with_warning(self) -> None:
        code = "\n".join(f"x = {i}" for i in range(150))
        chat = _chat(CodeBlock(text=code, language="python"))

        result = Paginator().paginate(chat, list(chat.turns))
        chunks = _items(result, "code")

        assert [len(item.lines) for _, item in chunks] == [60, 60, 30]
        assert [item.fragment for _, item in chunks] == [0, 1, 2]
        assert len({page for page, _ in chunks}) == 3
        assert [w.code for w in result.warnings] == ["code_block_split"]

    def test_code_that_fits_is_not_split(self) -> None:
        chat = _chat(CodeBlock(text="print(1)\nprint(2)"))
        result = Paginator().paginate(chat, list(chat.turns))

        [(_, code)] = _items(result, "code")
        assert code.fragment_count == 1
        assert result.warnings == []

    def test_layout_is_deterministic(self, conversation, resolved_assets) -> None:
        def snapshot():
            result = Paginator(PageGeometry(height=300, margin=20), resolved_assets).paginate(
                conversation, list(conversation.turns)
            )
            return [[(i.kind, i.height, tuple(i.lines)) for i in p.items] for p in result.pages]

        assert snapshot() == snapshot()

    def test_cancellation_between_turns(self, conversation) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ExportCancelledError):
            Paginator().paginate(conversation, list(conversation.turns), token=token)


# ---------------------------------------------------------------------------
# PDF encoder
# ---------------------------------------------------------------------------


class TestPdfEncoder:
    def test_render_pages_one_section_per_page(self) -> None:
        code = "\n".join(f"x = {i}" for i in range(150))
        chat = _chat(CodeBlock(text=code))
        result = Paginator().paginate(chat, list(chat.turns))

        html = pdf.render_pages(result.pages, {})

        assert html.count("<section class='page'") == len(result.pages) == 4
        assert "data-page='4'" in html

    def test_render_pages_embeds_resolved_images(self, conversation, resolved_assets) -> None:
        result = Paginator(assets=resolved_assets).paginate(conversation, list(conversation.turns))
        html = pdf.render_pages(result.pages, resolved_assets)

        assert "<img src='data:image/png;base64," in html
        assert "width: 30.00pt" in html

    def test_missing_weasyprint_raises(self, conversation) -> None:
        with patch.object(pdf, "WEASYPRINT_AVAILABLE", False):
            with pytest.raises(EncodingError, match="weasyprint"):
                pdf.encode(conversation, list(conversation.turns), {}, ExportOptions())

    def test_encode_passes_layout_to_weasyprint(self, conversation) -> None:
        mock_html = MagicMock()
        mock_html.return_value.write_pdf.return_value = b"%PDF-1.7 rendered"

        with patch.object(pdf, "WEASYPRINT_AVAILABLE", True), patch.object(pdf, "HTML", mock_html), patch.object(
            pdf, "CSS", MagicMock()
        ):
            output = pdf.encode(conversation, list(conversation.turns), {}, ExportOptions())

        assert output.data == b"%PDF-1.7 rendered"
        assert output.mime_type == "application/pdf"
        rendered = mock_html.call_args.kwargs["string"]
        assert "<section class='page' data-page='1'>" in rendered
        assert "Fixture Chat" in rendered

    def test_renderer_failure_is_wrapped(self, conversation) -> None:
        mock_html = MagicMock()
        mock_html.return_value.write_pdf.side_effect = RuntimeError("cairo exploded")

        with patch.object(pdf, "WEASYPRINT_AVAILABLE", True), patch.object(pdf, "HTML", mock_html), patch.object(
            pdf, "CSS", MagicMock()
        ):
            with pytest.raises(EncodingError, match="cairo exploded"):
                pdf.encode(conversation, list(conversation.turns), {}, ExportOptions())

    @pytest.mark.skipif(not pdf.WEASYPRINT_AVAILABLE, reason="weasyprint not available")
    def test_real_pdf(self, conversation, resolved_assets) -> None:
        output = pdf.encode(conversation, list(conversation.turns), resolved_assets, ExportOptions())
        assert output.data.startswith(b"%PDF")
