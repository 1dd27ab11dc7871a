"""Tests for strip stitching and the screenshot encoder.

The browser is replaced by a fake capturer that "renders" a tall gradient
image and returns viewport-sized crops of it, so the stitched output can be
compared pixel for pixel with the page it was captured from.
"""

from __future__ import annotations

import io
from unittest.mock import patch

import pytest
from PIL import Image, ImageChops

from chat_export.exceptions import EncodingError, ExportCancelledError
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders import screenshot
from chat_export.services.encoders.stitching import StitchError, Strip, plan_offsets, stitch_strips

CAPTURER = "chat_export.services.encoders.screenshot.BrowserCapturer"

VIEWPORT = ExportOptions(screenshot_viewport_width=200, screenshot_viewport_height=300)


def _gradient(width: int, height: int) -> Image.Image:
    """Every row has a distinct color, so a misplaced row is detectable."""
    image = Image.new("RGB", (width, height))
    for y in range(height):
        image.paste((y % 256, (y // 256) * 40, 128), (0, y, width, y + 1))
    return image


class FakeCapturer:
    """Stands in for BrowserCapturer; captures crops of a fixed page image."""

    instances: list["FakeCapturer"] = []

    def __init__(self, viewport_width, viewport_height, device_scale=1.0, timeout_seconds=60, page_height=1000):
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.page = _gradient(viewport_width, page_height)
        self.html: str | None = None
        self.offset = 0
        self.scrolls: list[int] = []
        self.closed = False
        FakeCapturer.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def load(self, html: str) -> None:
        self.html = html

    def content_height(self) -> int:
        return self.page.height

    def scroll_to(self, y: int) -> int:
        # Browsers clamp scrolling at the bottom of the document
        self.offset = max(0, min(y, self.page.height - self.viewport_height))
        self.scrolls.append(self.offset)
        return self.offset

    def capture(self) -> bytes:
        shot = Image.new("RGB", (self.viewport_width, self.viewport_height), "white")
        shot.paste(self.page.crop((0, self.offset, self.viewport_width, self.offset + self.viewport_height)))
        buffer = io.BytesIO()
        shot.save(buffer, format="PNG")
        return buffer.getvalue()


@pytest.fixture(autouse=True)
def reset_instances():
    FakeCapturer.instances = []
    yield


# ---------------------------------------------------------------------------
# Stitching
# ---------------------------------------------------------------------------


class TestPlanOffsets:
    def test_last_strip_is_clamped_to_bottom(self) -> None:
        assert plan_offsets(1000, 300) == [0, 300, 600, 700]

    def test_exact_multiple(self) -> None:
        assert plan_offsets(900, 300) == [0, 300, 600]

    def test_page_shorter_than_viewport(self) -> None:
        assert plan_offsets(200, 300) == [0]


class TestStitchStrips:
    def test_overlapping_strips_have_no_seams(self) -> None:
        page = _gradient(50, 1000)
        strips = [Strip(image=page.crop((0, o, 50, o + 300)), offset=o) for o in plan_offsets(1000, 300)]

        stitched = stitch_strips(strips, total_height=1000)

        assert stitched.size == (50, 1000)
        assert ImageChops.difference(stitched, page).getbbox() is None

    def test_gap_raises(self) -> None:
        page = _gradient(50, 1000)
        strips = [
            Strip(image=page.crop((0, 0, 50, 300)), offset=0),
            Strip(image=page.crop((0, 400, 50, 700)), offset=400),
        ]
        with pytest.raises(StitchError, match="300-400"):
            stitch_strips(strips, total_height=700)

    def test_short_coverage_raises(self) -> None:
        strip = Strip(image=Image.new("RGB", (50, 300)), offset=0)
        with pytest.raises(StitchError):
            stitch_strips([strip], total_height=500)

    def test_no_strips_raises(self) -> None:
        with pytest.raises(StitchError):
            stitch_strips([], total_height=10)


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------


class TestScreenshotEncoder:
    def test_stitched_capture_matches_page(self, conversation, resolved_assets) -> None:
        with patch(CAPTURER, FakeCapturer):
            output = screenshot.encode(conversation, list(conversation.turns), resolved_assets, VIEWPORT)

        [capturer] = FakeCapturer.instances
        assert capturer.scrolls == [0, 300, 600, 700]
        assert capturer.closed

        assert output.mime_type == "image/png"
        with Image.open(io.BytesIO(output.data)) as result:
            assert result.size == (200, 1000)
            assert ImageChops.difference(result.convert("RGB"), capturer.page).getbbox() is None

    def test_loaded_page_is_the_html_export(self, conversation, resolved_assets) -> None:
        with patch(CAPTURER, FakeCapturer):
            screenshot.encode(conversation, [conversation.turns[1]], resolved_assets, VIEWPORT)

        html = FakeCapturer.instances[0].html
        assert "data-turn-id='a1'" in html
        assert "data-turn-id='u1'" not in html
        assert "<img src='data:image/png;base64," in html

    def test_failed_assets_render_placeholders(self, conversation, failed_assets) -> None:
        with patch(CAPTURER, FakeCapturer):
            output = screenshot.encode(conversation, list(conversation.turns), failed_assets, VIEWPORT)

        assert output.data.startswith(b"\x89PNG")
        html = FakeCapturer.instances[0].html
        assert "Image unavailable: plot (HTTP 404)" in html

    def test_viewport_defaults_come_from_settings(self, conversation) -> None:
        with patch(CAPTURER, FakeCapturer), patch.object(
            screenshot.settings, "screenshot_viewport_width", 120
        ), patch.object(screenshot.settings, "screenshot_viewport_height", 400):
            screenshot.encode(conversation, list(conversation.turns), {}, ExportOptions())

        capturer = FakeCapturer.instances[0]
        assert (capturer.viewport_width, capturer.viewport_height) == (120, 400)

    def test_too_tall_selection_is_rejected(self, conversation) -> None:
        with patch(CAPTURER, FakeCapturer), patch.object(screenshot, "MAX_CAPTURE_PIXELS", 1000):
            with pytest.raises(EncodingError, match="too tall"):
                screenshot.encode(conversation, list(conversation.turns), {}, VIEWPORT)

    def test_browser_failure_is_wrapped(self, conversation) -> None:
        with patch(CAPTURER, side_effect=RuntimeError("Executable doesn't exist")):
            with pytest.raises(EncodingError, match="Executable doesn't exist"):
                screenshot.encode(conversation, list(conversation.turns), {}, VIEWPORT)

    def test_cancelled_before_capture(self, conversation) -> None:
        token = CancellationToken()
        token.cancel()

        with patch(CAPTURER, FakeCapturer):
            with pytest.raises(ExportCancelledError):
                screenshot.encode(conversation, list(conversation.turns), {}, VIEWPORT, token)

        assert FakeCapturer.instances == []
