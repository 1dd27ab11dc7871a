"""Screenshot (PNG) encoder.

Renders the HTML export in headless Chromium, captures it one viewport
strip at a time and stitches the strips together. Requires browsers to be
installed:
    playwright install chromium
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Mapping

from PIL import Image

from chat_export.core.config import settings
from chat_export.exceptions import EncodingError, ExportCancelledError
from chat_export.models.asset import Asset
from chat_export.models.conversation import Conversation, Turn
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders.base import EncodedOutput, checkpoint
from chat_export.services.encoders.html_page import render_document
from chat_export.services.encoders.stitching import Strip, plan_offsets, stitch_strips

if TYPE_CHECKING:
    from playwright.sync_api import Browser, Page, Playwright

logger = logging.getLogger(__name__)

MIME_TYPE = "image/png"
EXTENSION = "png"

# Pillow refuses to open images past its decompression-bomb limit; stay below it
MAX_CAPTURE_PIXELS = 150_000_000


class BrowserCapturer:
    """Headless Chromium page that captures the viewport at scroll offsets.

    Usage:
        with BrowserCapturer(1000, 1200) as capturer:
            capturer.load(html)
            height = capturer.content_height()
            actual = capturer.scroll_to(0)
            png = capturer.capture()
    """

    def __init__(
        self,
        viewport_width: int,
        viewport_height: int,
        device_scale: float = 1.0,
        timeout_seconds: int = 60,
    ) -> None:
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.device_scale = device_scale
        self.timeout_seconds = timeout_seconds
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None

    def __enter__(self) -> BrowserCapturer:
        from playwright.sync_api import sync_playwright

        self._playwright = sync_playwright().start()
        try:
            self._browser = self._playwright.chromium.launch(headless=True)
            self._page = self._browser.new_page(
                viewport={"width": self.viewport_width, "height": self.viewport_height},
                device_scale_factor=self.device_scale,
            )
            self._page.set_default_timeout(self.timeout_seconds * 1000)
        except Exception:
            self.close()
            raise
        logger.debug("Playwright browser launched for screenshot capture")
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def load(self, html: str) -> None:
        self._page.set_content(html, wait_until="load")

    def content_height(self) -> int:
        """Full document height in CSS pixels."""
        return int(
            self._page.evaluate(
                "() => Math.max(document.documentElement.scrollHeight, document.body.scrollHeight)"
            )
        )

    def scroll_to(self, y: int) -> int:
        """Scroll and return the offset the browser actually applied."""
        return int(self._page.evaluate("(y) => { window.scrollTo(0, y); return window.scrollY; }", y))

    def capture(self) -> bytes:
        return self._page.screenshot(type="png", full_page=False)

    def close(self) -> None:
        if self._browser is not None:
            try:
                self._browser.close()
            except Exception as e:
                logger.warning("Error closing Playwright browser: %s", e)
            self._browser = None
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception as e:
                logger.warning("Error stopping Playwright: %s", e)
            self._playwright = None


def encode(
    conversation: Conversation,
    selection: list[Turn],
    assets: Mapping[str, Asset],
    options: ExportOptions,
    token: CancellationToken | None = None,
) -> EncodedOutput:
    """Capture the rendered selection as one PNG.

    Raises:
        EncodingError: If the browser cannot be started or capture fails.
    """
    viewport_width = options.screenshot_viewport_width or settings.screenshot_viewport_width
    viewport_height = options.screenshot_viewport_height or settings.screenshot_viewport_height
    scale = settings.screenshot_device_scale

    # The page is the selection only, so the whole document is the capture region
    html = render_document(conversation, selection, assets, options, token)

    try:
        with BrowserCapturer(
            viewport_width,
            viewport_height,
            device_scale=scale,
            timeout_seconds=settings.render_timeout_seconds,
        ) as capturer:
            capturer.load(html)
            total_css = capturer.content_height()
            total_px = round(total_css * scale)
            width_px = round(viewport_width * scale)
            if total_px * width_px > MAX_CAPTURE_PIXELS:
                raise EncodingError(
                    "screenshot",
                    f"Selection is too tall to capture ({total_css}px); select fewer turns",
                )

            strips: list[Strip] = []
            for target in plan_offsets(total_css, viewport_height):
                checkpoint(token)
                actual = capturer.scroll_to(target)
                with Image.open(io.BytesIO(capturer.capture())) as shot:
                    image = shot.convert("RGB")
                strips.append(Strip(image=image, offset=round(actual * scale)))

        logger.debug("Captured %d strips for %dpx tall screenshot", len(strips), total_px)
        stitched = stitch_strips(strips, total_height=total_px, width=width_px)
        buffer = io.BytesIO()
        stitched.save(buffer, format="PNG")
    except (EncodingError, ExportCancelledError):
        raise
    except Exception as e:
        raise EncodingError("screenshot", f"Screenshot capture failed: {e!s}") from e

    return EncodedOutput(data=buffer.getvalue(), mime_type=MIME_TYPE, extension=EXTENSION)
