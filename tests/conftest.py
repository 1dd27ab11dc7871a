"""Shared pytest fixtures.

Two views of the same small chat are provided:

* ``sample_chat_html`` is a rendered page as a chat app would produce it
  (one user turn, one assistant turn with code, KaTeX, an image and an
  attachment, plus a turn that is still streaming), for normalizer,
  orchestrator and API tests;
* ``conversation`` is the equivalent hand-built Conversation, for encoder
  tests that should not depend on scraping.
"""

from __future__ import annotations

import io
from datetime import datetime, timezone
from typing import Callable

import httpx
import pytest
from PIL import Image

from chat_export.models.asset import Asset
from chat_export.models.conversation import (
    AttachmentBlock,
    CodeBlock,
    Conversation,
    DisplayMode,
    ImageBlock,
    MathBlock,
    Role,
    TextBlock,
    Turn,
)

SOURCE_URL = "https://chat.example.com/c/123"
IMAGE_URL = "https://cdn.example.com/plot.png"
ATTACHMENT_URL = "https://cdn.example.com/report.pdf"

SAMPLE_CHAT_HTML = f"""
<!DOCTYPE html>
<html>
<head><title>Fixture Chat</title></head>
<body>
<nav><a href="/c/other">Another conversation</a></nav>
<main>
  <div data-message-author-role="user" data-message-id="u1">
    <p>How do I compute $x^2$ in Python?</p>
  </div>
  <div data-message-author-role="assistant" data-message-id="a1">
    <p>Use the power operator:</p>
    <pre><code class="language-python">print(x ** 2)</code></pre>
    <span class="katex-display"><span class="katex"><span class="katex-mathml"><math><semantics><mrow><mi>E</mi></mrow><annotation encoding="application/x-tex">E = mc^2</annotation></semantics></math></span><span class="katex-html" aria-hidden="true">E=mc2</span></span></span>
    <img src="{IMAGE_URL}" alt="plot">
    <a href="{ATTACHMENT_URL}">report.pdf</a>
    <button>Copy</button>
  </div>
  <div data-message-author-role="assistant" data-message-id="a2" class="result-streaming">
    <p>Still typing...</p>
  </div>
</main>
</body>
</html>
"""


# ------------------------------------------------------------------
# Raw inputs
# ------------------------------------------------------------------


@pytest.fixture()
def sample_chat_html() -> str:
    return SAMPLE_CHAT_HTML


@pytest.fixture()
def make_png() -> Callable[..., bytes]:
    """Return a helper that builds a real PNG of the given size."""

    def _make(width: int = 40, height: int = 30, color: str = "steelblue") -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", (width, height), color).save(buffer, format="PNG")
        return buffer.getvalue()

    return _make


@pytest.fixture()
def asset_transport(make_png) -> Callable[..., httpx.MockTransport]:
    """Return a factory for a MockTransport serving the sample image and PDF.

    The returned transport records every requested URL in ``.requests``.
    """

    def _factory(image_status: int = 200, attachment_status: int = 200) -> httpx.MockTransport:
        requests: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            url = str(request.url)
            requests.append(url)
            if url == IMAGE_URL:
                if image_status != 200:
                    return httpx.Response(image_status)
                return httpx.Response(200, content=make_png(), headers={"content-type": "image/png"})
            if url == ATTACHMENT_URL:
                if attachment_status != 200:
                    return httpx.Response(attachment_status)
                return httpx.Response(
                    200, content=b"%PDF-1.4 fixture", headers={"content-type": "application/pdf"}
                )
            return httpx.Response(404)

        transport = httpx.MockTransport(handler)
        transport.requests = requests  # type: ignore[attr-defined]
        return transport

    return _factory


# ------------------------------------------------------------------
# Domain fixtures
# ------------------------------------------------------------------


@pytest.fixture()
def conversation() -> Conversation:
    return Conversation(
        turns=(
            Turn(
                id="u1",
                role=Role.USER,
                blocks=(
                    TextBlock(text="How do I compute"),
                    MathBlock(latex_source="x^2"),
                    TextBlock(text="in Python?"),
                ),
            ),
            Turn(
                id="a1",
                role=Role.ASSISTANT,
                blocks=(
                    TextBlock(text="Use the power operator:"),
                    CodeBlock(text="print(x ** 2)", language="python"),
                    MathBlock(latex_source="E = mc^2", display_mode=DisplayMode.BLOCK),
                    ImageBlock(source_url=IMAGE_URL, asset_ref=IMAGE_URL, alt="plot"),
                    AttachmentBlock(
                        filename="report.pdf",
                        mime_type="application/pdf",
                        asset_ref=ATTACHMENT_URL,
                        source_url=ATTACHMENT_URL,
                    ),
                ),
            ),
        ),
        title="Fixture Chat",
        source_url=SOURCE_URL,
        site="chatgpt",
        captured_at=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture()
def resolved_assets(make_png) -> dict[str, Asset]:
    image = Asset(url=IMAGE_URL)
    image.mark_resolved(make_png(), "image/png")
    attachment = Asset(url=ATTACHMENT_URL)
    attachment.mark_resolved(b"%PDF-1.4 fixture", "application/pdf")
    return {IMAGE_URL: image, ATTACHMENT_URL: attachment}


@pytest.fixture()
def failed_assets() -> dict[str, Asset]:
    image = Asset(url=IMAGE_URL)
    image.mark_failed("HTTP 404")
    attachment = Asset(url=ATTACHMENT_URL)
    attachment.mark_failed("HTTP 404")
    return {IMAGE_URL: image, ATTACHMENT_URL: attachment}
