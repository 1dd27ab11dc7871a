"""Tests for the Text, Markdown and HTML encoders."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from chat_export.exceptions import ExportCancelledError
from chat_export.models.conversation import CodeBlock, Role, Turn
from chat_export.models.job import ExportOptions
from chat_export.services.cancellation import CancellationToken
from chat_export.services.encoders import html_page, markdown, text
from chat_export.services.encoders.base import inline_runs


def _selection(conversation):
    return list(conversation.turns)


class TestInlineRuns:
    def test_inline_math_joins_surrounding_text(self, conversation) -> None:
        user, assistant = conversation.turns

        assert [len(run) for run in inline_runs(user.blocks)] == [3]
        # Display math, code, image and attachment each stand alone
        assert [len(run) for run in inline_runs(assistant.blocks)] == [1, 1, 1, 1, 1]


class TestTextEncoder:
    def test_layout(self, conversation, resolved_assets) -> None:
        output = text.encode(conversation, _selection(conversation), resolved_assets, ExportOptions())
        body = output.data.decode("utf-8")

        assert output.extension == "txt"
        assert body.startswith("Fixture Chat\nExported: ")
        assert "Turns: 2" in body
        assert "Source: https://chat.example.com/c/123" in body
        assert "You:\nHow do I compute x^2 in Python?" in body
        assert "ChatGPT:\nUse the power operator:" in body
        assert "-" * 16 in body
        assert "[Image: plot (https://cdn.example.com/plot.png)]" in body
        assert "[Attachment: report.pdf]" in body
        assert "base64" not in body

    def test_without_header(self, conversation) -> None:
        options = ExportOptions(include_header=False)
        body = text.encode(conversation, _selection(conversation), {}, options).data.decode("utf-8")
        assert body.startswith("You:\n")

    def test_cancelled_between_turns(self, conversation) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(ExportCancelledError):
            text.encode(conversation, _selection(conversation), {}, ExportOptions(), token)


class TestMarkdownEncoder:
    def test_structure(self, conversation, resolved_assets) -> None:
        output = markdown.encode(conversation, _selection(conversation), resolved_assets, ExportOptions())
        body = output.data.decode("utf-8")

        assert output.mime_type.startswith("text/markdown")
        assert body.startswith("# Fixture Chat\n")
        assert "### You" in body
        assert "### ChatGPT" in body
        assert "How do I compute $x^2$ in Python?" in body
        assert "```python\nprint(x ** 2)\n```" in body
        assert "$$\nE = mc^2\n$$" in body
        assert "**Attachments**:\n- report.pdf (application/pdf)" in body

    def test_resolved_image_is_a_reference_link(self, conversation, resolved_assets) -> None:
        body = markdown.encode(
            conversation, _selection(conversation), resolved_assets, ExportOptions()
        ).data.decode("utf-8")

        assert "![plot][image-1]" in body
        assert "[image-1]: data:image/png;base64," in body
        assert "[report.pdf][attachment-2]" in body
        assert "[attachment-2]: https://cdn.example.com/report.pdf" in body
        # Definitions come after the last turn
        assert body.index("[image-1]: ") > body.index("### ChatGPT")

    def test_unresolved_image_without_request_links_source(self, conversation) -> None:
        body = markdown.encode(conversation, _selection(conversation), {}, ExportOptions()).data.decode("utf-8")
        assert "[image-1]: https://cdn.example.com/plot.png" in body

    def test_fence_is_longer_than_code_backticks(self, conversation) -> None:
        turn = Turn(id="c", role=Role.ASSISTANT, blocks=(CodeBlock(text="```\nnested\n```", language="md"),))
        body = markdown.encode(conversation, [turn], {}, ExportOptions(include_header=False)).data.decode("utf-8")
        assert "````md\n```\nnested\n```\n````" in body


class TestHtmlEncoder:
    def test_self_contained_page(self, conversation, resolved_assets) -> None:
        output = html_page.encode(conversation, _selection(conversation), resolved_assets, ExportOptions())
        page = output.data.decode("utf-8")

        assert output.extension == "html"
        assert page.startswith("<!DOCTYPE html>")
        assert "<title>Fixture Chat</title>" in page
        assert "data-turn-id='u1'" in page
        assert "data-turn-id='a1'" in page
        assert "<img src='data:image/png;base64," in page
        assert "download='report.pdf'" in page
        assert "<math" in page
        assert "class='language-python'" in page
        assert "https://cdn.example.com/plot.png" not in page

    def test_inline_math_stays_in_paragraph(self, conversation) -> None:
        page = html_page.render_turn(conversation, conversation.turns[0], {})
        paragraph = page.split("<p>", 1)[1].split("</p>", 1)[0]

        assert paragraph.startswith("How do I compute <math")
        assert paragraph.endswith("in Python?")

    def test_text_is_escaped(self, conversation) -> None:
        turn = Turn(id="x", role=Role.USER, blocks=(CodeBlock(text="<script>alert(1)</script>"),))
        page = html_page.render_turn(conversation, turn, {})

        assert "<script>" not in page
        assert "&lt;script&gt;" in page

    def test_math_conversion_failure_keeps_source(self) -> None:
        with patch(
            "chat_export.services.encoders.html_page.latex_to_mathml",
            side_effect=ValueError("unbalanced braces"),
        ):
            rendered = html_page.render_math("a < \\frac{", display=True)

        assert rendered == "<code class='math-source'>a &lt; \\frac{</code>"
