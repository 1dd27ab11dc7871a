"""Build the canonical Conversation model from a structural snapshot.

The normalizer walks a private parse of the snapshot:

1. Locate the conversation root using the site profile's root selectors.
2. Collect top-level message elements in document order.
3. Drop messages that are still streaming; classify the rest by role.
4. Split each message into ordered blocks (text, code, math, image,
   attachment) without reordering or merging them by kind.

Only a missing root is fatal (ScrapeError); per-message problems become
warnings and the message is dropped. When no message survives, the
profile's fallback selectors are tried and then the whole root becomes a
single turn, unless every message found was still streaming.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import html as html_lib
import logging
import mimetypes
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterator
from urllib.parse import unquote, urljoin, urlparse

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag
from markdownify import markdownify as md

from chat_export.core.config import settings
from chat_export.exceptions import ScrapeError
from chat_export.models.conversation import (
    AttachmentBlock,
    Block,
    CodeBlock,
    Conversation,
    DisplayMode,
    ImageBlock,
    MathBlock,
    Role,
    TextBlock,
    Turn,
    block_plain_text,
)
from chat_export.models.job import ExportWarning
from chat_export.services.cancellation import CancellationToken
from chat_export.services.profiles import SiteProfile, detect_profile
from chat_export.services.snapshot import Snapshot

logger = logging.getLogger(__name__)

# UI chrome that never belongs to message content
CHROME_SELECTOR = ", ".join(
    [
        "button",
        '[role="button"]',
        'script:not([type^="math/tex"])',
        "style",
        "noscript",
        "svg",
        ".sr-only",
        '[data-testid*="action-bar"]',
        '[class*="action-bar"]',
        '[data-testid*="composer"]',
        '[class*="composer"]',
        '[class*="chat-input"]',
    ]
)

# Markers of a message whose content is still being generated
STREAMING_SELECTOR = ", ".join(
    [
        ".result-streaming",
        ".streaming",
        '[data-is-streaming="true"]',
        '[data-streaming="true"]',
        '[aria-busy="true"]',
    ]
)

ROLE_ATTR_SELECTOR = "[data-message-author-role], [data-author-role], [data-role], [data-testid]"

MATH_SELECTOR = '.katex, .katex-display, math, script[type^="math/tex"], [data-latex]'
SPECIAL_SELECTOR = f"pre, img, {MATH_SELECTOR}"

# Ancestors that mark navigation rather than conversation content
NAV_ANCESTORS = frozenset({"nav", "aside", "header", "footer", "form"})

BLOCK_TAGS = frozenset(
    {
        "address", "article", "blockquote", "dd", "details", "div", "dl", "dt",
        "figcaption", "figure", "h1", "h2", "h3", "h4", "h5", "h6", "hr", "li",
        "main", "ol", "p", "section", "summary", "table", "tbody", "thead",
        "tr", "ul",
    }
)

ATTACHMENT_EXT_RE = re.compile(r"\.(pdf|docx?|xlsx?|pptx?|csv|zip|txt|json)$", re.IGNORECASE)
CODE_LANGUAGE_RE = re.compile(r"^(?:language|lang)-([\w+#.-]+)$")

# $$display$$ or $inline$ (no space just inside the delimiters, not a price like "$5 and $10")
MATH_DELIMITER_RE = re.compile(
    r"\$\$(.+?)\$\$|(?<![\\$])\$(?=\S)([^$\n]+?)(?<=\S)\$(?!\d)",
    re.DOTALL,
)

SYSTEM_HINT_RE = re.compile(r"(^|[^a-z])system([^a-z]|$)")
USER_HINT_RE = re.compile(r"(^|[^a-z])(user|human|you)([^a-z]|$)")
ASSISTANT_HINT_RE = re.compile(r"(^|[^a-z])(assistant|model|ai|bot|claude|grok|gpt|chatgpt|gemini)([^a-z]|$)")

TINY_IMAGE_PX = 48

# Control characters other than tab, line feed and carriage return
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class NormalizationResult:
    """Conversation plus the non-fatal warnings collected while scraping."""

    conversation: Conversation
    warnings: list[ExportWarning]
    profile: SiteProfile


@dataclass
class _ScrapeState:
    snapshot: Snapshot
    soup: BeautifulSoup
    profile: SiteProfile
    root: Tag
    elements: list[Tag]
    turns: list[Turn] = field(default_factory=list)
    warnings: list[ExportWarning] = field(default_factory=list)
    signature_counts: Counter = field(default_factory=Counter)
    used_ids: set[str] = field(default_factory=set)


class Normalizer:
    """Turn a Snapshot into a Conversation.

    Usage:
        normalizer = Normalizer()
        result = normalizer.normalize(take_snapshot(html, source_url=url))
        for turn in result.conversation.turns:
            print(turn.role, turn.preview)
    """

    def __init__(
        self,
        profile: SiteProfile | None = None,
        chunk_size: int | None = None,
    ) -> None:
        self.profile = profile
        self.chunk_size = max(1, chunk_size or settings.normalize_chunk_size)

    def normalize(self, snapshot: Snapshot) -> NormalizationResult:
        """Normalize synchronously.

        Raises:
            ScrapeError: If the conversation root cannot be located.
        """
        state = self._prepare(snapshot)
        for _ in self._iter_elements(state):
            pass
        return self._finish(state)

    async def normalize_async(
        self,
        snapshot: Snapshot,
        token: CancellationToken | None = None,
    ) -> NormalizationResult:
        """Normalize while yielding to the event loop every ``chunk_size`` messages.

        Raises:
            ScrapeError: If the conversation root cannot be located.
            ExportCancelledError: If ``token`` is cancelled between chunks.
        """
        state = self._prepare(snapshot)
        for index, _ in enumerate(self._iter_elements(state), start=1):
            if index % self.chunk_size == 0:
                if token is not None:
                    token.raise_if_cancelled()
                await asyncio.sleep(0)
        if token is not None:
            token.raise_if_cancelled()
        return self._finish(state)

    # ------------------------------------------------------------------
    # Document level
    # ------------------------------------------------------------------

    def _prepare(self, snapshot: Snapshot) -> _ScrapeState:
        soup = snapshot.parse()
        profile = self.profile or detect_profile(snapshot.source_url, settings.default_site)

        root = self._find_root(soup, profile)
        if root is None:
            raise ScrapeError(
                f"Conversation container not found (profile={profile.key}, "
                f"selectors={', '.join(profile.root_selectors)})"
            )

        elements = self._find_message_elements(root, profile)
        logger.debug(
            "Found %d candidate message elements using profile %s",
            len(elements),
            profile.key,
        )
        return _ScrapeState(
            snapshot=snapshot,
            soup=soup,
            profile=profile,
            root=root,
            elements=elements,
        )

    def _iter_elements(self, state: _ScrapeState) -> Iterator[Turn | None]:
        for position, element in enumerate(state.elements, start=1):
            turn = self._parse_element(state, element, position)
            if turn is not None:
                state.turns.append(turn)
            yield turn

    def _finish(self, state: _ScrapeState) -> NormalizationResult:
        if not state.turns:
            self._apply_fallbacks(state)

        conversation = Conversation(
            turns=tuple(state.turns),
            title=self._detect_title(state),
            source_url=state.snapshot.source_url,
            site=state.profile.key,
            captured_at=state.snapshot.captured_at,
        )
        logger.info(
            "Normalized %d turns from %d message elements (profile=%s, warnings=%d)",
            len(conversation.turns),
            len(state.elements),
            state.profile.key,
            len(state.warnings),
        )
        return NormalizationResult(
            conversation=conversation,
            warnings=state.warnings,
            profile=state.profile,
        )

    def _find_root(self, soup: BeautifulSoup, profile: SiteProfile) -> Tag | None:
        for selector in profile.root_selectors:
            root = soup.select_one(selector)
            if root is not None:
                return root
        return None

    def _find_message_elements(self, root: Tag, profile: SiteProfile) -> list[Tag]:
        candidates = root.select(profile.turn_selector)
        if not candidates and profile.fallback_selectors:
            candidates = root.select(", ".join(profile.fallback_selectors))
        return self._top_level(candidates, root)

    def _apply_fallbacks(self, state: _ScrapeState) -> None:
        """Nothing classified: try the fallback selectors, then the whole root as one turn."""
        tried = {id(element) for element in state.elements}
        extra: list[Tag] = []
        if state.profile.fallback_selectors:
            selected = state.root.select(", ".join(state.profile.fallback_selectors))
            extra = [e for e in self._top_level(selected, state.root) if id(e) not in tried]
        for position, element in enumerate(extra, start=len(state.elements) + 1):
            turn = self._parse_element(state, element, position)
            if turn is not None:
                state.turns.append(turn)
        if state.turns:
            return

        elements = state.elements + extra
        if elements and all(self._is_streaming(element) for element in elements):
            logger.debug("Only streaming messages found; no fallback turn built")
            return

        fallback = self._fallback_turn(state)
        if fallback is not None:
            state.turns.append(fallback)
            state.warnings.append(
                ExportWarning(
                    code="fallback_single_turn",
                    message="No message elements recognized; exported the whole conversation as one turn",
                )
            )

    def _top_level(self, candidates: list[Tag], root: Tag) -> list[Tag]:
        candidates = [c for c in candidates if not self._inside_navigation(c, root)]

        # Keep only top-level matches; nested matches belong to their ancestor
        candidate_ids = {id(c) for c in candidates}
        top_level: list[Tag] = []
        for candidate in candidates:
            if any(id(parent) in candidate_ids for parent in candidate.parents):
                continue
            top_level.append(candidate)
        return top_level

    def _inside_navigation(self, element: Tag, root: Tag) -> bool:
        for parent in element.parents:
            if parent is root:
                return False
            if getattr(parent, "name", None) in NAV_ANCESTORS:
                return True
        return False

    def _detect_title(self, state: _ScrapeState) -> str:
        if state.snapshot.title and state.snapshot.title.strip():
            return state.snapshot.title.strip()

        profile = state.profile
        if profile.title_selector:
            title_el = state.soup.select_one(profile.title_selector)
            if title_el is not None and title_el.get_text(strip=True):
                return title_el.get_text(strip=True)

        title_tag = state.soup.find("title")
        if title_tag is not None:
            title = title_tag.get_text(strip=True)
            if profile.title_strip_regex is not None:
                title = profile.title_strip_regex.sub("", title).strip()
            if title:
                return title

        return profile.default_title

    # ------------------------------------------------------------------
    # Message level
    # ------------------------------------------------------------------

    def _parse_element(self, state: _ScrapeState, element: Tag, position: int) -> Turn | None:
        if self._is_streaming(element):
            logger.warning("Skipping message %d: content is still being generated", position)
            state.warnings.append(
                ExportWarning(
                    code="incomplete_turn",
                    message=f"Message {position} is still being generated and was not exported",
                )
            )
            return None

        role = self._classify_role(element, state.profile)
        if role is None:
            logger.warning("Skipping message %d: role could not be determined", position)
            state.warnings.append(
                ExportWarning(
                    code="unclassified_turn",
                    message=f"Message {position} could not be attributed to a role and was skipped",
                )
            )
            return None

        content = self._content_node(element, role, state.profile)
        blocks = self._extract_blocks(content, state.snapshot.source_url)
        if not blocks:
            logger.debug("Dropping empty message %d", position)
            return None

        turn_id = self._assign_id(state, element, role, blocks)
        return Turn(id=turn_id, role=role, blocks=tuple(blocks))

    def _is_streaming(self, element: Tag) -> bool:
        return element.css.match(STREAMING_SELECTOR) or element.select_one(STREAMING_SELECTOR) is not None

    def _classify_role(self, element: Tag, profile: SiteProfile) -> Role | None:
        if element.name == "user-query":
            return Role.USER
        if element.name == "model-response":
            return Role.ASSISTANT

        hints = _role_hints(element)
        inner = element.select_one(ROLE_ATTR_SELECTOR)
        if inner is not None:
            hints.extend(_role_hints(inner))

        for hint in hints:
            if SYSTEM_HINT_RE.search(hint):
                return Role.SYSTEM
            if USER_HINT_RE.search(hint):
                return Role.USER
            if ASSISTANT_HINT_RE.search(hint):
                return Role.ASSISTANT

        if element.css.match(profile.assistant_selector) or element.select_one(profile.assistant_selector):
            return Role.ASSISTANT
        if element.css.match(profile.user_selector) or element.select_one(profile.user_selector):
            return Role.USER
        return None

    def _content_node(self, element: Tag, role: Role, profile: SiteProfile) -> Tag:
        selector = (
            profile.user_content_selector if role is Role.USER else profile.assistant_content_selector
        )
        if not selector:
            return element
        if element.css.match(selector):
            return element
        return element.select_one(selector) or element

    def _assign_id(self, state: _ScrapeState, element: Tag, role: Role, blocks: list[Block]) -> str:
        explicit = _explicit_id(element)
        if explicit:
            turn_id = explicit
            suffix = 1
            while turn_id in state.used_ids:
                turn_id = f"{explicit}-{suffix}"
                suffix += 1
        else:
            signature_parts = [
                role.value,
                re.sub(r"\s+", " ", block_plain_text(blocks))[:1200],
                "|".join(b.asset_ref for b in blocks if isinstance(b, (ImageBlock, AttachmentBlock))),
            ]
            digest = hashlib.sha1("||".join(signature_parts).encode("utf-8")).hexdigest()[:12]
            base = f"turn-{digest}"
            occurrence = state.signature_counts[base]
            state.signature_counts[base] += 1
            turn_id = f"{base}-{occurrence}"
        state.used_ids.add(turn_id)
        return turn_id

    def _fallback_turn(self, state: _ScrapeState) -> Turn | None:
        node = copy.copy(state.root)
        # Partial answers never leak into the fallback turn
        selectors = ", ".join((state.profile.turn_selector, *state.profile.fallback_selectors))
        for element in node.select(selectors):
            if not element.decomposed and self._is_streaming(element):
                element.decompose()
        blocks = self._extract_blocks(node, state.snapshot.source_url)
        if not blocks:
            return None
        digest = hashlib.sha1(block_plain_text(blocks)[:1200].encode("utf-8")).hexdigest()[:12]
        return Turn(id=f"fallback-{digest}", role=Role.ASSISTANT, blocks=tuple(blocks))

    # ------------------------------------------------------------------
    # Block level
    # ------------------------------------------------------------------

    def _extract_blocks(self, content: Tag, base_url: str) -> list[Block]:
        node = copy.copy(content)
        for chrome in node.select(CHROME_SELECTOR):
            if not chrome.decomposed:
                chrome.decompose()

        collector = _BlockCollector()
        self._walk(node, collector, base_url)
        collector.flush()
        return collector.blocks

    def _walk(self, node: Tag, collector: _BlockCollector, base_url: str) -> None:
        for child in list(node.children):
            if isinstance(child, PreformattedString):
                continue  # comments, CDATA, doctype
            if isinstance(child, NavigableString):
                collector.add_text(str(child))
                continue
            if not isinstance(child, Tag):
                continue

            if child.name == "pre":
                collector.add_block(_code_block(child))
                continue

            if _is_math(child):
                math = _math_block(child)
                if math is not None:
                    collector.add_block(math)
                else:
                    rendered = child.select_one(".katex-html") or child
                    collector.add_text(rendered.get_text())
                continue

            if child.name == "img":
                image = _image_block(child, base_url)
                if image is not None:
                    collector.add_block(image)
                continue

            if child.name == "a" and _is_attachment(child):
                collector.add_block(_attachment_block(child, base_url))
                continue

            if not _contains_special(child):
                collector.add_inline(child)
                continue

            is_block = child.name in BLOCK_TAGS
            if is_block:
                collector.flush()
            self._walk(child, collector, base_url)
            if is_block:
                collector.flush()


class _BlockCollector:
    """Accumulates inline content into TextBlocks between non-text blocks."""

    def __init__(self) -> None:
        self.blocks: list[Block] = []
        self._pending: list[str] = []

    def add_inline(self, tag: Tag) -> None:
        self._pending.append(str(tag))

    def add_text(self, text: str) -> None:
        # Split out $...$ / $$...$$ math written as plain text
        position = 0
        for match in MATH_DELIMITER_RE.finditer(text):
            if match.start() > position:
                self._pending.append(html_lib.escape(text[position : match.start()], quote=False))
            display = match.group(1) is not None
            latex = normalize_latex(match.group(1) if display else match.group(2))
            self.add_block(
                MathBlock(
                    latex_source=latex,
                    display_mode=DisplayMode.BLOCK if display else DisplayMode.INLINE,
                )
            )
            position = match.end()
        if position < len(text):
            self._pending.append(html_lib.escape(text[position:], quote=False))

    def add_block(self, block: Block) -> None:
        self.flush()
        self.blocks.append(block)

    def flush(self) -> None:
        if not self._pending:
            return
        fragment = CONTROL_CHARS_RE.sub("", "".join(self._pending))
        self._pending = []

        text = html_to_text(fragment)
        if not text:
            return
        markdown = md(fragment, heading_style="ATX", bullets="-").strip()
        self.blocks.append(TextBlock(text=text, markdown=markdown or None))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def html_to_text(fragment: str) -> str:
    """Readable plain text for an HTML fragment, one line per block element."""
    soup = BeautifulSoup(fragment, "lxml")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(list(BLOCK_TAGS)):
        if tag.parent is not None:
            tag.insert_before("\n")
            tag.insert_after("\n")
    for item in soup.find_all("li"):
        item.insert(0, "- ")

    lines = [re.sub(r"[ \t ]+", " ", line).strip() for line in soup.get_text().splitlines()]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def normalize_latex(value: str) -> str:
    """Collapse LaTeX source onto one line without touching its tokens."""
    value = (value or "").replace(" ", " ").replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.strip() for line in value.split("\n") if line.strip()]
    return re.sub(r"\s{2,}", " ", " ".join(lines)).strip()


def _role_hints(element: Tag) -> list[str]:
    hints: list[str] = []
    for attr in ("data-message-author-role", "data-author-role", "data-role", "data-testid", "class"):
        value = element.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        if value and value.strip():
            hints.append(value.strip().lower())
    return hints


def _explicit_id(element: Tag) -> str | None:
    if element.get("data-message-id"):
        return str(element["data-message-id"])
    inner = element.select_one("[data-message-id]")
    if inner is not None and inner.get("data-message-id"):
        return str(inner["data-message-id"])
    return None


def _classes(tag: Tag) -> list[str]:
    value = tag.get("class") or []
    return value.split() if isinstance(value, str) else list(value)


def _is_math(tag: Tag) -> bool:
    return bool(tag.css.match(MATH_SELECTOR))


def _math_block(tag: Tag) -> MathBlock | None:
    classes = _classes(tag)
    if tag.name == "script":
        latex = tag.string or tag.get_text()
        display = "mode=display" in (tag.get("type") or "")
    elif tag.get("data-latex"):
        latex = str(tag["data-latex"])
        display = tag.name == "div" or "display" in " ".join(classes)
    else:
        annotation = tag.select_one('annotation[encoding="application/x-tex"]') or tag.select_one("annotation")
        latex = annotation.get_text() if annotation is not None else ""
        display = (
            "katex-display" in classes
            or tag.select_one(".katex-display") is not None
            or tag.get("display") == "block"
        )

    latex = normalize_latex(latex)
    if not latex:
        return None
    return MathBlock(
        latex_source=latex,
        display_mode=DisplayMode.BLOCK if display else DisplayMode.INLINE,
    )


def _code_block(tag: Tag) -> CodeBlock:
    code = tag.find("code")
    text = (code or tag).get_text().strip("\n")

    language = None
    for element in (code, tag):
        if element is None:
            continue
        if element.get("data-language"):
            language = str(element["data-language"]).strip().lower()
            break
        for cls in _classes(element):
            match = CODE_LANGUAGE_RE.match(cls)
            if match:
                language = match.group(1).lower()
                break
        if language:
            break
    return CodeBlock(text=text, language=language)


def _absolute_url(value: str, base_url: str) -> str:
    value = value.strip()
    if value.startswith(("data:", "blob:")) or not base_url:
        return value
    return urljoin(base_url, value)


def _image_block(tag: Tag, base_url: str) -> ImageBlock | None:
    src = tag.get("src") or tag.get("data-src")
    if not src or not str(src).strip():
        return None
    src = str(src)

    if _is_tiny(tag) or _is_citation(tag) or _is_favicon(src):
        return None

    url = _absolute_url(src, base_url)
    return ImageBlock(source_url=url, asset_ref=url, alt=str(tag.get("alt") or "").strip())


def _is_tiny(tag: Tag) -> bool:
    try:
        width = int(str(tag.get("width", "0")).rstrip("px") or 0)
        height = int(str(tag.get("height", "0")).rstrip("px") or 0)
    except ValueError:
        return False
    return 0 < width <= TINY_IMAGE_PX and 0 < height <= TINY_IMAGE_PX


def _is_citation(tag: Tag) -> bool:
    for parent in tag.parents:
        classes = " ".join(_classes(parent)) if isinstance(parent, Tag) else ""
        testid = str(parent.get("data-testid") or "") if isinstance(parent, Tag) else ""
        if "citation" in classes or "citation" in testid:
            return True
    return False


def _is_favicon(src: str) -> bool:
    parsed = urlparse(src)
    host = (parsed.hostname or "").lower()
    return (host == "www.google.com" or host.endswith(".google.com")) and parsed.path.startswith("/s2/favicons")


def _is_attachment(tag: Tag) -> bool:
    href = str(tag.get("href") or "")
    if not href or href.startswith(("#", "javascript:", "mailto:")):
        return False
    if tag.has_attr("download"):
        return True
    return bool(ATTACHMENT_EXT_RE.search(urlparse(href).path))


def _attachment_block(tag: Tag, base_url: str) -> AttachmentBlock:
    url = _absolute_url(str(tag.get("href")), base_url)
    download = tag.get("download")
    text = tag.get_text(strip=True)

    if isinstance(download, str) and download.strip():
        filename = download.strip()
    elif text and ATTACHMENT_EXT_RE.search(text):
        filename = text
    else:
        filename = unquote(urlparse(url).path.rsplit("/", 1)[-1]) or "attachment"

    mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return AttachmentBlock(filename=filename, mime_type=mime_type, asset_ref=url, source_url=url)


def _contains_special(tag: Tag) -> bool:
    if tag.select_one(SPECIAL_SELECTOR) is not None:
        return True
    if any(_is_attachment(a) for a in tag.find_all("a")):
        return True
    for text in tag.find_all(string=True):
        if isinstance(text, PreformattedString):
            continue
        if any(getattr(p, "name", None) in ("code", "pre") for p in text.parents):
            continue
        if MATH_DELIMITER_RE.search(str(text)):
            return True
    return False
