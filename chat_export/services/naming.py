"""Filename templates: placeholder expansion plus cross-platform sanitizing."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from chat_export.core.config import settings
from chat_export.exceptions import NamingError

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{(\w*)\}")
ILLEGAL_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
WHITESPACE_RE = re.compile(r"\s+")

# Device names Windows refuses as a file stem, with or without extension
RESERVED_NAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)

# Used when the requested template expands to nothing usable
FALLBACK_TEMPLATE = "{site}_{date}_{time}"


@dataclass
class NamingContext:
    """Values available to a filename template.

    ``date`` and ``time`` default to ``timestamp`` formatted as
    ``YYYY-MM-DD`` and ``HH-MM-SS``; set them explicitly to override.
    """

    title: str = ""
    site: str = "chat-export"
    index: int = 1
    timestamp: datetime = field(default_factory=datetime.now)
    date: str | None = None
    time: str | None = None

    def values(self) -> dict[str, str]:
        return {
            "date": self.date or self.timestamp.strftime("%Y-%m-%d"),
            "time": self.time or self.timestamp.strftime("%H-%M-%S"),
            "title": self.title.strip(),
            "index": str(self.index),
            "site": self.site,
        }


def sanitize_filename(name: str) -> str:
    """Replace characters no common filesystem accepts and tidy the ends."""
    name = ILLEGAL_CHARS_RE.sub("_", name)
    name = WHITESPACE_RE.sub(" ", name).strip()
    name = name.rstrip(". ")
    stem = name.split(".", 1)[0]
    if stem.upper() in RESERVED_NAMES:
        name = f"_{name}"
    return name


class NamingResolver:
    """Expand a template into a safe filename. ``resolve`` never raises.

    Usage:
        resolver = NamingResolver()
        context = NamingContext(title="My Chat", date="2024-01-01")
        resolver.resolve("{date}_{title}", context, "md")  # "2024-01-01_My Chat.md"
    """

    def __init__(self, max_length: int | None = None) -> None:
        self.max_length = max_length or settings.max_filename_length

    def resolve(self, template: str, context: NamingContext, extension: str = "") -> str:
        extension = extension.lstrip(".")
        try:
            stem = self._expand(template, context)
        except NamingError as e:
            logger.warning("Filename template %r unusable (%s); using default name", template, e)
            stem = self._expand(FALLBACK_TEMPLATE, context, strict=False)
        return self._with_extension(stem, extension)

    def _expand(self, template: str, context: NamingContext, strict: bool = True) -> str:
        if not template or not template.strip():
            raise NamingError("empty template")

        values = context.values()

        def substitute(match: re.Match[str]) -> str:
            key = match.group(1)
            if key in values:
                return values[key]
            return match.group(0)  # unknown placeholders stay literal

        stem = sanitize_filename(PLACEHOLDER_RE.sub(substitute, template))
        if strict and not stem.strip("_. -"):
            raise NamingError(f"template expands to an unusable name: {stem!r}")
        return stem or "chat-export"

    def _with_extension(self, stem: str, extension: str) -> str:
        suffix = f".{extension}" if extension else ""
        limit = max(1, self.max_length - len(suffix))
        if len(stem) > limit:
            stem = stem[:limit].rstrip(". ") or "_"
        return f"{stem}{suffix}"
