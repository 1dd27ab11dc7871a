"""Immutable structural snapshots of a rendered chat page."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from bs4 import BeautifulSoup
from bs4.element import Tag

from chat_export.exceptions import ScrapeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """Serialized copy of the source document taken at one instant.

    The HTML is held as a string, so every ``parse()`` call builds a fresh
    tree and nothing done to the live source afterwards can reach an
    in-flight export.
    """

    html: str
    source_url: str = ""
    title: str | None = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def parse(self) -> BeautifulSoup:
        """Parse the snapshot into a new, private document tree."""
        return BeautifulSoup(self.html, "lxml")

    @property
    def size_bytes(self) -> int:
        return len(self.html.encode("utf-8"))


def take_snapshot(
    source: str | bytes | Tag,
    source_url: str = "",
    title: str | None = None,
) -> Snapshot:
    """Copy ``source`` into an immutable Snapshot.

    Args:
        source: Page HTML (text or bytes) or a live BeautifulSoup tree/tag.
        source_url: URL the page was rendered from (relative links resolve
            against it).
        title: Optional explicit conversation title.

    Raises:
        ScrapeError: If the source is empty.
    """
    if isinstance(source, Tag):
        html = str(source)
    elif isinstance(source, bytes):
        html = source.decode("utf-8", errors="replace")
    else:
        html = source

    if not html or not html.strip():
        raise ScrapeError("Snapshot source is empty")

    snapshot = Snapshot(html=html, source_url=source_url, title=title)
    logger.debug("Captured snapshot of %d bytes from %s", snapshot.size_bytes, source_url or "<inline>")
    return snapshot
