"""Binary media referenced by image and attachment blocks."""

from __future__ import annotations

import base64
import enum
from dataclasses import dataclass


class ResolutionState(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class Asset:
    """A media resource keyed by URL.

    Only the resolver mutates an Asset, and only once: from PENDING to either
    RESOLVED (``data`` and ``content_type`` set) or FAILED (``error`` set).
    """

    url: str
    state: ResolutionState = ResolutionState.PENDING
    data: bytes | None = None
    content_type: str | None = None
    error: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.state is ResolutionState.RESOLVED and self.data is not None

    @property
    def is_image(self) -> bool:
        return bool(self.content_type and self.content_type.startswith("image/"))

    @property
    def data_uri(self) -> str | None:
        """Base64 ``data:`` URI for inlining, or None when unresolved."""
        if not self.is_resolved:
            return None
        encoded = base64.b64encode(self.data or b"").decode("ascii")
        return f"data:{self.content_type or 'application/octet-stream'};base64,{encoded}"

    @property
    def size_bytes(self) -> int:
        return len(self.data) if self.data else 0

    def mark_resolved(self, data: bytes, content_type: str) -> None:
        self.state = ResolutionState.RESOLVED
        self.data = data
        self.content_type = content_type
        self.error = None

    def mark_failed(self, error: str) -> None:
        self.state = ResolutionState.FAILED
        self.data = None
        self.error = error
