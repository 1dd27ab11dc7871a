"""Delivery sinks: where finished export bytes go."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from chat_export.core.config import settings
from chat_export.exceptions import DeliveryError

logger = logging.getLogger(__name__)


class DeliverySink(Protocol):
    """Accepts one finished file. Raises DeliveryError on failure."""

    async def deliver(self, data: bytes, filename: str, mime_type: str) -> None: ...


@dataclass(frozen=True)
class DeliveredFile:
    data: bytes
    filename: str
    mime_type: str


class MemoryDeliverySink:
    """Keeps delivered files in memory (HTTP responses, tests)."""

    def __init__(self) -> None:
        self.files: list[DeliveredFile] = []

    async def deliver(self, data: bytes, filename: str, mime_type: str) -> None:
        self.files.append(DeliveredFile(data=data, filename=filename, mime_type=mime_type))
        logger.debug("Delivered %s (%d bytes) to memory", filename, len(data))

    @property
    def last(self) -> DeliveredFile | None:
        return self.files[-1] if self.files else None


class FileDeliverySink:
    """Writes files into a directory without overwriting existing ones.

    A name that is taken gets `` (1)``, `` (2)``, ... inserted before the
    extension.
    """

    def __init__(self, directory: str | Path | None = None) -> None:
        self.directory = Path(directory or settings.export_output_dir)
        self.written: list[Path] = []

    async def deliver(self, data: bytes, filename: str, mime_type: str) -> None:
        try:
            path = await asyncio.to_thread(self._write, data, filename)
        except OSError as e:
            raise DeliveryError(f"Could not write {filename}: {e}") from e
        self.written.append(path)
        logger.info("Wrote export %s (%s, %d bytes)", path, mime_type, len(data))

    def _write(self, data: bytes, filename: str) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._available_path(filename)
        # "xb" fails instead of clobbering a file created since the check
        with open(path, "xb") as f:
            f.write(data)
        return path

    def _available_path(self, filename: str) -> Path:
        candidate = self.directory / filename
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = self.directory / f"{stem} ({counter}){suffix}"
            counter += 1
        return candidate
