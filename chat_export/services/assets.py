"""Asynchronous, deduplicated fetching of images and attachments.

One ``AssetResolver`` (and one ``AssetCache``) exists per export job. Every
URL is fetched at most once: concurrent callers share the same in-flight
task, and later callers get the cached Asset. Individual failures are
recorded on the Asset and as warnings; they are never raised.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from collections import Counter
from typing import Awaitable, Callable, Iterable
from urllib.parse import unquote_to_bytes, urlparse

import httpx

from chat_export.core.config import settings
from chat_export.exceptions import (
    AssetResolutionError,
    AssetResolverUnavailableError,
    ExportCancelledError,
    PermanentAssetError,
    TransientAssetError,
)
from chat_export.models.asset import Asset, ResolutionState
from chat_export.models.job import ExportWarning
from chat_export.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

# Status codes worth retrying; every other 4xx is permanent
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})

# Leading bytes of common media types, checked when no usable header is sent
MAGIC_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
    (b"%PDF-", "application/pdf"),
    (b"PK\x03\x04", "application/zip"),
)


def sniff_content_type(data: bytes, url: str = "") -> str:
    """Best-effort MIME type from magic bytes, then from the URL."""
    for signature, mime_type in MAGIC_SIGNATURES:
        if data.startswith(signature):
            return mime_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    head = data[:512].lstrip().lower()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head):
        return "image/svg+xml"

    guessed, _ = mimetypes.guess_type(urlparse(url).path) if url else (None, None)
    return guessed or "application/octet-stream"


def decode_data_url(url: str) -> tuple[bytes, str]:
    """Decode an RFC 2397 ``data:`` URL into ``(bytes, mime_type)``.

    Raises:
        PermanentAssetError: If the URL is malformed.
    """
    header, sep, payload = url[len("data:") :].partition(",")
    if not sep:
        raise PermanentAssetError(url[:64], "malformed data URL")

    params = header.split(";")
    mime_type = params[0].strip().lower() or "text/plain"
    try:
        if "base64" in (p.strip().lower() for p in params[1:]):
            data = base64.b64decode(payload, validate=False)
        else:
            data = unquote_to_bytes(payload)
    except ValueError as e:
        raise PermanentAssetError(url[:64], f"undecodable data URL ({e})") from e
    return data, mime_type


class AssetCache:
    """Append-only map of URL to Asset for the lifetime of one job."""

    def __init__(self) -> None:
        self._assets: dict[str, Asset] = {}

    def get(self, url: str) -> Asset | None:
        return self._assets.get(url)

    def add(self, asset: Asset) -> Asset:
        # First writer wins; an Asset is never replaced
        return self._assets.setdefault(asset.url, asset)

    def __contains__(self, url: object) -> bool:
        return url in self._assets

    def __len__(self) -> int:
        return len(self._assets)

    def values(self) -> list[Asset]:
        return list(self._assets.values())

    @property
    def failed(self) -> list[Asset]:
        return [a for a in self._assets.values() if a.state is ResolutionState.FAILED]


class AssetResolver:
    """Fetch assets with bounded concurrency, retries and cancellation.

    Usage:
        async with AssetResolver(token=token) as resolver:
            assets = await resolver.resolve_all(conversation.asset_refs())
            if assets[url].is_resolved:
                ...
    """

    def __init__(
        self,
        cache: AssetCache | None = None,
        token: CancellationToken | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        concurrency: int | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_bytes: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cache = cache if cache is not None else AssetCache()
        self.token = token
        self.concurrency = max(1, concurrency or settings.asset_concurrency)
        self.max_retries = settings.asset_max_retries if max_retries is None else max(0, max_retries)
        self.backoff_seconds = (
            settings.asset_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self.timeout_seconds = timeout_seconds or settings.asset_timeout_seconds
        self.max_bytes = max_bytes or settings.max_asset_bytes

        self.warnings: list[ExportWarning] = []
        self.fetch_counts: Counter[str] = Counter()

        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._inflight: dict[str, asyncio.Task[Asset]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cancelled = False
        self._closed = False

    async def __aenter__(self) -> AssetResolver:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def cancelled(self) -> bool:
        return self._cancelled or (self.token is not None and self.token.cancelled)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def resolve(self, url: str) -> Asset:
        """Resolve one URL, sharing work with every other caller for it.

        Returns:
            The (possibly failed) Asset for ``url``.

        Raises:
            ExportCancelledError: If the job was cancelled.
            AssetResolverUnavailableError: If the resolver has been closed.
        """
        if self._closed:
            raise AssetResolverUnavailableError("Asset resolver has been closed")

        url = url.strip()
        cached = self.cache.get(url)
        if cached is not None and cached.state is not ResolutionState.PENDING:
            return cached

        task = self._inflight.get(url)
        if task is None:
            self._check_cancelled()
            self._loop = asyncio.get_running_loop()
            asset = self.cache.add(Asset(url=url))
            task = asyncio.create_task(self._resolve_one(asset))
            self._inflight[url] = task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if self.cancelled:
                raise ExportCancelledError("Asset resolution was cancelled") from None
            raise

    async def resolve_all(
        self,
        urls: Iterable[str],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> dict[str, Asset]:
        """Resolve every distinct URL; completion order does not matter.

        Args:
            urls: Asset URLs, duplicates allowed.
            on_progress: Called with ``(completed, total)`` after each asset.

        Returns:
            Mapping of URL to Asset for every requested URL.
        """
        unique = list(dict.fromkeys(u.strip() for u in urls if u and u.strip()))
        if not unique:
            return {}

        self._check_cancelled()
        logger.info("Resolving %d assets (concurrency=%d)", len(unique), self.concurrency)

        tasks = [asyncio.create_task(self.resolve(url)) for url in unique]
        completed = 0
        try:
            for next_done in asyncio.as_completed(tasks):
                await next_done
                completed += 1
                if on_progress is not None:
                    on_progress(completed, len(unique))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failed = sum(1 for url in unique if not self.cache.get(url).is_resolved)
        logger.info("Resolved %d/%d assets", len(unique) - failed, len(unique))
        return {url: self.cache.get(url) for url in unique}

    def cancel(self) -> None:
        """Abort in-flight fetches; no new fetch starts afterwards."""
        self._cancelled = True
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._cancel_tasks()
        else:
            loop.call_soon_threadsafe(self._cancel_tasks)

    async def aclose(self) -> None:
        """Cancel leftovers and close the HTTP client if we created it."""
        self._closed = True
        pending = [t for t in self._inflight.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cancel_tasks(self) -> None:
        for task in self._inflight.values():
            if not task.done():
                task.cancel()

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise ExportCancelledError("Asset resolution was cancelled")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                follow_redirects=True,
                headers={"User-Agent": settings.asset_user_agent},
                transport=self._transport,
            )
        return self._client

    async def _resolve_one(self, asset: Asset) -> Asset:
        try:
            async with self._semaphore:
                last_error: AssetResolutionError | None = None
                for attempt in range(self.max_retries + 1):
                    self._check_cancelled()
                    try:
                        data, content_type = await self._fetch(asset.url)
                    except TransientAssetError as e:
                        last_error = e
                        if attempt < self.max_retries:
                            delay = self.backoff_seconds * (2**attempt)
                            logger.debug(
                                "Transient failure for %s (attempt %d/%d), retrying in %.2fs: %s",
                                asset.url,
                                attempt + 1,
                                self.max_retries + 1,
                                delay,
                                e.detail,
                            )
                            await self._sleep(delay)
                        continue
                    except PermanentAssetError as e:
                        last_error = e
                        break

                    asset.mark_resolved(data, content_type)
                    logger.debug("Resolved %s (%s, %d bytes)", asset.url, content_type, len(data))
                    return asset

                self._record_failure(asset, last_error)
                return asset
        except (ExportCancelledError, asyncio.CancelledError):
            if asset.state is ResolutionState.PENDING:
                asset.mark_failed("cancelled")
            raise
        finally:
            self._inflight.pop(asset.url, None)

    def _record_failure(self, asset: Asset, error: AssetResolutionError | None) -> None:
        detail = error.detail if error is not None else "unknown error"
        asset.mark_failed(detail)
        logger.warning("Asset failed: %s (%s)", asset.url, detail)
        self.warnings.append(
            ExportWarning(code="asset_failed", message=f"Could not load {_short(asset.url)}: {detail}")
        )

    async def _fetch(self, url: str) -> tuple[bytes, str]:
        scheme = urlparse(url).scheme.lower()
        if scheme == "data":
            data, mime_type = decode_data_url(url)
            if len(data) > self.max_bytes:
                raise PermanentAssetError(_short(url), "asset exceeds size limit")
            return data, mime_type
        if scheme not in ("http", "https"):
            raise PermanentAssetError(url, f"unsupported URL scheme '{scheme or 'none'}'")

        self.fetch_counts[url] += 1
        client = self._get_client()
        try:
            async with client.stream("GET", url) as response:
                status = response.status_code
                if status in TRANSIENT_STATUS_CODES or status >= 500:
                    raise TransientAssetError(url, f"HTTP {status}")
                if status >= 400:
                    raise PermanentAssetError(url, f"HTTP {status}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise PermanentAssetError(url, "asset exceeds size limit")

                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise PermanentAssetError(url, "asset exceeds size limit")

                header_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        except httpx.TimeoutException as e:
            raise TransientAssetError(url, "request timed out") from e
        except httpx.TransportError as e:
            raise TransientAssetError(url, f"network error ({type(e).__name__})") from e
        except httpx.RequestError as e:
            raise PermanentAssetError(url, f"request failed ({type(e).__name__})") from e

        data = bytes(body)
        if not header_type or header_type in ("application/octet-stream", "binary/octet-stream"):
            header_type = sniff_content_type(data, url)
        return data, header_type


def _short(url: str, limit: int = 120) -> str:
    return url if len(url) <= limit else f"{url[: limit - 3]}..."
