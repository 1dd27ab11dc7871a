"""Tests for the asset resolver: deduplication, retries, failures, cancellation.

HTTP is served by httpx.MockTransport; no network access is needed.
"""

from __future__ import annotations

import asyncio
import base64

import httpx
import pytest

from chat_export.exceptions import AssetResolverUnavailableError, ExportCancelledError
from chat_export.models.asset import Asset, ResolutionState
from chat_export.services.assets import (
    AssetCache,
    AssetResolver,
    decode_data_url,
    sniff_content_type,
)
from chat_export.services.cancellation import CancellationToken

IMAGE_URL = "https://cdn.example.com/plot.png"
OTHER_URL = "https://cdn.example.com/other.png"


async def _no_sleep(delay: float) -> None:
    return None


class TestHelpers:
    def test_sniff_png(self, make_png) -> None:
        assert sniff_content_type(make_png()) == "image/png"

    def test_sniff_svg(self) -> None:
        assert sniff_content_type(b'<?xml version="1.0"?><svg></svg>') == "image/svg+xml"

    def test_sniff_falls_back_to_url(self) -> None:
        assert sniff_content_type(b"\x00\x01", "https://x.test/a.pdf?dl=1") == "application/pdf"
        assert sniff_content_type(b"\x00\x01") == "application/octet-stream"

    def test_decode_base64_data_url(self) -> None:
        payload = base64.b64encode(b"hello").decode()
        assert decode_data_url(f"data:text/plain;base64,{payload}") == (b"hello", "text/plain")

    def test_decode_percent_encoded_data_url(self) -> None:
        assert decode_data_url("data:,a%20b") == (b"a b", "text/plain")


class TestAssetCache:
    def test_first_writer_wins(self) -> None:
        cache = AssetCache()
        first = cache.add(Asset(url=IMAGE_URL))
        second = cache.add(Asset(url=IMAGE_URL))

        assert second is first
        assert len(cache) == 1
        assert IMAGE_URL in cache

    def test_failed_lists_failed_assets(self) -> None:
        cache = AssetCache()
        ok = cache.add(Asset(url=IMAGE_URL))
        ok.mark_resolved(b"x", "image/png")
        bad = cache.add(Asset(url=OTHER_URL))
        bad.mark_failed("HTTP 404")

        assert cache.failed == [bad]


class TestResolve:
    @pytest.mark.asyncio
    async def test_resolves_and_keeps_content_type(self, make_png) -> None:
        png = make_png()
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, content=png, headers={"content-type": "image/png"})
        )
        async with AssetResolver(transport=transport) as resolver:
            asset = await resolver.resolve(IMAGE_URL)

        assert asset.state is ResolutionState.RESOLVED
        assert asset.data == png
        assert asset.content_type == "image/png"
        assert asset.is_image

    @pytest.mark.asyncio
    async def test_sniffs_when_header_is_generic(self, make_png) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(
                200, content=make_png(), headers={"content-type": "application/octet-stream"}
            )
        )
        async with AssetResolver(transport=transport) as resolver:
            asset = await resolver.resolve(IMAGE_URL)
        assert asset.content_type == "image/png"

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_fetch(self, make_png) -> None:
        calls: list[str] = []
        png = make_png()

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            await asyncio.sleep(0.01)
            return httpx.Response(200, content=png, headers={"content-type": "image/png"})

        async with AssetResolver(transport=httpx.MockTransport(handler)) as resolver:
            first, second, third = await asyncio.gather(
                resolver.resolve(IMAGE_URL),
                resolver.resolve(IMAGE_URL),
                resolver.resolve(IMAGE_URL),
            )
            again = await resolver.resolve(IMAGE_URL)

        assert calls == [IMAGE_URL]
        assert resolver.fetch_counts[IMAGE_URL] == 1
        assert first is second is third is again

    @pytest.mark.asyncio
    async def test_resolve_all_deduplicates(self, make_png) -> None:
        calls: list[str] = []
        png = make_png()

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, content=png, headers={"content-type": "image/png"})

        progress: list[tuple[int, int]] = []
        async with AssetResolver(transport=httpx.MockTransport(handler)) as resolver:
            assets = await resolver.resolve_all(
                [IMAGE_URL, OTHER_URL, IMAGE_URL],
                on_progress=lambda done, total: progress.append((done, total)),
            )

        assert sorted(calls) == sorted([IMAGE_URL, OTHER_URL])
        assert set(assets) == {IMAGE_URL, OTHER_URL}
        assert progress[-1] == (2, 2)

    @pytest.mark.asyncio
    async def test_data_url_needs_no_fetch(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("data URLs must not be fetched")

        url = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\nrest").decode()
        async with AssetResolver(transport=httpx.MockTransport(handler)) as resolver:
            asset = await resolver.resolve(url)

        assert asset.is_resolved
        assert asset.content_type == "image/png"

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, make_png) -> None:
        active = 0
        peak = 0
        png = make_png()

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return httpx.Response(200, content=png, headers={"content-type": "image/png"})

        urls = [f"https://cdn.example.com/{i}.png" for i in range(8)]
        async with AssetResolver(transport=httpx.MockTransport(handler), concurrency=2) as resolver:
            await resolver.resolve_all(urls)

        assert peak <= 2


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, make_png) -> None:
        responses = [httpx.Response(503), httpx.Response(200, content=make_png())]
        delays: list[float] = []

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        async with AssetResolver(
            transport=httpx.MockTransport(handler),
            max_retries=2,
            backoff_seconds=0.5,
            sleep=record_sleep,
        ) as resolver:
            asset = await resolver.resolve(IMAGE_URL)

        assert asset.is_resolved
        assert resolver.fetch_counts[IMAGE_URL] == 2
        assert delays == [0.5]
        assert resolver.warnings == []

    @pytest.mark.asyncio
    async def test_backoff_doubles_until_retries_run_out(self) -> None:
        delays: list[float] = []

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        async with AssetResolver(
            transport=httpx.MockTransport(lambda request: httpx.Response(429)),
            max_retries=3,
            backoff_seconds=0.25,
            sleep=record_sleep,
        ) as resolver:
            asset = await resolver.resolve(IMAGE_URL)

        assert asset.state is ResolutionState.FAILED
        assert resolver.fetch_counts[IMAGE_URL] == 4
        assert delays == [0.25, 0.5, 1.0]

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with AssetResolver(
            transport=httpx.MockTransport(handler), max_retries=1, sleep=_no_sleep
        ) as resolver:
            asset = await resolver.resolve(IMAGE_URL)

        assert asset.state is ResolutionState.FAILED
        assert resolver.fetch_counts[IMAGE_URL] == 2
        assert "network error" in asset.error

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self) -> None:
        async with AssetResolver(
            transport=httpx.MockTransport(lambda request: httpx.Response(404)),
            max_retries=3,
            sleep=_no_sleep,
        ) as resolver:
            asset = await resolver.resolve(IMAGE_URL)

        assert asset.state is ResolutionState.FAILED
        assert asset.error == "HTTP 404"
        assert resolver.fetch_counts[IMAGE_URL] == 1
        assert [w.code for w in resolver.warnings] == ["asset_failed"]
        assert IMAGE_URL in resolver.warnings[0].message

    @pytest.mark.asyncio
    async def test_oversized_asset_fails(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"x" * 100))
        async with AssetResolver(transport=transport, max_bytes=10) as resolver:
            asset = await resolver.resolve(IMAGE_URL)

        assert asset.state is ResolutionState.FAILED
        assert asset.error == "asset exceeds size limit"

    @pytest.mark.asyncio
    async def test_unsupported_scheme_fails(self) -> None:
        async with AssetResolver(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as resolver:
            asset = await resolver.resolve("blob:https://chat.example.com/1234")

        assert asset.state is ResolutionState.FAILED
        assert "unsupported URL scheme" in asset.error

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, make_png) -> None:
        png = make_png()

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == OTHER_URL:
                return httpx.Response(404)
            return httpx.Response(200, content=png, headers={"content-type": "image/png"})

        async with AssetResolver(transport=httpx.MockTransport(handler)) as resolver:
            assets = await resolver.resolve_all([IMAGE_URL, OTHER_URL])

        assert assets[IMAGE_URL].is_resolved
        assert assets[OTHER_URL].state is ResolutionState.FAILED
        assert len(resolver.warnings) == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_no_fetch_after_cancel(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, content=b"x")

        token = CancellationToken()
        token.cancel()
        async with AssetResolver(token=token, transport=httpx.MockTransport(handler)) as resolver:
            with pytest.raises(ExportCancelledError):
                await resolver.resolve_all([IMAGE_URL, OTHER_URL])

        assert calls == []

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_fetch(self) -> None:
        calls: list[str] = []
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200, content=b"late")

        token = CancellationToken()
        async with AssetResolver(
            token=token, transport=httpx.MockTransport(handler), concurrency=1
        ) as resolver:
            token.on_cancel(resolver.cancel)
            job = asyncio.create_task(resolver.resolve_all([IMAGE_URL, OTHER_URL]))
            await started.wait()
            token.cancel("user pressed cancel")

            with pytest.raises(ExportCancelledError):
                await asyncio.wait_for(job, timeout=5)

        # The second URL was waiting for the semaphore and never fetched
        assert calls == [IMAGE_URL]
        assert resolver.cache.get(IMAGE_URL).state is ResolutionState.FAILED

    @pytest.mark.asyncio
    async def test_closed_resolver_is_unavailable(self) -> None:
        resolver = AssetResolver(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        await resolver.aclose()

        with pytest.raises(AssetResolverUnavailableError):
            await resolver.resolve(IMAGE_URL)
