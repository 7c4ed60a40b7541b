"""
Tests for the IPNI provider directory sync.
"""

import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from piece_indexer.errors import HttpStatusError
from piece_indexer.ipni.provider_sync import (
    ProviderSync,
    ProviderSyncConfig,
    multiaddr_to_http_url,
    parse_providers,
)
from piece_indexer.types import ProviderInfo


def directory_entry(provider_id, addrs, last_advertisement="bagu4ehbahead"):
    return {
        "AddrInfo": {"ID": provider_id, "Addrs": addrs},
        "LastAdvertisement": {"/": last_advertisement},
        "LastAdvertisementTime": "2024-09-16T12:00:00Z",
        "Publisher": {"ID": provider_id, "Addrs": addrs},
    }


DIRECTORY = [
    directory_entry("12D3KooWHttps", ["/dns/provider.example/tcp/443/https"], "bagu4ehbahttps"),
    directory_entry("12D3KooWLibp2p", ["/ip4/1.2.3.4/tcp/24001"], "bagu4ehbalibp2p"),
]


@asynccontextmanager
async def providers_server(responses):
    """Serve GET /providers, one response per request (last one repeats)."""
    responses = list(responses)

    async def handle(request):
        status, body = responses.pop(0) if len(responses) > 1 else responses[0]
        if status == 200:
            return web.json_response(body)
        return web.Response(status=status, text=body)

    app = web.Application()
    app.router.add_get("/providers", handle)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        yield f"http://127.0.0.1:{server.port}/providers"
    finally:
        await server.close()


class TestMultiaddrToHttpUrl:
    """Multiaddr conversion."""

    def test_https_default_port(self):
        assert multiaddr_to_http_url("/dns/provider.example/tcp/443/https") == "https://provider.example"

    def test_http_custom_port(self):
        assert multiaddr_to_http_url("/ip4/1.2.3.4/tcp/3104/http") == "http://1.2.3.4:3104"

    def test_http_default_port(self):
        assert multiaddr_to_http_url("/dns4/provider.example/tcp/80/http") == "http://provider.example"

    def test_ip6_host_bracketed(self):
        assert multiaddr_to_http_url("/ip6/::1/tcp/8080/http") == "http://[::1]:8080"

    def test_libp2p_only_rejected(self):
        with pytest.raises(ValueError):
            multiaddr_to_http_url("/ip4/1.2.3.4/tcp/24001")

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            multiaddr_to_http_url("not a multiaddr")


class TestParseProviders:
    """Directory response parsing."""

    def test_http_and_raw_addresses(self):
        providers = parse_providers(DIRECTORY)

        assert providers == {
            "12D3KooWHttps": ProviderInfo("https://provider.example", "bagu4ehbahttps"),
            "12D3KooWLibp2p": ProviderInfo("/ip4/1.2.3.4/tcp/24001", "bagu4ehbalibp2p"),
        }

    def test_empty_addrs(self):
        providers = parse_providers([directory_entry("12D3KooWNoAddr", [])])

        assert providers["12D3KooWNoAddr"].provider_address == ""

    def test_incomplete_entries_skipped(self):
        providers = parse_providers([
            {"Publisher": {"ID": "12D3KooWNoHead", "Addrs": []}},
            {"LastAdvertisement": {"/": "bagu4ehbaorphan"}},
            "not an entry",
        ])

        assert providers == {}


class TestProviderSync:
    """Fetch and run loop."""

    @pytest.mark.asyncio
    async def test_get_providers_with_metadata(self):
        async with providers_server([(200, DIRECTORY)]) as url:
            sync = ProviderSync(ProviderSyncConfig(providers_url=url))
            providers = await sync.get_providers_with_metadata()

        assert set(providers) == {"12D3KooWHttps", "12D3KooWLibp2p"}

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        async with providers_server([(503, "maintenance")]) as url:
            sync = ProviderSync(ProviderSyncConfig(providers_url=url))
            with pytest.raises(HttpStatusError) as exc_info:
                await sync.get_providers_with_metadata()

        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_unexpected_shape_raises(self):
        async with providers_server([(200, {"not": "a list"})]) as url:
            sync = ProviderSync(ProviderSyncConfig(providers_url=url))
            with pytest.raises(ValueError):
                await sync.get_providers_with_metadata()

    @pytest.mark.asyncio
    async def test_run_skips_failed_cycle(self):
        async with providers_server([(500, "boom"), (200, DIRECTORY)]) as url:
            sync = ProviderSync(ProviderSyncConfig(providers_url=url, min_sync_interval=0.01))
            stop_event = asyncio.Event()
            cycles = []

            async def consume():
                async for providers in sync.run(stop_event):
                    cycles.append(providers)
                    stop_event.set()

            await asyncio.wait_for(consume(), timeout=5.0)

        assert len(cycles) == 1
        assert "12D3KooWHttps" in cycles[0]
        stats = sync.get_stats()
        assert stats["cycles"] == 2
        assert stats["failed_cycles"] == 1
        assert stats["last_provider_count"] == 2

    @pytest.mark.asyncio
    async def test_run_returns_immediately_when_stopped(self):
        sync = ProviderSync(ProviderSyncConfig(providers_url="http://127.0.0.1:1/providers"))
        stop_event = asyncio.Event()
        stop_event.set()

        cycles = [providers async for providers in sync.run(stop_event)]

        assert cycles == []
        assert sync.get_stats()["cycles"] == 0
