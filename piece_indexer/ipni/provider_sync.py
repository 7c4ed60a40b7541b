"""
IPNI Provider Sync

Periodically downloads the IPNI provider directory and publishes, for every
index provider, its HTTP(S) base URL and current advertisement chain head.

Provider directory: GET https://cid.contact/providers
    [{"Publisher": {"ID": ..., "Addrs": [multiaddr, ...]},
      "LastAdvertisement": {"/": cid}, ...}, ...]
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

import aiohttp
import multiaddr

from ..errors import HttpStatusError
from ..types import ProviderInfo
from .chain_walker import HTTP_ADDRESS_PATTERN, sleep_unless_stopped


DEFAULT_PROVIDERS_URL = "https://cid.contact/providers"

HOST_PROTOCOLS = ("dns", "dns4", "dns6", "dnsaddr", "ip4", "ip6")


@dataclass
class ProviderSyncConfig:
    """Configuration for provider sync."""
    providers_url: str = DEFAULT_PROVIDERS_URL
    min_sync_interval: float = 60.0
    request_timeout: float = 120.0


def multiaddr_to_http_url(address: str) -> str:
    """
    Convert an HTTP(S) multiaddr to a URL.

    Examples:
        /dns/example.com/tcp/443/https  -> https://example.com
        /ip4/1.2.3.4/tcp/3104/http      -> http://1.2.3.4:3104
        /ip6/::1/tcp/80/tls/http        -> https://[::1]:80

    Raises:
        ValueError: address is not a multiaddr or has no HTTP transport
    """
    try:
        addr = multiaddr.Multiaddr(address)
        names = [p.name for p in addr.protocols()]
    except Exception as e:
        raise ValueError(f"Invalid multiaddr: {address}") from e

    if "https" in names or ("tls" in names and "http" in names):
        scheme = "https"
    elif "http" in names:
        scheme = "http"
    else:
        raise ValueError(f"Multiaddr has no HTTP transport: {address}")

    host_protocol = next((name for name in names if name in HOST_PROTOCOLS), None)
    if host_protocol is None:
        raise ValueError(f"Multiaddr has no host: {address}")
    host = addr.value_for_protocol(host_protocol)
    if host_protocol == "ip6":
        host = f"[{host}]"

    port = addr.value_for_protocol("tcp") if "tcp" in names else None
    default_port = "443" if scheme == "https" else "80"
    if port and str(port) != default_port:
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def parse_providers(providers: list, logger: Optional[logging.Logger] = None) -> Dict[str, ProviderInfo]:
    """Build the provider_id -> ProviderInfo map from the directory response."""
    logger = logger or logging.getLogger("ProviderSync")
    result: Dict[str, ProviderInfo] = {}

    for entry in providers:
        if not isinstance(entry, dict):
            continue
        publisher = entry.get("Publisher") or {}
        provider_id = publisher.get("ID")
        last_advertisement = (entry.get("LastAdvertisement") or {}).get("/")
        if not provider_id or not last_advertisement:
            logger.debug(f"Skipping incomplete provider entry: {entry}")
            continue

        addrs = publisher.get("Addrs") or []
        provider_address = addrs[0] if addrs else ""
        try:
            provider_address = multiaddr_to_http_url(provider_address)
        except ValueError as e:
            logger.debug(f"Cannot convert address to HTTP(s) URL (provider: {provider_id}): {e}")

        result[provider_id] = ProviderInfo(
            provider_address=provider_address,
            last_advertisement_cid=last_advertisement
        )

    return result


class ProviderSync:
    """
    IPNI provider directory sync.

    Usage:
        sync = ProviderSync(config)
        async for providers in sync.run(stop_event):
            ...  # full provider_id -> ProviderInfo map for this cycle
    """

    def __init__(self, config: Optional[ProviderSyncConfig] = None):
        self.config = config or ProviderSyncConfig()
        self._logger = logging.getLogger("ProviderSync")

        # Stats
        self._cycles = 0
        self._failed_cycles = 0
        self._last_provider_count = 0

    async def get_providers_with_metadata(self) -> Dict[str, ProviderInfo]:
        """Fetch the provider directory once."""
        url = self.config.providers_url
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
        ) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    body = (await response.text()).rstrip()
                    raise HttpStatusError(response.status, body, url)
                providers = await response.json(content_type=None)

        if not isinstance(providers, list):
            raise ValueError(f"Unexpected provider directory response from {url}")
        return parse_providers(providers, self._logger)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> AsyncIterator[Dict[str, ProviderInfo]]:
        """
        Yield a fresh provider map every cycle until stop_event is set.

        Failed cycles are logged and skipped; the consumer keeps its previous
        map until the next successful cycle.
        """
        while not (stop_event and stop_event.is_set()):
            started = time.monotonic()
            self._cycles += 1
            providers = None
            try:
                self._logger.info("Syncing from IPNI")
                providers = await self.get_providers_with_metadata()
                http_count = sum(
                    1 for p in providers.values()
                    if HTTP_ADDRESS_PATTERN.match(p.provider_address)
                )
                self._last_provider_count = len(providers)
                self._logger.info(
                    f"Found {len(providers)} providers, {http_count} support(s) HTTP(s)"
                )
            except Exception:
                self._failed_cycles += 1
                self._logger.exception("Cannot sync from IPNI")

            if providers is not None:
                yield providers

            delay = self.config.min_sync_interval - (time.monotonic() - started)
            if delay > 0:
                self._logger.info(f"Waiting for {delay:.1f}s before the next sync from IPNI")
                await sleep_unless_stopped(delay, stop_event)

    def get_stats(self) -> Dict:
        """Get sync statistics."""
        return {
            "cycles": self._cycles,
            "failed_cycles": self._failed_cycles,
            "last_provider_count": self._last_provider_count,
        }

