"""
IPNI Advertisement Fetcher

Fetches content-addressed IPNI documents (advertisements and entries chunks)
from an index provider's HTTP endpoint:

    GET <provider>/ipni/v1/ad/<cid>

Failures are typed (see piece_indexer.errors) so the chain walker can tell
an HTTP status from a network failure or a timeout.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import aiohttp
from multiformats import CID

from ..errors import HttpStatusError, FetchTimeoutError, MalformedResponseError, NetworkError
from ..types import AdvertisedPayload
from .metadata import decode_base64, parse_metadata


# Advertisement with no entries, see go-libipni ingest/schema NoEntries
NO_ENTRIES_CID = "bafkreehdwdcefgh4dqkjv67uzcmw7oje"

# Server messages longer than this are truncated before being stored
MAX_SERVER_MESSAGE_LENGTH = 500


@dataclass
class FetcherConfig:
    """Configuration for advertisement fetcher."""
    request_timeout: float = 30.0
    max_connections: int = 100


def advertisement_url(provider_base_url: str, cid: str) -> str:
    """URL of a content-addressed IPNI document."""
    return urljoin(provider_base_url, f"/ipni/v1/ad/{cid}")


def payload_cid_from_multihash(entry_hash: str) -> str:
    """Build a CIDv1 (raw codec, base32) from a base64-encoded multihash."""
    return str(CID("base32", 1, "raw", decode_base64(entry_hash)))


class AdvertisementFetcher:
    """
    Fetches advertisements and entries chunks from index providers.

    Usage:
        async with AdvertisementFetcher(config) as fetcher:
            payload = await fetcher.fetch_advertised_payload(address, ad_cid)
    """

    def __init__(self, config: Optional[FetcherConfig] = None):
        self.config = config or FetcherConfig()
        self._logger = logging.getLogger("AdvertisementFetcher")
        self._session: Optional[aiohttp.ClientSession] = None

        # Stats
        self._requests = 0
        self._failures = 0

    async def start(self):
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self.config.max_connections)
            )

    async def stop(self):
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "AdvertisementFetcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # =========================================================================
    # Raw Document Fetching
    # =========================================================================

    async def fetch_cid(
        self,
        provider_base_url: str,
        cid: str,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Fetch and parse one IPNI JSON document.

        Raises:
            HttpStatusError: non-2xx response
            FetchTimeoutError: request exceeded timeout
            NetworkError: connection or DNS failure
            MalformedResponseError: body is not UTF-8 JSON
        """
        if self._session is None:
            await self.start()

        url = advertisement_url(provider_base_url, cid)
        timeout = timeout if timeout is not None else self.config.request_timeout
        self._requests += 1
        self._logger.debug(f"Fetching {url}")

        try:
            async with self._session.get(
                url,
                timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                self._logger.debug(f"Response from {url} -> {response.status}")
                if response.status < 200 or response.status >= 300:
                    message = await self._read_error_body(response)
                    raise HttpStatusError(response.status, message, url)
                body = await response.read()
        except asyncio.TimeoutError as e:
            self._failures += 1
            raise FetchTimeoutError(url, timeout) from e
        except aiohttp.ClientError as e:
            self._failures += 1
            raise NetworkError(url, e) from e
        except HttpStatusError:
            self._failures += 1
            raise

        try:
            return json.loads(body.decode("utf-8"))
        except ValueError as e:
            self._failures += 1
            raise MalformedResponseError(url, e) from e

    async def _read_error_body(self, response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.text()
        except (aiohttp.ClientError, UnicodeDecodeError):
            return ""
        return body.rstrip()[:MAX_SERVER_MESSAGE_LENGTH]

    # =========================================================================
    # Advertisement Payload
    # =========================================================================

    async def fetch_advertised_payload(
        self,
        provider_address: str,
        advertisement_cid: str,
        timeout: Optional[float] = None
    ) -> AdvertisedPayload:
        """
        Fetch one advertisement and sample the first payload block it covers.

        A 404 on the entries chunk is reported via entries_fetch_error
        instead of raising; the provider cannot serve those entries any more
        and the walk must move past this advertisement.
        """
        advertisement = await self.fetch_cid(provider_address, advertisement_cid, timeout)
        if not isinstance(advertisement, dict):
            raise MalformedResponseError(
                advertisement_url(provider_address, advertisement_cid),
                "advertisement is not a JSON object"
            )

        previous_advertisement_cid = _link(advertisement.get("PreviousID"))

        entries_cid = _link(advertisement.get("Entries"))
        if not entries_cid or entries_cid == NO_ENTRIES_CID:
            self._logger.debug(f"Advertisement {advertisement_cid} has no entries")
            return AdvertisedPayload(previous_advertisement_cid=previous_advertisement_cid)

        metadata = parse_metadata(_metadata_bytes(advertisement))
        piece_cid = metadata.deal.piece_cid if metadata.deal else None

        try:
            entries_chunk = await self.fetch_cid(provider_address, entries_cid, timeout)
        except HttpStatusError as e:
            if e.status != 404:
                raise
            self._logger.debug(
                f"Cannot fetch advertisement {advertisement_cid} entries {entries_cid}: "
                f"{e.status} {e.server_message or '<not found>'}"
            )
            return AdvertisedPayload(
                previous_advertisement_cid=previous_advertisement_cid,
                piece_cid=piece_cid,
                entries_fetch_error=True
            )

        entries = entries_chunk.get("Entries") if isinstance(entries_chunk, dict) else None
        if not entries:
            self._logger.debug(f"Entries chunk {entries_cid} is empty")
            return AdvertisedPayload(
                previous_advertisement_cid=previous_advertisement_cid,
                piece_cid=piece_cid
            )

        try:
            payload_cid = payload_cid_from_multihash(entries[0]["/"]["bytes"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(advertisement_url(provider_address, entries_cid), e) from e

        return AdvertisedPayload(
            previous_advertisement_cid=previous_advertisement_cid,
            piece_cid=piece_cid,
            payload_cid=payload_cid
        )

    def get_stats(self) -> Dict:
        """Get fetcher statistics."""
        return {
            "requests": self._requests,
            "failures": self._failures,
        }


def _link(value: Any) -> Optional[str]:
    """Extract a DAG-JSON link {"/": "<cid>"}."""
    if isinstance(value, dict):
        cid = value.get("/")
        if isinstance(cid, str) and cid:
            return cid
    return None


def _metadata_bytes(advertisement: Dict) -> str:
    """Extract Metadata["/"].bytes, the base64 metadata blob."""
    try:
        return advertisement["Metadata"]["/"]["bytes"]
    except (KeyError, TypeError):
        return ""
