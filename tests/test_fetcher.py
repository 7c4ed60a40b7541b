"""
Tests for the advertisement fetcher against a local IPNI provider server.
"""

import pytest

from piece_indexer.errors import (
    HttpStatusError,
    MalformedResponseError,
    MetadataDecodeError,
    NetworkError,
)
from piece_indexer.ipni.chain_walker import process_next_advertisement
from piece_indexer.ipni.fetcher import (
    NO_ENTRIES_CID,
    AdvertisementFetcher,
    advertisement_url,
    payload_cid_from_multihash,
)
from piece_indexer.types import ProviderInfo

from ipni_helpers import (
    ENTRY_MULTIHASH,
    ENTRY_PAYLOAD_CID,
    ipni_provider,
    make_advertisement,
    make_entries_chunk,
    unused_local_url,
)


AD_CID = "bagu4ehbaadvertisement"
PREVIOUS_AD_CID = "bagu4ehbaprevious"
ENTRIES_CID = "bagu4ehbaentries"


def test_payload_cid_from_multihash():
    assert payload_cid_from_multihash(ENTRY_MULTIHASH) == ENTRY_PAYLOAD_CID


def test_advertisement_url():
    assert advertisement_url("https://provider.example", "bafy1") == "https://provider.example/ipni/v1/ad/bafy1"
    assert advertisement_url("http://1.2.3.4:3104/", "bafy1") == "http://1.2.3.4:3104/ipni/v1/ad/bafy1"


class TestFetchAdvertisedPayload:
    """fetch_advertised_payload() semantics."""

    @pytest.mark.asyncio
    async def test_extracts_previous_piece_and_first_payload(self):
        documents = {
            AD_CID: make_advertisement(previous=PREVIOUS_AD_CID, entries=ENTRIES_CID),
            ENTRIES_CID: make_entries_chunk(ENTRY_MULTIHASH, "EiDsecondentryhashsecondentryhashsecondentryh=="),
        }
        async with ipni_provider(documents) as provider:
            async with AdvertisementFetcher() as fetcher:
                payload = await fetcher.fetch_advertised_payload(provider.url, AD_CID)

        assert payload.previous_advertisement_cid == PREVIOUS_AD_CID
        assert payload.piece_cid.startswith("baga6ea4seaq")
        assert payload.payload_cid == ENTRY_PAYLOAD_CID
        assert payload.entries_fetch_error is False

    @pytest.mark.asyncio
    async def test_no_entries_sentinel_skips_entries_fetch(self):
        documents = {AD_CID: make_advertisement(previous=PREVIOUS_AD_CID, entries=NO_ENTRIES_CID)}
        async with ipni_provider(documents) as provider:
            async with AdvertisementFetcher() as fetcher:
                payload = await fetcher.fetch_advertised_payload(provider.url, AD_CID)

        assert payload.previous_advertisement_cid == PREVIOUS_AD_CID
        assert payload.piece_cid is None
        assert payload.payload_cid is None
        assert provider.requested == [AD_CID]

    @pytest.mark.asyncio
    async def test_missing_entries_link(self):
        documents = {AD_CID: make_advertisement()}
        async with ipni_provider(documents) as provider:
            async with AdvertisementFetcher() as fetcher:
                payload = await fetcher.fetch_advertised_payload(provider.url, AD_CID)

        assert payload.previous_advertisement_cid is None
        assert payload.payload_cid is None

    @pytest.mark.asyncio
    async def test_entries_404_is_soft(self):
        documents = {AD_CID: make_advertisement(previous=PREVIOUS_AD_CID, entries=ENTRIES_CID)}
        async with ipni_provider(documents) as provider:
            async with AdvertisementFetcher() as fetcher:
                payload = await fetcher.fetch_advertised_payload(provider.url, AD_CID)

        assert payload.previous_advertisement_cid == PREVIOUS_AD_CID
        assert payload.piece_cid.startswith("baga6ea4seaq")
        assert payload.payload_cid is None
        assert payload.entries_fetch_error is True

    @pytest.mark.asyncio
    async def test_entries_500_is_hard(self):
        documents = {AD_CID: make_advertisement(previous=PREVIOUS_AD_CID, entries=ENTRIES_CID)}
        failures = {ENTRIES_CID: (500, "internal boom")}
        async with ipni_provider(documents, failures) as provider:
            async with AdvertisementFetcher() as fetcher:
                with pytest.raises(HttpStatusError) as exc_info:
                    await fetcher.fetch_advertised_payload(provider.url, AD_CID)

        assert exc_info.value.status == 500
        assert exc_info.value.server_message == "internal boom"
        assert exc_info.value.url == f"{provider.url}/ipni/v1/ad/{ENTRIES_CID}"

    @pytest.mark.asyncio
    async def test_advertisement_404_is_hard(self):
        async with ipni_provider({}) as provider:
            async with AdvertisementFetcher() as fetcher:
                with pytest.raises(HttpStatusError) as exc_info:
                    await fetcher.fetch_advertised_payload(provider.url, AD_CID)

        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_empty_entries_chunk_keeps_piece(self):
        documents = {
            AD_CID: make_advertisement(entries=ENTRIES_CID),
            ENTRIES_CID: make_entries_chunk(),
        }
        async with ipni_provider(documents) as provider:
            async with AdvertisementFetcher() as fetcher:
                payload = await fetcher.fetch_advertised_payload(provider.url, AD_CID)

        assert payload.piece_cid.startswith("baga6ea4seaq")
        assert payload.payload_cid is None
        assert payload.entries_fetch_error is False

    @pytest.mark.asyncio
    async def test_malformed_metadata_is_hard(self):
        documents = {
            AD_CID: make_advertisement(entries=ENTRIES_CID, metadata=""),
            ENTRIES_CID: make_entries_chunk(ENTRY_MULTIHASH),
        }
        async with ipni_provider(documents) as provider:
            async with AdvertisementFetcher() as fetcher:
                with pytest.raises(MetadataDecodeError):
                    await fetcher.fetch_advertised_payload(provider.url, AD_CID)

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        url = unused_local_url()
        async with AdvertisementFetcher() as fetcher:
            with pytest.raises(NetworkError) as exc_info:
                await fetcher.fetch_advertised_payload(url, AD_CID)

        assert exc_info.value.url == f"{url}/ipni/v1/ad/{AD_CID}"
        assert fetcher.get_stats()["failures"] == 1


class TestFetchCid:
    """fetch_cid() error typing."""

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        failures = {AD_CID: (200, "<html>not json</html>")}
        async with ipni_provider({}, failures) as provider:
            async with AdvertisementFetcher() as fetcher:
                with pytest.raises(MalformedResponseError):
                    await fetcher.fetch_cid(provider.url, AD_CID)

    @pytest.mark.asyncio
    async def test_non_utf8_body(self):
        failures = {AD_CID: (200, b"\xff\xfe{}")}
        async with ipni_provider({}, failures) as provider:
            async with AdvertisementFetcher() as fetcher:
                with pytest.raises(MalformedResponseError) as exc_info:
                    await fetcher.fetch_cid(provider.url, AD_CID)

        assert exc_info.value.url == f"{provider.url}/ipni/v1/ad/{AD_CID}"

    @pytest.mark.asyncio
    async def test_non_utf8_advertisement_status_names_url(self):
        failures = {AD_CID: (200, b"\xff\xfe{}")}
        async with ipni_provider({}, failures) as provider:
            async with AdvertisementFetcher() as fetcher:
                result = await process_next_advertisement(
                    "12D3KooWTestProvider",
                    ProviderInfo(provider_address=provider.url, last_advertisement_cid=AD_CID),
                    None,
                    fetcher
                )

        assert result.failed is True
        assert result.new_state.status.startswith(
            f"Error processing {AD_CID}: HTTP request to {provider.url}/ipni/v1/ad/{AD_CID} failed:"
        )
        assert "internal error" not in result.new_state.status

    @pytest.mark.asyncio
    async def test_long_server_message_truncated(self):
        failures = {AD_CID: (503, "x" * 2000 + "\n")}
        async with ipni_provider({}, failures) as provider:
            async with AdvertisementFetcher() as fetcher:
                with pytest.raises(HttpStatusError) as exc_info:
                    await fetcher.fetch_cid(provider.url, AD_CID)

        assert len(exc_info.value.server_message) == 500

    @pytest.mark.asyncio
    async def test_session_opened_lazily(self):
        documents = {AD_CID: {"hello": "world"}}
        async with ipni_provider(documents) as provider:
            fetcher = AdvertisementFetcher()
            try:
                assert await fetcher.fetch_cid(provider.url, AD_CID) == {"hello": "world"}
            finally:
                await fetcher.stop()
