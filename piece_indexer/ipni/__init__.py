"""
IPNI Advertisement Indexer

Walks the advertisement chains that Filecoin storage providers publish to
IPNI and samples one payload block per advertised piece.

Components:
- parse_metadata: Decodes transport metadata (varint + DAG-CBOR deal info)
- AdvertisementFetcher: Fetches advertisements and entries chunks over HTTP
- process_next_advertisement / walk_one_step: One step of the chain walk
- walk_chain: Per-provider walker loop with back-off
- ProviderSync: Periodic download of the IPNI provider directory
- IndexerCoordinator: Orchestrates sync and walkers
"""

from .metadata import parse_metadata
from .fetcher import AdvertisementFetcher, FetcherConfig
from .chain_walker import (
    next_step_interval,
    process_next_advertisement,
    walk_chain,
    walk_one_step,
)
from .provider_sync import ProviderSync, ProviderSyncConfig, multiaddr_to_http_url
from .coordinator import IndexerCoordinator, CoordinatorConfig, ProviderInfoTable

__all__ = [
    "parse_metadata",
    "AdvertisementFetcher",
    "FetcherConfig",
    "next_step_interval",
    "process_next_advertisement",
    "walk_chain",
    "walk_one_step",
    "ProviderSync",
    "ProviderSyncConfig",
    "multiaddr_to_http_url",
    "IndexerCoordinator",
    "CoordinatorConfig",
    "ProviderInfoTable",
]
