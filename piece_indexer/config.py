"""
Piece Indexer Configuration

All configurable parameters for the indexer and the query API.
Values come from defaults, or from the environment (and a .env file) via
IndexerConfig.from_env().
"""

import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from dotenv import load_dotenv

from .ipni.coordinator import CoordinatorConfig, DEFAULT_IGNORED_PROVIDER_IDS
from .ipni.fetcher import FetcherConfig
from .ipni.provider_sync import DEFAULT_PROVIDERS_URL, ProviderSyncConfig


@dataclass
class IndexerConfig:
    """Configuration for the piece indexer."""

    # ========== Storage ==========
    db_path: str = "data/piece_index.db"

    # ========== Provider Sync ==========
    providers_url: str = DEFAULT_PROVIDERS_URL

    # Start-to-start interval between two provider directory downloads (seconds)
    min_sync_interval: float = 60.0

    # ========== Chain Walking ==========
    # Start-to-start interval between two steps of the same provider (seconds)
    min_step_interval: float = 0.1

    # Per-request timeout for advertisement and entries fetches (seconds)
    fetch_timeout: float = 30.0

    # Providers never walked
    ignored_provider_ids: FrozenSet[str] = field(default_factory=lambda: DEFAULT_IGNORED_PROVIDER_IDS)

    # ========== Query API ==========
    api_host: str = "127.0.0.1"
    api_port: int = 3000

    # ========== Logging ==========
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "IndexerConfig":
        """Build configuration from environment variables."""
        load_dotenv(env_file)
        defaults = cls()

        extra_ignored = os.getenv("IGNORED_PROVIDERS", "")
        ignored = frozenset(
            p.strip() for p in extra_ignored.split(",") if p.strip()
        )

        return cls(
            db_path=os.getenv("DB_PATH", defaults.db_path),
            providers_url=os.getenv("IPNI_PROVIDERS_URL", defaults.providers_url),
            min_sync_interval=float(os.getenv("MIN_SYNC_INTERVAL", defaults.min_sync_interval)),
            min_step_interval=float(os.getenv("MIN_STEP_INTERVAL", defaults.min_step_interval)),
            fetch_timeout=float(os.getenv("FETCH_TIMEOUT", defaults.fetch_timeout)),
            ignored_provider_ids=DEFAULT_IGNORED_PROVIDER_IDS | ignored,
            api_host=os.getenv("API_HOST", defaults.api_host),
            api_port=int(os.getenv("API_PORT", defaults.api_port)),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )

    def fetcher_config(self) -> FetcherConfig:
        return FetcherConfig(request_timeout=self.fetch_timeout)

    def sync_config(self) -> ProviderSyncConfig:
        return ProviderSyncConfig(
            providers_url=self.providers_url,
            min_sync_interval=self.min_sync_interval
        )

    def coordinator_config(self) -> CoordinatorConfig:
        return CoordinatorConfig(
            min_step_interval=self.min_step_interval,
            fetch_timeout=self.fetch_timeout,
            ignored_provider_ids=self.ignored_provider_ids
        )
