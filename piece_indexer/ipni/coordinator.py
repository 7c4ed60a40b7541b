"""
Indexer Coordinator

Orchestrates all indexer components:
- Provider Sync: publishes provider addresses and chain heads every cycle
- Provider Info Table: latest ProviderInfo per provider, read by walkers
- Chain Walkers: one asyncio task per provider with new advertisements

Guarantees at most one walker per provider at any time. A walker exits once
its provider's chain is drained; the next sync cycle relaunches it when the
provider announces a new head.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Set

from ..types import ProviderInfo, Repository
from .chain_walker import walk_chain
from .fetcher import AdvertisementFetcher
from .provider_sync import ProviderSync


# Index providers known to never answer HTTP requests
DEFAULT_IGNORED_PROVIDER_IDS: FrozenSet[str] = frozenset()


@dataclass
class CoordinatorConfig:
    """Configuration for the indexer coordinator."""
    min_step_interval: float = 0.1
    fetch_timeout: float = 30.0
    ignored_provider_ids: FrozenSet[str] = field(default_factory=lambda: DEFAULT_IGNORED_PROVIDER_IDS)


class ProviderInfoTable:
    """
    Latest ProviderInfo for every provider seen by the sync.

    Single writer (the coordinator, from sync output), many readers (the
    walkers). Updates build a new map and swap it in, so readers always see
    a complete sync result.
    """

    def __init__(self):
        self._providers: Mapping[str, ProviderInfo] = {}

    def update(self, providers: Mapping[str, ProviderInfo]) -> None:
        """Merge a sync result; providers missing from it are kept."""
        merged = dict(self._providers)
        merged.update(providers)
        self._providers = merged

    def latest(self, provider_id: str) -> ProviderInfo:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider ID {provider_id}") from None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)


class IndexerCoordinator:
    """
    Runs the provider sync and launches chain walkers.

    Lifecycle:
    1. run() - consume sync cycles, launch walkers for new providers
    2. Walkers exit when their chain is drained
    3. stop() - set the stop signal and wait for walkers to return

    Usage:
        coordinator = IndexerCoordinator(repository, sync, fetcher, config)
        task = asyncio.create_task(coordinator.run())
        ...
        await coordinator.stop()
    """

    def __init__(
        self,
        repository: Repository,
        provider_sync: ProviderSync,
        fetcher: AdvertisementFetcher,
        config: Optional[CoordinatorConfig] = None
    ):
        self.config = config or CoordinatorConfig()
        self._repository = repository
        self._sync = provider_sync
        self._fetcher = fetcher
        self._logger = logging.getLogger("IndexerCoordinator")

        self.provider_info = ProviderInfoTable()
        self._stop_event = asyncio.Event()

        # Providers with a running walker
        self._active: Set[str] = set()
        self._walkers: Dict[str, asyncio.Task] = {}

        self._stats = {
            "sync_cycles": 0,
            "walkers_launched": 0,
            "walkers_crashed": 0,
            "start_time": 0.0,
        }

    # =========================================================================
    # Active Walker Set
    # =========================================================================

    def is_active(self, provider_id: str) -> bool:
        return provider_id in self._active

    def mark_active(self, provider_id: str) -> None:
        self._active.add(provider_id)

    def mark_inactive(self, provider_id: str) -> None:
        self._active.discard(provider_id)
        self._walkers.pop(provider_id, None)

    def is_ignored(self, provider_id: str) -> bool:
        return provider_id in self.config.ignored_provider_ids

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self):
        """Consume provider sync cycles until stop() is called."""
        self._stats["start_time"] = time.time()
        self._logger.info("Starting piece indexer...")

        async for providers in self._sync.run(self._stop_event):
            self._stats["sync_cycles"] += 1
            self.handle_sync_result(providers)

        self._logger.info("Provider sync stopped")

    def handle_sync_result(self, providers: Mapping[str, ProviderInfo]) -> int:
        """
        Publish a sync result and launch walkers for idle providers.

        Returns:
            Number of walkers launched
        """
        self.provider_info.update(providers)

        launched = 0
        for provider_id in providers:
            if self._launch_walker(provider_id):
                launched += 1

        if launched:
            self._logger.info(
                f"Launched {launched} walkers, {len(self._active)} providers being walked"
            )
        return launched

    def _launch_walker(self, provider_id: str) -> bool:
        if self.is_ignored(provider_id) or self.is_active(provider_id):
            return False

        self.mark_active(provider_id)
        task = asyncio.create_task(
            walk_chain(
                self._repository,
                provider_id,
                self.provider_info.latest,
                self._fetcher,
                min_step_interval=self.config.min_step_interval,
                stop_event=self._stop_event,
                fetch_timeout=self.config.fetch_timeout
            ),
            name=f"walker:{provider_id}"
        )
        self._walkers[provider_id] = task
        task.add_done_callback(lambda t, pid=provider_id: self._on_walker_done(pid, t))
        self._stats["walkers_launched"] += 1
        return True

    def _on_walker_done(self, provider_id: str, task: asyncio.Task) -> None:
        self.mark_inactive(provider_id)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._stats["walkers_crashed"] += 1
            self._logger.error(
                f"Walker for provider {provider_id} crashed",
                exc_info=(type(error), error, error.__traceback__)
            )

    async def stop(self):
        """Signal every loop to stop and wait for running walkers."""
        self._stop_event.set()
        walkers = list(self._walkers.values())
        if walkers:
            await asyncio.gather(*walkers, return_exceptions=True)
        self._logger.info("Indexer stopped")

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    # =========================================================================
    # External API
    # =========================================================================

    def active_providers(self) -> Iterable[str]:
        return sorted(self._active)

    def get_stats(self) -> Dict:
        """Get coordinator statistics."""
        runtime = time.time() - self._stats["start_time"] if self._stats["start_time"] > 0 else 0

        return {
            "sync_cycles": self._stats["sync_cycles"],
            "walkers_launched": self._stats["walkers_launched"],
            "walkers_crashed": self._stats["walkers_crashed"],
            "active_walkers": len(self._active),
            "known_providers": len(self.provider_info),
            "runtime_seconds": runtime,
            "fetcher": self._fetcher.get_stats(),
            "sync": self._sync.get_stats(),
        }
