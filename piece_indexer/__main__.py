"""
Piece Indexer entry point.

Usage:
    python -m piece_indexer index     # walk IPNI advertisement chains
    python -m piece_indexer serve     # run the query API
    python -m piece_indexer status    # print walker state per provider
"""

import argparse
import asyncio
import logging
import signal
import sqlite3
import sys

from .api import create_app
from .config import IndexerConfig
from .ipni.coordinator import IndexerCoordinator
from .ipni.fetcher import AdvertisementFetcher
from .ipni.provider_sync import ProviderSync
from .persistence import PieceIndexRepository


logger = logging.getLogger("PieceIndexer")


async def run_indexer(config: IndexerConfig, repository: PieceIndexRepository):
    """Run provider sync and chain walkers until SIGINT/SIGTERM."""
    fetcher = AdvertisementFetcher(config.fetcher_config())
    sync = ProviderSync(config.sync_config())
    coordinator = IndexerCoordinator(repository, sync, fetcher, config.coordinator_config())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, coordinator.stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt
            pass

    async with fetcher:
        try:
            await coordinator.run()
        finally:
            await coordinator.stop()
            logger.info(f"Final stats: {coordinator.get_stats()}")


def print_status(repository: PieceIndexRepository):
    states = repository.get_walker_states()
    if not states:
        print("No providers walked yet")
        return

    for provider_id, state in sorted(states.items()):
        print(f"{provider_id}")
        print(f"  phase:                   {state.phase.value}")
        print(f"  status:                  {state.status}")
        print(f"  last head:               {state.last_head or state.head}")
        print(f"  pieces indexed:          {repository.count_pieces_indexed(provider_id)}")
        print(f"  ads missing piece CID:   {state.ads_missing_piece_cid}")
        print(f"  entries not retrievable: {state.entries_not_retrievable}")


def main(argv=None):
    """Entry point."""
    parser = argparse.ArgumentParser(
        prog='piece_indexer',
        description='IPNI advertisement chain walker and piece index API'
    )
    parser.add_argument(
        'command',
        choices=['index', 'serve', 'status'],
        help='index: walk advertisement chains, serve: run query API, status: print walker state'
    )
    parser.add_argument('--db-path', default=None, help='SQLite database path (default: $DB_PATH)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args(argv)

    config = IndexerConfig.from_env()
    if args.db_path:
        config.db_path = args.db_path

    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    try:
        repository = PieceIndexRepository(config.db_path)
    except (sqlite3.Error, OSError) as e:
        logger.error(f"Cannot open database {config.db_path}: {e}")
        return 1

    try:
        if args.command == 'index':
            try:
                asyncio.run(run_indexer(config, repository))
            except KeyboardInterrupt:
                logger.info("Interrupted")
        elif args.command == 'serve':
            app = create_app(repository)
            logger.info(f"Query API listening on http://{config.api_host}:{config.api_port}")
            app.run(host=config.api_host, port=config.api_port, debug=False, threaded=True)
        else:
            print_status(repository)
    finally:
        repository.close()

    return 0


if __name__ == '__main__':
    sys.exit(main())
