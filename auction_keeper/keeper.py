#!/usr/bin/env python3
"""
Auction keeper entry point.

Startup: settings and chain registry (fatal on error), store, chain clients,
event listeners, settlement loop, then the read-only API. SIGINT/SIGTERM stop
the loops and release every connection.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import uvicorn

from .api import create_app
from .chain import ChainClientPool
from .config import Settings, StoreBackend, load_settings, validate_settings
from .exceptions import ChainError, ConfigurationError
from .ingestion import EventIngestor, ListenerSet
from .orchestrator import SettlementOrchestrator
from .publisher import KeeperEventPublisher
from .registry import ChainRegistry
from .settlement import CrossChainSettler
from .store import AuctionStore, MemoryBackend, PostgresBackend
from .tokens import TokenResolver

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class KeeperContext:
    """Everything one keeper process owns, constructed at startup and torn down at shutdown"""

    def __init__(self, settings: Settings, registry: ChainRegistry, store: AuctionStore,
                 clients: ChainClientPool, publisher: Optional[KeeperEventPublisher] = None):
        self.settings = settings
        self.registry = registry
        self.store = store
        self.clients = clients
        self.publisher = publisher

        self.tokens = TokenResolver(registry)
        self.ingestor = EventIngestor(store, publisher)
        self.settler = CrossChainSettler(clients, self.tokens, store, publisher)
        self.orchestrator = SettlementOrchestrator(
            store, registry, clients, self.settler,
            processing_interval=settings.processing_interval,
            publisher=publisher,
            tokens=self.tokens,
        )
        self.listeners = ListenerSet(
            [clients.get(chain) for chain in registry],
            self.ingestor,
            poll_interval=settings.listener_poll_interval,
            block_range=settings.log_block_range,
        )

    async def close(self) -> None:
        self.orchestrator.stop()
        await self.listeners.stop()
        await self.clients.close()
        if self.publisher is not None:
            await self.publisher.close()
        await self.store.close()
        logger.info("✅ Keeper shut down cleanly")


async def create_store(settings: Settings) -> AuctionStore:
    if settings.store_backend == StoreBackend.MEMORY:
        logger.warning("Using in-memory store; auctions and bids are lost on restart")
        return AuctionStore(MemoryBackend())

    backend = PostgresBackend(settings.database_url)
    try:
        await backend.connect()
        await backend.ensure_schema()
    except Exception as e:
        raise ConfigurationError(f"Failed to connect to database: {e}") from e
    return AuctionStore(backend)


async def build_context(settings: Settings, networks: Optional[List[str]] = None) -> KeeperContext:
    registry = ChainRegistry.from_file(settings.chains_config, networks or settings.get_enabled_networks())
    store = await create_store(settings)

    publisher = None
    if settings.redis_url:
        publisher = KeeperEventPublisher.from_url(
            settings.redis_url,
            stream_key=settings.redis_stream_key,
            maxlen=settings.redis_stream_maxlen,
        )
        if await publisher.ping():
            logger.info(f"📡 Publishing keeper events to {settings.redis_stream_key}")

    clients = ChainClientPool(registry, settings.keeper_private_key, settings.receipt_timeout)
    return KeeperContext(settings, registry, store, clients, publisher)


async def run_keeper(settings: Settings, networks: Optional[List[str]] = None,
                     run_api: bool = True, once: bool = False) -> None:
    context = await build_context(settings, networks)

    for client in context.listeners.clients:
        try:
            await client.connect()
        except ChainError as e:
            # Listener polls keep retrying this chain
            logger.warning(f"⚠️  {e}")

    if once:
        try:
            summary = await context.orchestrator.tick()
            logger.info(f"Single tick finished: {summary}")
        finally:
            await context.close()
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    logger.info(f"🚀 Starting keeper for networks: {', '.join(context.registry.names)}")
    context.listeners.start()
    tasks = [
        asyncio.create_task(context.orchestrator.run(), name="settlement-loop"),
        asyncio.create_task(stop_event.wait(), name="stop-signal"),
    ]

    server = None
    if run_api and settings.api_enabled:
        config = uvicorn.Config(
            create_app(context),
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        tasks.append(asyncio.create_task(server.serve(), name="api"))
        logger.info(f"🌐 API listening on {settings.api_host}:{settings.api_port}")

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"❌ {task.get_name()} stopped with error: {task.exception()}")
    finally:
        logger.info("Shutting down keeper...")
        if server is not None:
            server.should_exit = True
        context.orchestrator.stop()
        stop_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        await context.close()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Cross-chain NFT auction keeper')
    parser.add_argument('--network', '-n',
                        help='Comma-separated list of networks to watch (default: all configured)',
                        default=None)
    parser.add_argument('--config', '-c',
                        help='Path to chains config file',
                        default=None)
    parser.add_argument('--store', choices=[b.value for b in StoreBackend],
                        help='Store backend (overrides STORE_BACKEND)',
                        default=None)
    parser.add_argument('--no-api', action='store_true',
                        help='Do not serve the read-only HTTP API')
    parser.add_argument('--once', action='store_true',
                        help='Run a single settlement tick and exit')
    parser.add_argument('--log-level',
                        help='Logging level (overrides LOG_LEVEL)',
                        default=None)

    args = parser.parse_args()

    overrides = {}
    if args.config:
        overrides['chains_config'] = args.config
    if args.store:
        overrides['store_backend'] = args.store
    if args.log_level:
        overrides['log_level'] = args.log_level

    try:
        settings = load_settings(**overrides)
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error(f"❌ {e}")
        sys.exit(1)

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), format=LOG_FORMAT)

    networks = None
    if args.network:
        networks = [n.strip() for n in args.network.split(',') if n.strip()]

    try:
        validate_settings(settings)
        asyncio.run(run_keeper(settings, networks, run_api=not args.no_api, once=args.once))
    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Keeper stopped by user")


if __name__ == "__main__":
    main()
