"""Entry point for the bonding curve indexer.

``indexer run`` (the default) wires all components together and runs the
periodic jobs until SIGINT/SIGTERM. The other subcommands run a single
operation against the same store and exit.

Component wiring order (in _build_components):
1. SolanaRpcClient (ledger source)
2. ReferencePriceFeed (CoinGecko + Binance, TTL cache)
3. IndexerStore (over an already-connected IndexerDatabase)
4. TradeSynchronizer
5. CandleAggregator
6. ReserveRefresher
7. IndexerPipeline
"""

import argparse
import asyncio
import signal
from typing import Any

from indexer.candles.aggregator import CandleAggregator
from indexer.config import AppSettings
from indexer.data.database import IndexerDatabase
from indexer.data.store import IndexerStore
from indexer.ledger.solana_rpc import SolanaRpcClient
from indexer.logging import get_logger, setup_logging
from indexer.pipeline import IndexerPipeline
from indexer.pricing.cache import ReferencePriceCache
from indexer.pricing.feed import ReferencePriceFeed
from indexer.pricing.sources import BinanceSource, CoinGeckoSource
from indexer.scheduler import PeriodicJob
from indexer.sync.reserves import ReserveRefresher
from indexer.sync.synchronizer import TradeSynchronizer


def _build_components(settings: AppSettings, database: IndexerDatabase) -> dict[str, Any]:
    """Build the dependency graph on top of a connected database.

    Returns:
        Dict mapping component names to instances.
    """
    ledger = SolanaRpcClient(settings.ledger)

    price_feed = ReferencePriceFeed(
        sources=[
            CoinGeckoSource(settings.price_feed),
            BinanceSource(settings.price_feed),
        ],
        cache=ReferencePriceCache(
            fresh_ttl=settings.price_feed.fresh_ttl_seconds,
            stale_ttl=settings.price_feed.stale_ttl_seconds,
        ),
    )

    store = IndexerStore(database)
    synchronizer = TradeSynchronizer(
        ledger=ledger,
        store=store,
        program_id=settings.ledger.program_id,
        curve_settings=settings.curve,
        price_feed=price_feed,
    )
    aggregator = CandleAggregator(store)
    reserves = ReserveRefresher(ledger, store, settings.ledger.program_id)

    pipeline = IndexerPipeline(
        synchronizer=synchronizer,
        aggregator=aggregator,
        store=store,
        price_feed=price_feed,
        reserves=reserves,
        curve_settings=settings.curve,
    )

    return {
        "ledger": ledger,
        "price_feed": price_feed,
        "store": store,
        "synchronizer": synchronizer,
        "aggregator": aggregator,
        "reserves": reserves,
        "pipeline": pipeline,
    }


def _build_jobs(settings: AppSettings, pipeline: IndexerPipeline) -> list[PeriodicJob]:
    cadence = settings.scheduler
    return [
        PeriodicJob(
            "sync_trades",
            lambda: pipeline.run_sync(limit=cadence.sync_limit),
            cadence.sync_interval_seconds,
        ),
        PeriodicJob("heartbeat_candles", pipeline.run_heartbeat, cadence.heartbeat_interval_seconds),
        PeriodicJob(
            "update_sol_price",
            pipeline.run_price_refresh,
            cadence.price_refresh_interval_seconds,
        ),
        PeriodicJob(
            "sync_reserves",
            pipeline.run_reserve_refresh,
            cadence.reserve_refresh_interval_seconds,
        ),
    ]


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM set ``stop_event``. Must be called inside the running loop."""
    logger = get_logger("indexer.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _close_components(components: dict[str, Any]) -> None:
    await components["ledger"].close()
    await components["price_feed"].close()


async def serve(settings: AppSettings, database: IndexerDatabase) -> None:
    """Run all periodic jobs until a shutdown signal arrives."""
    logger = get_logger("indexer.main")
    components = _build_components(settings, database)
    jobs = _build_jobs(settings, components["pipeline"])

    stop_event = asyncio.Event()
    _setup_signal_handlers(stop_event)

    status = await components["store"].get_data_status()
    logger.info("indexer_starting", program_id=settings.ledger.program_id, **status)

    try:
        for job in jobs:
            await job.start()
        await stop_event.wait()
    finally:
        for job in jobs:
            await job.stop()
        await _close_components(components)
        logger.info("indexer_stopped")


async def run_command(args: argparse.Namespace, settings: AppSettings) -> None:
    """Execute one subcommand against the configured store."""
    logger = get_logger("indexer.main")

    async with IndexerDatabase(
        settings.store.db_path, busy_timeout=settings.store.busy_timeout_seconds
    ) as database:
        if args.command == "run":
            await serve(settings, database)
            return

        components = _build_components(settings, database)
        pipeline: IndexerPipeline = components["pipeline"]
        try:
            if args.command == "sync":
                result = await pipeline.run_sync(limit=args.limit, asset_filter=args.asset)
                logger.info(
                    "sync_command_done",
                    success=result.success,
                    synced=result.synced,
                    skipped=result.skipped,
                    errors=result.errors,
                )
            elif args.command == "rebuild-candles":
                await pipeline.rebuild_candles(args.asset or None)
            elif args.command == "reset-trades":
                if not args.yes:
                    logger.error("reset_trades_not_confirmed", hint="pass --yes")
                    return
                await pipeline.reset_trades(args.asset)
            elif args.command == "backfill-usd":
                await pipeline.backfill_usd_prices(asset_id=args.asset, limit=args.limit)
            elif args.command == "heartbeat":
                await pipeline.run_heartbeat()
            elif args.command == "sync-reserves":
                await pipeline.run_reserve_refresh()
            elif args.command == "status":
                status = await components["store"].get_data_status()
                logger.info("indexer_status", **status)
        finally:
            await _close_components(components)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="indexer",
        description="Mirror a bonding curve market from Solana into a local store.",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the periodic jobs until interrupted (default)")

    sync = sub.add_parser("sync", help="Sync recent trades once")
    sync.add_argument("--limit", type=int, default=100)
    sync.add_argument("--asset", default=None, help="Only this mint")

    rebuild = sub.add_parser("rebuild-candles", help="Recompute candles from the trade log")
    rebuild.add_argument("--asset", action="append", help="Mint to rebuild (repeatable)")

    reset = sub.add_parser("reset-trades", help="Delete trades and their candles")
    reset.add_argument("--asset", default=None, help="Only this mint")
    reset.add_argument("--yes", action="store_true", help="Confirm the deletion")

    backfill = sub.add_parser(
        "backfill-usd", help="Stamp historical SOL/USD on trades synced without one"
    )
    backfill.add_argument("--asset", default=None, help="Only this mint")
    backfill.add_argument("--limit", type=int, default=None, help="Oldest N trades only")

    sub.add_parser("heartbeat", help="Run one heartbeat pass")
    sub.add_parser("sync-reserves", help="Refresh curve reserves from the ledger")
    sub.add_parser("status", help="Log row counts")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


async def run(argv: list[str] | None = None) -> None:
    settings = AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    await run_command(parse_args(argv), settings)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
