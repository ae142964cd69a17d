import asyncio
import json
import logging
import os
import sys
from datetime import timedelta
from typing import List, Optional

from pydantic import ValidationError

from copybot.config.settings import settings
from copybot.core.models import TrackedSource
from copybot.services.engine import ReplicationEngine
from copybot.services.event_source import EventSource

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("copybot")

CONFIG_PATH = "copybot/config/sources.json"
CONFIG_POLL_SECONDS = 5
MAINTENANCE_SECONDS = 300


def load_sources_file(path: str = CONFIG_PATH) -> Optional[List[TrackedSource]]:
    """
    Reads the tracked-source list. Returns None when the file is missing so
    the sources already in storage stay in effect.
    """
    if not os.path.exists(path):
        return None
    with open(path, "r") as f:
        data = json.load(f)
    return [TrackedSource(**s) for s in data.get("sources", [])]


async def apply_sources(sources: List[TrackedSource], engine: ReplicationEngine, event_source: EventSource):
    await engine.update_sources(sources)
    await event_source.update_sources(list(engine.sources.values()))


async def watch_config(engine: ReplicationEngine, event_source: EventSource, path: str = CONFIG_PATH):
    """Polls sources.json for changes and pushes them into the engine and feeds."""
    last_mtime = os.path.getmtime(path) if os.path.exists(path) else 0
    logger.info(f"👀 Config Watcher started. Monitoring {path}")

    while True:
        await asyncio.sleep(CONFIG_POLL_SECONDS)
        try:
            if not os.path.exists(path):
                continue
            current_mtime = os.path.getmtime(path)
            if current_mtime > last_mtime:
                last_mtime = current_mtime
                sources = load_sources_file(path)
                logger.info(f"🔄 Configuration Reloaded from sources.json ({len(sources)} sources)")
                await apply_sources(sources, engine, event_source)
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Error re-loading config: {e}")


async def maintenance(engine: ReplicationEngine):
    """Periodically persists engine state and prunes aged records."""
    while True:
        await asyncio.sleep(MAINTENANCE_SECONDS)
        try:
            await engine.snapshot()
        except Exception as e:
            logger.error(f"Error during maintenance snapshot: {e}")
        stats = engine.performance_stats()
        if stats.total_trades:
            logger.info(
                f"📊 {stats.total_trades} orders, {stats.success_rate:.1f}% filled, "
                f"avg {stats.average_execution_time_ms:.0f}ms, {len(stats.issues)} recent issues"
            )


async def main():
    logger.info("🚀 Copybot Starting Up...")
    logger.info(f"   Mode: {'DRY RUN (MOCK)' if settings.DRY_RUN else 'LIVE (REAL MONEY)'}")

    # 1. Dependency Injection: Exchange Provider
    if settings.DRY_RUN:
        from copybot.adapters.mock_exchange import MockExchangeAdapter
        exchange = MockExchangeAdapter(initial_balance=10000.0)
    else:
        from copybot.adapters.polymarket import PolymarketAdapter
        try:
            exchange = PolymarketAdapter()
        except Exception as e:
            logger.critical(f"Failed to initialize Real Adapter: {e}")
            return

    # 2. Storage
    from copybot.db.database import engine as db_engine
    from copybot.db.sql_storage import SqlStorage
    storage = SqlStorage(db_engine)
    await storage.init()

    # 3. Push transport (optional)
    transport = None
    if settings.ACTIVITY_WS_URL:
        from copybot.adapters.activity_websocket import ActivityWebsocketTransport
        api_key = settings.ACTIVITY_WS_API_KEY.get_secret_value() if settings.ACTIVITY_WS_API_KEY else None
        transport = ActivityWebsocketTransport(settings.ACTIVITY_WS_URL, api_key=api_key)
        logger.info("   📡 Push feed: ENABLED")
    else:
        logger.info("   📡 Push feed: DISABLED (no ACTIVITY_WS_URL), polling only")

    # 4. Services
    event_source = EventSource(
        exchange,
        transport=transport,
        poll_interval_seconds=settings.POLL_INTERVAL_SECONDS,
        reconnect_base_seconds=settings.WS_RECONNECT_BASE_SECONDS,
        reconnect_max_seconds=settings.WS_RECONNECT_MAX_SECONDS,
        max_reconnect_attempts=settings.WS_MAX_RECONNECT_ATTEMPTS,
        read_attempts=settings.READ_RETRY_ATTEMPTS,
        overlap_horizon_seconds=settings.POLL_INTERVAL_SECONDS * settings.DEDUP_HORIZON_MULTIPLIER,
    )
    engine = ReplicationEngine(
        exchange,
        storage,
        dedup_horizon=timedelta(seconds=settings.POLL_INTERVAL_SECONDS * settings.DEDUP_HORIZON_MULTIPLIER),
        read_attempts=settings.READ_RETRY_ATTEMPTS,
        resolve=event_source.resolver.resolve,
    )
    engine.attach(event_source)
    await engine.restore()

    # 5. Sources: the file wins over storage when present
    try:
        sources = load_sources_file()
    except (OSError, ValueError, ValidationError) as e:
        logger.error(f"Failed to load initial sources.json: {e}")
        sources = None
    if sources is None:
        sources = list(engine.sources.values())
    else:
        logger.info(f"   Loaded {len(sources)} sources from sources.json")

    # 6. Run Loops
    background = []
    try:
        await exchange.start()
        await apply_sources(sources, engine, event_source)
        await event_source.start()
        background.append(asyncio.create_task(watch_config(engine, event_source)))
        background.append(asyncio.create_task(maintenance(engine)))
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("🛑 Shutdown signal received.")
    finally:
        for task in background:
            task.cancel()
        await event_source.stop()
        await engine.wait_idle()
        await engine.snapshot()
        await exchange.stop()
        logger.info("👋 Goodnight.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
