"""Brand mention collector - process entry point

    python backend/main.py run <reddit|playstore|appstore|all>
    python backend/main.py serve
    python backend/main.py history [--limit N]
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, List

from pydantic import ValidationError

try:
    from config import settings
except ValidationError as e:
    print(f"❌ Invalid configuration:\n{e}", file=sys.stderr)
    sys.exit(1)

from agents import AppStoreCollector, PlayStoreCollector, RedditCollector
from agents.base import SourceOrchestrator
from models.ingestion import RunStatus
from services.collection_scheduler import CollectionScheduler
from services.rate_governor import create_rate_governor
from services.stealth_browser import StealthSessionManager
from storage.ingest_store import ingest_store
from utils.logging_config import configure_logging

logger = logging.getLogger("brandwatch")

SOURCES = ("reddit", "playstore", "appstore")


def build_collectors(store, governor, sessions) -> Dict[str, SourceOrchestrator]:
    """One collector per source, all sharing the governor and the browser."""
    return {
        "reddit": RedditCollector(store, governor, sessions, settings=settings),
        "playstore": PlayStoreCollector(store, governor, sessions, settings=settings),
        "appstore": AppStoreCollector(store, governor, sessions, settings=settings),
    }


def enabled_sources() -> List[str]:
    """Marketplace jobs need their app identifier."""
    sources = ["reddit"]
    if settings.playstore_app_id:
        sources.append("playstore")
    if settings.appstore_app_id:
        sources.append("appstore")
    return sources


async def run_once(targets: List[str]) -> bool:
    governor = create_rate_governor(settings)
    sessions = StealthSessionManager.from_settings(settings)
    collectors = build_collectors(ingest_store, governor, sessions)

    ok = True
    try:
        for source in targets:
            result = await collectors[source].run()
            icon = "✅" if result.status == RunStatus.SUCCESS else "❌"
            print(f"{icon} {source}: {result.status.value} - {result.items_found} found, {result.items_new} new")
            for error in result.errors:
                print(f"   ⚠️ {error}")
            ok = ok and result.status == RunStatus.SUCCESS
    finally:
        await sessions.close()
    return ok


async def serve() -> None:
    governor = create_rate_governor(settings)
    sessions = StealthSessionManager.from_settings(settings)
    collectors = build_collectors(ingest_store, governor, sessions)
    intervals = {
        "reddit": settings.reddit_interval,
        "playstore": settings.playstore_interval,
        "appstore": settings.appstore_interval,
    }
    sources = enabled_sources()
    scheduler = CollectionScheduler(
        {s: collectors[s] for s in sources},
        {s: intervals[s] for s in sources},
        sessions=sessions,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    print(f"🚀 Collector service starting ({', '.join(sources)})")
    print(f"📁 Data directory: {settings.data_dir}")
    await scheduler.start()
    await stop_event.wait()

    logger.info("Shutdown signal received, closing browser")
    await scheduler.stop()
    print("👋 Collector service stopped")


def show_history(limit: int) -> None:
    for run in ingest_store.recent_runs(limit):
        print(
            f"{run['started_at']}  {run['source']:<10} {run['status']:<8} "
            f"found={run['items_found']} new={run['items_new']}"
            + (f"  error={run['error']}" if run["error"] else "")
        )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Brand mention and review collector")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run collectors once")
    run_parser.add_argument("source", choices=SOURCES + ("all",))

    sub.add_parser("serve", help="Run the interval scheduler until interrupted")

    history_parser = sub.add_parser("history", help="Show recent runs from the run log")
    history_parser.add_argument("--limit", type=int, default=20)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(settings)

    if args.command == "run":
        targets = enabled_sources() if args.source == "all" else [args.source]
        return 0 if asyncio.run(run_once(targets)) else 1
    if args.command == "serve":
        asyncio.run(serve())
        return 0
    show_history(args.limit)
    return 0


if __name__ == "__main__":
    sys.exit(main())
