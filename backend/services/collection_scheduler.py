"""
Collection Scheduler - Background job runner for source collectors

Runs each enabled source on its own interval. Uses asyncio for non-blocking
background execution; sources may overlap, but a source whose previous run
is still in flight is skipped until the next tick.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set

from models.ingestion import RunResult, utcnow

logger = logging.getLogger(__name__)


class CollectionScheduler:
    """
    Background scheduler for running collector jobs.
    Each source's collector runs according to its configured interval.
    """

    def __init__(
        self,
        collectors: Dict[str, Any],
        intervals: Dict[str, int],
        sessions=None,
        tick_seconds: float = 60.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self.collectors = collectors
        self.intervals = {source: timedelta(minutes=m) for source, m in intervals.items()}
        self.sessions = sessions
        self.tick_seconds = tick_seconds
        self._now = now
        self._running = False
        self._running_jobs: Set[str] = set()
        self._last_runs: Dict[str, datetime] = {}
        self._last_results: Dict[str, RunResult] = {}
        self._jobs: Set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the background scheduler"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        sources = ", ".join(f"{s} every {int(i.total_seconds() // 60)}m" for s, i in self.intervals.items())
        logger.info(f"Collection scheduler started ({sources})")

    async def stop(self) -> None:
        """Stop the scheduler, cancel in-flight jobs and release the browser"""
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        for job in list(self._jobs):
            job.cancel()
        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)
        if self.sessions is not None:
            await self.sessions.close()
        logger.info("Collection scheduler stopped")

    async def _run_loop(self) -> None:
        """Main scheduler loop"""
        while self._running:
            try:
                self.check_and_dispatch()
                await asyncio.sleep(self.tick_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Collection scheduler error: {e}")
                await asyncio.sleep(self.tick_seconds)

    def is_due(self, source: str) -> bool:
        """Check if a source's collection is due"""
        last_run = self._last_runs.get(source)
        if last_run is None:
            return True
        return self._now() - last_run >= self.intervals[source]

    def check_and_dispatch(self) -> int:
        """Start a background job for every due source. Returns how many were started."""
        started = 0
        for source in self.collectors:
            if source not in self.intervals or not self.is_due(source):
                continue
            if source in self._running_jobs:
                logger.info(f"Skipping scheduled {source} run: previous run still in progress")
                continue
            job = asyncio.create_task(self._run_job(source))
            self._jobs.add(job)
            job.add_done_callback(self._jobs.discard)
            started += 1
        return started

    async def _run_job(self, source: str) -> Optional[RunResult]:
        if source in self._running_jobs:
            logger.info(f"Skipping {source} run: already in progress")
            return None

        self._running_jobs.add(source)
        self._last_runs[source] = self._now()
        try:
            logger.info(f"Running scheduled collection for {source}")
            result = await self.collectors[source].run()
            self._last_results[source] = result
            logger.info(
                f"{source} finished: {result.status.value}, "
                f"{result.items_found} found, {result.items_new} new"
            )
            return result
        finally:
            self._running_jobs.discard(source)
            if not self._running_jobs and self.sessions is not None:
                await self.sessions.close()

    async def run_immediate(self, source: str) -> Optional[RunResult]:
        """Run collection immediately for one source; None if it is already running"""
        if source not in self.collectors:
            raise KeyError(f"Unknown source: {source}")
        return await self._run_job(source)

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status"""
        return {
            "running": self._running,
            "running_jobs": sorted(self._running_jobs),
            "last_runs": {
                k: v.isoformat() for k, v in self._last_runs.items()
            },
            "last_results": {
                k: {"status": r.status.value, "items_found": r.items_found, "items_new": r.items_new}
                for k, r in self._last_results.items()
            },
        }
