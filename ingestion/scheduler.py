"""
Chunked backfill driver.

Runs bounded backfill chunks per source, resuming each source from its
checkpoint, and replays the failure journal whenever a chunk added lines.
Either runs cycles back to back until done, or fires one cycle per
APScheduler interval.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.exceptions import SetupError
from ingestion.checkpoint import CheckpointFile
from ingestion.journal import FailureJournal
from ingestion.orchestrator import BackfillOptions, BackfillOrchestrator
from models.base import ScoreSource
from store.base import ReferenceStore

logger = logging.getLogger(__name__)

MODES = {
    "alternate": [ScoreSource.DSLD.value, ScoreSource.LNHPD.value],
    "dsld-only": [ScoreSource.DSLD.value],
    "lnhpd-only": [ScoreSource.LNHPD.value],
}


@dataclass
class SchedulerConfig:
    mode: str = "alternate"
    out_dir: str = "output/backfill-orchestrator"
    dsld_start: int = 1
    lnhpd_start: int = 1
    dsld_end: Optional[int] = None
    lnhpd_end: Optional[int] = None
    dsld_limit: int = 500
    lnhpd_limit: int = 1000
    batch_size: int = settings.BACKFILL_BATCH_SIZE
    concurrency: int = settings.BACKFILL_CONCURRENCY
    time_budget_seconds: float = 720
    max_cycles: Optional[int] = None
    max_runs: Optional[int] = None
    force: bool = False
    interval_minutes: Optional[float] = None


class BackfillScheduler:
    """
    Backfill scheduler

    Responsibilities:
    - Alternate (or pin) sources chunk by chunk
    - Carry each source's nextStart between chunks
    - Replay the whole failures journal after a chunk that added to it
    - Stop on max runs / max cycles, passed end bounds, or no progress
    """

    def __init__(self, store: ReferenceStore, config: SchedulerConfig):
        if config.mode not in MODES:
            raise SetupError(f"Unknown scheduler mode: {config.mode}", context={"mode": config.mode})
        self.store = store
        self.config = config
        self.scheduler = AsyncIOScheduler()
        self.checkpoints = CheckpointFile(os.path.join(config.out_dir, "checkpoints.json"))
        self.failures_file = os.path.join(config.out_dir, "failures.jsonl")
        self.replay_failures_file = os.path.join(config.out_dir, "failures-replay.jsonl")

        starts = {ScoreSource.DSLD.value: config.dsld_start, ScoreSource.LNHPD.value: config.lnhpd_start}
        self.next_start: Dict[str, int] = {}
        for source, start in starts.items():
            entry = self.checkpoints.read(source)
            self.next_start[source] = entry.next_start if entry and entry.next_start else start
        self.exhausted: Set[str] = set()
        self.runs = 0
        self.cycles = 0
        self._done = asyncio.Event()
        self._error: Optional[BaseException] = None

    def _end(self, source: str) -> Optional[int]:
        return self.config.dsld_end if source == ScoreSource.DSLD.value else self.config.lnhpd_end

    def _limit(self, source: str) -> int:
        return self.config.dsld_limit if source == ScoreSource.DSLD.value else self.config.lnhpd_limit

    def _finished(self, source: str) -> bool:
        end = self._end(source)
        return source in self.exhausted or (end is not None and self.next_start[source] > end)

    def _limits_reached(self) -> bool:
        if self.config.max_runs is not None and self.runs >= self.config.max_runs:
            return True
        return self.config.max_cycles is not None and self.cycles >= self.config.max_cycles

    async def run_chunk(self, source: str) -> bool:
        """Run one bounded chunk. Returns True when the source advanced."""
        journal = FailureJournal(self.failures_file)
        lines_before = journal.line_count
        orchestrator = BackfillOrchestrator(
            self.store,
            journal,
            checkpoints=self.checkpoints,
            summary_path=os.path.join(self.config.out_dir, f"last-summary-{source}.json"),
        )
        start = self.next_start[source]
        summary = await orchestrator.run_batch(BackfillOptions(
            source=source,
            batch_size=self.config.batch_size,
            concurrency=self.config.concurrency,
            start_id=start,
            end_id=self._end(source),
            limit=self._limit(source),
            time_budget_seconds=self.config.time_budget_seconds,
            force=self.config.force,
        ))
        self.runs += 1
        next_start = summary.get("nextStart") or start
        self.next_start[source] = next_start
        logger.info(f"Chunk {self.runs} ({source}): {start} -> {next_start}, failed={summary['failed']}")

        if journal.line_count > lines_before:
            await self.replay_failures()
        return next_start > start

    async def replay_failures(self) -> Dict[str, Any]:
        orchestrator = BackfillOrchestrator(self.store, FailureJournal(self.replay_failures_file))
        return await orchestrator.replay(
            self.failures_file,
            concurrency=self.config.concurrency,
            batch_size=self.config.batch_size,
        )

    async def run_cycle(self) -> bool:
        """One pass over the mode's pending sources. Returns False when the run is over."""
        if self._limits_reached():
            return False
        pending = [source for source in MODES[self.config.mode] if not self._finished(source)]
        if not pending:
            return False

        advanced = False
        for source in pending:
            if self._limits_reached():
                return False
            if await self.run_chunk(source):
                advanced = True
            else:
                logger.info(f"No progress on {source}; marking it exhausted")
                self.exhausted.add(source)
        self.cycles += 1
        return advanced

    async def run_until_done(self) -> Dict[str, Any]:
        while await self.run_cycle():
            pass
        return self.report()

    def report(self) -> Dict[str, Any]:
        return {
            "mode": self.config.mode,
            "runs": self.runs,
            "cycles": self.cycles,
            "nextStart": dict(self.next_start),
            "exhausted": sorted(self.exhausted),
            "checkpointFile": self.checkpoints.path,
            "failuresFile": self.failures_file,
        }

    # ------------------------------------------------------------------
    # Interval mode
    # ------------------------------------------------------------------

    async def run_cycle_job(self):
        """Job fired by the interval trigger"""
        logger.info("Scheduler: starting backfill cycle")
        try:
            keep_going = await self.run_cycle()
        except Exception as e:
            logger.exception(f"Scheduler: backfill cycle failed - {e}")
            self._error = e
            self._done.set()
            return
        if not keep_going:
            logger.info("Scheduler: backfill complete")
            self._done.set()

    def start(self):
        """Start the interval scheduler (first cycle fires immediately)"""
        minutes = self.config.interval_minutes or 30
        self.scheduler.add_job(
            self.run_cycle_job,
            trigger=IntervalTrigger(minutes=minutes),
            id="backfill_cycle",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        self.scheduler.start()
        logger.info(f"Backfill scheduler started (every {minutes} minutes)")

    async def run_scheduled(self) -> Dict[str, Any]:
        self.start()
        try:
            await self._done.wait()
        finally:
            self.stop()
        if self._error is not None:
            raise self._error
        return self.report()

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Backfill scheduler stopped")
