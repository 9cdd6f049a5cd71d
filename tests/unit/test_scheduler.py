"""
Unit tests for the chunked backfill scheduler
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from core.exceptions import SetupError
from ingestion.checkpoint import CheckpointFile
from ingestion.journal import FailureJournal
from ingestion.scheduler import BackfillScheduler, SchedulerConfig
from schemas.journal import CheckpointEntry, FailureEntry
from store.memory_store import InMemoryReferenceStore


def make_scheduler(tmp_path, **overrides):
    config = SchedulerConfig(out_dir=str(tmp_path), **overrides)
    return BackfillScheduler(InMemoryReferenceStore(), config)


def batch_summaries(*next_starts, failed=0):
    return [{"nextStart": value, "failed": failed} for value in next_starts]


class TestSchedulerSetup:
    """Test scheduler construction"""

    def test_initialization(self, tmp_path):
        scheduler = make_scheduler(tmp_path, dsld_start=5)

        # Assertions
        assert scheduler.scheduler is not None
        assert scheduler.next_start == {"dsld": 5, "lnhpd": 1}
        assert scheduler.failures_file.endswith("failures.jsonl")

    def test_resumes_from_checkpoints(self, tmp_path):
        CheckpointFile(str(tmp_path / "checkpoints.json")).write(
            "lnhpd", CheckpointEntry(scoreVersion="v4", lastId=499, nextStart=500)
        )

        scheduler = make_scheduler(tmp_path)

        assert scheduler.next_start["lnhpd"] == 500

    def test_unknown_mode(self, tmp_path):
        with pytest.raises(SetupError):
            make_scheduler(tmp_path, mode="round-robin")


class TestRunCycle:
    """Test chunk sequencing with a mocked orchestrator"""

    @pytest.mark.asyncio
    async def test_alternates_sources(self, tmp_path):
        with patch("ingestion.scheduler.BackfillOrchestrator") as mock_orchestrator_cls:
            mock_orchestrator_cls.return_value.run_batch = AsyncMock(side_effect=batch_summaries(101, 201))
            scheduler = make_scheduler(tmp_path, dsld_limit=100, lnhpd_limit=200)

            keep_going = await scheduler.run_cycle()

            calls = mock_orchestrator_cls.return_value.run_batch.await_args_list

        # Assertions
        assert keep_going is True
        assert scheduler.runs == 2
        assert scheduler.cycles == 1
        assert [call.args[0].source for call in calls] == ["dsld", "lnhpd"]
        assert calls[0].args[0].limit == 100
        assert calls[1].args[0].limit == 200
        assert scheduler.next_start == {"dsld": 101, "lnhpd": 201}

    @pytest.mark.asyncio
    async def test_no_progress_marks_source_exhausted(self, tmp_path):
        with patch("ingestion.scheduler.BackfillOrchestrator") as mock_orchestrator_cls:
            mock_orchestrator_cls.return_value.run_batch = AsyncMock(side_effect=batch_summaries(1, 1))
            scheduler = make_scheduler(tmp_path)

            report = await scheduler.run_until_done()

        # Assertions
        assert report["exhausted"] == ["dsld", "lnhpd"]
        assert report["runs"] == 2
        assert report["cycles"] == 1

    @pytest.mark.asyncio
    async def test_end_bound_finishes_source(self, tmp_path):
        with patch("ingestion.scheduler.BackfillOrchestrator") as mock_orchestrator_cls:
            mock_orchestrator_cls.return_value.run_batch = AsyncMock(side_effect=batch_summaries(51))
            scheduler = make_scheduler(tmp_path, mode="dsld-only", dsld_end=50)

            report = await scheduler.run_until_done()

        assert report["runs"] == 1
        assert report["exhausted"] == []
        assert report["nextStart"]["dsld"] == 51

    @pytest.mark.asyncio
    async def test_max_runs(self, tmp_path):
        with patch("ingestion.scheduler.BackfillOrchestrator") as mock_orchestrator_cls:
            mock_orchestrator_cls.return_value.run_batch = AsyncMock(side_effect=batch_summaries(101, 201, 301))
            scheduler = make_scheduler(tmp_path, mode="dsld-only", max_runs=2)

            report = await scheduler.run_until_done()

        assert report["runs"] == 2
        assert report["nextStart"]["dsld"] == 201

    @pytest.mark.asyncio
    async def test_new_journal_lines_trigger_replay(self, tmp_path):
        """A chunk that journals failures is followed by a replay of the journal"""
        with patch("ingestion.scheduler.BackfillOrchestrator") as mock_orchestrator_cls:
            async def run_batch(options):
                journal = mock_orchestrator_cls.call_args.args[1]
                journal.append([FailureEntry(source="dsld", sourceId="7", stage="compute_score")])
                return {"nextStart": 11, "failed": 1}

            mock_orchestrator = mock_orchestrator_cls.return_value
            mock_orchestrator.run_batch = AsyncMock(side_effect=run_batch)
            mock_orchestrator.replay = AsyncMock(return_value={"processed": 1})
            scheduler = make_scheduler(tmp_path, mode="dsld-only")

            advanced = await scheduler.run_chunk("dsld")

        # Assertions
        assert advanced is True
        mock_orchestrator.replay.assert_awaited_once()
        assert mock_orchestrator.replay.await_args.args[0] == scheduler.failures_file

    @pytest.mark.asyncio
    async def test_replay_covers_earlier_journal_entries(self, tmp_path):
        """Replay reads the whole journal, including lines from earlier chunks"""
        scheduler = make_scheduler(tmp_path, mode="dsld-only")
        FailureJournal(scheduler.failures_file).append([FailureEntry(source="dsld", sourceId="3", stage="fetch")])
        replayed = []

        with patch("ingestion.scheduler.BackfillOrchestrator") as mock_orchestrator_cls:
            async def run_batch(options):
                journal = mock_orchestrator_cls.call_args.args[1]
                journal.append([FailureEntry(source="dsld", sourceId="7", stage="compute_score")])
                return {"nextStart": 11, "failed": 1}

            async def replay(path, **kwargs):
                replayed.extend(entry.source_id for entry in FailureJournal.load(path))
                return {"processed": len(replayed)}

            mock_orchestrator = mock_orchestrator_cls.return_value
            mock_orchestrator.run_batch = AsyncMock(side_effect=run_batch)
            mock_orchestrator.replay = AsyncMock(side_effect=replay)

            await scheduler.run_chunk("dsld")

        # Assertions
        assert replayed == ["3", "7"]

    @pytest.mark.asyncio
    async def test_no_replay_without_new_lines(self, tmp_path):
        scheduler = make_scheduler(tmp_path, mode="dsld-only")
        FailureJournal(scheduler.failures_file).append([FailureEntry(source="dsld", sourceId="3", stage="fetch")])

        with patch("ingestion.scheduler.BackfillOrchestrator") as mock_orchestrator_cls:
            mock_orchestrator = mock_orchestrator_cls.return_value
            mock_orchestrator.run_batch = AsyncMock(return_value={"nextStart": 11, "failed": 0})
            mock_orchestrator.replay = AsyncMock()

            await scheduler.run_chunk("dsld")

        mock_orchestrator.replay.assert_not_awaited()


class TestIntervalMode:
    """Test the APScheduler-driven mode"""

    @pytest.mark.asyncio
    async def test_cycle_job_sets_done_when_finished(self, tmp_path):
        scheduler = make_scheduler(tmp_path)
        scheduler.run_cycle = AsyncMock(return_value=False)

        await scheduler.run_cycle_job()

        assert scheduler._done.is_set()
        assert scheduler._error is None

    @pytest.mark.asyncio
    async def test_cycle_job_keeps_error(self, tmp_path):
        scheduler = make_scheduler(tmp_path)
        scheduler.run_cycle = AsyncMock(side_effect=RuntimeError("store down"))

        await scheduler.run_cycle_job()

        assert scheduler._done.is_set()
        assert isinstance(scheduler._error, RuntimeError)

    @pytest.mark.asyncio
    async def test_run_scheduled(self, tmp_path):
        """The first cycle fires immediately and the scheduler stops when done"""
        scheduler = make_scheduler(tmp_path, interval_minutes=60)
        scheduler.run_cycle = AsyncMock(return_value=False)

        report = await asyncio.wait_for(scheduler.run_scheduled(), timeout=10)

        # Assertions
        scheduler.run_cycle.assert_awaited_once()
        assert report["runs"] == 0
        assert not scheduler.scheduler.running

    def test_stop_when_not_running(self, tmp_path):
        scheduler = make_scheduler(tmp_path)
        scheduler.scheduler = MagicMock(running=False)

        scheduler.stop()

        scheduler.scheduler.shutdown.assert_not_called()
