"""Tests for the pipeline orchestrator."""

import asyncio
import os
from unittest.mock import AsyncMock, Mock

import pytest

from archive_ingest.exceptions import PhaseExecutionError
from archive_ingest.sync.folders import SyncFolder
from archive_ingest.sync.inventory import scan_local_folder, scan_remote_folder
from archive_ingest.sync.transfer import TransferExecutor
from archive_ingest.workflow.config import PipelineConfig
from archive_ingest.workflow.orchestrator import PipelineOrchestrator
from archive_ingest.workflow.results import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    Phase,
    PhaseMetrics,
    PhaseResult,
)

FIXED_MTIME = 1_700_000_000


def make_runner(metrics=None, failures=(), cancel_on=None):
    """Mock phase runner returning canned results per (site id, phase)."""
    metrics = metrics or {}

    async def run(site, phase, command, extra_env=None):
        if (site.id, phase) == cancel_on:
            raise asyncio.CancelledError()
        if (site.id, phase) in failures:
            return PhaseResult(site.id, phase, success=False, error_message="Exit code: 1")
        return PhaseResult(
            site.id, phase, success=True, metrics=metrics.get((site.id, phase), PhaseMetrics())
        )

    runner = Mock()
    runner.run = AsyncMock(side_effect=run)
    return runner


def make_trigger():
    trigger = Mock()
    trigger.trigger = AsyncMock(side_effect=lambda site: f"srt-indexing-{site.id}")
    return trigger


def keys(entries):
    return sorted(entry.relative_key for entry in entries)


def runner_calls(runner, phase):
    return [call.args[0].id for call in runner.run.call_args_list if call.args[1] == phase]


@pytest.fixture
def build(store_for):
    """Build an orchestrator with a directory-backed store per site."""

    def _build(sites, runner=None, trigger=None, store_factory=None, **config_kwargs):
        return PipelineOrchestrator(
            Mock(),
            PipelineConfig(**config_kwargs),
            sites,
            store_factory=store_factory or store_for,
            transfer_executor=TransferExecutor(timeout_seconds=30, show_progress=False),
            phase_runner=runner or make_runner(),
            index_trigger=trigger or make_trigger(),
        )

    return _build


@pytest.fixture
def example_site(site, remote_root, write_file):
    """Local audio {a, b}, remote audio {b, c}, with b identical on both sides."""
    write_file(f"{site.local_base_path}/audio/a.mp3", mtime=FIXED_MTIME)
    write_file(f"{site.local_base_path}/audio/b.mp3", mtime=FIXED_MTIME)
    write_file(remote_root / site.bucket_name / "audio" / "b.mp3", mtime=FIXED_MTIME)
    write_file(remote_root / site.bucket_name / "audio" / "c.mp3", mtime=FIXED_MTIME)
    return site


class TestFullRun:
    """End-to-end runs against a directory-backed remote."""

    def test_example_scenario(self, build, example_site, store_for):
        """Test that missing files are downloaded, new ones uploaded, then the index refreshed."""
        trigger = make_trigger()
        orchestrator = build([example_site], trigger=trigger)

        report = asyncio.run(orchestrator.run())
        result = report.site("demo")

        pre_sync = result.phase_results[Phase.PRE_SYNC]
        assert pre_sync.success
        assert pre_sync.metrics.files_transferred == 1
        assert pre_sync.detail == "1 file(s) downloaded"

        post_sync = result.phase_results[Phase.POST_SYNC]
        assert post_sync.success
        assert post_sync.metrics.files_transferred == 1
        assert result.uploaded_content_files == 1

        assert result.phase_results[Phase.LOCAL_INDEXING].skipped
        assert result.phase_results[Phase.INDEX_REFRESH].detail == "triggered srt-indexing-demo"
        trigger.trigger.assert_awaited_once_with(example_site)

        local = scan_local_folder(example_site.local_base_path, SyncFolder.AUDIO)
        remote = scan_remote_folder(store_for(example_site), SyncFolder.AUDIO)
        assert keys(local) == keys(remote) == ["a.mp3", "b.mp3", "c.mp3"]
        assert report.exit_code == EXIT_SUCCESS

    def test_second_run_is_a_no_op(self, build, example_site):
        """Test that a run right after a clean run transfers nothing and skips the refresh."""
        asyncio.run(build([example_site]).run())

        trigger = make_trigger()
        report = asyncio.run(build([example_site], trigger=trigger).run())
        result = report.site("demo")

        assert result.phase_results[Phase.PRE_SYNC].detail == "0 files downloaded"
        assert result.uploaded_content_files == 0
        index_refresh = result.phase_results[Phase.INDEX_REFRESH]
        assert index_refresh.skipped
        assert index_refresh.detail == "no new content uploaded"
        trigger.trigger.assert_not_awaited()

    def test_phases_run_in_order_for_all_sites(self, build, make_site):
        """Test that each phase is attempted for every site before the next phase."""
        runner = make_runner()
        orchestrator = build(
            [make_site("b"), make_site("a")],
            runner=runner,
            enabled_phases=[Phase.RSS_RETRIEVAL, Phase.AUDIO_TRANSCRIPTION],
        )

        asyncio.run(orchestrator.run())

        calls = [(call.args[0].id, call.args[1]) for call in runner.run.call_args_list]
        assert calls == [
            ("a", Phase.RSS_RETRIEVAL),
            ("b", Phase.RSS_RETRIEVAL),
            ("a", Phase.AUDIO_TRANSCRIPTION),
            ("b", Phase.AUDIO_TRANSCRIPTION),
        ]


class TestFailureIsolation:
    """Tests that failures stay within their site."""

    def test_failed_phase_does_not_affect_other_sites(self, build, make_site):
        runner = make_runner(failures={("a", Phase.RSS_RETRIEVAL)})
        orchestrator = build(
            [make_site("a"), make_site("b")],
            runner=runner,
            enabled_phases=[Phase.RSS_RETRIEVAL, Phase.AUDIO_TRANSCRIPTION],
        )

        report = asyncio.run(orchestrator.run())

        assert report.site("a").errors == ["rss-retrieval: Exit code: 1"]
        assert report.site("b").errors == []
        # Later phases are still attempted for the failed site
        assert runner_calls(runner, Phase.AUDIO_TRANSCRIPTION) == ["a", "b"]
        assert report.exit_code == EXIT_FAILURE

    def test_handler_exception_becomes_failed_result(self, build, make_site, store_for):
        """Test that an unexpected exception is recorded rather than raised."""

        def store_factory(site):
            if site.id == "a":
                raise RuntimeError("boom")
            return store_for(site)

        orchestrator = build(
            [make_site("a"), make_site("b")],
            store_factory=store_factory,
            enabled_phases=[Phase.PRE_SYNC, Phase.RSS_RETRIEVAL],
        )

        report = asyncio.run(orchestrator.run())

        failed = report.site("a").phase_results[Phase.PRE_SYNC]
        assert not failed.success
        assert failed.error_message == "boom"
        assert report.site("a").phase_results[Phase.RSS_RETRIEVAL].success
        assert report.site("b").phase_results[Phase.PRE_SYNC].success

    def test_index_refresh_failure(self, build, site, write_file):
        write_file(f"{site.local_base_path}/transcripts/x.srt")
        trigger = Mock()
        trigger.trigger = AsyncMock(
            side_effect=PhaseExecutionError("demo", "index-refresh", "returned status 500")
        )
        orchestrator = build(
            [site], trigger=trigger, enabled_phases=[Phase.POST_SYNC, Phase.INDEX_REFRESH]
        )

        report = asyncio.run(orchestrator.run())

        result = report.site("demo").phase_results[Phase.INDEX_REFRESH]
        assert not result.success
        assert "returned status 500" in result.error_message
        assert report.exit_code == EXIT_FAILURE


class TestLocalIndexingGating:
    """Tests for local indexing selection."""

    def test_runs_only_for_sites_with_new_files(self, build, make_site):
        runner = make_runner(
            metrics={("a", Phase.RSS_RETRIEVAL): PhaseMetrics(new_audio_files=2)}
        )
        orchestrator = build(
            [make_site("a"), make_site("b")],
            runner=runner,
            enabled_phases=[Phase.RSS_RETRIEVAL, Phase.LOCAL_INDEXING],
        )

        report = asyncio.run(orchestrator.run())

        assert runner_calls(runner, Phase.LOCAL_INDEXING) == ["a"]
        skipped = report.site("b").phase_results[Phase.LOCAL_INDEXING]
        assert skipped.skipped
        assert skipped.detail == "no new files, indexing not needed"

    def test_new_transcripts_also_trigger_indexing(self, build, site):
        runner = make_runner(
            metrics={("demo", Phase.AUDIO_TRANSCRIPTION): PhaseMetrics(new_transcripts=1)}
        )
        orchestrator = build(
            [site],
            runner=runner,
            enabled_phases=[Phase.AUDIO_TRANSCRIPTION, Phase.LOCAL_INDEXING],
        )

        asyncio.run(orchestrator.run())

        assert runner_calls(runner, Phase.LOCAL_INDEXING) == ["demo"]

    def test_force_local_indexing(self, build, make_site):
        runner = make_runner()
        orchestrator = build(
            [make_site("a"), make_site("b")],
            runner=runner,
            enabled_phases=[Phase.LOCAL_INDEXING],
            force_local_indexing=True,
        )

        asyncio.run(orchestrator.run())

        assert runner_calls(runner, Phase.LOCAL_INDEXING) == ["a", "b"]

    def test_failed_indexing_withholds_index_artifacts(self, build, site, store_for, write_file):
        """Test that search artifacts are not uploaded after local indexing fails."""
        write_file(f"{site.local_base_path}/audio/a.mp3")
        write_file(f"{site.local_base_path}/search-index/index.json")
        runner = make_runner(
            metrics={("demo", Phase.RSS_RETRIEVAL): PhaseMetrics(new_audio_files=1)},
            failures={("demo", Phase.LOCAL_INDEXING)},
        )
        orchestrator = build(
            [site],
            runner=runner,
            enabled_phases=[Phase.RSS_RETRIEVAL, Phase.LOCAL_INDEXING, Phase.POST_SYNC],
        )

        report = asyncio.run(orchestrator.run())

        store = store_for(site)
        assert keys(scan_remote_folder(store, SyncFolder.AUDIO)) == ["a.mp3"]
        assert scan_remote_folder(store, SyncFolder.SEARCH_INDEX) == set()
        assert SyncFolder.SEARCH_INDEX in report.site("demo").withheld_folders
        assert report.site("demo").errors == ["local-indexing: Exit code: 1"]


class TestPostSync:
    """Tests for post-sync uploads and manifest mirroring."""

    def test_manifest_always_uploaded(self, build, site, store_for, remote_root, write_file):
        """Test that the manifest is mirrored even when its key already exists remotely."""
        write_file(
            f"{site.local_base_path}/episode-manifest/full-episode-manifest.json",
            '{"episodes": [1]}',
            mtime=FIXED_MTIME,
        )
        remote_manifest = remote_root / site.bucket_name / "episode-manifest" / "full-episode-manifest.json"
        write_file(remote_manifest, '{"episodes": []}', mtime=FIXED_MTIME + 100)
        trigger = make_trigger()
        orchestrator = build(
            [site], trigger=trigger, enabled_phases=[Phase.POST_SYNC, Phase.INDEX_REFRESH]
        )

        report = asyncio.run(orchestrator.run())

        result = report.site("demo")
        assert result.phase_results[Phase.POST_SYNC].metrics.files_transferred == 1
        with open(remote_manifest) as f:
            assert f.read() == '{"episodes": [1]}'
        # A manifest-only upload does not count as new content
        assert result.uploaded_content_files == 0
        trigger.trigger.assert_not_awaited()

    def test_empty_local_manifest_leaves_remote_alone(self, build, site, remote_root, write_file):
        remote_manifest = remote_root / site.bucket_name / "episode-manifest" / "full-episode-manifest.json"
        write_file(remote_manifest, "{}")
        orchestrator = build([site], enabled_phases=[Phase.POST_SYNC])

        report = asyncio.run(orchestrator.run())

        assert report.site("demo").phase_results[Phase.POST_SYNC].success
        assert os.path.isfile(remote_manifest)

    def test_only_selected_folders_are_synced(self, build, site, store_for, write_file):
        write_file(f"{site.local_base_path}/audio/a.mp3")
        write_file(f"{site.local_base_path}/transcripts/a.srt")
        orchestrator = build(
            [site], enabled_phases=[Phase.POST_SYNC], sync_folders=[SyncFolder.TRANSCRIPTS]
        )

        asyncio.run(orchestrator.run())

        store = store_for(site)
        assert keys(scan_remote_folder(store, SyncFolder.TRANSCRIPTS)) == ["a.srt"]
        assert scan_remote_folder(store, SyncFolder.AUDIO) == set()


class TestDryRun:
    """Tests for dry-run planning."""

    def test_dry_run_plans_without_side_effects(self, build, example_site, store_for):
        """Test that a dry run reports planned counts but changes nothing."""
        runner = make_runner()
        trigger = make_trigger()
        orchestrator = build([example_site], runner=runner, trigger=trigger, dry_run=True)

        report = asyncio.run(orchestrator.run())
        result = report.site("demo")

        assert result.phase_results[Phase.PRE_SYNC].detail == "would download 1 file(s)"
        assert result.phase_results[Phase.PRE_SYNC].metrics.files_transferred == 1
        assert result.phase_results[Phase.POST_SYNC].detail.startswith("would upload 1 file(s)")
        assert result.phase_results[Phase.RSS_RETRIEVAL].skipped
        index_refresh = result.phase_results[Phase.INDEX_REFRESH]
        assert index_refresh.skipped
        assert index_refresh.detail == "would trigger index refresh (1 file(s) to upload)"

        runner.run.assert_not_called()
        trigger.trigger.assert_not_awaited()
        local = scan_local_folder(example_site.local_base_path, SyncFolder.AUDIO)
        remote = scan_remote_folder(store_for(example_site), SyncFolder.AUDIO)
        assert keys(local) == ["a.mp3", "b.mp3"]
        assert keys(remote) == ["b.mp3", "c.mp3"]
        assert report.dry_run
        assert report.exit_code == EXIT_SUCCESS


class TestRunOptions:
    """Tests for run-level options."""

    def test_max_episodes_exported_to_rss_retrieval(self, build, site):
        runner = make_runner()
        orchestrator = build(
            [site], runner=runner, enabled_phases=[Phase.RSS_RETRIEVAL], max_episodes=3
        )

        asyncio.run(orchestrator.run())

        runner.run.assert_awaited_once_with(
            site,
            Phase.RSS_RETRIEVAL,
            orchestrator.pipeline_config.rss_retrieval_command,
            extra_env={"MAX_EPISODES": "3"},
        )

    def test_disabled_phases_are_not_recorded(self, build, site):
        orchestrator = build([site], enabled_phases=[Phase.AUDIO_TRANSCRIPTION])

        report = asyncio.run(orchestrator.run())

        assert list(report.site("demo").phase_results) == [Phase.AUDIO_TRANSCRIPTION]
        assert report.enabled_phases == [Phase.AUDIO_TRANSCRIPTION]

    def test_parallel_sites_report_sorted(self, build, make_site):
        """Test that parallel runs still report sites in id order."""
        runner = make_runner()
        orchestrator = build(
            [make_site("c"), make_site("a"), make_site("b")],
            runner=runner,
            enabled_phases=[Phase.RSS_RETRIEVAL],
            max_parallel_sites=2,
        )

        report = asyncio.run(orchestrator.run())

        assert [result.site_id for result in report.sites] == ["a", "b", "c"]
        assert sorted(runner_calls(runner, Phase.RSS_RETRIEVAL)) == ["a", "b", "c"]

    def test_cancellation_keeps_partial_report(self, build, make_site):
        """Test that a cancelled run propagates and marks the partial report."""
        runner = make_runner(cancel_on=("a", Phase.AUDIO_TRANSCRIPTION))
        orchestrator = build(
            [make_site("a")],
            runner=runner,
            enabled_phases=[Phase.RSS_RETRIEVAL, Phase.AUDIO_TRANSCRIPTION],
        )

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(orchestrator.run())

        report = orchestrator.report
        assert report.cancelled
        assert report.exit_code == EXIT_CANCELLED
        assert list(report.site("a").phase_results) == [Phase.RSS_RETRIEVAL]
        assert report.stopped_at is not None
