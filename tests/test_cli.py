"""Tests for the command line interface."""

import json
import os
from unittest.mock import Mock, patch

import pytest

from archive_ingest import cli
from archive_ingest.exceptions import ConfigurationError
from archive_ingest.sync.folders import SyncFolder
from archive_ingest.workflow.results import EXIT_CANCELLED, PHASE_ORDER, Phase

SKIP_COMMAND_PHASES = [
    "--skip-rss-retrieval",
    "--skip-audio-transcription",
    "--skip-local-indexing",
    "--skip-index-refresh",
]


@pytest.fixture
def workspace(tmp_path, write_file):
    """A local-mode workspace with one site, 'demo', holding one new audio file."""
    site_dir = tmp_path / "sites" / "my-sites" / "demo"
    site_dir.mkdir(parents=True)
    (site_dir / "site.config.json").write_text(
        json.dumps({"id": "demo", "fullTitle": "Demo Show", "bucketName": "demo-bucket"})
    )
    write_file(tmp_path / "s3" / "sites" / "demo" / "audio" / "a.mp3")

    env = {
        "SITES_DIRECTORY": str(tmp_path / "sites"),
        "SITE_ENV_NAME": "test-no-root-env",
        "LOCAL_STORAGE_ROOT": str(tmp_path / "s3"),
        "FILE_STORAGE_ENV": "local",
        "LOCAL_REMOTE_MIRROR_ROOT": str(tmp_path / "remote"),
        "RUN_HISTORY_FILE": str(tmp_path / "logs" / "runs.md"),
    }
    with patch("archive_ingest.config.load_dotenv"), patch.dict(os.environ, env):
        yield tmp_path


def parse_run(*argv):
    return cli.create_parser().parse_args(["run-pipeline", *argv])


class TestParser:
    """Tests for argument parsing."""

    def test_run_pipeline_defaults(self):
        args = parse_run()

        assert args.sites is None
        assert args.sync_folders is None
        assert not args.dry_run
        assert not args.interactive
        assert all(not getattr(args, cli._skip_dest(phase)) for phase in PHASE_ORDER)

    def test_skip_flags(self):
        args = parse_run("--skip-pre-sync", "--skip-index-refresh", "-d")

        assert args.skip_pre_sync
        assert args.skip_index_refresh
        assert not args.skip_post_sync
        assert args.dry_run

    def test_global_options(self):
        args = cli.create_parser().parse_args(["-l", "DEBUG", "-e", "custom.env", "list-sites"])
        assert args.log_level == "DEBUG"
        assert args.env_file == "custom.env"
        assert args.command == "list-sites"


class TestBuildPipelineConfig:
    """Tests for build_pipeline_config."""

    def test_phases_and_folders(self):
        args = parse_run(
            "--skip-pre-sync",
            "--sync-folders",
            "transcripts, audio",
            "--max-episodes",
            "5",
            "--force-local-indexing",
        )

        pipeline_config = cli.build_pipeline_config(args)

        assert Phase.PRE_SYNC not in pipeline_config.enabled_phases
        assert pipeline_config.enabled_phases[0] == Phase.RSS_RETRIEVAL
        assert pipeline_config.sync_folders == [SyncFolder.AUDIO, SyncFolder.TRANSCRIPTS]
        assert pipeline_config.max_episodes == 5
        assert pipeline_config.force_local_indexing

    @pytest.mark.parametrize(
        "argv",
        [
            ["--max-episodes", "0"],
            ["--max-parallel-sites", "-1"],
            ["--sync-folders", "podcasts"],
        ],
    )
    def test_invalid_arguments(self, argv):
        with pytest.raises(ConfigurationError):
            cli.build_pipeline_config(parse_run(*argv))

    def test_invalid_environment(self):
        with patch.dict(os.environ, {"PIPELINE_MAX_PARALLEL_SITES": "many"}):
            with pytest.raises(ConfigurationError, match="PIPELINE_MAX_PARALLEL_SITES"):
                cli.build_pipeline_config(parse_run())


class TestMain:
    """Tests for main and the subcommands."""

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 1
        assert "run-pipeline" in capsys.readouterr().out

    def test_unknown_site(self, workspace, capsys):
        """Test that an unknown site aborts before any phase runs."""
        with patch("archive_ingest.cli.PipelineOrchestrator") as mock_orchestrator:
            exit_code = cli.main(["run-pipeline", "--sites", "nope"])

        assert exit_code == 1
        mock_orchestrator.assert_not_called()
        assert "Unknown site(s): nope" in capsys.readouterr().err

    def test_invalid_sync_folder(self, workspace, capsys):
        assert cli.main(["run-pipeline", "--sync-folders", "podcasts"]) == 1
        assert "podcasts" in capsys.readouterr().err

    def test_run_pipeline_sync_only(self, workspace, capsys):
        """Test a local-mode run with only the sync phases enabled."""
        exit_code = cli.main(["run-pipeline", "--sites", "demo", *SKIP_COMMAND_PHASES])

        assert exit_code == 0
        assert (workspace / "remote" / "demo-bucket" / "audio" / "a.mp3").is_file()
        out = capsys.readouterr().out
        assert "Pipeline summary" in out
        assert "1 file(s) uploaded" in out
        history = (workspace / "logs" / "runs.md").read_text(encoding="utf-8")
        assert history.startswith("# Ingestion Pipeline Run History")

    def test_dry_run_writes_nothing(self, workspace, capsys):
        exit_code = cli.main(["run-pipeline", "-d", *SKIP_COMMAND_PHASES])

        assert exit_code == 0
        assert not (workspace / "remote").exists()
        assert not (workspace / "logs" / "runs.md").exists()
        assert "would upload 1 file(s)" in capsys.readouterr().out

    def test_no_history_flag(self, workspace):
        cli.main(["run-pipeline", "--no-history", *SKIP_COMMAND_PHASES])
        assert not (workspace / "logs" / "runs.md").exists()

    def test_interactive_decline(self, workspace, capsys):
        """Test that declining the confirmation prompt exits without running."""
        with patch("builtins.input", return_value="n"), patch(
            "archive_ingest.cli.PipelineOrchestrator"
        ) as mock_orchestrator:
            exit_code = cli.main(["run-pipeline", "--interactive"])

        assert exit_code == EXIT_CANCELLED
        mock_orchestrator.assert_not_called()
        assert "Operation cancelled by user" in capsys.readouterr().out

    def test_interactive_eof_declines(self):
        with patch("builtins.input", side_effect=EOFError):
            assert not cli.confirm("Proceed? ")

    def test_keyboard_interrupt(self, workspace, capsys):
        """Test that Ctrl-C during a run exits with 130."""
        orchestrator = Mock()
        orchestrator.report = None
        with patch("archive_ingest.cli.PipelineOrchestrator", return_value=orchestrator), patch(
            "archive_ingest.cli.asyncio.run", side_effect=KeyboardInterrupt
        ):
            exit_code = cli.main(["run-pipeline"])

        assert exit_code == EXIT_CANCELLED
        assert "Operation cancelled by user" in capsys.readouterr().out

    def test_check_sync(self, workspace, write_file, capsys):
        write_file(workspace / "remote" / "demo-bucket" / "transcripts" / "b.srt")

        exit_code = cli.main(["check-sync", "--sync-folders", "audio,transcripts"])

        assert exit_code == 0
        out = capsys.readouterr().out
        assert "Sync consistency report for demo (bidirectional)" in out
        assert "    upload: a.mp3" in out
        assert "    download: b.srt" in out

    def test_list_sites(self, workspace, capsys):
        assert cli.main(["list-sites"]) == 0
        out = capsys.readouterr().out
        assert "demo: Demo Show" in out
        assert "Bucket: demo-bucket" in out

    def test_list_sites_empty(self, tmp_path, capsys):
        with patch("archive_ingest.config.load_dotenv"), patch.dict(
            os.environ, {"SITES_DIRECTORY": str(tmp_path / "empty")}
        ):
            assert cli.main(["list-sites"]) == 1
        assert "No sites found" in capsys.readouterr().out
