"""Command line interface for the ingestion harness.

Provides commands for:
- Running the ingestion pipeline across sites
- Checking local/remote sync consistency
- Listing configured sites
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from archive_ingest.argparse_shared import (
    add_dry_run_argument,
    add_log_level_argument,
    add_sites_argument,
    add_sync_folders_argument,
    get_base_parser,
    split_csv,
)
from archive_ingest.config import Config
from archive_ingest.exceptions import ConfigurationError
from archive_ingest.sites import SiteRegistry
from archive_ingest.sync.folders import parse_sync_folders
from archive_ingest.sync.reconciler import ReconcileMode, format_report, generate_report
from archive_ingest.sync.stores import create_object_store
from archive_ingest.workflow.config import PipelineConfig
from archive_ingest.workflow.history import RunHistoryLog
from archive_ingest.workflow.orchestrator import PipelineOrchestrator
from archive_ingest.workflow.results import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    PHASE_ORDER,
)
from archive_ingest.workflow.summary import format_summary

logger = logging.getLogger(__name__)

CHATTY_LOGGERS = ("botocore", "boto3", "urllib3", "s3transfer")


def configure_logging(log_level: str) -> None:
    level = log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # The AWS SDK is super chatty below WARNING
    if level != "DEBUG":
        for name in CHATTY_LOGGERS:
            logging.getLogger(name).setLevel("WARNING")


def build_pipeline_config(args) -> PipelineConfig:
    """
    Build the run configuration from the environment and parsed CLI arguments.

    Parameters:
        args: Parsed `run-pipeline` arguments.

    Returns:
        PipelineConfig: Environment settings overlaid with the run's phase selection, sync folders and flags.

    Raises:
        ConfigurationError: If an environment value, a folder name or --max-episodes is invalid.
    """
    try:
        pipeline_config = PipelineConfig.from_env()
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    pipeline_config.enabled_phases = [
        phase for phase in PHASE_ORDER if not getattr(args, _skip_dest(phase))
    ]
    pipeline_config.sync_folders = parse_sync_folders(split_csv(args.sync_folders))
    pipeline_config.dry_run = args.dry_run
    pipeline_config.force_local_indexing = args.force_local_indexing

    if args.max_episodes is not None:
        if args.max_episodes < 1:
            raise ConfigurationError(
                f"--max-episodes must be a positive integer, got: {args.max_episodes}"
            )
        pipeline_config.max_episodes = args.max_episodes

    if args.max_parallel_sites is not None:
        if args.max_parallel_sites < 1:
            raise ConfigurationError(
                f"--max-parallel-sites must be a positive integer, got: {args.max_parallel_sites}"
            )
        pipeline_config.max_parallel_sites = args.max_parallel_sites

    return pipeline_config


def _skip_dest(phase) -> str:
    return "skip_" + phase.value.replace("-", "_")


def describe_run(sites, pipeline_config: PipelineConfig) -> List[str]:
    lines = [
        f"Sites: {', '.join(site.id for site in sites)}",
        f"Phases: {', '.join(phase.value for phase in pipeline_config.enabled_phases) or 'none'}",
        f"Sync folders: {', '.join(folder.value for folder in pipeline_config.sync_folders)}",
        f"Dry run: {'yes' if pipeline_config.dry_run else 'no'}",
    ]
    if pipeline_config.force_local_indexing:
        lines.append("Local indexing: forced")
    if pipeline_config.max_episodes is not None:
        lines.append(f"Max episodes: {pipeline_config.max_episodes}")
    if pipeline_config.max_parallel_sites > 1:
        lines.append(f"Parallel sites: {pipeline_config.max_parallel_sites}")
    return lines


def confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def run_pipeline(args, config: Config) -> int:
    """
    Run the ingestion pipeline for the selected sites.

    Returns 0 when no site recorded an error, 1 otherwise and 130 when the
    run was cancelled. Configuration errors propagate to `main`.
    """
    pipeline_config = build_pipeline_config(args)
    sites = SiteRegistry(config).select(split_csv(args.sites))

    print("\nIngestion pipeline configuration:")
    for line in describe_run(sites, pipeline_config):
        print(f"  {line}")

    if args.interactive and not confirm("\nProceed with this configuration? [y/N] "):
        print("Operation cancelled by user")
        return EXIT_CANCELLED

    orchestrator = PipelineOrchestrator(
        config=config,
        pipeline_config=pipeline_config,
        sites=sites,
    )
    try:
        report = asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        if orchestrator.report is not None:
            orchestrator.report.cancelled = True
            for line in format_summary(orchestrator.report):
                print(line)
        return EXIT_CANCELLED

    for line in format_summary(report):
        print(line)

    if not args.no_history and not pipeline_config.dry_run:
        RunHistoryLog(config.RUN_HISTORY_FILE).append(report)

    return report.exit_code


async def _check_sites(sites, config: Config, folders, timeout_seconds: int):
    reports = []
    for site in sites:
        store = create_object_store(site, config, timeout_seconds)
        reports.append(
            await generate_report(
                site, store, folders, ReconcileMode.BIDIRECTIONAL, timeout_seconds=timeout_seconds
            )
        )
    return reports


def check_sync(args, config: Config) -> int:
    """Print a bidirectional consistency report per site. Read-only."""
    folders = parse_sync_folders(split_csv(args.sync_folders))
    sites = SiteRegistry(config).select(split_csv(args.sites))
    try:
        timeout_seconds = PipelineConfig.from_env().network_timeout_seconds
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    try:
        reports = asyncio.run(_check_sites(sites, config, folders, timeout_seconds))
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return EXIT_CANCELLED

    for report in reports:
        print()
        for line in format_report(report):
            print(line)

    return EXIT_FAILURE if any(report.scan_errors for report in reports) else EXIT_SUCCESS


def list_sites(args, config: Config) -> int:
    """List every configured site."""
    sites = SiteRegistry(config).discover()
    if not sites:
        print(f"No sites found in {config.SITES_DIRECTORY}")
        return EXIT_FAILURE

    print(f"\n{len(sites)} site(s):")
    for site in sites:
        bucket = site.bucket_name or "(no bucket configured)"
        print(f"  {site.id}: {site.title}")
        print(f"    Bucket: {bucket}")
        print(f"    Local path: {site.local_base_path}")
    return EXIT_SUCCESS


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = get_base_parser()
    add_log_level_argument(parser)
    parser.formatter_class = argparse.RawDescriptionHelpFormatter

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run-pipeline command
    run_parser = subparsers.add_parser(
        "run-pipeline",
        help="Run the ingestion pipeline across sites",
    )
    add_sites_argument(run_parser)
    add_dry_run_argument(run_parser)
    for phase in PHASE_ORDER:
        run_parser.add_argument(
            f"--skip-{phase.value}",
            dest=_skip_dest(phase),
            action="store_true",
            help=f"Skip the {phase.value} phase",
        )
    run_parser.add_argument(
        "--force-local-indexing",
        action="store_true",
        help="Run local indexing even when no new audio or transcripts were produced",
    )
    add_sync_folders_argument(run_parser)
    run_parser.add_argument(
        "--max-episodes",
        type=int,
        default=None,
        help="Maximum number of episodes RSS retrieval downloads per site",
    )
    run_parser.add_argument(
        "--max-parallel-sites",
        type=int,
        default=None,
        help="Run up to N sites concurrently within a phase",
    )
    run_parser.add_argument(
        "--interactive",
        action="store_true",
        help="Confirm the run configuration before starting",
    )
    run_parser.add_argument(
        "--no-history",
        action="store_true",
        help="Do not record this run in the run history file",
    )

    # check-sync command
    check_parser = subparsers.add_parser(
        "check-sync",
        help="Compare local and remote files for each site",
    )
    add_sites_argument(check_parser)
    add_sync_folders_argument(check_parser)

    # list-sites command
    subparsers.add_parser(
        "list-sites",
        help="List configured sites",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_FAILURE

    configure_logging(args.log_level)

    commands = {
        "run-pipeline": run_pipeline,
        "check-sync": check_sync,
        "list-sites": list_sites,
    }

    try:
        config = Config(env_file=args.env_file)
        return commands[args.command](args, config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
