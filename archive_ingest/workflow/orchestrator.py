"""Pipeline orchestrator for podcast archive ingestion.

Runs the pipeline phases in canonical order across every selected site:

    pre-sync → rss-retrieval → audio-transcription → local-indexing →
    post-sync → index-refresh

A phase is attempted for every site before the next phase starts. Each
(site, phase) invocation is guarded so a failure is recorded on that
site's result and never interrupts other sites.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Callable, Dict, Optional, Sequence

from archive_ingest.config import Config
from archive_ingest.sites import Site
from archive_ingest.sync.folders import (
    ALWAYS_SYNC_FOLDERS,
    INDEX_ARTIFACT_FOLDERS,
    ConflictResolution,
    TransferDirection,
)
from archive_ingest.sync.inventory import scan_local_folder
from archive_ingest.sync.reconciler import ReconcileMode, generate_report
from archive_ingest.sync.stores import ObjectStoreInterface, create_object_store
from archive_ingest.workflow.config import PipelineConfig
from archive_ingest.workflow.results import (
    PHASE_ORDER,
    Phase,
    PhaseMetrics,
    PhaseResult,
    RunReport,
    SiteProcessingResult,
)

logger = logging.getLogger(__name__)

StoreFactory = Callable[[Site], ObjectStoreInterface]


class PipelineOrchestrator:
    """Sequences pipeline phases across sites with per-site failure isolation.

    Collaborators are created lazily when not injected, so tests can pass
    mocks for the transfer executor, phase runner and index trigger.

    Example:
        config = Config()
        pipeline_config = PipelineConfig.from_env()
        sites = SiteRegistry(config).select(["hardfork"])

        orchestrator = PipelineOrchestrator(config, pipeline_config, sites)
        report = asyncio.run(orchestrator.run())
    """

    def __init__(
        self,
        config: Config,
        pipeline_config: PipelineConfig,
        sites: Sequence[Site],
        store_factory: Optional[StoreFactory] = None,
        transfer_executor=None,
        phase_runner=None,
        index_trigger=None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Application configuration.
            pipeline_config: Run configuration (phases, folders, timeouts).
            sites: Sites to process.
            store_factory: Creates the remote store of a site.
            transfer_executor: Performs folder transfers.
            phase_runner: Runs site-scoped child-process phases.
            index_trigger: Triggers the remote index refresh.
        """
        self.config = config
        self.pipeline_config = pipeline_config
        self.sites = sorted(sites, key=lambda site: site.id)
        self._store_factory = store_factory
        self._transfer_executor = transfer_executor
        self._phase_runner = phase_runner
        self._index_trigger = index_trigger
        self._stores: Dict[str, ObjectStoreInterface] = {}
        self.report: Optional[RunReport] = None

    def _get_store(self, site: Site) -> ObjectStoreInterface:
        """Get or create the remote store of a site."""
        if site.id not in self._stores:
            if self._store_factory is not None:
                self._stores[site.id] = self._store_factory(site)
            else:
                self._stores[site.id] = create_object_store(
                    site, self.config, self.pipeline_config.network_timeout_seconds
                )
        return self._stores[site.id]

    def _get_transfer_executor(self):
        """Get or create the transfer executor."""
        if self._transfer_executor is None:
            from archive_ingest.sync.transfer import TransferExecutor

            self._transfer_executor = TransferExecutor(
                timeout_seconds=self.pipeline_config.transfer_timeout_seconds,
                progress_interval_seconds=self.pipeline_config.progress_interval_seconds,
            )
        return self._transfer_executor

    def _get_phase_runner(self):
        """Get or create the phase runner."""
        if self._phase_runner is None:
            from archive_ingest.workflow.phase_runner import PhaseRunner

            self._phase_runner = PhaseRunner(
                timeout_seconds=self.pipeline_config.phase_timeout_seconds,
                cancel_grace_seconds=self.pipeline_config.cancel_grace_seconds,
                prefix_output=(
                    self.pipeline_config.prefix_output
                    or self.pipeline_config.max_parallel_sites > 1
                ),
            )
        return self._phase_runner

    def _get_index_trigger(self):
        """Get or create the index refresh trigger."""
        if self._index_trigger is None:
            from archive_ingest.workflow.index_trigger import IndexRefreshTrigger

            self._index_trigger = IndexRefreshTrigger(
                config=self.config,
                timeout_seconds=self.pipeline_config.network_timeout_seconds,
            )
        return self._index_trigger

    async def run(self) -> RunReport:
        """Run every enabled phase for every site.

        Returns:
            RunReport with one SiteProcessingResult per site, sorted by id.

        Raises:
            asyncio.CancelledError: The run was cancelled. ``self.report``
                keeps the results recorded so far and is marked cancelled.
        """
        self.report = RunReport(
            sites=[
                SiteProcessingResult(site_id=site.id, site_title=site.title)
                for site in self.sites
            ],
            dry_run=self.pipeline_config.dry_run,
            enabled_phases=[
                phase for phase in PHASE_ORDER if self.pipeline_config.is_enabled(phase)
            ],
        )
        mode = "DRY RUN" if self.pipeline_config.dry_run else "LIVE"
        logger.info(
            f"Starting ingestion pipeline ({mode}) for {len(self.sites)} site(s): "
            f"{', '.join(site.id for site in self.sites)}"
        )

        try:
            for index, phase in enumerate(PHASE_ORDER, start=1):
                if not self.pipeline_config.is_enabled(phase):
                    logger.info(f"Skipping phase {index}: {phase.label} (disabled)")
                    continue
                logger.info("=" * 60)
                logger.info(f"Phase {index}: {phase.label} for all sites")
                logger.info("=" * 60)
                await self.run_phase(phase)
        except asyncio.CancelledError:
            logger.warning("Pipeline cancelled")
            self.report.cancelled = True
            raise
        finally:
            self.report.stopped_at = datetime.now(UTC)

        logger.info(
            f"Pipeline finished in {self.report.duration_seconds:.1f}s "
            f"({'with errors' if self.report.has_errors else 'no errors'})"
        )
        return self.report

    async def run_phase(self, phase: Phase) -> None:
        """Attempt one phase for every site."""
        handler = self._handlers()[phase]
        pairs = list(zip(self.sites, self.report.sites))

        if self.pipeline_config.max_parallel_sites <= 1:
            for site, site_result in pairs:
                await self._run_guarded(site, site_result, phase, handler)
            return

        semaphore = asyncio.Semaphore(self.pipeline_config.max_parallel_sites)

        async def bounded(site, site_result):
            async with semaphore:
                await self._run_guarded(site, site_result, phase, handler)

        await asyncio.gather(*(bounded(site, site_result) for site, site_result in pairs))

    def _handlers(self):
        return {
            Phase.PRE_SYNC: self._pre_sync,
            Phase.RSS_RETRIEVAL: self._rss_retrieval,
            Phase.AUDIO_TRANSCRIPTION: self._audio_transcription,
            Phase.LOCAL_INDEXING: self._local_indexing,
            Phase.POST_SYNC: self._post_sync,
            Phase.INDEX_REFRESH: self._index_refresh,
        }

    async def _run_guarded(
        self,
        site: Site,
        site_result: SiteProcessingResult,
        phase: Phase,
        handler,
    ) -> PhaseResult:
        """Run one phase for one site and record its result.

        Any exception other than cancellation becomes a failed PhaseResult.
        On cancellation nothing is recorded for this phase.
        """
        start = time.monotonic()
        try:
            result = await handler(site, site_result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"[{site.id}] {phase.value} failed")
            result = PhaseResult(
                site_id=site.id,
                phase=phase,
                success=False,
                error_message=str(e) or type(e).__name__,
            )

        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - start) * 1000)
        site_result.record(result)
        return result

    def _result(self, site: Site, phase: Phase, **kwargs) -> PhaseResult:
        return PhaseResult(site_id=site.id, phase=phase, **kwargs)

    async def _pre_sync(self, site: Site, site_result: SiteProcessingResult) -> PhaseResult:
        """Download files that exist remotely but not locally (never overwriting)."""
        phase = Phase.PRE_SYNC
        store = self._get_store(site)
        report = await generate_report(
            site,
            store,
            self.pipeline_config.sync_folders,
            ReconcileMode.DOWNLOAD_MISSING,
            timeout_seconds=self.pipeline_config.network_timeout_seconds,
        )
        errors = [str(error) for error in report.scan_errors.values()]

        if self.pipeline_config.dry_run:
            planned = report.total_remote_only
            for folder, diff in report.folders.items():
                if diff.remote_only:
                    logger.info(
                        f"DRY RUN: [{site.id}] would download {len(diff.remote_only)} "
                        f"file(s) into {folder.value}"
                    )
            return self._result(
                site,
                phase,
                success=not errors,
                metrics=PhaseMetrics(files_transferred=planned),
                detail=f"would download {planned} file(s)",
                error_message="; ".join(errors) or None,
            )

        if not report.has_remote_only:
            logger.info(f"[{site.id}] Local files are up to date, nothing to download")
            return self._result(
                site,
                phase,
                success=not errors,
                detail="0 files downloaded",
                error_message="; ".join(errors) or None,
            )

        executor = self._get_transfer_executor()
        transferred = 0
        for folder, diff in report.folders.items():
            if not diff.remote_only:
                continue
            transfer = await executor.transfer(
                site,
                store,
                folder,
                TransferDirection.DOWNLOAD,
                ConflictResolution.SKIP_EXISTING,
                source_entries=set(diff.remote_only),
                destination_entries=set(diff.consistent),
            )
            transferred += transfer.files_transferred
            if not transfer.success:
                errors.append(transfer.error_detail or f"{folder.value}: transfer failed")

        return self._result(
            site,
            phase,
            success=not errors,
            metrics=PhaseMetrics(files_transferred=transferred),
            detail=f"{transferred} file(s) downloaded",
            error_message="; ".join(errors) or None,
        )

    async def _run_command_phase(
        self,
        site: Site,
        phase: Phase,
        extra_env: Optional[Dict[str, str]] = None,
        dry_run_detail: str = "",
    ) -> PhaseResult:
        if self.pipeline_config.dry_run:
            logger.info(f"DRY RUN: [{site.id}] {dry_run_detail}")
            return self._result(site, phase, success=True, skipped=True, detail=dry_run_detail)
        return await self._get_phase_runner().run(
            site, phase, self.pipeline_config.command_for(phase), extra_env=extra_env
        )

    async def _rss_retrieval(self, site: Site, site_result: SiteProcessingResult) -> PhaseResult:
        extra_env = {}
        if self.pipeline_config.max_episodes is not None:
            extra_env["MAX_EPISODES"] = str(self.pipeline_config.max_episodes)
        result = await self._run_command_phase(
            site,
            Phase.RSS_RETRIEVAL,
            extra_env=extra_env,
            dry_run_detail="would retrieve RSS feeds and download new audio",
        )
        if result.metrics.new_audio_files:
            logger.info(f"[{site.id}] {result.metrics.new_audio_files} new audio file(s)")
        return result

    async def _audio_transcription(
        self, site: Site, site_result: SiteProcessingResult
    ) -> PhaseResult:
        result = await self._run_command_phase(
            site,
            Phase.AUDIO_TRANSCRIPTION,
            dry_run_detail="would transcribe new audio files",
        )
        if result.metrics.new_transcripts:
            logger.info(f"[{site.id}] {result.metrics.new_transcripts} new transcript(s)")
        return result

    def plan_local_indexing(self, site_result: SiteProcessingResult) -> bool:
        """Local indexing runs for sites with new files, or always when forced."""
        return self.pipeline_config.force_local_indexing or site_result.has_new_files

    async def _local_indexing(self, site: Site, site_result: SiteProcessingResult) -> PhaseResult:
        phase = Phase.LOCAL_INDEXING
        if not self.plan_local_indexing(site_result):
            # In a dry run upstream phases did not run, so new files are unknown
            if self.pipeline_config.dry_run:
                detail = "would run local indexing if new audio or transcripts are produced"
            else:
                detail = "no new files, indexing not needed"
            logger.info(f"[{site.id}] Skipping local indexing: {detail}")
            return self._result(site, phase, success=True, skipped=True, detail=detail)

        result = await self._run_command_phase(
            site, phase, dry_run_detail="would run local indexing"
        )
        if not result.success:
            withheld = sorted(folder.value for folder in INDEX_ARTIFACT_FOLDERS)
            logger.warning(
                f"[{site.id}] Local indexing failed, withholding {', '.join(withheld)} from upload"
            )
            site_result.withheld_folders.update(INDEX_ARTIFACT_FOLDERS)
        return result

    async def _post_sync(self, site: Site, site_result: SiteProcessingResult) -> PhaseResult:
        """Upload new local files, and mirror the manifest folder unconditionally."""
        phase = Phase.POST_SYNC
        store = self._get_store(site)
        folders = [
            folder
            for folder in self.pipeline_config.sync_folders
            if folder not in site_result.withheld_folders
        ]
        diff_folders = [folder for folder in folders if folder not in ALWAYS_SYNC_FOLDERS]
        mirror_folders = [folder for folder in folders if folder in ALWAYS_SYNC_FOLDERS]

        report = await generate_report(
            site,
            store,
            diff_folders,
            ReconcileMode.UPLOAD_MISSING,
            timeout_seconds=self.pipeline_config.network_timeout_seconds,
        )
        errors = [str(error) for error in report.scan_errors.values()]

        if self.pipeline_config.dry_run:
            planned = report.total_local_only
            site_result.uploaded_content_files = planned
            for folder, diff in report.folders.items():
                if diff.local_only:
                    logger.info(
                        f"DRY RUN: [{site.id}] would upload {len(diff.local_only)} "
                        f"file(s) from {folder.value}"
                    )
            detail = f"would upload {planned} file(s)"
            if mirror_folders:
                detail += f", would mirror {', '.join(f.value for f in mirror_folders)}"
            return self._result(
                site,
                phase,
                success=not errors,
                metrics=PhaseMetrics(files_transferred=planned),
                detail=detail,
                error_message="; ".join(errors) or None,
            )

        executor = self._get_transfer_executor()
        content_uploaded = 0
        for folder, diff in report.folders.items():
            if not diff.local_only:
                continue
            transfer = await executor.transfer(
                site,
                store,
                folder,
                TransferDirection.UPLOAD,
                ConflictResolution.OVERWRITE_IF_NEWER,
            )
            content_uploaded += transfer.files_transferred
            if not transfer.success:
                errors.append(transfer.error_detail or f"{folder.value}: transfer failed")

        mirrored = 0
        for folder in mirror_folders:
            local_entries = await asyncio.to_thread(
                scan_local_folder, site.local_base_path, folder
            )
            if not local_entries:
                logger.warning(
                    f"[{site.id}] No local {folder.value} files, leaving remote copy untouched"
                )
                continue
            transfer = await executor.transfer(
                site,
                store,
                folder,
                TransferDirection.UPLOAD,
                ConflictResolution.OVERWRITE_ALWAYS,
                source_entries=local_entries,
            )
            mirrored += transfer.files_transferred
            if not transfer.success:
                errors.append(transfer.error_detail or f"{folder.value}: transfer failed")

        site_result.uploaded_content_files = content_uploaded
        return self._result(
            site,
            phase,
            success=not errors,
            metrics=PhaseMetrics(files_transferred=content_uploaded + mirrored),
            detail=f"{content_uploaded} file(s) uploaded, {mirrored} manifest file(s) mirrored",
            error_message="; ".join(errors) or None,
        )

    def plan_index_refresh(self, site_result: SiteProcessingResult) -> bool:
        """The remote index is refreshed only when post-sync uploaded new content."""
        return site_result.uploaded_content_files > 0

    async def _index_refresh(self, site: Site, site_result: SiteProcessingResult) -> PhaseResult:
        phase = Phase.INDEX_REFRESH
        if not self.plan_index_refresh(site_result):
            return self._result(
                site, phase, success=True, skipped=True, detail="no new content uploaded"
            )

        if self.pipeline_config.dry_run:
            detail = (
                f"would trigger index refresh "
                f"({site_result.uploaded_content_files} file(s) to upload)"
            )
            logger.info(f"DRY RUN: [{site.id}] {detail}")
            return self._result(site, phase, success=True, skipped=True, detail=detail)

        function_name = await self._get_index_trigger().trigger(site)
        return self._result(site, phase, success=True, detail=f"triggered {function_name}")
