"""Transfer executor.

Performs the bulk copy of one sync folder between a site's local tree and
its remote object store. Planning is a pure function over inventories;
execution runs the blocking store calls in a worker thread while an
asyncio heartbeat reports progress.
"""

import asyncio
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from archive_ingest.exceptions import ScanError, TransferError
from archive_ingest.sites import Site
from archive_ingest.sync.folders import ConflictResolution, SyncFolder, TransferDirection
from archive_ingest.sync.inventory import (
    FileInventoryEntry,
    folder_prefix,
    scan_local_folder,
    scan_remote_folder,
)
from archive_ingest.sync.stores import ObjectStoreInterface

logger = logging.getLogger(__name__)

# Errors a single object copy or delete may raise
TRANSFER_ERRORS = (ClientError, BotoCoreError, Boto3Error, OSError)

_WORKER_STOP_WAIT_SECONDS = 30


@dataclass
class TransferPlan:
    """Source entries to copy and destination keys to delete."""

    copies: List[FileInventoryEntry] = field(default_factory=list)
    deletes: List[str] = field(default_factory=list)

    @property
    def copy_keys(self) -> List[str]:
        return [entry.relative_key for entry in self.copies]

    @property
    def is_empty(self) -> bool:
        return not self.copies and not self.deletes


@dataclass
class TransferResult:
    """Outcome of one folder transfer."""

    folder: SyncFolder
    success: bool
    files_transferred: int = 0
    files_deleted: int = 0
    error_detail: Optional[str] = None


@dataclass
class TransferProgress:
    """Progress shared between the worker thread and the heartbeat task."""

    started: float = field(default_factory=time.monotonic)
    files_done: int = 0
    current: Optional[str] = None
    cancelled: threading.Event = field(default_factory=threading.Event)

    @property
    def elapsed_seconds(self) -> int:
        return int(time.monotonic() - self.started)


def plan_transfer(
    source_entries: Iterable[FileInventoryEntry],
    destination_entries: Iterable[FileInventoryEntry],
    conflict_resolution: ConflictResolution,
) -> TransferPlan:
    """Decide which keys a transfer copies and deletes.

    Args:
        source_entries: Inventory of the side being copied from.
        destination_entries: Inventory of the side being copied to.
        conflict_resolution: Policy for keys present on both sides.

    Returns:
        TransferPlan with keys sorted. Deletions are only planned for
        OVERWRITE_ALWAYS, which mirrors the source exactly.
    """
    source = {entry.relative_key: entry for entry in source_entries}
    destination = {entry.relative_key: entry for entry in destination_entries}

    plan = TransferPlan()
    for key in sorted(source):
        existing = destination.get(key)
        if existing is None or conflict_resolution == ConflictResolution.OVERWRITE_ALWAYS:
            plan.copies.append(source[key])
        elif conflict_resolution == ConflictResolution.OVERWRITE_IF_NEWER:
            src_mtime = source[key].last_modified
            dst_mtime = existing.last_modified
            if src_mtime is not None and (dst_mtime is None or src_mtime > dst_mtime):
                plan.copies.append(source[key])

    if conflict_resolution == ConflictResolution.OVERWRITE_ALWAYS:
        plan.deletes = sorted(set(destination) - set(source))
    return plan


class TransferExecutor:
    """Copies one folder at a time between a local tree and a remote store.

    Example:
        executor = TransferExecutor(timeout_seconds=3600)
        result = await executor.transfer(
            site, store, SyncFolder.AUDIO,
            TransferDirection.DOWNLOAD, ConflictResolution.SKIP_EXISTING,
        )
    """

    def __init__(
        self,
        timeout_seconds: Optional[float] = 3600,
        progress_interval_seconds: float = 10,
        show_progress: Optional[bool] = None,
    ):
        """Initialize the executor.

        Args:
            timeout_seconds: Upper bound for one folder transfer, None for unbounded.
            progress_interval_seconds: Interval between heartbeat log lines.
            show_progress: Show a tqdm bar; defaults to whether stderr is a terminal.
        """
        self.timeout_seconds = timeout_seconds
        self.progress_interval_seconds = progress_interval_seconds
        if show_progress is None:
            show_progress = sys.stderr.isatty()
        self.show_progress = show_progress

    async def transfer(
        self,
        site: Site,
        store: ObjectStoreInterface,
        folder: SyncFolder,
        direction: TransferDirection,
        conflict_resolution: ConflictResolution,
        source_entries: Optional[Set[FileInventoryEntry]] = None,
        destination_entries: Optional[Set[FileInventoryEntry]] = None,
    ) -> TransferResult:
        """Transfer one folder. Never raises for store or filesystem failures.

        Inventories that are not supplied are scanned first. Any failed copy
        or delete makes the whole folder transfer unsuccessful.
        """
        try:
            source_entries, destination_entries = await self._resolve_inventories(
                site, store, folder, direction, source_entries, destination_entries
            )
        except (ScanError, OSError) as e:
            return TransferResult(folder=folder, success=False, error_detail=str(e))

        plan = plan_transfer(source_entries, destination_entries, conflict_resolution)
        if plan.is_empty:
            logger.info(f"[{site.id}] {folder.value}: nothing to transfer")
            return TransferResult(folder=folder, success=True)

        logger.info(
            f"[{site.id}] {direction.value} {folder.value}: "
            f"{len(plan.copies)} to copy, {len(plan.deletes)} to delete "
            f"({conflict_resolution.value})"
        )

        progress = TransferProgress()
        heartbeat = asyncio.create_task(self._heartbeat(site, folder, progress))
        worker = asyncio.ensure_future(
            asyncio.to_thread(self._execute, site, store, folder, direction, plan, progress)
        )
        try:
            transferred, deleted, failures = await asyncio.wait_for(
                asyncio.shield(worker), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            progress.cancelled.set()
            # The worker stops after its in-flight object
            done, _ = await asyncio.wait({worker}, timeout=_WORKER_STOP_WAIT_SECONDS)
            if not done:
                logger.warning(
                    f"[{site.id}] {folder.value}: worker still busy "
                    f"{_WORKER_STOP_WAIT_SECONDS}s after timeout"
                )
            error = TransferError(
                site.id, folder.value, f"Timed out after {self.timeout_seconds}s"
            )
            logger.error(str(error))
            return TransferResult(
                folder=folder,
                success=False,
                files_transferred=progress.files_done,
                error_detail=str(error),
            )
        except asyncio.CancelledError:
            progress.cancelled.set()
            raise
        finally:
            heartbeat.cancel()

        result = TransferResult(
            folder=folder,
            success=not failures,
            files_transferred=transferred,
            files_deleted=deleted,
        )
        if failures:
            error = TransferError(
                site.id,
                folder.value,
                f"{len(failures)} object(s) failed, first: {failures[0]}",
            )
            logger.error(str(error))
            result.error_detail = str(error)
        else:
            logger.info(
                f"[{site.id}] {folder.value}: {transferred} file(s) transferred, "
                f"{deleted} deleted in {progress.elapsed_seconds}s"
            )
        return result

    async def _resolve_inventories(self, site, store, folder, direction, source, destination):
        async def local():
            return await asyncio.to_thread(scan_local_folder, site.local_base_path, folder)

        async def remote():
            return await asyncio.to_thread(scan_remote_folder, store, folder, site.id)

        if direction == TransferDirection.UPLOAD:
            source_scan, destination_scan = local, remote
        else:
            source_scan, destination_scan = remote, local

        if source is None:
            source = await source_scan()
        if destination is None:
            destination = await destination_scan()
        return source, destination

    async def _heartbeat(self, site: Site, folder: SyncFolder, progress: TransferProgress) -> None:
        while True:
            await asyncio.sleep(self.progress_interval_seconds)
            message = (
                f"[{site.id}] Syncing {folder.value}... ({progress.elapsed_seconds}s) "
                f"| Files: {progress.files_done}"
            )
            if progress.current:
                message += f" | Current: {os.path.basename(progress.current)}"
            logger.info(message)

    def _execute(
        self,
        site: Site,
        store: ObjectStoreInterface,
        folder: SyncFolder,
        direction: TransferDirection,
        plan: TransferPlan,
        progress: TransferProgress,
    ):
        """Run the plan. Blocking, called in a worker thread.

        Returns:
            Tuple of (files transferred, files deleted, failure messages).
        """
        prefix = folder_prefix(folder)
        local_root = os.path.join(site.local_base_path, folder.value)
        failures = []
        transferred = 0
        deleted = 0

        for entry in tqdm(
            plan.copies,
            desc=f"{site.id} {folder.value}",
            unit="file",
            disable=not self.show_progress,
        ):
            if progress.cancelled.is_set():
                failures.append("transfer cancelled")
                break
            key = entry.relative_key
            progress.current = key
            local_path = os.path.join(local_root, *key.split("/"))
            try:
                if direction == TransferDirection.UPLOAD:
                    store.upload_file(local_path, prefix + key)
                else:
                    os.makedirs(os.path.dirname(local_path), exist_ok=True)
                    store.download_file(prefix + key, local_path)
                    # Preserve the remote timestamp
                    if entry.last_modified is not None:
                        os.utime(local_path, (entry.last_modified, entry.last_modified))
            except TRANSFER_ERRORS as e:
                logger.warning(f"[{site.id}] Failed to copy {prefix}{key}: {e}")
                failures.append(f"{key}: {e}")
                continue
            transferred += 1
            progress.files_done = transferred

        for key in plan.deletes:
            if progress.cancelled.is_set():
                break
            progress.current = key
            try:
                if direction == TransferDirection.UPLOAD:
                    store.delete_object(prefix + key)
                else:
                    os.remove(os.path.join(local_root, *key.split("/")))
            except TRANSFER_ERRORS as e:
                logger.warning(f"[{site.id}] Failed to delete {prefix}{key}: {e}")
                failures.append(f"delete {key}: {e}")
                continue
            deleted += 1

        progress.current = None
        return transferred, deleted, failures
